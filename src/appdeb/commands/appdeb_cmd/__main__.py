#!/usr/bin/python3 -B
import argparse
import logging
import textwrap
import traceback
from typing import List, NoReturn, Optional

from appdeb.environment import BuildEnvironment
from appdeb.exceptions import AppdebRuntimeError
from appdeb.installer import build_package
from appdeb.lintian import LintianStatus, run_lintian
from appdeb.options import load_options_file
from appdeb.staging import newest_mtime
from appdeb.util import (
    ColorizedArgumentParser,
    _error,
    _info,
    _warn,
    program_name,
    setup_logging,
)
from appdeb.version import __version__


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    description = textwrap.dedent(
        """\
    Build a Debian package (.deb) from a directory containing a prebuilt
    desktop application.

    The package metadata is read from a YAML file (see --options) and from
    the resources/app/package.json of the application.  The
    application is installed into /usr/lib/<name> and the package is placed
    in DEST_DIR as <name>_<version>_<architecture>.deb.
    """
    )

    parser = ColorizedArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        prog=program_name(),
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "source_dir",
        metavar="SOURCE_DIR",
        help="Directory with the application to package",
    )
    parser.add_argument(
        "dest_dir",
        metavar="DEST_DIR",
        help="Directory where the .deb should be placed",
    )
    parser.add_argument(
        "--options",
        dest="options_file",
        metavar="YAML_FILE",
        action="store",
        default=None,
        help="YAML file with the package options. Options it does not set are read from the"
        " resources/app/package.json of the application",
    )
    parser.add_argument(
        "--lintian",
        dest="run_lintian",
        action="store_true",
        default=False,
        help="Check the generated package with lintian. Errors and warnings make the command fail",
    )
    parser.add_argument(
        "--source-date-epoch",
        dest="source_date_epoch",
        action="store",
        type=int,
        default=None,
        help="Source date epoch (can also be given via the SOURCE_DATE_EPOCH environ variable",
    )
    parser.add_argument(
        "-d",
        "--debug",
        dest="debug_mode",
        action="store_true",
        default=False,
        help="Enable debug logging and raw stack traces on errors",
    )
    return parser.parse_args(argv)


def _build(parsed_args: argparse.Namespace) -> None:
    options_file: Optional[str] = parsed_args.options_file
    raw_options = load_options_file(options_file) if options_file is not None else {}
    source_dir: str = parsed_args.source_dir
    environment = BuildEnvironment.capture(
        source_date_epoch=parsed_args.source_date_epoch,
        fallback_mtime=lambda: newest_mtime(source_dir),
    )
    deb_file = build_package(
        source_dir,
        parsed_args.dest_dir,
        raw_options,
        environment=environment,
    )
    if not parsed_args.run_lintian:
        return
    result = run_lintian(deb_file)
    result.raise_for_missing_tool()
    if result.status == LintianStatus.UNEXPECTED_TAGS:
        _error(
            f"lintian reported {len(result.unexpected_tags)} unexpected tag(s) for {deb_file}"
        )
    _info(f"lintian found no issues in {deb_file}")


def main(argv: Optional[List[str]] = None) -> None:
    setup_logging(reconfigure_logging=True)
    parsed_args = parse_args(argv)
    if parsed_args.debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)
    try:
        _build(parsed_args)
    except AppdebRuntimeError as e:
        if parsed_args.debug_mode:
            _warn(
                "Re-raising original exception to show the full stack trace due to debug mode being active"
            )
            raise e
        _error(e.message)
    except AssertionError as e:
        _error_w_stack_trace(
            "Internal error in appdeb",
            str(e),
            e,
            parsed_args.debug_mode,
            follow_warning=["Please file a bug against appdeb with the full output."],
        )


def _error_w_stack_trace(
    warning: str,
    error_msg: str,
    stacktrace: BaseException,
    debug_mode: bool,
    follow_warning: Optional[List[str]] = None,
) -> "NoReturn":
    if debug_mode:
        _warn(
            "Re-raising original exception to show the full stack trace due to debug mode being active"
        )
        raise stacktrace
    _warn(warning)
    _warn("  ----- 8< ---- BEGIN STACK TRACE ---- 8< -----")
    traceback.print_exception(stacktrace)
    _warn("  ----- 8< ---- END STACK TRACE ---- 8< -----")
    if follow_warning:
        for line in follow_warning:
            _warn(line)
    _error(error_msg)


if __name__ == "__main__":
    main()
