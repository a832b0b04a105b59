import os
from typing import Any, Mapping, Optional

from appdeb.control_files import generate_metadata
from appdeb.deb_packer import COMPRESSIONS, pack
from appdeb.environment import BuildEnvironment, check_umask
from appdeb.exceptions import PackageIOError
from appdeb.options import load_app_metadata, validate_options, with_app_defaults
from appdeb.staging import newest_mtime, stage_application
from appdeb.util import _info, compute_output_filename


def build_package(
    source_dir: str,
    dest_dir: str,
    raw_options: Mapping[str, Any],
    *,
    environment: Optional[BuildEnvironment] = None,
) -> str:
    """Build a .deb of the application in source_dir and place it in dest_dir

    Options missing from raw_options are taken from the application's
    resources/app/package.json when it has one.

    Returns the path of the generated package.  Nothing is written before
    the options have been validated and the environment checked, and no
    partial package is left in dest_dir when the build fails.
    """
    options = validate_options(
        with_app_defaults(raw_options, load_app_metadata(source_dir))
    )
    if environment is None:
        environment = BuildEnvironment.capture(
            fallback_mtime=lambda: newest_mtime(source_dir),
        )
    check_umask(environment.umask)
    if not os.path.isdir(dest_dir):
        raise PackageIOError(
            f'The destination "{dest_dir}" does not exist or is not a directory',
            dest_dir,
        )

    mtime = environment.source_date_epoch
    _info(f"Building {options.name} {options.version} ({options.architecture})")
    with stage_application(source_dir, options) as staged_tree:
        generate_metadata(staged_tree, options, source_dir, mtime)
        staged_tree.normalize_permissions()
        deb_file = os.path.join(
            dest_dir, compute_output_filename(staged_tree.control_dir)
        )
        pack(deb_file, COMPRESSIONS[options.compression], staged_tree, mtime)
    return deb_file
