import argparse
import logging
import os
import re
import sys
import time
from typing import (
    NoReturn,
    Optional,
    TypeVar,
    Tuple,
    Any,
    Callable,
)

import colorlog
from debian.deb822 import Deb822

from appdeb.exceptions import PackageEnvironmentError


T = TypeVar("T")


PKGVERSION_REGEX = re.compile(
    r"""
                 (?: \d+ : )?                # Optional epoch
                 \d[0-9A-Za-z.+:~]*          # Upstream version (with no hyphens)
                 (?: - [0-9A-Za-z.+:~]+ )*   # Optional debian revision (+ upstreams versions with hyphens)
""",
    re.VERBOSE | re.ASCII,
)


_SPACE_RE = re.compile(r"\s")
_DOUBLE_ESCAPEES = re.compile(r'([\n`$"\\])')
_REGULAR_ESCAPEES = re.compile(r'([\s!"\'$()*+#;<>?@\[\]\\`|~])')
_DEFAULT_LOGGER: Optional[logging.Logger] = None
_STDOUT_HANDLER: Optional[logging.StreamHandler] = None
_STDERR_HANDLER: Optional[logging.StreamHandler] = None


def assume_not_none(x: Optional[T]) -> T:
    if x is None:  # pragma: no cover
        raise ValueError(
            'Internal error: None was given, but the receiver assumed "not None" here'
        )
    return x


def _info(msg: str) -> None:
    global _DEFAULT_LOGGER
    logger = _DEFAULT_LOGGER
    if logger:
        logger.info(msg)
    # No fallback print for info


def _error(msg: str, *, prog: Optional[str] = None) -> "NoReturn":
    global _DEFAULT_LOGGER
    logger = _DEFAULT_LOGGER
    if logger:
        logger.error(msg)
    else:
        me = os.path.basename(sys.argv[0]) if prog is None else prog
        print(
            f"{me}: error: {msg}",
            file=sys.stderr,
        )
    sys.exit(1)


def _warn(msg: str, *, prog: Optional[str] = None) -> None:
    global _DEFAULT_LOGGER
    logger = _DEFAULT_LOGGER
    if logger:
        logger.warning(msg)
    else:
        me = os.path.basename(sys.argv[0]) if prog is None else prog

        print(
            f"{me}: warning: {msg}",
            file=sys.stderr,
        )


class ColorizedArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        _error(message, prog=self.prog)


def ensure_dir(path: str) -> None:
    if not os.path.isdir(path):
        os.makedirs(path, mode=0o755, exist_ok=True)


def _backslash_escape(m: re.Match[str]) -> str:
    return "\\" + m.group(0)


def _escape_shell_word(w: str) -> str:
    if _SPACE_RE.search(w):
        key, eq, value = w.partition("=")
        if eq and not _SPACE_RE.search(key):
            # Only quote the value of --opt=value (or VAR=value)
            return f"{_REGULAR_ESCAPEES.sub(_backslash_escape, key)}={_double_quote(value)}"
        return _double_quote(w)
    return _REGULAR_ESCAPEES.sub(_backslash_escape, w)


def _double_quote(w: str) -> str:
    w = _DOUBLE_ESCAPEES.sub(_backslash_escape, w)
    return f'"{w}"'


def escape_shell(*args: str) -> str:
    return " ".join(_escape_shell_word(w) for w in args)


def resolve_source_date_epoch(
    command_line_value: Optional[int],
    *,
    fallback: Optional[Callable[[], Optional[int]]] = None,
) -> int:
    mtime = command_line_value
    if mtime is None and "SOURCE_DATE_EPOCH" in os.environ:
        sde_raw = os.environ["SOURCE_DATE_EPOCH"]
        if sde_raw == "":
            raise PackageEnvironmentError("SOURCE_DATE_EPOCH is set but empty.")
        try:
            mtime = int(sde_raw)
        except ValueError as e:
            raise PackageEnvironmentError(
                f'SOURCE_DATE_EPOCH must be an integer, got "{sde_raw}"'
            ) from e
    if mtime is None and fallback is not None:
        mtime = fallback()
    if mtime is None:
        mtime = int(time.time())
    return mtime


def compute_output_filename(control_root_dir: str) -> str:
    with open(os.path.join(control_root_dir, "control"), "rt", encoding="utf-8") as fd:
        control_file = Deb822(fd)

    package_name = control_file["Package"]
    package_version = control_file["Version"]
    package_architecture = control_file["Architecture"]
    if ":" in package_version:
        package_version = package_version.split(":", 1)[1]

    return f"{package_name}_{package_version}_{package_architecture}.deb"


def _check_color() -> Tuple[bool, bool, Optional[str]]:
    dpkg_or_default = os.environ.get(
        "DPKG_COLORS", "never" if "NO_COLOR" in os.environ else "auto"
    )
    requested_color = os.environ.get("APPDEB_COLORS", dpkg_or_default)
    bad_request = None
    if requested_color not in {"auto", "always", "never"}:
        bad_request = requested_color
        requested_color = "auto"

    if requested_color == "auto":
        stdout_color = sys.stdout.isatty()
        stderr_color = sys.stderr.isatty()
    else:
        enable = requested_color == "always"
        stdout_color = enable
        stderr_color = enable
    return stdout_color, stderr_color, bad_request


def program_name() -> str:
    name = os.path.basename(sys.argv[0])
    if name.endswith(".py"):
        name = name[:-3]
    if name == "__main__":
        name = os.path.basename(os.path.dirname(sys.argv[0]))
    if name == "appdeb_cmd":
        name = "appdeb"
    return name


_LOGGING_SET_UP = False


def setup_logging(*, reconfigure_logging: bool = False) -> None:
    global _LOGGING_SET_UP, _DEFAULT_LOGGER, _STDOUT_HANDLER, _STDERR_HANDLER
    if _LOGGING_SET_UP and not reconfigure_logging:
        raise RuntimeError(
            "Logging has already been configured."
            " Use reconfigure_logging=True if you need to reconfigure it"
        )
    stdout_color, stderr_color, bad_request = _check_color()

    class LogLevelFilter(logging.Filter):
        def __init__(self, threshold: int, above: bool):
            super().__init__()
            self.threshold = threshold
            self.above = above

        def filter(self, record: logging.LogRecord) -> bool:
            if self.above:
                return record.levelno >= self.threshold
            else:
                return record.levelno < self.threshold

    color_format = (
        "{bold}{name}{reset}: {bold}{log_color}{levelnamelower}{reset}: {message}"
    )
    colorless_format = "{name}: {levelnamelower}: {message}"

    logger = logging.getLogger()
    for existing_handler in (_STDOUT_HANDLER, _STDERR_HANDLER):
        if existing_handler is not None:
            logger.removeHandler(existing_handler)

    def _make_handler(stream: Any, use_color: bool) -> logging.StreamHandler:
        if use_color:
            handler = colorlog.StreamHandler(stream)
            handler.setFormatter(
                colorlog.ColoredFormatter(color_format, style="{", force_color=True)
            )
        else:
            handler = logging.StreamHandler(stream)
            handler.setFormatter(logging.Formatter(colorless_format, style="{"))
        return handler

    stdout_handler = _make_handler(sys.stdout, stdout_color)
    stderr_handler = _make_handler(sys.stderr, stderr_color)
    stdout_handler.addFilter(LogLevelFilter(logging.WARN, False))
    stderr_handler.addFilter(LogLevelFilter(logging.WARN, True))
    logger.addHandler(stdout_handler)
    logger.addHandler(stderr_handler)
    _STDOUT_HANDLER = stdout_handler
    _STDERR_HANDLER = stderr_handler

    name = program_name()

    old_factory = logging.getLogRecordFactory()

    def record_factory(
        *args: Any, **kwargs: Any
    ) -> logging.LogRecord:  # pragma: no cover
        record = old_factory(*args, **kwargs)
        record.levelnamelower = record.levelname.lower()
        return record

    logging.setLogRecordFactory(record_factory)

    logging.getLogger().setLevel(logging.INFO)
    _DEFAULT_LOGGER = logging.getLogger(name)

    if bad_request:
        _DEFAULT_LOGGER.warning(
            f'Invalid color request for "{bad_request}" in either APPDEB_COLORS or DPKG_COLORS.'
            ' Resetting to "auto".'
        )

    _LOGGING_SET_UP = True
