import dataclasses
import os
from typing import Optional, Callable

from appdeb.exceptions import UnsupportedUmaskError
from appdeb.util import _warn, resolve_source_date_epoch

SUPPORTED_UMASKS = frozenset({0o022, 0o002})


def current_umask() -> int:
    # There is no way to read the umask without setting it
    umask = os.umask(0o022)
    os.umask(umask)
    return umask


@dataclasses.dataclass(slots=True, frozen=True)
class BuildEnvironment:
    """Process-wide state for one build, read once when the build starts"""

    umask: int
    source_date_epoch: int

    @classmethod
    def capture(
        cls,
        *,
        source_date_epoch: Optional[int] = None,
        fallback_mtime: Optional[Callable[[], Optional[int]]] = None,
    ) -> "BuildEnvironment":
        return cls(
            umask=current_umask(),
            source_date_epoch=resolve_source_date_epoch(
                source_date_epoch,
                fallback=fallback_mtime,
            ),
        )


def check_umask(umask: int) -> None:
    if umask in SUPPORTED_UMASKS:
        return
    _warn(
        f"The current umask, {umask:o}, is not supported. You should use 0022 or 0002"
    )
    raise UnsupportedUmaskError(
        f"Refusing to build with umask {umask:04o} as the permissions of the staged"
        " files would be unpredictable. Supported values are 0022 and 0002.",
        umask,
    )
