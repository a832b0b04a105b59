import dataclasses
import re
import subprocess
from enum import Enum
from typing import Sequence, Tuple

from appdeb.exceptions import ToolingError
from appdeb.util import _info, _warn, escape_shell

# Only errors and warnings count; info, pedantic and experimental tags
# ("I:", "P:", "X:") and overridden tags ("O:") are ignored.
_UNEXPECTED_TAG_LINE = re.compile(r"^[EW]: ")


class LintianStatus(Enum):
    TOOL_MISSING = "tool-missing"
    CLEAN = "clean"
    UNEXPECTED_TAGS = "unexpected-tags"


@dataclasses.dataclass(slots=True, frozen=True)
class LintianResult:
    status: LintianStatus
    unexpected_tags: Tuple[str, ...] = tuple()
    output: str = ""

    @property
    def is_clean(self) -> bool:
        return self.status == LintianStatus.CLEAN

    def raise_for_missing_tool(self) -> None:
        if self.status == LintianStatus.TOOL_MISSING:
            raise ToolingError("Your system is missing the lintian package", "lintian")


def classify_lintian_output(output: str) -> LintianResult:
    tags = tuple(
        line for line in output.splitlines() if _UNEXPECTED_TAG_LINE.match(line)
    )
    if tags:
        return LintianResult(LintianStatus.UNEXPECTED_TAGS, tags, output)
    return LintianResult(LintianStatus.CLEAN, output=output)


def run_lintian(
    deb_file: str,
    *,
    command: Sequence[str] = ("lintian",),
) -> LintianResult:
    """Check a built package with lintian

    The exit code of lintian is not used; the result is derived from the
    emitted tags, so a missing tool is reported as a status rather than an
    exception.
    """
    cmd = [*command, deb_file]
    _info(f"Running {escape_shell(*cmd)}")
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError:
        return LintianResult(LintianStatus.TOOL_MISSING)
    result = classify_lintian_output(proc.stdout)
    for tag in result.unexpected_tags:
        _warn(f"lintian: {tag}")
    return result
