from typing import Optional

from appdeb.util import PKGVERSION_REGEX


def transform_version(version: str) -> str:
    """Rewrite a semantic version into a Debian version that sorts correctly

    The hyphen introducing a pre-release identifier (and any hyphen within
    that identifier) becomes a tilde, so `1.2.3~beta.4` sorts before `1.2.3`.
    Build metadata (anything after the first "+") is left alone.

    >>> transform_version("1.2.3-beta.4")
    '1.2.3~beta.4'
    >>> transform_version("1.0.0-rc-1+build-5")
    '1.0.0~rc~1+build-5'
    """
    core, plus, build_metadata = version.partition("+")
    return core.replace("-", "~") + plus + build_metadata


def debian_version(version: str, revision: Optional[str] = None) -> str:
    transformed = transform_version(version)
    if revision:
        return f"{transformed}-{revision}"
    return transformed


def is_valid_debian_version(version: str) -> bool:
    return PKGVERSION_REGEX.fullmatch(version) is not None
