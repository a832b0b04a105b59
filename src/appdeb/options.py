import dataclasses
import json
import os
import platform
import re
import types
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

from appdeb.exceptions import PackageIOError, ValidationError
from appdeb.versioning import debian_version, is_valid_debian_version
from appdeb.yaml import OPTIONS_YAML, YAMLError


class MaintainerScript(Enum):
    PREINST = "preinst"
    POSTINST = "postinst"
    PRERM = "prerm"
    POSTRM = "postrm"

    @property
    def script_name(self) -> str:
        return self.value


STD_CONTROL_SCRIPTS = frozenset(s.script_name for s in MaintainerScript)
NAME2MAINTAINER_SCRIPT = {s.script_name: s for s in MaintainerScript}

COMPRESSION_TYPES = ("xz", "gzip", "bzip2", "lzma", "zstd", "none")
DEFAULT_COMPRESSION = "xz"

SUPPORTED_ARCHITECTURES = frozenset(
    {
        "all",
        "amd64",
        "arm64",
        "armel",
        "armhf",
        "i386",
        "mips64el",
        "ppc64el",
        "riscv64",
        "s390x",
    }
)
_MACHINE2ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "i386",
    "i686": "i386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "armv6l": "armel",
    "ppc64le": "ppc64el",
    "s390x": "s390x",
    "riscv64": "riscv64",
    "mips64": "mips64el",
}

ICON_SIZE_REGEX = re.compile(r"\d+x\d+|scalable|symbolic", re.ASCII)
_NAME_START_REGEX = re.compile(r"[A-Za-z0-9]", re.ASCII)
_NAME_INVALID_CHARS = re.compile(r"[^a-z0-9.+-]", re.ASCII)
# Values that end up in the desktop entry, where a line break starts a new key
_LINE_BREAK_REGEX = re.compile(r"[\r\n]")

# canonical key -> accepted aliases
_OPTION_ALIASES: Mapping[str, Tuple[str, ...]] = {
    "architecture": ("arch",),
    "dependsArray": ("depends",),
    "recommendsArray": ("recommends",),
    "suggestsArray": ("suggests",),
    "enhancesArray": ("enhances",),
    "preDependsArray": ("preDepends",),
}
_KNOWN_OPTIONS = frozenset(
    {
        "name",
        "version",
        "revision",
        "architecture",
        "maintainer",
        "description",
        "productDescription",
        "synopsis",
        "section",
        "priority",
        "homepage",
        "dependsArray",
        "recommendsArray",
        "suggestsArray",
        "enhancesArray",
        "preDependsArray",
        "categories",
        "mimeType",
        "productName",
        "genericName",
        "bin",
        "icon",
        "scripts",
        "lintianOverrides",
        "compression",
    }
)


@dataclasses.dataclass(slots=True, frozen=True)
class PackageOptions:
    name: str
    upstream_version: str
    version: str
    architecture: str
    maintainer: str
    description: Optional[str]
    product_description: Optional[str]
    synopsis: Optional[str]
    section: str
    priority: str
    homepage: Optional[str]
    depends: Tuple[str, ...]
    recommends: Tuple[str, ...]
    suggests: Tuple[str, ...]
    enhances: Tuple[str, ...]
    pre_depends: Tuple[str, ...]
    categories: FrozenSet[str]
    mime_types: FrozenSet[str]
    product_name: str
    generic_name: str
    bin: str
    icons: Mapping[str, str]
    pixmap: Optional[str]
    scripts: Mapping[MaintainerScript, str]
    lintian_overrides: Tuple[str, ...]
    compression: str

    @property
    def description_text(self) -> str:
        text = (
            self.description
            if self.description is not None
            else self.product_description
        )
        assert text is not None
        return text

    @property
    def wants_desktop_entry(self) -> bool:
        return bool(self.categories or self.mime_types or self.icons or self.pixmap)


def host_architecture() -> str:
    machine = platform.machine().lower()
    return _MACHINE2ARCH.get(machine, machine)


def sanitize_name(name: str) -> str:
    if len(name) < 2:
        raise ValidationError("Package name must be at least two characters")
    if not _NAME_START_REGEX.match(name):
        raise ValidationError("Package name must start with an ASCII number or letter")
    return _NAME_INVALID_CHARS.sub("-", name.lower())


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return True


def _lookup(raw: Mapping[str, Any], key: str) -> Any:
    aliases = _OPTION_ALIASES.get(key, ())
    provided = [k for k in (key, *aliases) if k in raw]
    if len(provided) > 1:
        names = " and ".join(f'"{k}"' for k in provided)
        raise ValidationError(f"The options {names} are aliases; please use only one")
    if not provided:
        return None
    return raw[provided[0]]


def _optional_str(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = _lookup(raw, key)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _single_line_str(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = _optional_str(raw, key)
    if value is not None and _LINE_BREAK_REGEX.search(value):
        raise ValidationError(f"{key} must be a single line")
    return value


def _string_list(raw: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    value = _lookup(raw, key)
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValidationError(f"{key} must be a list of strings")
    seen = set()
    result: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"{key} must be a list of strings")
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return tuple(result)


def _string_set(raw: Mapping[str, Any], key: str) -> FrozenSet[str]:
    value = _lookup(raw, key)
    if isinstance(value, (set, frozenset)):
        value = sorted(value)
    if value is None:
        return frozenset()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValidationError(f"{key} must be a list of strings")
    if not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{key} must be a list of strings")
    if any(_LINE_BREAK_REGEX.search(v) for v in value):
        raise ValidationError(f"{key} entries must be single lines")
    return frozenset(value)


def _path_mapping(raw_value: Any, key: str) -> Dict[str, str]:
    if not isinstance(raw_value, Mapping):
        raise ValidationError(f"{key} must be a mapping")
    result = {}
    for k, v in raw_value.items():
        if not isinstance(v, str) or not v:
            raise ValidationError(f'{key}["{k}"] must be a path')
        result[str(k)] = v
    return result


def _validate_scripts(raw: Mapping[str, Any]) -> Mapping[MaintainerScript, str]:
    raw_scripts = raw.get("scripts")
    if raw_scripts is None:
        return types.MappingProxyType({})
    if not isinstance(raw_scripts, Mapping):
        raise ValidationError("scripts must be a mapping")
    for key in raw_scripts:
        if key not in NAME2MAINTAINER_SCRIPT:
            raise ValidationError(f"Wrong executable script name: {key}")
    paths = _path_mapping(raw_scripts, "scripts")
    return types.MappingProxyType(
        {NAME2MAINTAINER_SCRIPT[k]: v for k, v in paths.items()}
    )


def _validate_icons(
    raw: Mapping[str, Any],
) -> Tuple[Mapping[str, str], Optional[str]]:
    raw_icon = raw.get("icon")
    if raw_icon is None:
        return types.MappingProxyType({}), None
    if isinstance(raw_icon, str):
        return types.MappingProxyType({}), raw_icon
    icons = _path_mapping(raw_icon, "icon")
    for size_label in icons:
        if not ICON_SIZE_REGEX.fullmatch(size_label):
            raise ValidationError(
                f"Wrong icon size: {size_label}. Use a label such as 256x256, scalable or symbolic"
            )
    return types.MappingProxyType(icons), None


def _validate_bin(raw: Mapping[str, Any], name: str) -> str:
    bin_path = _optional_str(raw, "bin")
    if bin_path is None:
        return name
    segments = bin_path.split("/")
    if bin_path.startswith("/") or ".." in segments or not bin_path.strip("/"):
        raise ValidationError(
            f'bin must be a path relative to the application directory, got "{bin_path}"'
        )
    return os.path.normpath(bin_path)


def validate_options(raw: Mapping[str, Any]) -> PackageOptions:
    """Validate and normalize raw package options

    Rules are checked in a fixed order and the first violation is raised as a
    ValidationError.  The function has no side effects.
    """
    raw_name = raw.get("name")
    name = sanitize_name(str(raw_name) if raw_name is not None else "")

    description = raw.get("description")
    product_description = raw.get("productDescription")
    has_description = _is_present(description)
    has_product_description = _is_present(product_description)
    if not has_description and not has_product_description:
        raise ValidationError("No Description or ProductDescription provided")
    if has_description and has_product_description:
        raise ValidationError(
            "No Description or ProductDescription provided unambiguously:"
            " set either description or productDescription, not both"
        )

    compression = raw.get("compression")
    if compression is not None and compression not in COMPRESSION_TYPES:
        raise ValidationError(
            "Invalid compression type. xz, gzip, bzip2, lzma, zstd, or none are supported."
        )

    scripts = _validate_scripts(raw)

    upstream_version = _optional_str(raw, "version")
    if not _is_present(upstream_version):
        raise ValidationError("No Version provided")
    assert upstream_version is not None
    revision = _optional_str(raw, "revision")
    version = debian_version(upstream_version.strip(), revision)
    if not is_valid_debian_version(version):
        raise ValidationError(
            f'Invalid version: "{upstream_version}" (as "{version}") is not a valid Debian version'
        )

    maintainer = _optional_str(raw, "maintainer")
    if not _is_present(maintainer):
        raise ValidationError("No Maintainer provided")
    assert maintainer is not None

    architecture = _optional_str(raw, "architecture") or host_architecture()
    if architecture not in SUPPORTED_ARCHITECTURES:
        supported = ", ".join(sorted(SUPPORTED_ARCHITECTURES))
        raise ValidationError(
            f"Unsupported architecture: {architecture}. Supported are: {supported}"
        )

    icons, pixmap = _validate_icons(raw)

    if has_description and not isinstance(description, str):
        raise ValidationError("description must be a string")
    if has_product_description and not isinstance(product_description, str):
        raise ValidationError("productDescription must be a string")
    synopsis = _single_line_str(raw, "synopsis")
    product_name = _single_line_str(raw, "productName")
    generic_name = _single_line_str(raw, "genericName")

    unknown = sorted(
        k
        for k in raw
        if k not in _KNOWN_OPTIONS
        and not any(k in aliases for aliases in _OPTION_ALIASES.values())
    )
    if unknown:
        raise ValidationError(f'Unknown option "{unknown[0]}"')

    return PackageOptions(
        name=name,
        upstream_version=upstream_version,
        version=version,
        architecture=architecture,
        maintainer=maintainer.strip(),
        description=description if has_description else None,
        product_description=(
            product_description if has_product_description else None
        ),
        synopsis=synopsis.strip() if synopsis else None,
        section=_optional_str(raw, "section") or "utils",
        priority=_optional_str(raw, "priority") or "optional",
        homepage=_optional_str(raw, "homepage"),
        depends=_string_list(raw, "dependsArray"),
        recommends=_string_list(raw, "recommendsArray"),
        suggests=_string_list(raw, "suggestsArray"),
        enhances=_string_list(raw, "enhancesArray"),
        pre_depends=_string_list(raw, "preDependsArray"),
        categories=_string_set(raw, "categories"),
        mime_types=_string_set(raw, "mimeType"),
        product_name=product_name or name,
        generic_name=generic_name or name,
        bin=_validate_bin(raw, name),
        icons=icons,
        pixmap=pixmap,
        scripts=scripts,
        lintian_overrides=_string_list(raw, "lintianOverrides"),
        compression=compression or DEFAULT_COMPRESSION,
    )


def load_options_file(path: str) -> Mapping[str, Any]:
    try:
        with open(path, "rt", encoding="utf-8") as fd:
            data = OPTIONS_YAML.load(fd)
    except FileNotFoundError as e:
        raise PackageIOError(f'The options file "{path}" does not exist', path) from e
    except YAMLError as e:
        raise ValidationError(f'Could not parse the options file "{path}": {e}') from e
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValidationError(
            f'The options file "{path}" must contain a mapping at the document root'
        )
    return data


def relationship_fields(options: PackageOptions) -> Iterable[Tuple[str, str]]:
    for field, values in (
        ("Pre-Depends", options.pre_depends),
        ("Depends", options.depends),
        ("Recommends", options.recommends),
        ("Suggests", options.suggests),
        ("Enhances", options.enhances),
    ):
        if values:
            yield field, ", ".join(values)


APP_METADATA_PATH = ("resources", "app", "package.json")
_AUTHOR_REGEX = re.compile(
    r"""
    ^ \s* (?P<name> [^<(]*? ) \s*
    (?: < (?P<email> [^>]* ) > )? \s*
    (?: \( (?P<url> [^)]* ) \) )? \s* $
""",
    re.VERBOSE,
)
_APP_METADATA_KEYS = (
    "name",
    "productName",
    "genericName",
    "version",
    "revision",
    "homepage",
)


def _parse_author(author: Any) -> Tuple[Optional[str], Optional[str]]:
    if isinstance(author, Mapping):
        name, email, url = author.get("name"), author.get("email"), author.get("url")
    elif isinstance(author, str):
        m = _AUTHOR_REGEX.match(author)
        if m is None:
            return author.strip() or None, None
        name, email, url = m.group("name"), m.group("email"), m.group("url")
    else:
        return None, None
    if not isinstance(name, str) or not name.strip():
        return None, url if isinstance(url, str) else None
    maintainer = name.strip()
    if isinstance(email, str) and email.strip():
        maintainer = f"{maintainer} <{email.strip()}>"
    return maintainer, url if isinstance(url, str) and url else None


def load_app_metadata(source_dir: str) -> Dict[str, Any]:
    """Default options derived from the application's own package.json

    Only an unpacked `resources/app/package.json` is read; an application
    without one (e.g. packed into app.asar) gets no defaults.
    """
    path = os.path.join(source_dir, *APP_METADATA_PATH)
    try:
        with open(path, "rt", encoding="utf-8") as fd:
            pkg = json.load(fd)
    except (FileNotFoundError, NotADirectoryError):
        return {}
    except OSError as e:
        raise PackageIOError(f"Could not read {path}: {e.strerror or e}", path) from e
    except ValueError as e:
        raise ValidationError(f'Could not parse "{path}": {e}') from e
    if not isinstance(pkg, Mapping):
        raise ValidationError(f'The application metadata "{path}" must be a JSON object')

    defaults: Dict[str, Any] = {
        k: pkg[k] for k in _APP_METADATA_KEYS if isinstance(pkg.get(k), str) and pkg[k]
    }
    for key in ("productDescription", "description"):
        if isinstance(pkg.get(key), str) and pkg[key].strip():
            defaults[key] = pkg[key]
            break
    maintainer, author_url = _parse_author(pkg.get("author"))
    if maintainer is not None:
        defaults["maintainer"] = maintainer
    if "homepage" not in defaults and author_url is not None:
        defaults["homepage"] = author_url
    return defaults


def with_app_defaults(
    raw: Mapping[str, Any], app_defaults: Mapping[str, Any]
) -> Dict[str, Any]:
    """Layer explicit options over the application's defaults

    An explicit description or productDescription replaces either default, so
    the two never end up set at the same time.
    """
    merged = dict(app_defaults)
    if "description" in raw or "productDescription" in raw:
        merged.pop("description", None)
        merged.pop("productDescription", None)
    merged.update(raw)
    return merged
