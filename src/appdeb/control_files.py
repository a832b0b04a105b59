import email.utils
import hashlib
import operator
import os
import shutil
import subprocess
from typing import Iterator, List, Optional, Tuple

from debian.changelog import Changelog
from debian.deb822 import Deb822

from appdeb.exceptions import PackageIOError, ToolingError
from appdeb.options import MaintainerScript, PackageOptions, relationship_fields
from appdeb.staging import LICENSE_FILE_NAME, StagedTree
from appdeb.util import _info, escape_shell

COPYRIGHT_FORMAT_URL = (
    "https://www.debian.org/doc/packaging-manuals/copyright-format/1.0/"
)


def _normalized_lines(text: str) -> List[str]:
    lines = [
        line.rstrip()
        for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    ]
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return lines


def fold_description(text: str) -> str:
    """Format text as the extended part of a Description field

    Every line is indented by one space and blank lines become " ." as
    required by Debian Policy 5.6.13.
    """
    return "\n".join(
        f" {line}" if line.strip() else " ." for line in _normalized_lines(text)
    )


def description_field(options: PackageOptions) -> str:
    lines = _normalized_lines(options.description_text)
    synopsis = options.synopsis
    if synopsis is None:
        synopsis = lines[0].strip()
        body = lines[1:]
        while body and not body[0].strip():
            body.pop(0)
    else:
        body = lines
    if not body:
        return synopsis
    return f"{synopsis}\n{fold_description(chr(10).join(body))}"


def control_fields(options: PackageOptions, installed_size: int) -> Deb822:
    fields = Deb822()
    fields["Package"] = options.name
    fields["Version"] = options.version
    fields["Architecture"] = options.architecture
    fields["Maintainer"] = options.maintainer
    fields["Installed-Size"] = str(installed_size)
    for field, value in relationship_fields(options):
        fields[field] = value
    fields["Section"] = options.section
    fields["Priority"] = options.priority
    if options.homepage:
        fields["Homepage"] = options.homepage
    fields["Description"] = description_field(options)
    return fields


def write_control_file(control_dir: str, fields: Deb822) -> str:
    ctrl_file = os.path.join(control_dir, "control")
    try:
        with open(ctrl_file, "wt", encoding="utf-8") as fd:
            fd.write(fields.dump())
        os.chmod(ctrl_file, 0o644)
    except OSError as e:
        raise PackageIOError(f"Could not write {ctrl_file}: {e}", ctrl_file) from e
    return ctrl_file


def install_maintainer_scripts(staged_tree: StagedTree) -> None:
    scripts = staged_tree.options.scripts
    # Enum order, so the result does not depend on the order of the options
    for script in MaintainerScript:
        source = scripts.get(script)
        if source is None:
            continue
        if not os.path.isfile(source):
            raise PackageIOError(
                f'The {script.script_name} script "{source}" does not exist',
                source,
            )
        dest = os.path.join(staged_tree.control_dir, script.script_name)
        _info(f"Installing {source} as the {script.script_name} maintainer script")
        try:
            shutil.copyfile(source, dest)
            os.chmod(dest, 0o755)
        except OSError as e:
            raise PackageIOError(f"Could not copy {source}: {e}", source) from e


def _all_data_files(data_dir: str, prefix: str = "") -> Iterator[Tuple[str, str]]:
    with os.scandir(data_dir) as dir_iter:
        entries = sorted(dir_iter, key=operator.attrgetter("name"))
    for entry in entries:
        path = f"{prefix}{entry.name}"
        if entry.is_symlink():
            continue
        if entry.is_dir():
            yield from _all_data_files(entry.path, f"{path}/")
        elif entry.is_file():
            yield path, entry.path


def generate_md5sums_file(control_dir: str, data_dir: str) -> None:
    md5sums = os.path.join(control_dir, "md5sums")
    had_content = False
    with open(md5sums, "wt", encoding="utf-8", errors="surrogateescape") as md5fd:
        for path, fs_path in _all_data_files(data_dir):
            with open(fs_path, "rb") as f:
                file_hash = hashlib.md5()
                while chunk := f.read(8192):
                    file_hash.update(chunk)
            had_content = True
            md5fd.write(f"{file_hash.hexdigest()}  {path}\n")
    if not had_content:
        os.unlink(md5sums)
    else:
        os.chmod(md5sums, 0o644)


def _gzip_bytes(content: bytes, description: str) -> bytes:
    cmd = ["gzip", "-9nc"]
    try:
        proc = subprocess.run(cmd, input=content, stdout=subprocess.PIPE, check=False)
    except FileNotFoundError as e:
        raise ToolingError(
            'The "gzip" command is missing. Please install the gzip package', "gzip"
        ) from e
    if proc.returncode != 0:
        raise PackageIOError(
            f"The compression of {description} failed. Full command was: {escape_shell(*cmd)}",
            description,
        )
    return proc.stdout


def _changelog_date(mtime: int) -> str:
    # formatdate is locale independent (unlike strftime)
    return email.utils.formatdate(mtime, localtime=False).replace("-0000", "+0000")


def changelog_content(options: PackageOptions, mtime: int) -> str:
    changelog = Changelog()
    changelog.new_block(
        package=options.name,
        version=options.version,
        distributions="stable",
        urgency="low",
        author=options.maintainer,
        date=_changelog_date(mtime),
        changes=[
            "",
            f"  * Package built from {options.product_name} {options.upstream_version}.",
            "",
        ],
    )
    return str(changelog)


def write_changelog(staged_tree: StagedTree, options: PackageOptions, mtime: int) -> None:
    member_path = f"usr/share/doc/{options.name}/changelog.gz"
    content = changelog_content(options, mtime).encode("utf-8")
    staged_tree.write_data_file(member_path, _gzip_bytes(content, member_path))


def copyright_content(options: PackageOptions) -> str:
    header = Deb822()
    header["Format"] = COPYRIGHT_FORMAT_URL
    header["Upstream-Name"] = options.product_name
    header["Upstream-Contact"] = options.maintainer
    header["Comment"] = "The application did not ship a license file."
    return header.dump()


def write_copyright(
    staged_tree: StagedTree,
    options: PackageOptions,
    source_dir: str,
) -> None:
    member_path = f"usr/share/doc/{options.name}/copyright"
    license_file = os.path.join(source_dir, LICENSE_FILE_NAME)
    if os.path.isfile(license_file):
        staged_tree.copy_data_file(license_file, member_path)
    else:
        staged_tree.write_data_file(
            member_path, copyright_content(options).encode("utf-8")
        )


def lintian_overrides_content(options: PackageOptions) -> Optional[str]:
    if not options.lintian_overrides:
        return None
    return "".join(f"{options.name}: {tag}\n" for tag in options.lintian_overrides)


def write_lintian_overrides(staged_tree: StagedTree, options: PackageOptions) -> None:
    content = lintian_overrides_content(options)
    if content is None:
        return
    staged_tree.write_data_file(
        f"usr/share/lintian/overrides/{options.name}",
        content.encode("utf-8"),
    )


def _icon_member_path(name: str, size_label: str, source: str) -> str:
    ext = os.path.splitext(source)[1]
    if size_label == "symbolic":
        return f"usr/share/icons/hicolor/symbolic/apps/{name}-symbolic{ext}"
    return f"usr/share/icons/hicolor/{size_label}/apps/{name}{ext}"


def install_icons(staged_tree: StagedTree, options: PackageOptions) -> None:
    icons = [
        (_icon_member_path(options.name, size_label, source), source)
        for size_label, source in sorted(options.icons.items())
    ]
    if options.pixmap is not None:
        ext = os.path.splitext(options.pixmap)[1]
        icons.append((f"usr/share/pixmaps/{options.name}{ext}", options.pixmap))
    for member_path, source in icons:
        if not os.path.isfile(source):
            raise PackageIOError(f'The icon "{source}" does not exist', source)
        staged_tree.copy_data_file(source, member_path)


def desktop_entry_content(options: PackageOptions) -> str:
    entries = [
        ("Name", options.product_name),
        ("Comment", description_field(options).split("\n", 1)[0]),
        ("GenericName", options.generic_name),
        # Resolved through the /usr/bin link made when staging
        ("Exec", f"{options.name} %U"),
    ]
    if options.icons or options.pixmap:
        entries.append(("Icon", options.name))
    entries.append(("Type", "Application"))
    entries.append(("StartupNotify", "true"))
    if options.categories:
        entries.append(("Categories", "".join(f"{c};" for c in sorted(options.categories))))
    if options.mime_types:
        entries.append(("MimeType", "".join(f"{m};" for m in sorted(options.mime_types))))
    lines = ["[Desktop Entry]"]
    lines.extend(f"{key}={value}" for key, value in entries)
    return "\n".join(lines) + "\n"


def write_desktop_entry(staged_tree: StagedTree, options: PackageOptions) -> None:
    if not options.wants_desktop_entry:
        return
    staged_tree.write_data_file(
        f"usr/share/applications/{options.name}.desktop",
        desktop_entry_content(options).encode("utf-8"),
    )


def generate_data_metadata(
    staged_tree: StagedTree,
    options: PackageOptions,
    source_dir: str,
    mtime: int,
) -> None:
    write_copyright(staged_tree, options, source_dir)
    write_changelog(staged_tree, options, mtime)
    write_lintian_overrides(staged_tree, options)
    install_icons(staged_tree, options)
    write_desktop_entry(staged_tree, options)


def generate_control_area(staged_tree: StagedTree, options: PackageOptions) -> Deb822:
    """Populate the control area; must run after the data tree is final"""
    fields = control_fields(options, staged_tree.installed_size())
    write_control_file(staged_tree.control_dir, fields)
    install_maintainer_scripts(staged_tree)
    try:
        generate_md5sums_file(staged_tree.control_dir, staged_tree.data_dir)
    except OSError as e:
        raise PackageIOError(
            f"Could not generate the md5sums file: {e}", staged_tree.control_dir
        ) from e
    return fields


def generate_metadata(
    staged_tree: StagedTree,
    options: PackageOptions,
    source_dir: str,
    mtime: int,
) -> Deb822:
    """Write the package metadata into the staged tree

    The documentation and desktop integration files are added to the data
    tree first, as the control area (Installed-Size and md5sums) covers them.
    Returns the fields written to DEBIAN/control.
    """
    generate_data_metadata(staged_tree, options, source_dir, mtime)
    return generate_control_area(staged_tree, options)
