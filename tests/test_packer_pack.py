import io
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from appdeb import deb_packer
from appdeb.exceptions import PackageIOError, ToolingError
from appdeb.options import validate_options
from appdeb.staging import StagedTree

from tutil import (
    decompressed,
    read_ar_archive,
    requires_compressors,
    requires_tool,
    tar_file_content,
    tar_listing,
)

MTIME = 1668973695


def test_write_header() -> None:
    fd = io.BytesIO()
    member = deb_packer.ArMember("debian-binary", fixed_binary=b"2.0\n")
    deb_packer.write_header(fd, member, 4, MTIME)
    header = fd.getvalue()
    assert len(header) == deb_packer.AR_HEADER_LEN
    assert header == b"debian-binary   1668973695  0     0     100644  4         `\n"


def test_generate_ar_archive_pads_odd_members(tmp_path: Path) -> None:
    deb_file = tmp_path / "output.deb"

    def _write_odd(fd) -> None:
        fd.write(b"odd")

    deb_packer.generate_ar_archive(
        str(deb_file),
        MTIME,
        [
            deb_packer.ArMember("debian-binary", fixed_binary=b"2.0\n"),
            deb_packer.ArMember("odd-fixed", fixed_binary=b"x"),
            deb_packer.ArMember("odd-streamed", write_to_impl=_write_odd),
        ],
    )
    assert deb_file.read_bytes() == (
        b"!<arch>\n"
        b"debian-binary   1668973695  0     0     100644  4         `\n"
        b"2.0\n"
        b"odd-fixed       1668973695  0     0     100644  1         `\n"
        b"x\n"
        b"odd-streamed    1668973695  0     0     100644  3         `\n"
        b"odd\n"
    )
    assert oct(deb_file.stat().st_mode & 0o777) == oct(0o644)


def test_generate_ar_archive_failure_leaves_nothing(tmp_path: Path) -> None:
    deb_file = tmp_path / "output.deb"

    def _fail(fd) -> None:
        fd.write(b"partial")
        raise PackageIOError("Simulated failure", "member")

    with pytest.raises(PackageIOError):
        deb_packer.generate_ar_archive(
            str(deb_file),
            MTIME,
            [
                deb_packer.ArMember("debian-binary", fixed_binary=b"2.0\n"),
                deb_packer.ArMember("broken", write_to_impl=_fail),
            ],
        )
    assert os.listdir(tmp_path) == []


def test_generate_ar_archive_replaces_existing_file(tmp_path: Path) -> None:
    deb_file = tmp_path / "output.deb"
    deb_file.write_bytes(b"old content")
    deb_packer.generate_ar_archive(
        str(deb_file),
        MTIME,
        [deb_packer.ArMember("debian-binary", fixed_binary=b"2.0\n")],
    )
    assert deb_file.read_bytes().startswith(b"!<arch>\n")
    assert os.listdir(tmp_path) == ["output.deb"]


def test_generate_ar_archive_missing_directory(tmp_path: Path) -> None:
    deb_file = tmp_path / "missing" / "output.deb"
    with pytest.raises(PackageIOError) as e:
        deb_packer.generate_ar_archive(
            str(deb_file),
            MTIME,
            [deb_packer.ArMember("debian-binary", fixed_binary=b"2.0\n")],
        )
    assert e.value.path == str(deb_file)


@pytest.mark.parametrize(
    "compression,extension",
    [
        ("xz", ".xz"),
        ("gzip", ".gz"),
        ("bzip2", ".bz2"),
        ("lzma", ".lzma"),
        ("zstd", ".zst"),
        ("none", ""),
    ],
)
def test_compression_extension(compression: str, extension: str) -> None:
    assert deb_packer.COMPRESSIONS[compression].with_extension("data.tar") == (
        "data.tar" + extension
    )


def _staged_tree(base_options: Dict[str, Any]) -> StagedTree:
    staged_tree = StagedTree(validate_options(base_options)).__enter__()
    staged_tree.write_data_file("usr/lib/footest/footest", b"#!/bin/sh\n", executable=True)
    staged_tree.write_data_file("usr/share/doc/footest/copyright", b"Free\n")
    os.symlink(
        "../lib/footest/footest", staged_tree.add_data_dir("usr/bin") + "/footest"
    )
    staged_tree.normalize_permissions()
    control = Path(staged_tree.control_dir) / "control"
    control.write_text("Package: footest\nVersion: 1.0.0\nArchitecture: amd64\n")
    postinst = Path(staged_tree.control_dir) / "postinst"
    postinst.write_text("#!/bin/sh\n")
    return staged_tree


@requires_compressors
@pytest.mark.parametrize(
    "compression,data_member,magic,decompressor",
    [
        ("xz", "data.tar.xz", b"\xfd7zXZ\x00", "xz"),
        ("gzip", "data.tar.gz", b"\x1f\x8b", "gzip"),
        pytest.param(
            "bzip2", "data.tar.bz2", b"BZh", "bzip2", marks=requires_tool("bzip2")
        ),
        ("lzma", "data.tar.lzma", b"]\x00\x00", "xz"),
        pytest.param(
            "zstd",
            "data.tar.zst",
            b"\x28\xb5\x2f\xfd",
            "zstd",
            marks=requires_tool("zstd"),
        ),
        ("none", "data.tar", b"", None),
    ],
)
def test_pack(
    tmp_path: Path,
    base_options: Dict[str, Any],
    compression: str,
    data_member: str,
    magic: bytes,
    decompressor: Optional[str],
) -> None:
    deb_file = tmp_path / "footest.deb"
    with _staged_tree(base_options) as staged_tree:
        deb_packer.pack(
            str(deb_file),
            deb_packer.COMPRESSIONS[compression],
            staged_tree,
            MTIME,
        )

    entries = read_ar_archive(deb_file)
    assert [e.name for e in entries] == ["debian-binary", "control.tar.gz", data_member]
    assert all(e.mtime == MTIME and e.mode == "100644" for e in entries)
    assert entries[0].content == b"2.0\n"
    assert entries[1].content[:2] == b"\x1f\x8b"
    assert entries[2].content.startswith(magic)
    if decompressor is None:
        data_tar = entries[2].content
    else:
        data_tar = decompressed(entries[2].content, decompressor)
    assert data_tar[257:262] == b"ustar"

    assert tar_listing(entries[1].content) == [
        (".", 0o755, "root", "root", MTIME),
        ("./control", 0o644, "root", "root", MTIME),
        ("./postinst", 0o755, "root", "root", MTIME),
    ]
    assert tar_listing(data_tar) == [
        (".", 0o755, "root", "root", MTIME),
        ("./usr", 0o755, "root", "root", MTIME),
        ("./usr/bin", 0o755, "root", "root", MTIME),
        ("./usr/bin/footest", 0o777, "root", "root", MTIME),
        ("./usr/lib", 0o755, "root", "root", MTIME),
        ("./usr/lib/footest", 0o755, "root", "root", MTIME),
        ("./usr/lib/footest/footest", 0o755, "root", "root", MTIME),
        ("./usr/share", 0o755, "root", "root", MTIME),
        ("./usr/share/doc", 0o755, "root", "root", MTIME),
        ("./usr/share/doc/footest", 0o755, "root", "root", MTIME),
        ("./usr/share/doc/footest/copyright", 0o644, "root", "root", MTIME),
    ]
    assert tar_file_content(data_tar, "./usr/share/doc/footest/copyright") == b"Free\n"


@requires_compressors
def test_pack_missing_compressor(tmp_path: Path, base_options: Dict[str, Any]) -> None:
    deb_file = tmp_path / "out" / "footest.deb"
    deb_file.parent.mkdir()
    compression = deb_packer.Compression(".nope", ["appdeb-test-no-such-compressor"])
    with _staged_tree(base_options) as staged_tree:
        with pytest.raises(ToolingError) as e:
            deb_packer.pack(str(deb_file), compression, staged_tree, MTIME)
    assert e.value.tool == "appdeb-test-no-such-compressor"
    assert os.listdir(deb_file.parent) == []


@requires_compressors
@pytest.mark.skipif(shutil.which("false") is None, reason="Needs the false command")
def test_pack_failing_compressor(tmp_path: Path, base_options: Dict[str, Any]) -> None:
    deb_file = tmp_path / "out" / "footest.deb"
    deb_file.parent.mkdir()
    compression = deb_packer.Compression(".broken", ["false"])
    with _staged_tree(base_options) as staged_tree:
        with pytest.raises(PackageIOError):
            deb_packer.pack(str(deb_file), compression, staged_tree, MTIME)
    assert os.listdir(deb_file.parent) == []
