import errno
import operator
import os
import stat
import subprocess
import tarfile
import tempfile
from typing import Optional, List, Iterable, Callable, BinaryIO, Iterator

from appdeb.exceptions import PackageIOError, ToolingError
from appdeb.options import STD_CONTROL_SCRIPTS
from appdeb.staging import StagedTree
from appdeb.tar_members import TarMember, PathType, scan_tar_members
from appdeb.util import _info, assume_not_none, escape_shell


# AR header / start of a deb file for reference
# 00000000  21 3c 61 72 63 68 3e 0a  64 65 62 69 61 6e 2d 62  |!<arch>.debian-b|
# 00000010  69 6e 61 72 79 20 20 20  31 36 36 38 39 37 33 36  |inary   16689736|
# 00000020  39 35 20 20 30 20 20 20  20 20 30 20 20 20 20 20  |95  0     0     |
# 00000030  31 30 30 36 34 34 20 20  34 20 20 20 20 20 20 20  |100644  4       |
# 00000040  20 20 60 0a 32 2e 30 0a  63 6f 6e 74 72 6f 6c 2e  |  `.2.0.control.|
# 00000050  74 61 72 2e 67 7a 20 20  31 36 36 38 39 37 33 36  |tar.gz  16689736|

AR_MAGIC = b"!<arch>\n"
DEBIAN_BINARY = b"2.0\n"


class ArMember:
    def __init__(
        self,
        name: str,
        fixed_binary: Optional[bytes] = None,
        write_to_impl: Optional[Callable[[BinaryIO], None]] = None,
    ) -> None:
        self.name = name
        self._write_to_impl = write_to_impl
        self.fixed_binary = fixed_binary

    @property
    def is_fixed_binary(self) -> bool:
        return self.fixed_binary is not None

    def write_to(self, fd: BinaryIO) -> None:
        writer = self._write_to_impl
        assert writer is not None
        writer(fd)


AR_HEADER_LEN = 60
AR_HEADER = b" " * AR_HEADER_LEN


def write_header(
    fd: BinaryIO,
    member: ArMember,
    member_len: int,
    mtime: int,
) -> None:
    header = b"%-16s%-12d0     0     100644  %-10d\x60\n" % (
        member.name.encode("ascii"),
        mtime,
        member_len,
    )
    fd.write(header)


def _write_members(fd: BinaryIO, mtime: int, members: Iterable[ArMember]) -> None:
    fd.write(AR_MAGIC)
    for member in members:
        if member.is_fixed_binary:
            fixed_binary = assume_not_none(member.fixed_binary)
            write_header(fd, member, len(fixed_binary), mtime)
            fd.write(fixed_binary)
            content_len = len(fixed_binary)
        else:
            header_pos = fd.tell()
            fd.write(AR_HEADER)
            member.write_to(fd)
            current_pos = fd.tell()
            fd.seek(header_pos, os.SEEK_SET)
            content_len = current_pos - header_pos - AR_HEADER_LEN
            assert content_len >= 0
            write_header(fd, member, content_len, mtime)
            fd.seek(current_pos, os.SEEK_SET)
        # ar members start at even offsets
        if content_len % 2:
            fd.write(b"\n")


def _os_error_message(output_filename: str, e: OSError) -> str:
    if e.errno == errno.ENOSPC:
        return f"Unable to write {output_filename}.  The file system device reported disk full: {str(e)}"
    if e.errno == errno.EIO:
        return f"Unable to write {output_filename}.  The file system reported a generic I/O error: {str(e)}"
    if e.errno == errno.EROFS:
        return f"Unable to write {output_filename}.  The file system is read-only: {str(e)}"
    return f"Unable to write {output_filename}: {str(e)}"


def generate_ar_archive(
    output_filename: str,
    mtime: int,
    members: Iterable[ArMember],
) -> None:
    """Write the members as an ar archive to output_filename

    The archive is assembled in a temporary file next to the output and only
    renamed into place once complete, so a failed build never leaves a
    partial file behind.
    """
    output_dir = os.path.dirname(os.path.abspath(output_filename))
    try:
        tmp_fd, tmp_name = tempfile.mkstemp(
            prefix=".appdeb-", suffix=".deb.tmp", dir=output_dir
        )
    except OSError as e:
        raise PackageIOError(_os_error_message(output_filename, e), output_filename) from e
    try:
        with os.fdopen(tmp_fd, "wb", buffering=0) as fd:
            _write_members(fd, mtime, members)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, output_filename)
    except OSError as e:
        _remove_quietly(tmp_name)
        raise PackageIOError(_os_error_message(output_filename, e), output_filename) from e
    except BaseException:
        _remove_quietly(tmp_name)
        raise
    _info(f"Generated {output_filename}")


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _generate_tar_file(
    tar_members: Iterable[TarMember],
    compression_cmd: List[str],
    write_to: BinaryIO,
) -> None:
    try:
        compress_proc = subprocess.Popen(
            compression_cmd, stdin=subprocess.PIPE, stdout=write_to
        )
    except FileNotFoundError as e:
        raise ToolingError(
            f'The compression command "{compression_cmd[0]}" is not available.'
            f" Please install it or choose a different compression type",
            compression_cmd[0],
        ) from e
    with (
        compress_proc,
        tarfile.open(
            mode="w|",
            fileobj=compress_proc.stdin,
            format=tarfile.GNU_FORMAT,
            encoding="utf-8",
            errors="surrogateescape",
            errorlevel=1,
        ) as tar_fd,
    ):
        for tar_member in tar_members:
            tar_info: tarfile.TarInfo = tar_member.create_tar_info(tar_fd)
            if tar_member.path_type == PathType.FILE:
                with open(assume_not_none(tar_member.fs_path), "rb") as mfd:
                    tar_fd.addfile(tar_info, fileobj=mfd)
            else:
                tar_fd.addfile(tar_info)
    compress_proc.wait()
    if compress_proc.returncode != 0:
        raise PackageIOError(
            f"Compression command {escape_shell(*compression_cmd)} failed with code"
            f" {compress_proc.returncode}",
            compression_cmd[0],
        )


def generate_tar_file_member(
    tar_members: Iterable[TarMember],
    compression_cmd: List[str],
) -> Callable[[BinaryIO], None]:
    def _impl(fd: BinaryIO) -> None:
        _generate_tar_file(
            tar_members,
            compression_cmd,
            fd,
        )

    return _impl


class Compression:
    def __init__(
        self,
        extension: str,
        cmdline: List[str],
    ) -> None:
        self.extension = extension
        self.cmdline = cmdline

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.extension}>"

    def as_cmdline(self) -> List[str]:
        return list(self.cmdline)

    def with_extension(self, filename: str) -> str:
        return filename + self.extension


COMPRESSIONS = {
    "xz": Compression(".xz", ["xz", "-T2", "-6", "--no-adjust"]),
    "gzip": Compression(".gz", ["gzip", "-n9"]),
    "bzip2": Compression(".bz2", ["bzip2", "-9"]),
    "lzma": Compression(".lzma", ["xz", "--format=lzma", "-6"]),
    "zstd": Compression(".zst", ["zstd", "-q", "-19", "-c"]),
    "none": Compression("", ["cat"]),
}

# dpkg accepts other formats for the control.tar, but gzip is the one every
# version of dpkg (and every other deb consumer) understands
CONTROL_COMPRESSION = COMPRESSIONS["gzip"]


def _ctrl_member(
    member_path: str,
    fs_path: str,
    path_type: PathType = PathType.FILE,
    mode: int = 0o644,
    mtime: int = 0,
) -> TarMember:
    return TarMember(
        member_path=member_path,
        path_type=path_type,
        fs_path=fs_path,
        mode=mode,
        owner="root",
        uid=0,
        group="root",
        gid=0,
        mtime=mtime,
        is_virtual_entry=path_type == PathType.DIRECTORY,
    )


def _ctrl_tar_members(control_dir: str, mtime: int) -> Iterator[TarMember]:
    yield _ctrl_member(
        "./",
        control_dir,
        path_type=PathType.DIRECTORY,
        mode=0o0755,
        mtime=mtime,
    )
    with os.scandir(control_dir) as dir_iter:
        for ctrl_member in sorted(dir_iter, key=operator.attrgetter("name")):
            st = os.lstat(ctrl_member.path)
            if not stat.S_ISREG(st.st_mode):
                raise PackageIOError(
                    f"{ctrl_member.path} is not a file and all control.tar members ought to be files!",
                    ctrl_member.path,
                )
            yield _ctrl_member(
                f"./{ctrl_member.name}",
                ctrl_member.path,
                mode=0o0755 if ctrl_member.name in STD_CONTROL_SCRIPTS else 0o0644,
                mtime=mtime,
            )


def pack(
    deb_file: str,
    data_compression: Compression,
    staged_tree: StagedTree,
    mtime: int,
) -> None:
    members = [
        ArMember("debian-binary", fixed_binary=DEBIAN_BINARY),
        ArMember(
            CONTROL_COMPRESSION.with_extension("control.tar"),
            write_to_impl=generate_tar_file_member(
                _ctrl_tar_members(staged_tree.control_dir, mtime),
                CONTROL_COMPRESSION.as_cmdline(),
            ),
        ),
        ArMember(
            data_compression.with_extension("data.tar"),
            write_to_impl=generate_tar_file_member(
                scan_tar_members(staged_tree.data_dir, mtime),
                data_compression.as_cmdline(),
            ),
        ),
    ]
    generate_ar_archive(deb_file, mtime, members)
