import dataclasses
import operator
import os
import stat
import tarfile
from enum import Enum
from typing import Optional, Iterator, Self

from appdeb.exceptions import PackageIOError


class PathType(Enum):
    FILE = tarfile.REGTYPE
    DIRECTORY = tarfile.DIRTYPE
    SYMLINK = tarfile.SYMTYPE

    @property
    def tarinfo_type(self) -> bytes:
        return self.value

    @property
    def can_be_virtual(self) -> bool:
        return self in (PathType.DIRECTORY, PathType.SYMLINK)


def fs_type_from_st_mode(fs_path: str, st_mode: int) -> PathType:
    if stat.S_ISREG(st_mode):
        path_type = PathType.FILE
    elif stat.S_ISDIR(st_mode):
        path_type = PathType.DIRECTORY
    elif stat.S_ISLNK(st_mode):
        path_type = PathType.SYMLINK
    else:
        raise PackageIOError(
            f"The path {fs_path} has an unsupported file type (only regular files,"
            " directories and symlinks can be packaged)",
            fs_path,
        )
    return path_type


@dataclasses.dataclass(slots=True)
class TarMember:
    member_path: str
    path_type: PathType
    fs_path: Optional[str]
    mode: int
    owner: str
    uid: int
    group: str
    gid: int
    mtime: float
    link_target: str = ""
    is_virtual_entry: bool = False

    def create_tar_info(self, tar_fd: tarfile.TarFile) -> tarfile.TarInfo:
        tar_info: tarfile.TarInfo
        if self.is_virtual_entry:
            assert self.path_type.can_be_virtual
            tar_info = tar_fd.tarinfo(self.member_path)
            tar_info.size = 0
            tar_info.type = self.path_type.tarinfo_type
            tar_info.linkpath = self.link_target
        else:
            try:
                tar_info = tar_fd.gettarinfo(
                    name=self.fs_path, arcname=self.member_path
                )
            except (TypeError, ValueError) as e:
                raise ValueError(
                    f"Unable to prepare tar info for {self.member_path}"
                ) from e
        tar_info.mode = self.mode
        tar_info.uname = self.owner
        tar_info.uid = self.uid
        tar_info.gname = self.group
        tar_info.gid = self.gid
        tar_info.mtime = int(self.mtime)

        return tar_info

    @classmethod
    def from_file(
        cls,
        member_path: str,
        fs_path: str,
        mtime: int,
        *,
        mode: int,
        path_type: PathType = PathType.FILE,
    ) -> "TarMember":
        return cls(
            member_path=member_path,
            path_type=path_type,
            fs_path=fs_path,
            mode=mode,
            owner="root",
            uid=0,
            group="root",
            gid=0,
            mtime=float(mtime),
        )

    @classmethod
    def virtual_path(
        cls,
        member_path: str,
        path_type: PathType,
        mtime: float,
        mode: int,
        link_target: str = "",
    ) -> Self:
        if not path_type.can_be_virtual:
            raise ValueError(f"The path type {path_type.name} cannot be virtual")
        if (path_type == PathType.SYMLINK) ^ bool(link_target):
            if not link_target:
                raise ValueError("Symlinks must have a link target")
            raise ValueError("Non-symlinks must not have a link target")
        return cls(
            member_path=member_path,
            path_type=path_type,
            fs_path=None,
            link_target=link_target,
            mode=mode,
            owner="root",
            uid=0,
            group="root",
            gid=0,
            mtime=mtime,
            is_virtual_entry=True,
        )


def scan_tar_members(root_dir: str, mtime: int) -> Iterator[TarMember]:
    """Yield the members for every path below root_dir

    Paths are sorted by name within each directory and a directory always
    comes before its content, so the output does not depend on the
    filesystem ordering.  Ownership is always root:root and every member
    gets the same mtime.
    """
    yield TarMember.virtual_path("./", PathType.DIRECTORY, mtime, 0o755)
    yield from _scan_dir(root_dir, ".", mtime)


def _scan_dir(fs_dir: str, member_dir: str, mtime: int) -> Iterator[TarMember]:
    with os.scandir(fs_dir) as dir_iter:
        entries = sorted(dir_iter, key=operator.attrgetter("name"))
    for entry in entries:
        st = entry.stat(follow_symlinks=False)
        path_type = fs_type_from_st_mode(entry.path, st.st_mode)
        member_path = f"{member_dir}/{entry.name}"
        if path_type == PathType.SYMLINK:
            yield TarMember.virtual_path(
                member_path,
                PathType.SYMLINK,
                mtime,
                0o777,
                link_target=os.readlink(entry.path),
            )
        elif path_type == PathType.DIRECTORY:
            yield TarMember.virtual_path(
                member_path + "/",
                PathType.DIRECTORY,
                mtime,
                stat.S_IMODE(st.st_mode),
            )
            yield from _scan_dir(entry.path, member_path, mtime)
        else:
            yield TarMember.from_file(
                member_path,
                entry.path,
                mtime,
                mode=stat.S_IMODE(st.st_mode),
                path_type=PathType.FILE,
            )
