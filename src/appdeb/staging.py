import contextlib
import operator
import os
import shutil
import stat
import tempfile
from typing import Iterator, Optional, Self, Any

from appdeb.exceptions import PackageIOError
from appdeb.options import PackageOptions
from appdeb.tar_members import PathType, fs_type_from_st_mode
from appdeb.util import _info, ensure_dir

# Helpers that must be setuid root to work (e.g. Chromium's sandbox in Electron apps)
PRIVILEGED_BINARY_NAMES = frozenset({"chrome-sandbox"})

LICENSE_FILE_NAME = "LICENSE"


@contextlib.contextmanager
def _io_errors_as(message: str, path: str) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        raise PackageIOError(f"{message} {path}: {e.strerror or e}", path) from e


def set_directory_permissions(root: str, mode: int) -> None:
    """Apply `mode` to root and to every directory and file beneath it

    Symlinks are left alone.  Applying the same mode twice gives the same
    result.  Paths are changed bottom-up and root last, so `mode` need not
    grant search permission.
    """

    def _raise_walk_error(e: OSError) -> None:
        raise PackageIOError(
            f"Could not read the directory {e.filename}: {e.strerror or e}",
            str(e.filename),
        ) from e

    for dir_path, dir_names, file_names in os.walk(
        root, topdown=False, onerror=_raise_walk_error
    ):
        for name in dir_names + file_names:
            path = os.path.join(dir_path, name)
            if os.path.islink(path):
                continue
            with _io_errors_as("Could not change the permissions of", path):
                os.chmod(path, mode)
    with _io_errors_as("Could not change the permissions of", root):
        os.chmod(root, mode)


def normalized_file_mode(name: str, st_mode: int, is_designated_exec: bool) -> int:
    if name in PRIVILEGED_BINARY_NAMES:
        return 0o4755
    if is_designated_exec or st_mode & 0o111:
        return 0o755
    return 0o644


class StagedTree:
    """Working root for one build

    The data tree (what ends up in data.tar) lives in `data_dir` and the
    control area in `control_dir`.  The whole root is removed when the
    context manager exits, whether the build succeeded or not.
    """

    def __init__(self, options: PackageOptions) -> None:
        self.options = options
        self._tmp_dir: Optional[tempfile.TemporaryDirectory[str]] = None
        self._designated_executables: set[str] = set()

    def __enter__(self) -> Self:
        if self._tmp_dir is not None:
            return self
        self._tmp_dir = tempfile.TemporaryDirectory(
            prefix=f"appdeb-{self.options.name}-"
        )
        try:
            os.mkdir(self.data_dir, 0o755)
            os.mkdir(self.control_dir, 0o755)
        except OSError as e:
            self.cleanup()
            raise PackageIOError(
                f"Could not create the working directory: {e}", str(e.filename)
            ) from e
        return self

    def __exit__(self, *_: Any) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        tmp_dir = self._tmp_dir
        if tmp_dir is not None:
            self._tmp_dir = None
            tmp_dir.cleanup()

    @property
    def root_dir(self) -> str:
        if self._tmp_dir is None:
            raise RuntimeError("The staged tree is not active (use it as a context manager)")
        return self._tmp_dir.name

    @property
    def data_dir(self) -> str:
        return os.path.join(self.root_dir, "data")

    @property
    def control_dir(self) -> str:
        return os.path.join(self.root_dir, "DEBIAN")

    @property
    def app_member_dir(self) -> str:
        return f"usr/lib/{self.options.name}"

    @property
    def app_dir(self) -> str:
        return self.data_path(self.app_member_dir)

    def data_path(self, member_path: str) -> str:
        return os.path.join(self.data_dir, member_path.lstrip("/"))

    def add_data_dir(self, member_path: str) -> str:
        path = self.data_path(member_path)
        with _io_errors_as("Could not create the directory", path):
            ensure_dir(path)
        return path

    def write_data_file(
        self,
        member_path: str,
        content: bytes,
        *,
        executable: bool = False,
    ) -> str:
        path = self.data_path(member_path)
        self.add_data_dir(os.path.dirname(member_path))
        with _io_errors_as("Could not write", path):
            with open(path, "wb") as fd:
                fd.write(content)
        if executable:
            self._designated_executables.add(path)
        return path

    def copy_data_file(self, source: str, member_path: str) -> str:
        path = self.data_path(member_path)
        self.add_data_dir(os.path.dirname(member_path))
        with _io_errors_as("Could not copy", source):
            shutil.copyfile(source, path)
        return path

    def mark_executable(self, path: str) -> None:
        self._designated_executables.add(path)

    def copy_application(self, source_dir: str) -> None:
        _info(f"Copying {source_dir} into the package as /{self.app_member_dir}")
        if not os.path.isdir(source_dir):
            raise PackageIOError(
                f'The application directory "{source_dir}" does not exist or is not a directory',
                source_dir,
            )
        self.add_data_dir(self.app_member_dir)
        self._copy_tree(source_dir, self.app_dir, is_top_level=True)

    def _copy_tree(self, source_dir: str, dest_dir: str, *, is_top_level: bool) -> None:
        with _io_errors_as("Could not read the directory", source_dir):
            with os.scandir(source_dir) as dir_iter:
                entries = sorted(dir_iter, key=operator.attrgetter("name"))
        for entry in entries:
            if is_top_level and entry.name == LICENSE_FILE_NAME:
                continue
            dest = os.path.join(dest_dir, entry.name)
            with _io_errors_as("Could not copy", entry.path):
                st = entry.stat(follow_symlinks=False)
                path_type = fs_type_from_st_mode(entry.path, st.st_mode)
                if path_type == PathType.SYMLINK:
                    os.symlink(os.readlink(entry.path), dest)
                elif path_type == PathType.DIRECTORY:
                    os.mkdir(dest, 0o755)
                    self._copy_tree(entry.path, dest, is_top_level=False)
                else:
                    shutil.copy(entry.path, dest, follow_symlinks=False)

    def link_binary(self) -> None:
        bin_path = self.options.bin
        target = os.path.join(self.app_dir, bin_path)
        if not os.path.isfile(target):
            raise PackageIOError(
                f'Could not find the application binary "{bin_path}" in the application'
                f" directory (expected it at {target})",
                target,
            )
        self.mark_executable(target)
        link_path = self.data_path(f"usr/bin/{self.options.name}")
        self.add_data_dir("usr/bin")
        with _io_errors_as("Could not create the symlink", link_path):
            os.symlink(f"../lib/{self.options.name}/{bin_path}", link_path)

    def normalize_permissions(self) -> None:
        """Give every path in the data tree its final, host-independent mode"""
        for dir_path, _, file_names in os.walk(self.data_dir):
            with _io_errors_as("Could not change the permissions of", dir_path):
                os.chmod(dir_path, 0o755)
            for name in file_names:
                path = os.path.join(dir_path, name)
                with _io_errors_as("Could not change the permissions of", path):
                    st = os.lstat(path)
                    if stat.S_ISLNK(st.st_mode):
                        continue
                    mode = normalized_file_mode(
                        name,
                        st.st_mode,
                        path in self._designated_executables,
                    )
                    os.chmod(path, mode)

    def installed_size(self) -> int:
        """Size of the data tree in KiB (regular files only, rounded up)"""
        total = 0
        for dir_path, _, file_names in os.walk(self.data_dir):
            for name in file_names:
                st = os.lstat(os.path.join(dir_path, name))
                if stat.S_ISREG(st.st_mode):
                    total += st.st_size
        return (total + 1023) // 1024


def newest_mtime(source_dir: str) -> Optional[int]:
    newest: Optional[int] = None
    for dir_path, dir_names, file_names in os.walk(source_dir):
        for name in dir_names + file_names:
            st = os.lstat(os.path.join(dir_path, name))
            mtime = int(st.st_mtime)
            if newest is None or mtime > newest:
                newest = mtime
    return newest


def stage_application(source_dir: str, options: PackageOptions) -> StagedTree:
    """Create the staged tree for `options` and copy the application into it

    The returned tree is active; the caller must use it as a context manager
    (or call `cleanup`) so the working root is removed.
    """
    staged_tree = StagedTree(options).__enter__()
    try:
        staged_tree.copy_application(source_dir)
        staged_tree.link_binary()
    except BaseException:
        staged_tree.cleanup()
        raise
    return staged_tree
