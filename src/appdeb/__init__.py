from .version import __version__
from .installer import build_package
from .staging import set_directory_permissions
from .versioning import transform_version

__all__ = [
    "__version__",
    "build_package",
    "set_directory_permissions",
    "transform_version",
]
