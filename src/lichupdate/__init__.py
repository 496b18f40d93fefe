from ._version import __version__
from .client import LichUpdateError
from .commands import parse_request
from .config import Config, InstallLayout, load_config
from .service import UpdateService, build_service

__all__ = [
    "__version__",
    "Config",
    "InstallLayout",
    "LichUpdateError",
    "UpdateService",
    "build_service",
    "load_config",
    "parse_request",
]
