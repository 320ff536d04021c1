from .config_loader import ConfigLoader
from .config_serializer import ConfigSerializer
from .global_config_loader import GlobalConfig, load_global_config
from .package_lock import LockedPackage, PackageLock

__all__ = [
    'ConfigLoader',
    'ConfigSerializer',
    'GlobalConfig',
    'LockedPackage',
    'PackageLock',
    'load_global_config',
]
