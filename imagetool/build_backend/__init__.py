from typing import Optional

from ..config.package_lock import PackageLock
from ..core.enums import BackendType
from .base import BaseBuildBackend
from .memory import FileEntry, IndexedPackage, InMemoryBuildBackend, Snapshot, load_source_registry


def get_build_backend(backend_type: str, config: Optional[dict] = None, package_lock: Optional[PackageLock] = None) -> BaseBuildBackend:
    """
    Factory function to create build backend instances.

    Args:
        backend_type: Type of backend ('docker', 'memory')
        config: Backend-specific settings
        package_lock: Optional package lock applied by the backend

    Returns:
        Build backend instance

    Example config:
        {
            'base_url': 'unix:///var/run/docker.sock',
            'timeout': 600,
            'pull': False,
            'sources': {'https://github.com/google/flatbuffers.git@v1.12.0': './vendor/flatbuffers'},
        }
    """
    config = config or {}
    try:
        backend_type = BackendType(str(backend_type).lower())
    except ValueError:
        raise ValueError(f"Unsupported backend type: {backend_type}. Supported: 'docker', 'memory'")

    if backend_type == BackendType.DOCKER:
        # docker is only needed by this backend
        from .docker_engine import DockerBuildBackend
        return DockerBuildBackend(
            base_url=config.get('base_url'),
            timeout=config.get('timeout', 600),
            pull=config.get('pull', False),
            package_lock=package_lock,
        )
    elif backend_type == BackendType.MEMORY:
        return InMemoryBuildBackend(
            sources=load_source_registry(config.get('sources') or {}),
            strict_base_images=config.get('strict_base_images', False),
            package_lock=package_lock,
        )
    raise ValueError(f"Unsupported backend type: {backend_type}")


__all__ = [
    'BaseBuildBackend',
    'FileEntry',
    'IndexedPackage',
    'InMemoryBuildBackend',
    'Snapshot',
    'get_build_backend',
    'load_source_registry',
]
