from .dockerfile import DockerfileRenderer

__all__ = ['DockerfileRenderer']
