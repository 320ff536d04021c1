from .build_cli import cli

__all__ = ['cli']
