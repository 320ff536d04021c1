"""
Stage recipes: each turns a handful of parameters into a validated Stage.
"""

from .base import StageRecipe, ToolchainSpec, UserSpec
from .toolchain import ToolchainBuilder
from .environment import EnvironmentAssembler
from .packager import ArtifactPackager
from .catalog import CATALOG, ci_pipeline, runtime_pipeline

__all__ = [
    'StageRecipe',
    'ToolchainSpec',
    'UserSpec',
    'ToolchainBuilder',
    'EnvironmentAssembler',
    'ArtifactPackager',
    'CATALOG',
    'ci_pipeline',
    'runtime_pipeline',
]
