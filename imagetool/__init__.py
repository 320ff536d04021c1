"""
imagetool - staged container image build pipelines

Main modules:
- core: Pipeline, stage and instruction models, errors
- recipes: Toolchain builder, environment assembler, artifact packager and the pipeline catalog
- pipeline: Sequential stage execution with state tracking
- render: Multi-stage Dockerfile rendering
- build_backend: Docker engine and in-memory build backends
- config: Definition loading, global config, package lock and build bookkeeping
"""

from .core.models import BuildSettings, OutputImage, PipelineDefinition, Stage
from .core.errors import ImageToolError, PipelineDefinitionError, PipelineError
from .recipes import ArtifactPackager, EnvironmentAssembler, ToolchainBuilder, ci_pipeline, runtime_pipeline
from .pipeline import Pipeline, PipelineBuilder
from .render import DockerfileRenderer
from .build_backend import get_build_backend
from .config.config_loader import ConfigLoader
from .config.package_lock import PackageLock

__version__ = "1.0.0"
__all__ = [
    'ArtifactPackager',
    'BuildSettings',
    'ConfigLoader',
    'DockerfileRenderer',
    'EnvironmentAssembler',
    'ImageToolError',
    'OutputImage',
    'PackageLock',
    'Pipeline',
    'PipelineBuilder',
    'PipelineDefinition',
    'PipelineDefinitionError',
    'PipelineError',
    'Stage',
    'ToolchainBuilder',
    'ci_pipeline',
    'get_build_backend',
    'runtime_pipeline',
]
