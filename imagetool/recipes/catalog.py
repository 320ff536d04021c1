"""
Ready-made pipeline definitions for the CI build image and the runtime image.
"""
from typing import Optional

from ..core.models import BuildSettings, PinnedDependency, PipelineDefinition
from .base import ToolchainSpec, UserSpec
from .environment import EnvironmentAssembler
from .packager import ArtifactPackager
from .toolchain import DEFAULT_DEPENDENCY, ToolchainBuilder


def ci_pipeline(
    tag: str = "influxdb_iox_ci:latest",
    dependency: PinnedDependency = DEFAULT_DEPENDENCY,
    toolchain: ToolchainSpec = ToolchainSpec(),
    user: UserSpec = UserSpec(),
    settings: Optional[BuildSettings] = None,
    name: str = "ci"
) -> PipelineDefinition:
    """ToolchainBuilder -> EnvironmentAssembler"""
    settings = settings or BuildSettings()
    builder = ToolchainBuilder(dependency=dependency)
    assembler = EnvironmentAssembler(tool=builder.artifact, toolchain=toolchain, user=user)
    return PipelineDefinition(
        name=name,
        tag=tag,
        stages=(builder.build(settings), assembler.build(settings)),
        settings=settings,
        description="CI build environment with a vendored schema compiler",
    )


def runtime_pipeline(
    tag: str = "influxdb_iox:latest",
    binary: str = "target/release/influxdb_iox",
    user: UserSpec = UserSpec(),
    settings: Optional[BuildSettings] = None,
    name: str = "runtime"
) -> PipelineDefinition:
    """ArtifactPackager around an externally built release binary"""
    settings = settings or BuildSettings()
    packager = ArtifactPackager(binary=binary, user=user)
    return PipelineDefinition(
        name=name,
        tag=tag,
        stages=(packager.build(settings),),
        settings=settings,
        description="Minimal runtime image for the release binary",
    )


CATALOG = {
    'ci': ci_pipeline,
    'runtime': runtime_pipeline,
}
