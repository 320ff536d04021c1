"""
ToolchainBuilder: compile one auxiliary binary from a pinned source checkout.
"""
from typing import Optional, Sequence

from ..core.models import (
    ArtifactHandle,
    BuildSettings,
    Compile,
    FetchSource,
    InstallPackages,
    PinnedDependency,
    Stage,
)
from .base import StageRecipe


DEFAULT_DEPENDENCY = PinnedDependency(
    url="https://github.com/google/flatbuffers.git",
    tag="v1.12.0",
)
DEFAULT_BUILD_PACKAGES = ("git", "make", "clang", "cmake", "llvm")


class ToolchainBuilder(StageRecipe):
    """
    Stage that checks out a PinnedDependency, configures it for a build type
    and compiles a single target.

    The compiled binary is the stage's only exported artifact. Retrieval and
    compilation failures abort the pipeline; neither is retried.
    """

    def __init__(
        self,
        dependency: PinnedDependency = DEFAULT_DEPENDENCY,
        base_image: str = "debian:buster-slim",
        target: str = "flatc",
        source_dir: str = "/usr/local/src/flatbuffers",
        build_type: str = "Release",
        build_packages: Sequence[str] = DEFAULT_BUILD_PACKAGES,
        stage_name: Optional[str] = None
    ):
        self.dependency = dependency
        self.base_image = base_image
        self.target = target
        self.source_dir = source_dir.rstrip('/')
        self.build_type = build_type
        self.build_packages = tuple(build_packages)
        self.stage_name = stage_name or target

    @property
    def output_path(self) -> str:
        return f"{self.source_dir}/{self.target}"

    @property
    def artifact(self) -> ArtifactHandle:
        return ArtifactHandle(stage=self.stage_name, path=self.output_path)

    def build(self, settings: BuildSettings) -> Stage:
        instructions = []
        if self.build_packages:
            # slim images strip /usr/share/man, some postinst scripts expect it
            instructions.append(InstallPackages(
                packages=self.build_packages,
                prepare_dirs=("/usr/share/man/man1",),
            ))
        instructions.append(FetchSource(dependency=self.dependency, dest=self.source_dir))
        instructions.append(Compile(
            source_dir=self.source_dir,
            target=self.target,
            build_type=self.build_type,
            jobs=settings.parallel_jobs,
        ))
        return Stage(
            name=self.stage_name,
            base_image=self.base_image,
            instructions=tuple(instructions),
            outputs=(self.output_path,),
        )
