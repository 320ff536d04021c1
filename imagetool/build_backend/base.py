from abc import ABC, abstractmethod
import logging
from pathlib import Path
from typing import Optional

from ..core.errors import MissingArtifactError
from ..core.models import CopyFile, OutputImage, PipelineDefinition, Stage
from ..pipeline.base import PipelineContext, StageResult


def resolve_context_file(context_dir: Path, source: str) -> Optional[Path]:
    """
    Path of a build-context file, or None if ``source`` escapes the context
    through an absolute path, ``..`` or a symlink.
    """
    root = Path(context_dir).resolve()
    candidate = (root / source).resolve()
    if not candidate.is_relative_to(root):
        return None
    return candidate


class BaseBuildBackend(ABC):
    """
    Base class for build backends.

    A backend executes the stages of one pipeline run in order and creates
    the output image at the end. Backends must not share mutable state
    between runs: everything a run produces lives in its PipelineContext
    until finalize publishes the image.
    """

    name = "base"

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.name}")

    async def preflight(self, definition: PipelineDefinition, context: PipelineContext) -> None:
        """
        Checks run before any stage starts.

        Raises:
            MissingArtifactError: if a build-context file copied by any stage is absent
        """
        for stage in definition.stages:
            for instruction in stage.instructions:
                if not isinstance(instruction, CopyFile) or instruction.from_stage:
                    continue
                source = resolve_context_file(context.context_dir, instruction.source)
                if source is None:
                    raise MissingArtifactError(
                        f"Build context file {instruction.source} is outside the build context {context.context_dir}",
                        pipeline=definition.name,
                        stage=stage.name,
                        instruction=instruction.label,
                    )
                if not source.exists():
                    raise MissingArtifactError(
                        f"Build context file {instruction.source} not found in {context.context_dir}",
                        pipeline=definition.name,
                        stage=stage.name,
                        instruction=instruction.label,
                    )

    @abstractmethod
    async def build_stage(self, stage: Stage, context: PipelineContext) -> StageResult:
        """
        Execute every instruction of a stage, in order.

        Raises:
            PipelineError: subclass matching the failing instruction
        """
        pass

    @abstractmethod
    async def finalize(self, definition: PipelineDefinition, context: PipelineContext) -> OutputImage:
        """Create the output image from the final stage"""
        pass

    async def cleanup(self, context: PipelineContext) -> None:
        """Release per-run resources (optional override)"""
        pass
