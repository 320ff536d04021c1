import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from ..core.enums import PipelineState
from ..core.errors import PipelineError
from ..core.models import BuildSettings, OutputImage, PipelineDefinition

if TYPE_CHECKING:
    from ..build_backend.base import BaseBuildBackend


@dataclass
class StageResult:
    """Result from building a single stage"""
    stage_name: str
    success: bool
    image_id: Optional[str] = None
    instructions_executed: int = 0
    artifacts: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineContext:
    """Per-run state that flows through the stages of one pipeline"""
    definition: PipelineDefinition
    context_dir: Path = field(default_factory=Path.cwd)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    stage_results: Dict[str, StageResult] = field(default_factory=dict)
    # backend-specific handle of each completed stage (snapshot, image id, ...)
    stage_outputs: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.context_dir = Path(self.context_dir)

    @property
    def settings(self) -> BuildSettings:
        return self.definition.settings


@dataclass
class PipelineStats:
    """Statistics and state history for one pipeline execution"""
    pipeline_id: str
    state: PipelineState = PipelineState.PENDING
    current_stage: Optional[str] = None
    transitions: List[Tuple[str, str]] = field(default_factory=list)
    stage_stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None


class Pipeline:
    """
    Linear, stage-ordered build of one output image.

    States: pending -> stage 1 -> ... -> stage N -> completed. The only
    transition between stages is "stage succeeded, advance"; any failure
    moves straight to aborted and no output image is produced.
    """

    def __init__(self, definition: PipelineDefinition, backend: 'BaseBuildBackend', logger: Optional[logging.Logger] = None):
        self.definition = definition
        self.backend = backend
        self.logger = logger or logging.getLogger(f"{__name__}.pipeline.{definition.name}")
        self.stats = PipelineStats(pipeline_id=str(uuid.uuid4()))
        self.output_image: Optional[OutputImage] = None
        self._position = PipelineState.PENDING.value

    @property
    def state(self) -> PipelineState:
        return self.stats.state

    def _advance(self, position: str, state: PipelineState) -> None:
        self.stats.transitions.append((self._position, position))
        self._position = position
        self.stats.state = state

    async def execute(self, context: PipelineContext) -> OutputImage:
        """Build every stage in order and return the output image"""
        if self.state != PipelineState.PENDING:
            raise RuntimeError(f"Pipeline {self.definition.name} has already been executed ({self.state.value})")

        self.stats.start_time = datetime.now()
        total = len(self.definition.stages)
        stage_name = None

        try:
            await self.backend.preflight(self.definition, context)

            for index, stage in enumerate(self.definition.stages, start=1):
                stage_name = stage.name
                self.stats.current_stage = stage.name
                self._advance(f"stage:{stage.name}", PipelineState.RUNNING)
                self.logger.info(f"Executing stage {index}/{total}: {stage.name} (from {stage.base_image})")

                started = datetime.now()
                result = await self.backend.build_stage(stage, context)
                result.duration_ms = (datetime.now() - started).total_seconds() * 1000

                context.stage_results[stage.name] = result
                self.stats.stage_stats[stage.name] = result.to_dict()
                self.logger.debug(f"Stage {stage.name} finished in {result.duration_ms:.0f}ms")

            stage_name = None
            image = await self.backend.finalize(self.definition, context)

        except Exception as e:
            self.stats.end_time = datetime.now()
            self.stats.failed_stage = stage_name
            self.stats.error = str(e)
            if stage_name is not None:
                failed = StageResult(stage_name=stage_name, success=False, error=str(e))
                context.stage_results[stage_name] = failed
                self.stats.stage_stats[stage_name] = failed.to_dict()
            if isinstance(e, PipelineError):
                if e.pipeline is None:
                    e.pipeline = self.definition.name
                if e.stage is None:
                    e.stage = stage_name
                self.logger.error(f"Pipeline aborted: {e.describe()}")
            else:
                self.logger.error(f"Pipeline aborted by unexpected error: {e}")
            self._advance(PipelineState.ABORTED.value, PipelineState.ABORTED)
            raise
        finally:
            await self.backend.cleanup(context)

        self.stats.end_time = datetime.now()
        self.stats.current_stage = None
        self.output_image = image
        self._advance(PipelineState.COMPLETED.value, PipelineState.COMPLETED)
        self.logger.info(
            f"Pipeline completed in {self.stats.duration_seconds:.2f}s: {image.tag} ({image.image_id})"
        )
        return image
