import logging
from pathlib import Path
from typing import Optional, Tuple, TYPE_CHECKING

from ..core.errors import PipelineDefinitionError
from ..core.models import PipelineDefinition
from .base import Pipeline, PipelineContext

if TYPE_CHECKING:
    from ..build_backend.base import BaseBuildBackend


class PipelineBuilder:
    """Wires a validated definition, a build backend and a run context"""

    def __init__(self, backend: 'BaseBuildBackend', context_dir: Optional[Path] = None, logger: Optional[logging.Logger] = None):
        self.backend = backend
        self.context_dir = Path(context_dir) if context_dir else Path.cwd()
        self.logger = logger or logging.getLogger(__name__)

    def build(self, definition: PipelineDefinition) -> Tuple[Pipeline, PipelineContext]:
        definition.validate()

        if not self.context_dir.is_dir():
            raise PipelineDefinitionError(f"Build context {self.context_dir} is not a directory")

        pipeline_logger = logging.getLogger(f"imagetool.pipeline.{definition.name}")
        pipeline = Pipeline(definition, self.backend, logger=pipeline_logger)
        context = PipelineContext(definition=definition, context_dir=self.context_dir)

        self.logger.debug(
            f"Built pipeline {definition.name}: "
            f"{' -> '.join(s.name for s in definition.stages)} => {definition.tag}"
        )
        return pipeline, context
