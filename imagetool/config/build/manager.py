"""
Main build manager that orchestrates image builds.
"""
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ...build_backend.base import BaseBuildBackend
from ...core.errors import ImageToolError, PipelineError
from ...core.models import PipelineDefinition
from ...pipeline import PipelineBuilder
from ..package_lock import PackageLock
from .change_detector import ChangeDetector
from .hasher import DefinitionHasher
from .lock import BuildLockManager
from .metadata import MetadataManager
from .models import BuildRecord, BuildReport, BuildResult, BuildStatus, ChangeType, PipelineChanges


class ImageBuildManager:
    """
    Builds pipelines whose definitions changed since their last successful build.

    Pipelines selected in one call run concurrently, bounded by
    ``max_concurrent_pipelines``; the stages of each pipeline stay sequential.
    A failure in one pipeline never affects the others.
    """

    def __init__(
        self,
        backend: BaseBuildBackend,
        state_dir: Path,
        context_dir: Optional[Path] = None,
        package_lock: Optional[PackageLock] = None,
        build_lock_timeout: int = 30,
        max_concurrent_pipelines: int = 2
    ):
        if max_concurrent_pipelines < 1:
            raise ValueError(f"max_concurrent_pipelines must be >= 1, got {max_concurrent_pipelines}")

        self.backend = backend
        self.state_dir = Path(state_dir)
        self.context_dir = Path(context_dir) if context_dir else Path.cwd()
        self.package_lock = package_lock
        self.max_concurrent_pipelines = max_concurrent_pipelines

        self.logger = logging.getLogger(__name__)

        self.hasher = DefinitionHasher()
        self.metadata_manager = MetadataManager(self.state_dir)
        self.lock_manager = BuildLockManager(self.state_dir, build_lock_timeout)
        self.change_detector = ChangeDetector(self.metadata_manager, self.hasher)

    def detect_changes(self, definitions: Dict[str, PipelineDefinition]) -> PipelineChanges:
        return self.change_detector.detect_changes(
            definitions, self.hasher.compute_lock_hash(self.package_lock)
        )

    async def build(
        self,
        definitions: Dict[str, PipelineDefinition],
        force: bool = False,
        sources: Optional[Dict[str, str]] = None
    ) -> BuildReport:
        """
        Build every changed pipeline (or every given pipeline with ``force``).

        Args:
            definitions: Pipelines to consider, by name
            force: Rebuild even when nothing changed
            sources: Optional origin of each definition, stored in its build record

        Returns:
            BuildReport with one BuildResult per attempted pipeline
        """
        sources = sources or {}
        self.logger.info(f"Starting build of {len(definitions)} pipeline(s)")

        async with self.lock_manager:
            changes = self.detect_changes(definitions)

            if force:
                selected = list(definitions)
            else:
                selected = changes.get_pipelines_to_build()

            report = BuildReport(unchanged=[n for n in changes.unchanged if n not in selected])
            if not selected:
                self.logger.info("No pipelines require building")
                return report

            semaphore = asyncio.Semaphore(self.max_concurrent_pipelines)
            results = await asyncio.gather(
                *[
                    self._build_pipeline(
                        definitions[name],
                        semaphore,
                        change_type=(changes.change_type(name) if not force else ChangeType.FORCED),
                        source=sources.get(name),
                    )
                    for name in selected
                ],
                return_exceptions=True
            )

            for name, result in zip(selected, results):
                if isinstance(result, BaseException):
                    self.logger.error(f"Unexpected error building {name}: {result}", exc_info=result)
                    result = BuildResult(pipeline_name=name, success=False, error=str(result))
                if result.success:
                    report.successful.append(result)
                else:
                    report.failed.append(result)

        self.logger.info(
            f"Build complete: {len(report.successful)} built, {len(report.failed)} failed, "
            f"{len(report.unchanged)} unchanged"
        )
        return report

    async def _build_pipeline(
        self,
        definition: PipelineDefinition,
        semaphore: asyncio.Semaphore,
        change_type: Optional[ChangeType] = None,
        source: Optional[str] = None
    ) -> BuildResult:
        async with semaphore:
            result = BuildResult(
                pipeline_name=definition.name,
                success=False,
                tag=definition.tag,
                change_type=change_type.value if change_type else None,
            )

            try:
                pipeline, context = PipelineBuilder(self.backend, context_dir=self.context_dir).build(definition)
            except ImageToolError as e:
                result.error = str(e)
                return result

            try:
                image = await pipeline.execute(context)
            except PipelineError as e:
                result.failed_stage = e.stage
                result.error = e.describe()
                result.output = e.output
                result.transitions = [list(t) for t in pipeline.stats.transitions]
                return result
            except ImageToolError as e:
                result.error = str(e)
                result.transitions = [list(t) for t in pipeline.stats.transitions]
                return result

            record = BuildRecord(
                name=definition.name,
                version=self.metadata_manager.next_version(definition.name),
                tag=image.tag,
                image_id=image.image_id,
                definition_hash=self.hasher.compute_definition_hash(definition),
                stage_hashes=self.hasher.compute_stage_hashes(definition),
                built_at=datetime.now(timezone.utc).isoformat(),
                build_status=BuildStatus.SUCCESS.value,
                run_id=context.run_id,
                source=source,
                lock_hash=self.hasher.compute_lock_hash(self.package_lock),
                duration_seconds=pipeline.stats.duration_seconds,
                metadata=image.metadata.to_dict(),
            )
            self.metadata_manager.save_record(record)

            result.success = True
            result.image_id = image.image_id
            result.version = record.version
            result.transitions = [list(t) for t in pipeline.stats.transitions]
            return result

    def status(self, definitions: Dict[str, PipelineDefinition]) -> List[Dict]:
        """Per-pipeline build state without building anything"""
        changes = self.detect_changes(definitions)
        rows = []
        for name in sorted(definitions):
            record = self.metadata_manager.load_record(name)
            change_type = changes.change_type(name)
            rows.append({
                'name': name,
                'tag': definitions[name].tag,
                'state': change_type.value if change_type else None,
                'changed_stages': changes.changed_stages.get(name, []),
                'version': record.version if record else None,
                'image_id': record.image_id if record else None,
                'built_at': record.built_at if record else None,
            })
        return rows
