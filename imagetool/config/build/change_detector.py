"""
Detects which pipelines changed since their last successful build.
"""
from typing import Dict, Optional
import logging

from ...core.models import PipelineDefinition
from .models import PipelineChanges
from .hasher import DefinitionHasher
from .metadata import MetadataManager


class ChangeDetector:
    """Compares current definitions against stored build records"""

    def __init__(self, metadata_manager: MetadataManager, hasher: DefinitionHasher):
        self.metadata_manager = metadata_manager
        self.hasher = hasher
        self.logger = logging.getLogger(__name__)

    def detect_changes(
        self,
        definitions: Dict[str, PipelineDefinition],
        lock_hash: Optional[str] = None
    ) -> PipelineChanges:
        """
        Categorize pipelines as new, modified, lock_changed or unchanged.

        Args:
            definitions: Current pipeline definitions by name
            lock_hash: Hash of the package lock in effect, if any

        Returns:
            PipelineChanges with per-pipeline changed stages
        """
        changes = PipelineChanges()

        for name, definition in definitions.items():
            stage_hashes = self.hasher.compute_stage_hashes(definition)
            record = self.metadata_manager.load_record(name)

            if record is None:
                changes.new.append(name)
                changes.changed_stages[name] = list(stage_hashes)
                self.logger.info(f"New pipeline: {name}")
                continue

            changed = [
                stage for stage, value in stage_hashes.items()
                if record.stage_hashes.get(stage) != value
            ]
            changes.changed_stages[name] = changed

            if self.hasher.compute_definition_hash(definition) != record.definition_hash:
                changes.modified.append(name)
                self.logger.info(f"Modified pipeline: {name} (stages: {', '.join(changed) or 'none'})")
            elif lock_hash != record.lock_hash:
                changes.lock_changed.append(name)
                self.logger.info(f"Package lock changed for pipeline: {name}")
            else:
                changes.unchanged.append(name)
                self.logger.debug(f"Pipeline unchanged: {name}")

        self.logger.info(
            f"Change detection complete: new={len(changes.new)}, "
            f"modified={len(changes.modified)}, lock_changed={len(changes.lock_changed)}, "
            f"unchanged={len(changes.unchanged)}"
        )
        return changes
