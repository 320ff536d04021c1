"""
Canonical hashes for pipeline definitions.
Hashes the parsed definition so YAML formatting and comments never trigger a rebuild.
"""
import hashlib
import json
from typing import Any, Dict, Optional
import logging

from ...core.models import PipelineDefinition
from ..config_serializer import ConfigSerializer
from ..package_lock import PackageLock


def _canonical_hash(data: Any) -> str:
    canonical_json = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(canonical_json.encode('utf-8')).hexdigest()


class DefinitionHasher:
    """Computes canonical hashes for pipeline definitions and their stages"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def compute_definition_hash(self, definition: PipelineDefinition) -> str:
        """
        Hash of the whole definition, including tag and build settings.

        Args:
            definition: Parsed pipeline definition

        Returns:
            SHA256 hash hex string
        """
        return _canonical_hash(ConfigSerializer.definition_to_dict(definition))

    def compute_stage_hashes(self, definition: PipelineDefinition) -> Dict[str, str]:
        """
        Hash every stage together with the hashes of the stages it depends on.

        A stage depends on the stage it is based on and on every stage it
        copies artifacts from, so changing a pinned dependency changes the
        hash of its own stage and of every consumer of its artifact, but
        nothing else.

        Returns:
            Dict mapping stage name to hash
        """
        settings = ConfigSerializer.settings_to_dict(definition.settings)
        hashes: Dict[str, str] = {}
        for stage in definition.stages:
            upstream = sorted(set(stage.stage_references()) | ({stage.base_image} & set(hashes)))
            hashes[stage.name] = _canonical_hash({
                'stage': ConfigSerializer.stage_to_dict(stage),
                'settings': settings,
                'upstream': {name: hashes[name] for name in upstream},
            })
        return hashes

    def compute_lock_hash(self, package_lock: Optional[PackageLock]) -> Optional[str]:
        if package_lock is None:
            return None
        return _canonical_hash(package_lock.to_dict())
