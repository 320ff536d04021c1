"""
Build bookkeeping for pipelines.
Handles discovery, change detection, locking and build records.
"""

from .models import (
    BuildStatus,
    ChangeType,
    BuildRecord,
    PipelineChanges,
    BuildResult,
    BuildReport
)
from .hasher import DefinitionHasher
from .scanner import DiscoveredPipeline, PipelineScanner
from .change_detector import ChangeDetector
from .lock import BuildLockManager
from .metadata import MetadataManager
from .manager import ImageBuildManager

__all__ = [
    'BuildStatus',
    'ChangeType',
    'BuildRecord',
    'PipelineChanges',
    'BuildResult',
    'BuildReport',
    'DefinitionHasher',
    'DiscoveredPipeline',
    'PipelineScanner',
    'ChangeDetector',
    'BuildLockManager',
    'MetadataManager',
    'ImageBuildManager',
]
