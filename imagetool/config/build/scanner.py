"""
Discovers pipeline definitions from the pipelines directory and the built-in catalog.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
import logging

from ...core.errors import PipelineDefinitionError
from ...core.models import PipelineDefinition
from ...recipes.catalog import CATALOG
from ..config_loader import ConfigLoader


@dataclass
class DiscoveredPipeline:
    name: str
    definition: PipelineDefinition
    source: str  # file path, or "catalog"


class PipelineScanner:
    """Scans and loads pipeline definitions"""

    def __init__(self, pipelines_dir: Optional[Path] = None, include_catalog: bool = True):
        """
        Args:
            pipelines_dir: Directory searched recursively for *.yaml / *.yml definitions
            include_catalog: Also offer the built-in catalog pipelines; files
                defining the same name take precedence
        """
        self.pipelines_dir = Path(pipelines_dir) if pipelines_dir else None
        self.include_catalog = include_catalog
        self.errors: Dict[str, str] = {}
        self.logger = logging.getLogger(__name__)

    def scan_pipeline_files(self) -> Dict[str, Path]:
        """
        Map of file stem to path for every YAML file under the pipelines directory.
        """
        files: Dict[str, Path] = {}
        if self.pipelines_dir is None:
            return files
        if not self.pipelines_dir.exists():
            self.logger.warning(f"Pipelines directory does not exist: {self.pipelines_dir}")
            return files

        candidates = sorted(self.pipelines_dir.rglob("*.yaml")) + sorted(self.pipelines_dir.rglob("*.yml"))
        for path in candidates:
            files[".".join(path.relative_to(self.pipelines_dir).with_suffix('').parts)] = path
        return files

    def load_all(self) -> Dict[str, DiscoveredPipeline]:
        """
        Load every available pipeline definition.

        Files that fail to load are skipped and reported in ``self.errors``.

        Returns:
            Dict mapping pipeline name to the discovered pipeline
        """
        self.errors = {}
        pipelines: Dict[str, DiscoveredPipeline] = {}

        if self.include_catalog:
            for name, factory in CATALOG.items():
                pipelines[name] = DiscoveredPipeline(name=name, definition=factory(), source="catalog")

        for file_name, path in self.scan_pipeline_files().items():
            try:
                definition = ConfigLoader.load_from_yaml(str(path))
            except (PipelineDefinitionError, OSError) as e:
                self.logger.error(f"Failed to load pipeline from {path}: {e}")
                self.errors[str(path)] = str(e)
                continue

            previous = pipelines.get(definition.name)
            if previous is not None and previous.source != "catalog":
                self.errors[str(path)] = (
                    f"Pipeline name {definition.name} is already defined in {previous.source}"
                )
                self.logger.error(self.errors[str(path)])
                continue
            pipelines[definition.name] = DiscoveredPipeline(
                name=definition.name, definition=definition, source=str(path)
            )
            self.logger.debug(f"Found pipeline {definition.name} in {path}")

        self.logger.info(f"Discovered {len(pipelines)} pipelines")
        return pipelines
