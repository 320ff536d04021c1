"""
Stores build records for pipelines.
"""
import json
import os
from pathlib import Path
from typing import Optional, List
import logging

from .models import BuildRecord


class MetadataManager:
    """Reads and writes ``<name>.build.json`` records in the state directory"""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.logger = logging.getLogger(__name__)

        self.state_dir.mkdir(parents=True, exist_ok=True)

    def get_record_path(self, pipeline_name: str) -> Path:
        return self.state_dir / f"{pipeline_name}.build.json"

    def load_record(self, pipeline_name: str) -> Optional[BuildRecord]:
        """
        Load the last build record of a pipeline.

        Returns:
            BuildRecord or None if the pipeline was never built or the record is unreadable
        """
        record_path = self.get_record_path(pipeline_name)
        if not record_path.exists():
            return None

        try:
            with open(record_path, 'r') as f:
                return BuildRecord.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            self.logger.error(f"Failed to load build record for {pipeline_name}: {e}")
            return None

    def save_record(self, record: BuildRecord) -> None:
        """
        Write a build record atomically.

        Raises:
            OSError: If the record cannot be written
        """
        record_path = self.get_record_path(record.name)
        tmp_path = record_path.with_name(f".{record_path.name}.tmp")
        with open(tmp_path, 'w') as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp_path, record_path)
        self.logger.debug(f"Saved build record {record_path}")

    def next_version(self, pipeline_name: str) -> int:
        record = self.load_record(pipeline_name)
        return record.version + 1 if record else 1

    def list_built_pipelines(self) -> List[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.name[:-len(".build.json")] for p in self.state_dir.glob("*.build.json"))

    def delete_record(self, pipeline_name: str) -> bool:
        record_path = self.get_record_path(pipeline_name)
        if not record_path.exists():
            return False
        record_path.unlink()
        return True
