"""
Models for the image build bookkeeping.
"""
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Optional, Any
from enum import Enum


class BuildStatus(Enum):
    """Status of a recorded build"""
    SUCCESS = "success"
    FAILED = "failed"


class ChangeType(Enum):
    """Why a pipeline does or does not need building"""
    NEW = "new"
    MODIFIED = "modified"
    LOCK_CHANGED = "lock_changed"
    FORCED = "forced"
    UNCHANGED = "unchanged"


@dataclass
class BuildRecord:
    """Persisted record of the last successful build of a pipeline"""
    name: str
    version: int
    tag: str
    image_id: str
    definition_hash: str
    stage_hashes: Dict[str, str]
    built_at: str
    build_status: str  # BuildStatus value
    run_id: Optional[str] = None
    source: Optional[str] = None
    lock_hash: Optional[str] = None
    duration_seconds: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BuildRecord':
        return cls(**data)


@dataclass
class PipelineChanges:
    """Pipelines grouped by change type"""
    new: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    lock_changed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    # pipeline -> stages whose hash differs from the last build
    changed_stages: Dict[str, List[str]] = field(default_factory=dict)

    def get_pipelines_to_build(self) -> List[str]:
        return self.new + self.modified + self.lock_changed

    def change_type(self, name: str) -> Optional[ChangeType]:
        for change_type, names in (
            (ChangeType.NEW, self.new),
            (ChangeType.MODIFIED, self.modified),
            (ChangeType.LOCK_CHANGED, self.lock_changed),
            (ChangeType.UNCHANGED, self.unchanged),
        ):
            if name in names:
                return change_type
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BuildResult:
    """Result of building a single pipeline"""
    pipeline_name: str
    success: bool
    tag: Optional[str] = None
    image_id: Optional[str] = None
    version: Optional[int] = None
    change_type: Optional[str] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    output: str = ""
    transitions: List[List[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BuildReport:
    """Summary of one build invocation"""
    successful: List[BuildResult] = field(default_factory=list)
    failed: List[BuildResult] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)

    def total_pipelines(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.unchanged)

    def has_issues(self) -> bool:
        return bool(self.failed)

    def print_summary(self):
        """Print human-readable summary"""
        print(f"\n{'='*80}")
        print("BUILD REPORT")
        print(f"{'='*80}")
        print(f"✅ Built: {len(self.successful)} images")
        for result in self.successful:
            print(f"   - {result.pipeline_name}: {result.tag} ({result.image_id})")

        if self.failed:
            print(f"\n❌ Failed: {len(self.failed)} pipelines")
            for result in self.failed:
                where = f" [stage {result.failed_stage}]" if result.failed_stage else ""
                print(f"   - {result.pipeline_name}{where}: {result.error}")
                if result.output:
                    for line in result.output.rstrip().splitlines()[-20:]:
                        print(f"       | {line}")

        print(f"\n⏭️  Unchanged: {len(self.unchanged)} pipelines")
        for name in self.unchanged:
            print(f"   - {name}")
        print(f"{'='*80}\n")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'successful': [r.to_dict() for r in self.successful],
            'failed': [r.to_dict() for r in self.failed],
            'unchanged': list(self.unchanged),
        }
