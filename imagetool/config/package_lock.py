"""
Content-addressed package lock.

Replaces floating package names with name + exact version + sha256 of the
package archive, verified before the package is used.
"""
import hashlib
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml


@dataclass(frozen=True)
class LockedPackage:
    name: str
    version: str
    sha256: str

    @property
    def pin(self) -> str:
        """apt-style pinned reference"""
        return f"{self.name}={self.version}"


class PackageLock:
    """Set of locked packages keyed by name"""

    def __init__(self, packages: Optional[Iterable[LockedPackage]] = None):
        self.packages: Dict[str, LockedPackage] = {}
        for package in packages or []:
            self.add(package)
        self.logger = logging.getLogger(__name__)

    def add(self, package: LockedPackage) -> None:
        existing = self.packages.get(package.name)
        if existing and existing != package:
            raise ValueError(
                f"Conflicting lock entries for {package.name}: "
                f"{existing.version} vs {package.version}"
            )
        self.packages[package.name] = package

    def get(self, name: str) -> Optional[LockedPackage]:
        return self.packages.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self.packages

    def __len__(self) -> int:
        return len(self.packages)

    def pin(self, name: str) -> str:
        """Pinned reference for a package, or the bare name if unlocked"""
        locked = self.packages.get(name)
        return locked.pin if locked else name

    def verify_request(self, names: Iterable[str]) -> List[str]:
        """
        Check that every requested package is locked.

        Returns:
            Names missing from the lock, in request order
        """
        return [name for name in names if name not in self.packages]

    def verify_artifact(self, name: str, version: str, content: bytes) -> Optional[str]:
        """
        Verify a resolved package against its lock entry.

        Returns:
            None when it matches, otherwise a description of the mismatch
        """
        locked = self.packages.get(name)
        if locked is None:
            return f"{name} is not in the package lock"
        if locked.version != version:
            return f"{name}: index resolved {version}, lock requires {locked.version}"
        digest = hashlib.sha256(content).hexdigest()
        if digest != locked.sha256:
            return f"{name}={version}: sha256 {digest} does not match lock {locked.sha256}"
        return None

    def to_dict(self) -> Dict:
        return {
            'packages': [asdict(p) for p in sorted(self.packages.values(), key=lambda p: p.name)]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PackageLock':
        entries = (data or {}).get('packages', []) or []
        packages = []
        for entry in entries:
            missing = [k for k in ('name', 'version', 'sha256') if not entry.get(k)]
            if missing:
                raise ValueError(f"Lock entry {entry!r} is missing {', '.join(missing)}")
            packages.append(LockedPackage(
                name=str(entry['name']),
                version=str(entry['version']),
                sha256=str(entry['sha256']).lower(),
            ))
        return cls(packages)

    @classmethod
    def load_from_yaml(cls, file_path: str) -> 'PackageLock':
        with open(file_path, 'r') as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    def save(self, file_path: str) -> None:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        self.logger.info(f"Wrote package lock with {len(self)} entries to {path}")
