from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Tuple

from ..core.models import BuildSettings, CreateUser, Stage


@dataclass(frozen=True)
class UserSpec:
    """Unprivileged operating identity created inside an image"""
    name: str = "rust"
    uid: int = 1500
    gid: int = 1500

    @property
    def home(self) -> str:
        return f"/home/{self.name}"

    def expand(self, path: str) -> str:
        """Expand a leading ~ to this user's home directory"""
        if path == "~":
            return self.home
        if path.startswith("~/"):
            return f"{self.home}/{path[2:]}"
        return path

    def create_instruction(self, **kwargs) -> CreateUser:
        return CreateUser(name=self.name, uid=self.uid, gid=self.gid, **kwargs)


@dataclass(frozen=True)
class ToolchainSpec:
    version: str = "nightly-2020-11-19"
    components: Tuple[str, ...] = field(default=("rustfmt", "clippy"))


class StageRecipe(ABC):
    """Produces one Stage from recipe parameters and the session settings"""

    stage_name: str

    @abstractmethod
    def build(self, settings: BuildSettings) -> Stage:
        pass
