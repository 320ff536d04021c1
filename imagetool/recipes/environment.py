"""
EnvironmentAssembler: reusable CI build image with a pinned toolchain.
"""
from typing import Optional, Sequence

from ..core.models import (
    ArtifactHandle,
    BuildSettings,
    Cmd,
    CopyFile,
    ExtendPath,
    InstallPackages,
    InstallToolchain,
    SetLocale,
    SetTimezone,
    Stage,
    SwitchUser,
)
from .base import StageRecipe, ToolchainSpec, UserSpec


DEFAULT_CI_PACKAGES = (
    "git", "locales", "sudo", "openssh-client", "ca-certificates", "tar", "gzip",
    "parallel", "unzip", "zip", "bzip2", "gnupg", "curl", "make", "pkg-config",
    "libssl-dev", "musl", "musl-dev", "musl-tools", "clang", "llvm",
)


class EnvironmentAssembler(StageRecipe):
    """
    Stage producing a CI image that runs as a non-root user.

    Steps, in order and each exactly once:

    1. import the tool artifact to ``tool_path`` (overwriting)
    2. non-interactive package manager (from ``BuildSettings``)
    3. install the closed package list
    4. timezone and locale from ``BuildSettings``
    5. pinned toolchain and components
    6. unprivileged user with passwordless sudo keeping ``preserved_env``
    7. switch to that user and extend PATH
    """

    def __init__(
        self,
        tool: ArtifactHandle,
        base_image: str = "rust:slim-buster",
        tool_path: str = "/usr/bin/flatc",
        packages: Sequence[str] = DEFAULT_CI_PACKAGES,
        toolchain: ToolchainSpec = ToolchainSpec(),
        user: UserSpec = UserSpec(),
        preserved_env: str = "DEBIAN_FRONTEND",
        path_entries: Optional[Sequence[str]] = None,
        cmd: Sequence[str] = ("/bin/bash",),
        stage_name: str = "ci"
    ):
        self.tool = tool
        self.base_image = base_image
        self.tool_path = tool_path
        self.packages = tuple(packages)
        self.toolchain = toolchain
        self.user = user
        self.preserved_env = preserved_env
        if path_entries is None:
            path_entries = (f"{user.home}/.local/bin", f"{user.home}/bin")
        self.path_entries = tuple(path_entries)
        self.cmd = tuple(cmd)
        self.stage_name = stage_name

    def build(self, settings: BuildSettings) -> Stage:
        # The non-interactive policy is a build argument applied per stage by
        # the backends, so it is not an instruction here.
        instructions = [
            CopyFile(source=self.tool.path, dest=self.tool_path, from_stage=self.tool.stage),
            InstallPackages(
                packages=self.packages,
                prepare_dirs=("/usr/share/man/man1",),
            ),
            SetTimezone(zone=settings.timezone),
            SetLocale(locale=settings.locale),
            InstallToolchain(
                version=self.toolchain.version,
                components=self.toolchain.components,
            ),
            self.user.create_instruction(
                passwordless_sudo=True,
                preserve_env=(self.preserved_env,) if self.preserved_env else (),
            ),
            SwitchUser(name=self.user.name),
            ExtendPath(entries=self.path_entries),
        ]
        if self.cmd:
            instructions.append(Cmd(argv=self.cmd))

        return Stage(
            name=self.stage_name,
            base_image=self.base_image,
            instructions=tuple(instructions),
        )
