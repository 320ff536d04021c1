"""
ArtifactPackager: minimal runtime image around an externally built binary.
"""
from typing import Sequence

from ..core.models import (
    BuildSettings,
    CopyFile,
    Entrypoint,
    Expose,
    InstallPackages,
    MakeDirectory,
    Stage,
    SwitchUser,
)
from .base import StageRecipe, UserSpec


DEFAULT_RUNTIME_LIBRARIES = ("libssl1.1", "libgcc1", "libc6")
DEFAULT_PORTS = (8080, 8082)


class ArtifactPackager(StageRecipe):
    """
    Package a pre-built release binary into a runtime image.

    The binary is not built here; it is read from the build context at
    ``binary``. Shared libraries it needs at runtime are installed but not
    checked against the binary (a missing library only shows up when the
    container runs).
    """

    def __init__(
        self,
        binary: str = "target/release/influxdb_iox",
        base_image: str = "debian:buster-slim",
        libraries: Sequence[str] = DEFAULT_RUNTIME_LIBRARIES,
        user: UserSpec = UserSpec(),
        install_path: str = "/usr/bin/influxdb_iox",
        data_dir: str = "~/.influxdb_iox",
        ports: Sequence[int] = DEFAULT_PORTS,
        stage_name: str = "runtime"
    ):
        self.binary = binary
        self.base_image = base_image
        self.libraries = tuple(libraries)
        self.user = user
        self.install_path = install_path
        self.data_dir = data_dir
        self.ports = tuple(ports)
        self.stage_name = stage_name

    def build(self, settings: BuildSettings) -> Stage:
        instructions = []
        if self.libraries:
            instructions.append(InstallPackages(packages=self.libraries))
        instructions.extend([
            self.user.create_instruction(),
            SwitchUser(name=self.user.name),
            MakeDirectory(path=self.user.expand(self.data_dir), verify=True),
            CopyFile(source=self.binary, dest=self.install_path),
        ])
        if self.ports:
            instructions.append(Expose(ports=self.ports))
        # exec form: the binary is PID 1, no /bin/sh -c wrapper
        instructions.append(Entrypoint(argv=(self.install_path,)))

        return Stage(
            name=self.stage_name,
            base_image=self.base_image,
            instructions=tuple(instructions),
        )
