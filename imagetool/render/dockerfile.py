"""
Render a PipelineDefinition to a multi-stage Dockerfile.
"""
import json
import logging
import shlex
from typing import List, Optional

from ..config.package_lock import PackageLock
from ..core.models import (
    BuildSettings,
    Cmd,
    Compile,
    CopyFile,
    CreateUser,
    Entrypoint,
    Expose,
    ExtendPath,
    FetchSource,
    InstallPackages,
    InstallToolchain,
    Instruction,
    MakeDirectory,
    PipelineDefinition,
    Run,
    SetEnv,
    SetLocale,
    SetTimezone,
    Stage,
    SwitchUser,
)

CONTINUATION = " \\\n    && "


def _chain(commands: List[str]) -> str:
    return "RUN " + CONTINUATION.join(commands)


def _shell_path(path: str) -> str:
    """Quote a path for the shell but keep a leading ~ expandable"""
    if path == "~":
        return path
    if path.startswith("~/"):
        return "~/" + shlex.quote(path[2:])
    return shlex.quote(path)


class DockerfileRenderer:
    """Builds Dockerfile text for a pipeline definition"""

    def __init__(self, settings: Optional[BuildSettings] = None, package_lock: Optional[PackageLock] = None):
        self.settings = settings
        self.package_lock = package_lock
        self.logger = logging.getLogger(__name__)

    def render(self, definition: PipelineDefinition) -> str:
        settings = self.settings or definition.settings
        blocks = [f"# {definition.name}: {definition.tag}"]
        if definition.description:
            blocks.append(f"# {definition.description}")

        for stage in definition.stages:
            blocks.append("")
            blocks.extend(self.render_stage(stage, settings))

        self.logger.debug(f"Rendered Dockerfile for {definition.name} ({len(definition.stages)} stages)")
        return "\n".join(blocks) + "\n"

    def render_stage(self, stage: Stage, settings: BuildSettings) -> List[str]:
        lines = [f"FROM {stage.base_image} AS {stage.name}"]
        if settings.noninteractive:
            # build argument only, never persisted in the image config
            lines.append("ARG DEBIAN_FRONTEND=noninteractive")
        for instruction in stage.instructions:
            lines.extend(self.render_instruction(instruction))
        return lines

    def render_instruction(self, instruction: Instruction) -> List[str]:
        if isinstance(instruction, FetchSource):
            return [
                "RUN git clone -b {tag} {url} {dest}".format(
                    tag=shlex.quote(instruction.dependency.tag),
                    url=shlex.quote(instruction.dependency.url),
                    dest=shlex.quote(instruction.dest),
                )
            ]

        if isinstance(instruction, Compile):
            src = shlex.quote(instruction.source_dir)
            jobs = str(instruction.jobs) if instruction.jobs else "$(nproc)"
            return [_chain([
                f"cmake -S {src} -B {src} -G {shlex.quote(instruction.generator)} "
                f"-DCMAKE_BUILD_TYPE={shlex.quote(instruction.build_type)}",
                f"make -C {src} -j {jobs} {shlex.quote(instruction.target)}",
            ])]

        if isinstance(instruction, InstallPackages):
            return [_chain(self._apt_commands(instruction))]

        if isinstance(instruction, CopyFile):
            flags = ""
            if instruction.from_stage:
                flags += f"--from={instruction.from_stage} "
            if instruction.chown:
                flags += f"--chown={instruction.chown} "
            return [f"COPY {flags}{instruction.source} {instruction.dest}"]

        if isinstance(instruction, SetTimezone):
            zoneinfo = shlex.quote(f"/usr/share/zoneinfo/{instruction.zone}")
            return [_chain([f"test -f {zoneinfo}", f"ln -sf {zoneinfo} /etc/localtime"])]

        if isinstance(instruction, SetLocale):
            lines = []
            if not instruction.builtin:
                entry = shlex.quote(f"{instruction.locale} {instruction.charset}")
                lines.append(_chain([f"echo {entry} >> /etc/locale.gen", "locale-gen"]))
            lines.append(f"ENV LANG={json.dumps(instruction.locale)}")
            return lines

        if isinstance(instruction, InstallToolchain):
            version = shlex.quote(instruction.version)
            commands = [
                f"rustup toolchain install {version}",
                f"rustup default {version}",
            ]
            if instruction.components:
                commands.append(
                    "rustup component add " + " ".join(shlex.quote(c) for c in instruction.components)
                )
            return [_chain(commands)]

        if isinstance(instruction, CreateUser):
            return [_chain(self._user_commands(instruction))]

        if isinstance(instruction, SwitchUser):
            return [f"USER {instruction.name}"]

        if isinstance(instruction, SetEnv):
            return [f"ENV {instruction.name}={json.dumps(instruction.value)}"]

        if isinstance(instruction, ExtendPath):
            return ["ENV PATH=" + ":".join(list(instruction.entries) + ["${PATH}"])]

        if isinstance(instruction, MakeDirectory):
            path = _shell_path(instruction.path)
            commands = [f"mkdir -p {path}"]
            if instruction.verify:
                commands.append(f"ls -la {path}")
            return [_chain(commands)]

        if isinstance(instruction, Run):
            return [f"RUN {instruction.command}"]

        if isinstance(instruction, Expose):
            return ["EXPOSE " + " ".join(str(p) for p in instruction.ports)]

        if isinstance(instruction, Entrypoint):
            return [f"ENTRYPOINT {json.dumps(list(instruction.argv))}"]

        if isinstance(instruction, Cmd):
            return [f"CMD {json.dumps(list(instruction.argv))}"]

        raise TypeError(f"Cannot render instruction of type {type(instruction).__name__}")

    def _apt_commands(self, instruction: InstallPackages) -> List[str]:
        if self.package_lock is not None:
            packages = [self.package_lock.pin(name) for name in instruction.packages]
        else:
            packages = list(instruction.packages)

        commands = ["apt-get update"]
        for directory in instruction.prepare_dirs:
            commands.append(f"mkdir -p {shlex.quote(directory)}")

        install = "apt-get install -y"
        if instruction.no_install_recommends:
            install += " --no-install-recommends"
        commands.append(install + " " + " ".join(shlex.quote(p) for p in packages))

        if instruction.clean:
            commands.extend([
                "apt-get clean autoclean",
                "apt-get autoremove --yes",
                "rm -rf /var/lib/apt/lists/*",
            ])
        return commands

    def _user_commands(self, instruction: CreateUser) -> List[str]:
        commands = [
            f"groupadd -g {instruction.gid} {instruction.group}",
            "useradd -u {uid} -g {group} -s {shell}{home} {name}".format(
                uid=instruction.uid,
                group=instruction.group,
                shell=shlex.quote(instruction.shell),
                home=" -m" if instruction.create_home else "",
                name=instruction.name,
            ),
        ]
        if instruction.passwordless_sudo:
            commands.append(
                f"echo '{instruction.name} ALL=NOPASSWD: ALL' >> /etc/sudoers.d/10-{instruction.name}"
            )
        for variable in instruction.preserve_env:
            commands.append(
                f"echo 'Defaults    env_keep += \"{variable}\"' >> /etc/sudoers.d/env_keep"
            )
        return commands
