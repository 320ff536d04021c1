import re
from dataclasses import dataclass, field, fields
from typing import ClassVar, Dict, List, Optional, Tuple

from .enums import FailureKind, InstructionType
from .errors import PipelineDefinitionError


STAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")


def _as_tuple(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class PinnedDependency:
    """Source repository pinned to a version tag, fixed at authoring time"""
    url: str
    tag: str = "v1.12.0"

    def __post_init__(self):
        if not self.url or not self.url.strip():
            raise ValueError("PinnedDependency.url must be a non-empty string")
        if not self.tag or not self.tag.strip():
            raise ValueError("PinnedDependency.tag must be a non-empty string")

    @property
    def ref(self) -> str:
        return f"{self.url}@{self.tag}"


@dataclass(frozen=True)
class BuildSettings:
    """
    Build-session configuration passed explicitly into every stage.

    Replaces process-wide mutation of non-interactive flags, locale and
    timezone with a single immutable value.
    """
    noninteractive: bool = True
    timezone: str = "Etc/UTC"
    locale: str = "C.UTF-8"
    parallel_jobs: Optional[int] = None  # None = all available processors

    def __post_init__(self):
        if self.parallel_jobs is not None and self.parallel_jobs < 1:
            raise ValueError(f"parallel_jobs must be >= 1, got {self.parallel_jobs}")


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    """Base class for a single side-effecting step inside a stage"""
    instruction_type: ClassVar[InstructionType]
    failure_kind: ClassVar[FailureKind] = FailureKind.INSTRUCTION

    @property
    def label(self) -> str:
        return self.instruction_type.value

    def to_dict(self) -> Dict:
        data = {'type': self.instruction_type.value}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, PinnedDependency):
                value = {'url': value.url, 'tag': value.tag}
            elif isinstance(value, tuple):
                value = list(value)
            data[f.name] = value
        return data


@dataclass(frozen=True)
class FetchSource(Instruction):
    dependency: PinnedDependency
    dest: str
    instruction_type: ClassVar[InstructionType] = InstructionType.FETCH_SOURCE
    failure_kind: ClassVar[FailureKind] = FailureKind.RETRIEVAL

    def __post_init__(self):
        if isinstance(self.dependency, dict):
            object.__setattr__(self, 'dependency', PinnedDependency(**self.dependency))


@dataclass(frozen=True)
class Compile(Instruction):
    source_dir: str
    target: str
    build_type: str = "Release"
    generator: str = "Unix Makefiles"
    jobs: Optional[int] = None
    instruction_type: ClassVar[InstructionType] = InstructionType.COMPILE
    failure_kind: ClassVar[FailureKind] = FailureKind.COMPILATION

    @property
    def output_path(self) -> str:
        return f"{self.source_dir.rstrip('/')}/{self.target}"


@dataclass(frozen=True)
class InstallPackages(Instruction):
    packages: Tuple[str, ...]
    no_install_recommends: bool = True
    clean: bool = True
    prepare_dirs: Tuple[str, ...] = ()
    instruction_type: ClassVar[InstructionType] = InstructionType.INSTALL_PACKAGES
    failure_kind: ClassVar[FailureKind] = FailureKind.PACKAGE_INSTALL

    def __post_init__(self):
        object.__setattr__(self, 'packages', _as_tuple(self.packages))
        object.__setattr__(self, 'prepare_dirs', _as_tuple(self.prepare_dirs))
        if not self.packages:
            raise ValueError("InstallPackages requires at least one package")


@dataclass(frozen=True)
class CopyFile(Instruction):
    """Copy from the build context, or from an earlier stage when from_stage is set"""
    source: str
    dest: str
    from_stage: Optional[str] = None
    chown: Optional[str] = None
    instruction_type: ClassVar[InstructionType] = InstructionType.COPY
    failure_kind: ClassVar[FailureKind] = FailureKind.MISSING_ARTIFACT


@dataclass(frozen=True)
class SetTimezone(Instruction):
    zone: str = "Etc/UTC"
    instruction_type: ClassVar[InstructionType] = InstructionType.SET_TIMEZONE


# shipped with libc, never generated
BUILTIN_LOCALES = frozenset({"C", "C.UTF-8", "POSIX"})


@dataclass(frozen=True)
class SetLocale(Instruction):
    locale: str = "C.UTF-8"
    instruction_type: ClassVar[InstructionType] = InstructionType.SET_LOCALE

    @property
    def builtin(self) -> bool:
        return self.locale in BUILTIN_LOCALES

    @property
    def charset(self) -> str:
        """Charset column of the locale.gen entry"""
        _, _, charset = self.locale.partition(".")
        return charset or "ISO-8859-1"


@dataclass(frozen=True)
class InstallToolchain(Instruction):
    version: str
    components: Tuple[str, ...] = ()
    instruction_type: ClassVar[InstructionType] = InstructionType.INSTALL_TOOLCHAIN
    failure_kind: ClassVar[FailureKind] = FailureKind.PACKAGE_INSTALL

    def __post_init__(self):
        object.__setattr__(self, 'components', _as_tuple(self.components))


@dataclass(frozen=True)
class CreateUser(Instruction):
    name: str
    uid: int
    gid: int
    group: Optional[str] = None
    shell: str = "/bin/bash"
    create_home: bool = True
    passwordless_sudo: bool = False
    preserve_env: Tuple[str, ...] = ()
    instruction_type: ClassVar[InstructionType] = InstructionType.CREATE_USER

    def __post_init__(self):
        if self.uid == 0 or self.gid == 0:
            raise ValueError(f"CreateUser({self.name}) must not use the privileged id 0")
        if self.group is None:
            object.__setattr__(self, 'group', self.name)
        object.__setattr__(self, 'preserve_env', _as_tuple(self.preserve_env))

    @property
    def home(self) -> str:
        return f"/home/{self.name}"


@dataclass(frozen=True)
class SwitchUser(Instruction):
    name: str
    instruction_type: ClassVar[InstructionType] = InstructionType.SWITCH_USER


@dataclass(frozen=True)
class SetEnv(Instruction):
    name: str
    value: str
    instruction_type: ClassVar[InstructionType] = InstructionType.SET_ENV


@dataclass(frozen=True)
class ExtendPath(Instruction):
    entries: Tuple[str, ...]
    instruction_type: ClassVar[InstructionType] = InstructionType.EXTEND_PATH

    def __post_init__(self):
        object.__setattr__(self, 'entries', _as_tuple(self.entries))


@dataclass(frozen=True)
class MakeDirectory(Instruction):
    path: str
    verify: bool = False
    instruction_type: ClassVar[InstructionType] = InstructionType.MAKE_DIRECTORY


@dataclass(frozen=True)
class Run(Instruction):
    command: str
    instruction_type: ClassVar[InstructionType] = InstructionType.RUN


@dataclass(frozen=True)
class Expose(Instruction):
    ports: Tuple[int, ...]
    instruction_type: ClassVar[InstructionType] = InstructionType.EXPOSE

    def __post_init__(self):
        ports = tuple(int(p) for p in _as_tuple(self.ports))
        for port in ports:
            if not 0 < port < 65536:
                raise ValueError(f"Invalid port: {port}")
        object.__setattr__(self, 'ports', ports)


@dataclass(frozen=True)
class Entrypoint(Instruction):
    argv: Tuple[str, ...]
    instruction_type: ClassVar[InstructionType] = InstructionType.ENTRYPOINT

    def __post_init__(self):
        object.__setattr__(self, 'argv', _as_tuple(self.argv))
        if not self.argv:
            raise ValueError("Entrypoint requires at least the executable path")


@dataclass(frozen=True)
class Cmd(Instruction):
    argv: Tuple[str, ...]
    instruction_type: ClassVar[InstructionType] = InstructionType.CMD

    def __post_init__(self):
        object.__setattr__(self, 'argv', _as_tuple(self.argv))


INSTRUCTION_CLASSES: Dict[InstructionType, type] = {
    cls.instruction_type: cls
    for cls in (
        FetchSource, Compile, InstallPackages, CopyFile, SetTimezone, SetLocale,
        InstallToolchain, CreateUser, SwitchUser, SetEnv, ExtendPath,
        MakeDirectory, Run, Expose, Entrypoint, Cmd,
    )
}


# ---------------------------------------------------------------------------
# Stages and pipelines
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactHandle:
    """A file produced by one stage and consumed by a later one"""
    stage: str
    path: str

    def __str__(self) -> str:
        return f"{self.stage}:{self.path}"


@dataclass(frozen=True)
class Stage:
    name: str
    base_image: str
    instructions: Tuple[Instruction, ...] = ()
    outputs: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.name, str) or not STAGE_NAME_PATTERN.match(self.name):
            raise ValueError(
                f"Invalid stage name {self.name!r}: use lowercase letters, digits, '.', '_' or '-'"
            )
        if not self.base_image or not self.base_image.strip():
            raise ValueError(f"Stage {self.name} requires a base image")
        object.__setattr__(self, 'instructions', _as_tuple(self.instructions))
        object.__setattr__(self, 'outputs', _as_tuple(self.outputs))
        for instruction in self.instructions:
            if not isinstance(instruction, Instruction):
                raise TypeError(
                    f"Stage {self.name} got non-Instruction step (type={type(instruction).__name__})"
                )

    def artifact(self, path: str) -> ArtifactHandle:
        if path not in self.outputs:
            raise ValueError(f"Stage {self.name} does not export {path}")
        return ArtifactHandle(stage=self.name, path=path)

    def stage_references(self) -> List[str]:
        """Names of other stages this stage copies from"""
        return [
            i.from_stage for i in self.instructions
            if isinstance(i, CopyFile) and i.from_stage
        ]


@dataclass(frozen=True)
class PipelineDefinition:
    """
    Ordered chain of stages ending in one output image.

    Validated on construction: every artifact reference must name a stage
    defined earlier in the same pipeline.
    """
    name: str
    tag: str
    stages: Tuple[Stage, ...]
    settings: BuildSettings = field(default_factory=BuildSettings)
    description: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'stages', _as_tuple(self.stages))
        self.validate()

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise PipelineDefinitionError("Pipeline name must be a non-empty string")
        if not self.tag or not self.tag.strip():
            raise PipelineDefinitionError(f"Pipeline {self.name} requires an image tag")
        if not self.stages:
            raise PipelineDefinitionError(f"Pipeline {self.name} has no stages")

        all_names = [s.name for s in self.stages]
        defined: Dict[str, Stage] = {}
        for stage in self.stages:
            if stage.name in defined:
                raise PipelineDefinitionError(
                    f"Pipeline {self.name}: duplicate stage name {stage.name}"
                )

            if stage.base_image in all_names and stage.base_image not in defined:
                raise PipelineDefinitionError(
                    f"Pipeline {self.name}: stage {stage.name} is based on "
                    f"{stage.base_image}, which is not defined before it"
                )

            for instruction in stage.instructions:
                if not isinstance(instruction, CopyFile) or not instruction.from_stage:
                    continue
                producer = defined.get(instruction.from_stage)
                if producer is None:
                    raise PipelineDefinitionError(
                        f"Pipeline {self.name}: stage {stage.name} copies from "
                        f"{instruction.from_stage}, which is not defined before it"
                    )
                if instruction.source not in producer.outputs:
                    raise PipelineDefinitionError(
                        f"Pipeline {self.name}: stage {stage.name} copies "
                        f"{instruction.source} but stage {producer.name} only exports "
                        f"{list(producer.outputs)}"
                    )

            defined[stage.name] = stage

    @property
    def final_stage(self) -> Stage:
        return self.stages[-1]

    def get_stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def context_sources(self) -> List[str]:
        """Build-context paths copied by any stage"""
        return [
            i.source
            for stage in self.stages
            for i in stage.instructions
            if isinstance(i, CopyFile) and not i.from_stage
        ]


@dataclass(frozen=True)
class ImageMetadata:
    user: str = "root"
    entrypoint: Tuple[str, ...] = ()
    cmd: Tuple[str, ...] = ()
    exposed_ports: Tuple[int, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = "/"

    def to_dict(self) -> Dict:
        return {
            'user': self.user,
            'entrypoint': list(self.entrypoint),
            'cmd': list(self.cmd),
            'exposed_ports': list(self.exposed_ports),
            'env': dict(self.env),
            'workdir': self.workdir,
        }


@dataclass(frozen=True)
class OutputImage:
    """Terminal artifact of a pipeline, created once after the final stage"""
    pipeline: str
    tag: str
    image_id: str
    metadata: ImageMetadata
    artifacts: Dict[str, str] = field(default_factory=dict)  # handle -> sha256
    created_at: str = ""

    def to_dict(self) -> Dict:
        return {
            'pipeline': self.pipeline,
            'tag': self.tag,
            'image_id': self.image_id,
            'metadata': self.metadata.to_dict(),
            'artifacts': dict(self.artifacts),
            'created_at': self.created_at,
        }
