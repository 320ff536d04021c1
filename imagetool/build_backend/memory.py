"""
In-memory build backend.

Executes every instruction against a simulated filesystem snapshot instead of
a container engine. Used for dry runs, for checking definitions in CI and in
tests. Compilation output is a deterministic function of the source tree, so
the same pinned dependency always yields the same binary digest.
"""
import asyncio
import copy
import hashlib
import json
import os
import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import available_timezones

from ..config.package_lock import PackageLock
from ..core.errors import (
    CompilationError,
    InstructionError,
    LockVerificationError,
    MissingArtifactError,
    PackageInstallError,
    PipelineError,
    RetrievalError,
    ToolchainInstallError,
)
from ..core.models import (
    Cmd,
    Compile,
    CopyFile,
    CreateUser,
    Entrypoint,
    Expose,
    ExtendPath,
    FetchSource,
    ImageMetadata,
    InstallPackages,
    InstallToolchain,
    Instruction,
    MakeDirectory,
    OutputImage,
    PipelineDefinition,
    Run,
    SetEnv,
    SetLocale,
    SetTimezone,
    Stage,
    SwitchUser,
)
from ..pipeline.base import PipelineContext, StageResult
from .base import BaseBuildBackend, resolve_context_file


DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# packages whose postinst asks debconf questions unless DEBIAN_FRONTEND=noninteractive
INTERACTIVE_PACKAGES = frozenset({"tzdata", "keyboard-configuration", "console-setup"})

# (url, tag) -> {relative path: content}
SourceRegistry = Dict[Tuple[str, str], Dict[str, bytes]]
Compiler = Callable[[Compile, Dict[str, bytes]], bytes]

# zones every tzdata install carries, even where the host has no zoneinfo database
BASE_TIMEZONES = frozenset({"UTC", "Etc/UTC"})


def load_source_tree(directory: str) -> Dict[str, bytes]:
    """
    Read a local checkout into a source tree, skipping VCS metadata.

    Raises:
        ValueError: If the directory does not exist
    """
    root = Path(directory)
    if not root.is_dir():
        raise ValueError(f"Source directory {directory} does not exist")
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file() and ".git" not in path.relative_to(root).parts
    }


def load_source_registry(mapping: Dict[str, str]) -> SourceRegistry:
    """
    Build a source registry from ``{"<url>@<tag>": <local directory>}``.

    Raises:
        ValueError: If a key has no tag or a directory is missing
    """
    registry: SourceRegistry = {}
    for ref, directory in mapping.items():
        url, sep, tag = ref.rpartition("@")
        if not sep or not url or not tag or "/" in tag:
            raise ValueError(f"Source reference {ref!r} must look like <url>@<tag>")
        registry[(url, tag)] = load_source_tree(directory)
    return registry


@dataclass(frozen=True)
class IndexedPackage:
    """A package as the index currently resolves it"""
    version: str
    content: bytes = b""

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


@dataclass
class FileEntry:
    content: bytes = b""
    owner: str = "root"
    mode: int = 0o644
    is_dir: bool = False

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()


@dataclass
class Snapshot:
    """Filesystem plus image config of one stage at one point in time"""
    files: Dict[str, FileEntry] = field(default_factory=dict)
    users: Dict[str, Dict] = field(default_factory=dict)
    packages: Dict[str, str] = field(default_factory=dict)
    toolchains: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    default_toolchain: Optional[str] = None
    timezone: Optional[str] = None
    user: str = "root"
    env: Dict[str, str] = field(default_factory=dict)
    entrypoint: Tuple[str, ...] = ()
    cmd: Tuple[str, ...] = ()
    exposed_ports: List[int] = field(default_factory=list)
    workdir: str = "/"
    history: List[str] = field(default_factory=list)

    @classmethod
    def scratch_root(cls) -> 'Snapshot':
        snapshot = cls(
            users={'root': {'uid': 0, 'gid': 0, 'group': 'root', 'home': '/root', 'shell': '/bin/bash'}},
            env={'PATH': DEFAULT_PATH},
        )
        for directory in ('/', '/etc', '/root', '/home', '/usr', '/usr/bin', '/usr/local', '/tmp'):
            snapshot.files[directory] = FileEntry(is_dir=True, mode=0o755)
        return snapshot

    def clone(self) -> 'Snapshot':
        return copy.deepcopy(self)

    def exists(self, path: str) -> bool:
        return posixpath.normpath(path) in self.files

    def read(self, path: str) -> Optional[FileEntry]:
        return self.files.get(posixpath.normpath(path))

    def make_dir(self, path: str, owner: str = "root") -> None:
        path = posixpath.normpath(path)
        parts = [p for p in path.split('/') if p]
        current = ''
        for part in parts:
            current = f"{current}/{part}"
            entry = self.files.get(current)
            if entry is None:
                self.files[current] = FileEntry(owner=owner, mode=0o755, is_dir=True)
            elif not entry.is_dir:
                raise InstructionError(f"Cannot create directory {path}: {current} is a file")

    def write_file(self, path: str, content: bytes, owner: str = "root", mode: int = 0o644) -> None:
        path = posixpath.normpath(path)
        existing = self.files.get(path)
        if existing is not None and existing.is_dir:
            raise InstructionError(f"Cannot write {path}: it is a directory")
        self.make_dir(posixpath.dirname(path))
        self.files[path] = FileEntry(content=content, owner=owner, mode=mode)

    def append_file(self, path: str, content: bytes) -> None:
        existing = self.read(path)
        current = existing.content if existing else b""
        self.write_file(path, current + content, mode=0o440 if '/sudoers' in path else 0o644)

    def tree(self, root: str) -> Dict[str, bytes]:
        """Regular files below root, keyed by path relative to root"""
        root = posixpath.normpath(root)
        prefix = root.rstrip('/') + '/'
        return {
            path[len(prefix):]: entry.content
            for path, entry in self.files.items()
            if path.startswith(prefix) and not entry.is_dir
        }

    def digest(self) -> str:
        h = hashlib.sha256()
        for path in sorted(self.files):
            entry = self.files[path]
            h.update(f"{path}\0{entry.owner}\0{entry.mode:o}\0{int(entry.is_dir)}\0".encode())
            h.update(entry.content)
        h.update(json.dumps(self.image_config(), sort_keys=True).encode())
        return h.hexdigest()

    def image_config(self) -> Dict:
        return {
            'user': self.user,
            'env': self.env,
            'entrypoint': list(self.entrypoint),
            'cmd': list(self.cmd),
            'exposed_ports': list(self.exposed_ports),
            'workdir': self.workdir,
        }

    def home_of(self, user: str) -> str:
        return self.users.get(user, {}).get('home', '/root' if user == 'root' else f"/home/{user}")


def default_compiler(instruction: Compile, tree: Dict[str, bytes]) -> bytes:
    """Deterministic stand-in binary derived from the source tree and build options"""
    h = hashlib.sha256()
    h.update(json.dumps({
        'target': instruction.target,
        'build_type': instruction.build_type,
        'generator': instruction.generator,
    }, sort_keys=True).encode())
    for path in sorted(tree):
        h.update(path.encode() + b"\0")
        h.update(hashlib.sha256(tree[path]).digest())
    return b"\x7fELF" + h.digest()


class InMemoryBuildBackend(BaseBuildBackend):
    """
    Snapshot-based build backend.

    Args:
        sources: source trees retrievable by (url, tag)
        package_index: packages the index resolves; None resolves any name
        toolchains: installable toolchain versions; None accepts any version
        timezones: zones present under /usr/share/zoneinfo; None uses the host database
        base_images: pre-populated base snapshots by reference
        strict_base_images: unknown base references fail as retrieval errors
        package_lock: when set, every installed package is verified against it
        compiler: replacement for the deterministic default compiler
    """

    name = "memory"

    def __init__(
        self,
        sources: Optional[SourceRegistry] = None,
        package_index: Optional[Dict[str, IndexedPackage]] = None,
        toolchains: Optional[Set[str]] = None,
        timezones: Optional[Set[str]] = None,
        base_images: Optional[Dict[str, Snapshot]] = None,
        strict_base_images: bool = False,
        package_lock: Optional[PackageLock] = None,
        compiler: Optional[Compiler] = None
    ):
        super().__init__()
        self.sources = sources or {}
        self.package_index = package_index
        self.toolchains = toolchains
        self.timezones = set(timezones) if timezones is not None else set(available_timezones()) | BASE_TIMEZONES
        self.base_images = base_images or {}
        self.strict_base_images = strict_base_images
        self.package_lock = package_lock
        self.compiler = compiler or default_compiler
        # published images, written only by finalize
        self.images: Dict[str, OutputImage] = {}
        self.snapshots: Dict[str, Snapshot] = {}

    async def build_stage(self, stage: Stage, context: PipelineContext) -> StageResult:
        snapshot = self._resolve_base(stage, context)

        if context.settings.noninteractive:
            # build argument: visible to this stage's instructions only
            build_env = {'DEBIAN_FRONTEND': 'noninteractive'}
        else:
            build_env = {}

        executed = 0
        for instruction in stage.instructions:
            try:
                self._apply(instruction, snapshot, context, build_env)
            except PipelineError as e:
                e.pipeline = e.pipeline or context.definition.name
                e.stage = e.stage or stage.name
                e.instruction = e.instruction or instruction.label
                raise
            snapshot.history.append(instruction.label)
            executed += 1
            await asyncio.sleep(0)

        artifacts = {}
        for path in stage.outputs:
            entry = snapshot.read(path)
            if entry is None or entry.is_dir:
                raise MissingArtifactError(
                    f"Stage did not produce declared output {path}",
                    pipeline=context.definition.name,
                    stage=stage.name,
                )
            artifacts[str(stage.artifact(path))] = entry.sha256

        context.stage_outputs[stage.name] = snapshot
        image_id = f"sha256:{snapshot.digest()}"
        self.logger.debug(f"Stage {stage.name} snapshot {image_id}")
        return StageResult(
            stage_name=stage.name,
            success=True,
            image_id=image_id,
            instructions_executed=executed,
            artifacts=artifacts,
        )

    async def finalize(self, definition: PipelineDefinition, context: PipelineContext) -> OutputImage:
        final = context.stage_outputs[definition.final_stage.name]
        artifacts = {}
        for result in context.stage_results.values():
            artifacts.update(result.artifacts)

        image = OutputImage(
            pipeline=definition.name,
            tag=definition.tag,
            image_id=f"sha256:{final.digest()}",
            metadata=ImageMetadata(
                user=final.user,
                entrypoint=tuple(final.entrypoint),
                cmd=tuple(final.cmd),
                exposed_ports=tuple(final.exposed_ports),
                env=dict(final.env),
                workdir=final.workdir,
            ),
            artifacts=artifacts,
            created_at=datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        )
        self.images[definition.tag] = image
        self.snapshots[definition.tag] = final.clone()
        self.logger.info(f"Published {definition.tag} ({image.image_id[:19]})")
        return image

    # ------------------------------------------------------------------
    # instruction execution
    # ------------------------------------------------------------------

    def _resolve_base(self, stage: Stage, context: PipelineContext) -> Snapshot:
        if stage.base_image in context.stage_outputs:
            return context.stage_outputs[stage.base_image].clone()
        if stage.base_image in self.base_images:
            return self.base_images[stage.base_image].clone()
        if self.strict_base_images:
            raise RetrievalError(
                f"Base image {stage.base_image} not found",
                pipeline=context.definition.name,
                stage=stage.name,
            )
        return Snapshot.scratch_root()

    def _apply(self, instruction: Instruction, snapshot: Snapshot, context: PipelineContext, build_env: Dict[str, str]) -> None:
        handler = getattr(self, f"_apply_{instruction.instruction_type.value}", None)
        if handler is None:
            raise InstructionError(f"Unsupported instruction {instruction.label}")
        handler(instruction, snapshot, context, build_env)

    def _require_root(self, snapshot: Snapshot, what: str, error_cls=InstructionError) -> None:
        if snapshot.user != 'root':
            raise error_cls(f"{what} requires root, running as {snapshot.user}")

    def _apply_fetch_source(self, instruction: FetchSource, snapshot: Snapshot, context, build_env) -> None:
        dependency = instruction.dependency
        tree = self.sources.get((dependency.url, dependency.tag))
        if tree is None:
            raise RetrievalError(f"Could not retrieve {dependency.ref}")
        if snapshot.tree(instruction.dest):
            raise RetrievalError(f"Destination {instruction.dest} already exists and is not empty")
        snapshot.make_dir(instruction.dest, owner=snapshot.user)
        for relative, content in tree.items():
            snapshot.write_file(posixpath.join(instruction.dest, relative), content, owner=snapshot.user)
        self.logger.debug(f"Fetched {dependency.ref} into {instruction.dest} ({len(tree)} files)")

    def _apply_compile(self, instruction: Compile, snapshot: Snapshot, context, build_env) -> None:
        tree = snapshot.tree(instruction.source_dir)
        if not tree:
            raise CompilationError(f"No source tree at {instruction.source_dir}")
        jobs = instruction.jobs or os.cpu_count() or 1
        try:
            binary = self.compiler(instruction, tree)
        except Exception as e:
            raise CompilationError(f"Compiling {instruction.target} failed: {e}", output=str(e)) from e
        snapshot.write_file(instruction.output_path, binary, owner=snapshot.user, mode=0o755)
        self.logger.debug(
            f"Compiled {instruction.target} ({instruction.build_type}, -j{jobs}) -> {instruction.output_path}"
        )

    def _apply_install_packages(self, instruction: InstallPackages, snapshot: Snapshot, context, build_env) -> None:
        self._require_root(snapshot, "apt-get install", PackageInstallError)
        if build_env.get('DEBIAN_FRONTEND') != 'noninteractive':
            prompting = sorted(INTERACTIVE_PACKAGES.intersection(instruction.packages))
            if prompting:
                raise PackageInstallError(
                    f"Installing {', '.join(prompting)} needs a terminal; "
                    "enable the non-interactive package manager policy"
                )
        for directory in instruction.prepare_dirs:
            snapshot.make_dir(directory)

        if self.package_lock is not None:
            unlocked = self.package_lock.verify_request(instruction.packages)
            if unlocked:
                raise LockVerificationError(f"Packages not in lock: {', '.join(unlocked)}")

        resolved = {}
        for name in instruction.packages:
            if self.package_index is None:
                package = IndexedPackage(version="latest")
            else:
                package = self.package_index.get(name)
                if package is None:
                    raise PackageInstallError(
                        f"Unable to locate package {name}",
                        output=f"E: Unable to locate package {name}",
                    )
            if self.package_lock is not None:
                mismatch = self.package_lock.verify_artifact(name, package.version, package.content)
                if mismatch:
                    raise LockVerificationError(mismatch)
            resolved[name] = package.version

        snapshot.packages.update(resolved)
        for name, version in resolved.items():
            snapshot.write_file(f"/var/lib/dpkg/info/{name}.list", f"{name} {version}\n".encode())

    def _apply_copy(self, instruction: CopyFile, snapshot: Snapshot, context: PipelineContext, build_env) -> None:
        if instruction.from_stage:
            producer = context.stage_outputs.get(instruction.from_stage)
            entry = producer.read(instruction.source) if producer else None
            if entry is None or entry.is_dir:
                raise MissingArtifactError(
                    f"{instruction.source} not found in stage {instruction.from_stage}"
                )
            content, mode = entry.content, entry.mode
        else:
            source = resolve_context_file(context.context_dir, instruction.source)
            if source is None:
                raise MissingArtifactError(f"{instruction.source} is outside the build context")
            if not source.is_file():
                raise MissingArtifactError(f"{instruction.source} not found in build context")
            content = source.read_bytes()
            mode = 0o755 if os.access(source, os.X_OK) else 0o644

        dest = instruction.dest
        if dest.endswith('/'):
            dest = dest + posixpath.basename(instruction.source)
        owner = instruction.chown.split(':')[0] if instruction.chown else 'root'
        snapshot.write_file(dest, content, owner=owner, mode=mode)

    def _apply_set_timezone(self, instruction: SetTimezone, snapshot: Snapshot, context, build_env) -> None:
        self._require_root(snapshot, "setting the timezone")
        if instruction.zone not in self.timezones:
            raise InstructionError(
                f"Unknown time zone {instruction.zone}: /usr/share/zoneinfo/{instruction.zone} does not exist"
            )
        snapshot.write_file('/etc/localtime', f"-> /usr/share/zoneinfo/{instruction.zone}".encode())
        snapshot.timezone = instruction.zone

    def _apply_set_locale(self, instruction: SetLocale, snapshot: Snapshot, context, build_env) -> None:
        if not instruction.builtin:
            self._require_root(snapshot, "locale-gen")
            if "locales" not in snapshot.packages:
                raise InstructionError(
                    f"Cannot generate locale {instruction.locale}: locale-gen: command not found"
                )
            snapshot.append_file("/etc/locale.gen", f"{instruction.locale} {instruction.charset}\n".encode())
        snapshot.env['LANG'] = instruction.locale

    def _apply_install_toolchain(self, instruction: InstallToolchain, snapshot: Snapshot, context, build_env) -> None:
        if self.toolchains is not None and instruction.version not in self.toolchains:
            raise ToolchainInstallError(f"Toolchain {instruction.version} is not available")
        snapshot.toolchains[instruction.version] = tuple(instruction.components)
        snapshot.default_toolchain = instruction.version

    def _apply_create_user(self, instruction: CreateUser, snapshot: Snapshot, context, build_env) -> None:
        self._require_root(snapshot, "useradd")
        if instruction.name in snapshot.users:
            raise InstructionError(f"useradd: user '{instruction.name}' already exists")
        for name, info in snapshot.users.items():
            if info['uid'] == instruction.uid:
                raise InstructionError(f"useradd: UID {instruction.uid} is not unique (used by {name})")

        snapshot.users[instruction.name] = {
            'uid': instruction.uid,
            'gid': instruction.gid,
            'group': instruction.group,
            'home': instruction.home,
            'shell': instruction.shell,
        }
        snapshot.append_file(
            '/etc/passwd',
            f"{instruction.name}:x:{instruction.uid}:{instruction.gid}::{instruction.home}:{instruction.shell}\n".encode(),
        )
        snapshot.append_file('/etc/group', f"{instruction.group}:x:{instruction.gid}:\n".encode())
        if instruction.create_home:
            snapshot.make_dir(instruction.home, owner=instruction.name)
        if instruction.passwordless_sudo:
            snapshot.append_file(
                f"/etc/sudoers.d/10-{instruction.name}",
                f"{instruction.name} ALL=NOPASSWD: ALL\n".encode(),
            )
        for variable in instruction.preserve_env:
            snapshot.append_file(
                '/etc/sudoers.d/env_keep',
                f'Defaults    env_keep += "{variable}"\n'.encode(),
            )

    def _apply_switch_user(self, instruction: SwitchUser, snapshot: Snapshot, context, build_env) -> None:
        if instruction.name not in snapshot.users:
            raise InstructionError(f"unable to find user {instruction.name}: no matching entries in passwd file")
        snapshot.user = instruction.name

    def _apply_set_env(self, instruction: SetEnv, snapshot: Snapshot, context, build_env) -> None:
        snapshot.env[instruction.name] = instruction.value

    def _apply_extend_path(self, instruction: ExtendPath, snapshot: Snapshot, context, build_env) -> None:
        current = snapshot.env.get('PATH', DEFAULT_PATH)
        snapshot.env['PATH'] = ":".join(list(instruction.entries) + [current])

    def _apply_make_directory(self, instruction: MakeDirectory, snapshot: Snapshot, context, build_env) -> None:
        path = instruction.path
        home = snapshot.home_of(snapshot.user)
        if path == '~' or path.startswith('~/'):
            path = home + path[1:]
        path = posixpath.normpath(path)
        if snapshot.user != 'root' and not (path == home or path.startswith(home + '/')):
            raise InstructionError(f"mkdir: cannot create directory '{path}': Permission denied")
        snapshot.make_dir(path, owner=snapshot.user)
        if instruction.verify and not snapshot.exists(path):
            raise InstructionError(f"ls: cannot access '{path}': No such file or directory")

    def _apply_run(self, instruction: Run, snapshot: Snapshot, context, build_env) -> None:
        # arbitrary shell is not simulated, it is only recorded in the history
        self.logger.debug(f"RUN {instruction.command} (recorded, not executed)")

    def _apply_expose(self, instruction: Expose, snapshot: Snapshot, context, build_env) -> None:
        for port in instruction.ports:
            if port not in snapshot.exposed_ports:
                snapshot.exposed_ports.append(port)

    def _apply_entrypoint(self, instruction: Entrypoint, snapshot: Snapshot, context, build_env) -> None:
        snapshot.entrypoint = tuple(instruction.argv)

    def _apply_cmd(self, instruction: Cmd, snapshot: Snapshot, context, build_env) -> None:
        snapshot.cmd = tuple(instruction.argv)
