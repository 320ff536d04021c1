"""
Docker engine build backend.

Renders the pipeline to a multi-stage Dockerfile once per run and builds it
one target at a time, so a failure is attributed to the stage (and, where the
engine output allows, the instruction) that caused it. Only the final stage
is tagged: an aborted run leaves no tagged image behind.
"""
import asyncio
import os
import tempfile
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, ImageNotFound

from ..config.package_lock import PackageLock
from ..core.errors import (
    InstructionError,
    MissingArtifactError,
    PipelineError,
    RetrievalError,
    error_for_kind,
)
from ..core.models import CopyFile, ImageMetadata, OutputImage, PipelineDefinition, Stage
from ..pipeline.base import PipelineContext, StageResult
from ..render.dockerfile import DockerfileRenderer
from .base import BaseBuildBackend


BASE_IMAGE_ERRORS = ("pull access denied", "manifest unknown", "repository does not exist")
OUTPUT_TAIL_LINES = 40


def _command_fragments(rendered: List[str]) -> List[str]:
    """Searchable snippets of a rendered instruction, without Dockerfile keywords"""
    fragments = []
    for line in rendered:
        keyword, _, body = line.partition(" ")
        for part in body.split(" \\\n    && "):
            part = part.strip()
            if part:
                fragments.append(part)
        if keyword == "COPY":
            fragments.append(body.split()[-2])
    return fragments


class DockerBuildBackend(BaseBuildBackend):
    """
    Build backend driving a Docker engine through the docker SDK.

    The SDK is blocking; every engine call runs in a worker thread so that
    independent pipelines can build concurrently.
    """

    name = "docker"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: int = 600,
        pull: bool = False,
        package_lock: Optional[PackageLock] = None,
        client: Optional[docker.DockerClient] = None
    ):
        super().__init__()
        self.base_url = base_url
        self.timeout = timeout
        self.pull = pull
        self.package_lock = package_lock
        self.client = client
        self._client_lock = threading.Lock()

    def _get_client(self) -> docker.DockerClient:
        with self._client_lock:
            if self.client is not None:
                return self.client
            try:
                if self.base_url:
                    self.client = docker.DockerClient(base_url=self.base_url, timeout=self.timeout)
                else:
                    self.client = docker.from_env(timeout=self.timeout)
            except DockerException as e:
                raise RetrievalError(f"Cannot connect to the Docker engine: {e}") from e
        return self.client

    async def preflight(self, definition: PipelineDefinition, context: PipelineContext) -> None:
        await super().preflight(definition, context)
        # before any stage hands the client to a worker thread
        self._get_client()

        renderer = DockerfileRenderer(package_lock=self.package_lock)
        content = renderer.render(definition)
        fd, path = tempfile.mkstemp(prefix=f"{definition.name}.", suffix=".Dockerfile")
        with os.fdopen(fd, 'w') as f:
            f.write(content)
        context.metadata['dockerfile_path'] = path
        context.metadata['renderer'] = renderer
        self.logger.debug(f"Rendered Dockerfile for {definition.name} at {path}")

    async def build_stage(self, stage: Stage, context: PipelineContext) -> StageResult:
        definition = context.definition
        tag = definition.tag if stage.name == definition.final_stage.name else None
        image_id, output = await asyncio.to_thread(self._build_target, stage, context, tag)

        context.stage_outputs[stage.name] = image_id
        return StageResult(
            stage_name=stage.name,
            success=True,
            image_id=image_id,
            instructions_executed=len(stage.instructions),
        )

    def _build_target(self, stage: Stage, context: PipelineContext, tag: Optional[str]) -> Tuple[str, List[str]]:
        client = self._get_client()
        buildargs = {'DEBIAN_FRONTEND': 'noninteractive'} if context.settings.noninteractive else None
        lines: List[str] = []
        image_id = None
        error = None

        try:
            stream = client.api.build(
                path=str(context.context_dir),
                dockerfile=context.metadata['dockerfile_path'],
                target=stage.name,
                tag=tag,
                buildargs=buildargs,
                pull=self.pull,
                rm=True,
                forcerm=True,
                decode=True,
            )
            for chunk in stream:
                if 'stream' in chunk:
                    for line in chunk['stream'].splitlines():
                        if line.strip():
                            lines.append(line)
                            self.logger.debug(f"[{stage.name}] {line}")
                if 'aux' in chunk and isinstance(chunk['aux'], dict) and 'ID' in chunk['aux']:
                    image_id = chunk['aux']['ID']
                if 'error' in chunk:
                    error = chunk['error'].strip()
                    lines.append(error)
        except APIError as e:
            raise self._classify_failure(stage, context, str(e), lines) from e

        if error is not None:
            raise self._classify_failure(stage, context, error, lines)
        if image_id is None:
            raise InstructionError(
                "Engine finished without reporting an image id",
                pipeline=context.definition.name,
                stage=stage.name,
                output="\n".join(lines[-OUTPUT_TAIL_LINES:]),
            )
        return image_id, lines

    def _classify_failure(self, stage: Stage, context: PipelineContext, error: str, lines: List[str]) -> PipelineError:
        """Map an engine error to the failing instruction and its error class"""
        output = "\n".join(lines[-OUTPUT_TAIL_LINES:])
        common = dict(pipeline=context.definition.name, stage=stage.name, output=output)
        lowered = error.lower()

        if any(marker in lowered for marker in BASE_IMAGE_ERRORS) or stage.base_image in error:
            return RetrievalError(f"Base image {stage.base_image} unavailable: {error}", **common)

        renderer: DockerfileRenderer = context.metadata.get('renderer') or DockerfileRenderer()
        failing = None
        for instruction in stage.instructions:
            fragments = _command_fragments(renderer.render_instruction(instruction))
            if any(fragment in error for fragment in fragments):
                failing = instruction
        if failing is None:
            joined = "\n".join(lines)
            for instruction in stage.instructions:
                fragments = _command_fragments(renderer.render_instruction(instruction))
                if any(fragment in joined for fragment in fragments):
                    failing = instruction

        if failing is None:
            if "copy failed" in lowered or "failed to compute cache key" in lowered:
                return MissingArtifactError(error, **common)
            return InstructionError(error, **common)

        if isinstance(failing, CopyFile):
            return MissingArtifactError(error, instruction=failing.label, **common)
        error_cls = error_for_kind(failing.failure_kind)
        return error_cls(error, instruction=failing.label, **common)

    async def finalize(self, definition: PipelineDefinition, context: PipelineContext) -> OutputImage:
        client = self._get_client()
        try:
            image = await asyncio.to_thread(client.images.get, definition.tag)
        except ImageNotFound as e:
            raise InstructionError(
                f"Built image {definition.tag} not found after build",
                pipeline=definition.name,
            ) from e

        config = image.attrs.get('Config') or {}
        env: Dict[str, str] = {}
        for item in config.get('Env') or []:
            key, _, value = item.partition('=')
            env[key] = value
        ports = sorted(int(p.split('/')[0]) for p in (config.get('ExposedPorts') or {}))

        metadata = ImageMetadata(
            user=config.get('User') or 'root',
            entrypoint=tuple(config.get('Entrypoint') or ()),
            cmd=tuple(config.get('Cmd') or ()),
            exposed_ports=tuple(ports),
            env=env,
            workdir=config.get('WorkingDir') or '/',
        )
        created = image.attrs.get('Created') or datetime.now(timezone.utc).isoformat()
        self.logger.info(f"Tagged {definition.tag} ({image.id})")
        return OutputImage(
            pipeline=definition.name,
            tag=definition.tag,
            image_id=image.id,
            metadata=metadata,
            created_at=created,
        )

    async def cleanup(self, context: PipelineContext) -> None:
        path = context.metadata.pop('dockerfile_path', None)
        if path and os.path.exists(path):
            os.unlink(path)
