"""Pipeline execution against the in-memory build backend."""

import asyncio

import pytest

from imagetool.build_backend import IndexedPackage, InMemoryBuildBackend
from imagetool.core.enums import FailureKind, PipelineState
from imagetool.core.errors import (
    CompilationError,
    InstructionError,
    MissingArtifactError,
    PackageInstallError,
    PipelineDefinitionError,
    RetrievalError,
    ToolchainInstallError,
)
from imagetool.core.models import (
    BuildSettings,
    CopyFile,
    InstallPackages,
    PinnedDependency,
    PipelineDefinition,
    SetLocale,
    SetTimezone,
    Stage,
)
from imagetool.pipeline import PipelineBuilder, PipelineContext
from imagetool.recipes import ci_pipeline

from conftest import FLATBUFFERS_URL

FLATC_ARTIFACT = "flatc:/usr/local/src/flatbuffers/flatc"


class TestReproduciblePinning:
    """Same pin, same binary."""

    @pytest.mark.asyncio
    async def test_rebuild_from_clean_backend_yields_identical_binary(
        self, flatbuffers_sources, ci_definition, context_dir, run_pipeline
    ):
        _, first_ctx, first = await run_pipeline(
            ci_definition, InMemoryBuildBackend(sources=flatbuffers_sources), context_dir
        )
        _, second_ctx, second = await run_pipeline(
            ci_definition, InMemoryBuildBackend(sources=flatbuffers_sources), context_dir
        )

        assert first.artifacts[FLATC_ARTIFACT] == second.artifacts[FLATC_ARTIFACT]
        assert first_ctx.stage_results["flatc"].image_id == second_ctx.stage_results["flatc"].image_id
        assert first.image_id == second.image_id

    @pytest.mark.asyncio
    async def test_compiled_binary_is_copied_into_environment(self, memory_backend, ci_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(ci_definition, memory_backend, context_dir)

        snapshot = memory_backend.snapshots[image.tag]
        flatc = snapshot.read("/usr/bin/flatc")
        assert flatc is not None
        assert flatc.content.startswith(b"\x7fELF")
        assert flatc.sha256 == image.artifacts[FLATC_ARTIFACT]


class TestEnvironmentImage:
    """CI image runs as the unprivileged user."""

    @pytest.mark.asyncio
    async def test_default_user_is_unprivileged(self, memory_backend, ci_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(ci_definition, memory_backend, context_dir)

        snapshot = memory_backend.snapshots[image.tag]
        assert image.metadata.user == "rust"
        assert snapshot.users["rust"]["uid"] == 1500
        assert snapshot.users["rust"]["gid"] == 1500
        assert image.metadata.cmd == ("/bin/bash",)

    @pytest.mark.asyncio
    async def test_environment_configuration(self, memory_backend, ci_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(ci_definition, memory_backend, context_dir)

        snapshot = memory_backend.snapshots[image.tag]
        assert image.metadata.env["LANG"] == "C.UTF-8"
        assert image.metadata.env["PATH"].startswith("/home/rust/.local/bin:/home/rust/bin:")
        assert snapshot.timezone == "Etc/UTC"
        assert snapshot.default_toolchain == "nightly-2020-11-19"
        assert snapshot.toolchains["nightly-2020-11-19"] == ("rustfmt", "clippy")
        assert b"rust ALL=NOPASSWD: ALL" in snapshot.read("/etc/sudoers.d/10-rust").content
        assert b'env_keep += "DEBIAN_FRONTEND"' in snapshot.read("/etc/sudoers.d/env_keep").content
        assert "musl-tools" in snapshot.packages

    @pytest.mark.asyncio
    async def test_noninteractive_policy_is_not_persisted(self, memory_backend, ci_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(ci_definition, memory_backend, context_dir)

        assert "DEBIAN_FRONTEND" not in image.metadata.env


class TestRuntimeImage:
    """Runtime packaging of the release binary."""

    @pytest.mark.asyncio
    async def test_entrypoint_is_exec_form_binary(self, memory_backend, runtime_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(runtime_definition, memory_backend, context_dir)

        assert image.metadata.entrypoint == ("/usr/bin/influxdb_iox",)
        assert image.metadata.cmd == ()

    @pytest.mark.asyncio
    async def test_declared_ports_in_metadata(self, memory_backend, runtime_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(runtime_definition, memory_backend, context_dir)

        assert image.metadata.exposed_ports == (8080, 8082)

    @pytest.mark.asyncio
    async def test_binary_and_data_directory(self, memory_backend, runtime_definition, context_dir, run_pipeline):
        _, _, image = await run_pipeline(runtime_definition, memory_backend, context_dir)

        snapshot = memory_backend.snapshots[image.tag]
        binary = snapshot.read("/usr/bin/influxdb_iox")
        assert binary.content == b"\x7fELF-influxdb_iox-release"
        assert binary.mode == 0o755
        data_dir = snapshot.read("/home/rust/.influxdb_iox")
        assert data_dir.is_dir
        assert data_dir.owner == "rust"
        assert image.metadata.user == "rust"
        assert {"libssl1.1", "libgcc1", "libc6"} <= set(snapshot.packages)

    @pytest.mark.asyncio
    async def test_missing_binary_fails_before_any_stage(self, memory_backend, runtime_definition, empty_context_dir):
        pipeline, context = PipelineBuilder(memory_backend, context_dir=empty_context_dir).build(runtime_definition)

        with pytest.raises(MissingArtifactError) as exc_info:
            await pipeline.execute(context)

        assert exc_info.value.kind == FailureKind.MISSING_ARTIFACT
        assert exc_info.value.pipeline == "runtime"
        assert context.stage_results == {}
        assert memory_backend.images == {}
        assert pipeline.output_image is None
        assert pipeline.state == PipelineState.ABORTED
        assert pipeline.stats.transitions == [("pending", "aborted")]


class TestStageIsolation:
    """Changing the pin only changes the compiler artifact."""

    @pytest.mark.asyncio
    async def test_changing_pin_only_changes_tool_artifact(self, flatbuffers_sources, build_settings, context_dir, run_pipeline):
        old_backend = InMemoryBuildBackend(sources=flatbuffers_sources)
        new_backend = InMemoryBuildBackend(sources=flatbuffers_sources)
        old_definition = ci_pipeline(settings=build_settings)
        new_definition = ci_pipeline(
            dependency=PinnedDependency(url=FLATBUFFERS_URL, tag="v2.0.0"),
            settings=build_settings,
        )

        _, _, old_image = await run_pipeline(old_definition, old_backend, context_dir)
        _, _, new_image = await run_pipeline(new_definition, new_backend, context_dir)

        assert old_image.artifacts[FLATC_ARTIFACT] != new_image.artifacts[FLATC_ARTIFACT]

        old_snapshot = old_backend.snapshots[old_image.tag]
        new_snapshot = new_backend.snapshots[new_image.tag]
        assert old_snapshot.packages == new_snapshot.packages
        old_files = {p: e for p, e in old_snapshot.files.items() if p != "/usr/bin/flatc"}
        new_files = {p: e for p, e in new_snapshot.files.items() if p != "/usr/bin/flatc"}
        assert old_files == new_files


class TestPipelineStates:
    """State transitions and abort behaviour."""

    @pytest.mark.asyncio
    async def test_successful_transitions(self, memory_backend, ci_definition, context_dir, run_pipeline):
        pipeline, context, image = await run_pipeline(ci_definition, memory_backend, context_dir)

        assert pipeline.state == PipelineState.COMPLETED
        assert pipeline.stats.transitions == [
            ("pending", "stage:flatc"),
            ("stage:flatc", "stage:ci"),
            ("stage:ci", "completed"),
        ]
        assert pipeline.output_image == image
        assert all(result.success for result in context.stage_results.values())
        assert context.stage_results["flatc"].instructions_executed == 3

    @pytest.mark.asyncio
    async def test_retrieval_failure_aborts_without_image(self, build_settings, context_dir):
        backend = InMemoryBuildBackend(sources={})
        definition = ci_pipeline(settings=build_settings)
        pipeline, context = PipelineBuilder(backend, context_dir=context_dir).build(definition)

        with pytest.raises(RetrievalError) as exc_info:
            await pipeline.execute(context)

        error = exc_info.value
        assert error.pipeline == "ci"
        assert error.stage == "flatc"
        assert error.instruction == "fetch_source"
        assert pipeline.state == PipelineState.ABORTED
        assert pipeline.stats.transitions == [("pending", "stage:flatc"), ("stage:flatc", "aborted")]
        assert pipeline.stats.failed_stage == "flatc"
        assert context.stage_results["flatc"].success is False
        assert "ci" not in context.stage_results
        assert backend.images == {}

    @pytest.mark.asyncio
    async def test_compilation_failure(self, flatbuffers_sources, ci_definition, context_dir):
        def broken_compiler(instruction, tree):
            raise RuntimeError("flatc.cpp:1: error: expected ';'")

        backend = InMemoryBuildBackend(sources=flatbuffers_sources, compiler=broken_compiler)
        pipeline, context = PipelineBuilder(backend, context_dir=context_dir).build(ci_definition)

        with pytest.raises(CompilationError) as exc_info:
            await pipeline.execute(context)

        assert exc_info.value.instruction == "compile"
        assert "expected ';'" in exc_info.value.output
        assert backend.images == {}

    @pytest.mark.asyncio
    async def test_unavailable_toolchain(self, flatbuffers_sources, ci_definition, context_dir):
        backend = InMemoryBuildBackend(sources=flatbuffers_sources, toolchains={"stable"})
        pipeline, context = PipelineBuilder(backend, context_dir=context_dir).build(ci_definition)

        with pytest.raises(ToolchainInstallError) as exc_info:
            await pipeline.execute(context)

        assert exc_info.value.kind == FailureKind.PACKAGE_INSTALL
        assert exc_info.value.stage == "ci"
        assert pipeline.stats.transitions[-1] == ("stage:ci", "aborted")

    @pytest.mark.asyncio
    async def test_unknown_base_image_with_strict_backend(self, flatbuffers_sources, ci_definition, context_dir):
        backend = InMemoryBuildBackend(sources=flatbuffers_sources, strict_base_images=True)
        pipeline, context = PipelineBuilder(backend, context_dir=context_dir).build(ci_definition)

        with pytest.raises(RetrievalError, match="debian:buster-slim"):
            await pipeline.execute(context)

    @pytest.mark.asyncio
    async def test_pipeline_cannot_run_twice(self, memory_backend, ci_definition, context_dir):
        pipeline, context = PipelineBuilder(memory_backend, context_dir=context_dir).build(ci_definition)
        await pipeline.execute(context)

        with pytest.raises(RuntimeError):
            await pipeline.execute(context)

    def test_missing_context_directory(self, memory_backend, ci_definition, tmp_path):
        with pytest.raises(PipelineDefinitionError):
            PipelineBuilder(memory_backend, context_dir=tmp_path / "missing").build(ci_definition)


class TestPackageInstallation:
    """Package manager behaviour of the in-memory backend."""

    @staticmethod
    def _definition(packages, settings=None):
        return PipelineDefinition(
            name="packages",
            tag="packages:test",
            stages=(
                Stage(
                    name="base",
                    base_image="debian:buster-slim",
                    instructions=(InstallPackages(packages=packages),),
                ),
            ),
            settings=settings or BuildSettings(),
        )

    @pytest.mark.asyncio
    async def test_unknown_package(self, context_dir, run_pipeline):
        backend = InMemoryBuildBackend(package_index={"git": IndexedPackage(version="1:2.20.1-2")})

        with pytest.raises(PackageInstallError) as exc_info:
            await run_pipeline(self._definition(("git", "no-such-package")), backend, context_dir)

        assert "Unable to locate package no-such-package" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_interactive_package_needs_noninteractive_policy(self, context_dir, run_pipeline):
        definition = self._definition(("tzdata",), BuildSettings(noninteractive=False))

        with pytest.raises(PackageInstallError, match="tzdata"):
            await run_pipeline(definition, InMemoryBuildBackend(), context_dir)

    @pytest.mark.asyncio
    async def test_interactive_package_with_noninteractive_policy(self, context_dir, run_pipeline):
        backend = InMemoryBuildBackend()
        _, _, image = await run_pipeline(self._definition(("tzdata",)), backend, context_dir)

        assert "tzdata" in backend.snapshots[image.tag].packages


class TestConcurrentPipelines:
    """Independent pipelines may build concurrently."""

    @pytest.mark.asyncio
    async def test_ci_and_runtime_in_parallel(self, memory_backend, ci_definition, runtime_definition, context_dir, run_pipeline):
        results = await asyncio.gather(
            run_pipeline(ci_definition, memory_backend, context_dir),
            run_pipeline(runtime_definition, memory_backend, context_dir),
        )

        tags = {image.tag for _, _, image in results}
        assert tags == {"influxdb_iox_ci:latest", "influxdb_iox:latest"}
        assert set(memory_backend.images) == tags
        assert memory_backend.images["influxdb_iox:latest"].metadata.entrypoint == ("/usr/bin/influxdb_iox",)


def _single_stage(*instructions, name="single"):
    return PipelineDefinition(
        name=name,
        tag=f"{name}:test",
        stages=(Stage(name="base", base_image="debian:buster-slim", instructions=instructions),),
    )


class TestBuildContextConfinement:
    """Context copies never read outside the build context."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source", ["/etc/hostname", "../outside.txt", "target/../../outside.txt"])
    async def test_escaping_source_fails_in_preflight(self, memory_backend, context_dir, source):
        (context_dir.parent / "outside.txt").write_text("host secret")
        definition = _single_stage(CopyFile(source=source, dest="/leak"))
        pipeline, context = PipelineBuilder(memory_backend, context_dir=context_dir).build(definition)

        with pytest.raises(MissingArtifactError, match="outside the build context"):
            await pipeline.execute(context)

        assert pipeline.stats.transitions == [("pending", "aborted")]
        assert memory_backend.images == {}

    @pytest.mark.asyncio
    async def test_symlink_out_of_context_is_rejected(self, memory_backend, context_dir):
        (context_dir.parent / "outside.txt").write_text("host secret")
        (context_dir / "link.txt").symlink_to(context_dir.parent / "outside.txt")
        definition = _single_stage(CopyFile(source="link.txt", dest="/leak"))
        pipeline, context = PipelineBuilder(memory_backend, context_dir=context_dir).build(definition)

        with pytest.raises(MissingArtifactError, match="outside the build context"):
            await pipeline.execute(context)

    @pytest.mark.asyncio
    async def test_stage_copy_checks_context_without_preflight(self, memory_backend, context_dir):
        (context_dir.parent / "outside.txt").write_text("host secret")
        definition = _single_stage(CopyFile(source="../outside.txt", dest="/leak"))
        context = PipelineContext(definition=definition, context_dir=context_dir)

        with pytest.raises(MissingArtifactError, match="outside the build context"):
            await memory_backend.build_stage(definition.stages[0], context)

    @pytest.mark.asyncio
    async def test_nested_context_path_is_copied(self, memory_backend, context_dir, run_pipeline):
        definition = _single_stage(CopyFile(source="target/release/influxdb_iox", dest="/usr/bin/iox"))

        _, _, image = await run_pipeline(definition, memory_backend, context_dir)

        assert memory_backend.snapshots[image.tag].read("/usr/bin/iox").content == b"\x7fELF-influxdb_iox-release"


class TestTimezoneAndLocale:
    """Timezone and locale steps fail instead of silently doing nothing."""

    @pytest.mark.asyncio
    async def test_unknown_timezone(self, context_dir):
        backend = InMemoryBuildBackend(timezones={"Etc/UTC"})
        definition = _single_stage(SetTimezone(zone="Mars/Olympus_Mons"))
        pipeline, context = PipelineBuilder(backend, context_dir=context_dir).build(definition)

        with pytest.raises(InstructionError, match="Unknown time zone Mars/Olympus_Mons") as exc_info:
            await pipeline.execute(context)

        assert exc_info.value.instruction == "set_timezone"
        assert pipeline.state == PipelineState.ABORTED

    @pytest.mark.asyncio
    async def test_generated_locale_needs_locales_package(self, context_dir):
        definition = _single_stage(SetLocale(locale="en_US.UTF-8"))
        pipeline, context = PipelineBuilder(InMemoryBuildBackend(), context_dir=context_dir).build(definition)

        with pytest.raises(InstructionError, match="Cannot generate locale en_US.UTF-8"):
            await pipeline.execute(context)

    @pytest.mark.asyncio
    async def test_builtin_locale_needs_no_package(self, context_dir, run_pipeline):
        backend = InMemoryBuildBackend()
        _, _, image = await run_pipeline(_single_stage(SetLocale(locale="C.UTF-8")), backend, context_dir)

        assert image.metadata.env["LANG"] == "C.UTF-8"
        assert backend.snapshots[image.tag].read("/etc/locale.gen") is None

    @pytest.mark.asyncio
    async def test_environment_with_generated_locale(self, flatbuffers_sources, context_dir, run_pipeline):
        backend = InMemoryBuildBackend(sources=flatbuffers_sources, timezones={"Etc/UTC", "Europe/Berlin"})
        definition = ci_pipeline(settings=BuildSettings(timezone="Europe/Berlin", locale="en_US.UTF-8"))

        _, _, image = await run_pipeline(definition, backend, context_dir)

        snapshot = backend.snapshots[image.tag]
        assert image.metadata.env["LANG"] == "en_US.UTF-8"
        assert snapshot.timezone == "Europe/Berlin"
        assert snapshot.read("/etc/locale.gen").content == b"en_US.UTF-8 UTF-8\n"
