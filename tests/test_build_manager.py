"""Tests for build bookkeeping: hashing, change detection, locking and the build manager."""

import asyncio
import json
import os

import pytest
from unittest.mock import patch

from imagetool.build_backend import InMemoryBuildBackend
from imagetool.config.build import (
    BuildLockManager,
    BuildRecord,
    BuildReport,
    BuildResult,
    ChangeDetector,
    DefinitionHasher,
    ImageBuildManager,
    MetadataManager,
    PipelineScanner,
)
from imagetool.config.build.models import ChangeType
from imagetool.config.package_lock import LockedPackage, PackageLock
from imagetool.core.models import BuildSettings, PinnedDependency
from imagetool.recipes import ci_pipeline, runtime_pipeline

from conftest import FLATBUFFERS_URL


def _record(name, definition, hasher, lock_hash=None):
    return BuildRecord(
        name=name,
        version=1,
        tag=definition.tag,
        image_id='sha256:old',
        definition_hash=hasher.compute_definition_hash(definition),
        stage_hashes=hasher.compute_stage_hashes(definition),
        built_at='2024-01-01T00:00:00+00:00',
        build_status='success',
        lock_hash=lock_hash,
    )


class TestDefinitionHasher:

    @pytest.fixture
    def hasher(self):
        return DefinitionHasher()

    def test_hash_is_stable(self, hasher):
        assert hasher.compute_definition_hash(ci_pipeline()) == hasher.compute_definition_hash(ci_pipeline())

    def test_tag_changes_definition_hash(self, hasher):
        assert hasher.compute_definition_hash(ci_pipeline()) != \
            hasher.compute_definition_hash(ci_pipeline(tag='influxdb_iox_ci:next'))

    def test_pin_change_propagates_to_consumers_only(self, hasher):
        old = hasher.compute_stage_hashes(ci_pipeline())
        new = hasher.compute_stage_hashes(
            ci_pipeline(dependency=PinnedDependency(url=FLATBUFFERS_URL, tag='v2.0.0'))
        )

        assert old['flatc'] != new['flatc']
        assert old['ci'] != new['ci']

    def test_settings_change_stage_hashes(self, hasher):
        utc = hasher.compute_stage_hashes(runtime_pipeline())
        berlin = hasher.compute_stage_hashes(runtime_pipeline(settings=BuildSettings(timezone='Europe/Berlin')))
        assert utc['runtime'] != berlin['runtime']

    def test_lock_hash(self, hasher):
        assert hasher.compute_lock_hash(None) is None
        lock = PackageLock([LockedPackage(name='libc6', version='2.28-10', sha256='a' * 64)])
        assert len(hasher.compute_lock_hash(lock)) == 64


class TestMetadataManager:

    def test_save_and_load(self, tmp_path):
        manager = MetadataManager(tmp_path / 'state')
        hasher = DefinitionHasher()
        record = _record('ci', ci_pipeline(), hasher)

        manager.save_record(record)

        assert manager.load_record('ci') == record
        assert manager.list_built_pipelines() == ['ci']
        assert manager.next_version('ci') == 2
        assert manager.next_version('runtime') == 1

    def test_unreadable_record(self, tmp_path):
        manager = MetadataManager(tmp_path)
        manager.get_record_path('ci').write_text('{not json')
        assert manager.load_record('ci') is None

    def test_delete(self, tmp_path):
        manager = MetadataManager(tmp_path)
        manager.save_record(_record('ci', ci_pipeline(), DefinitionHasher()))
        assert manager.delete_record('ci') is True
        assert manager.delete_record('ci') is False


class TestChangeDetector:

    @pytest.fixture
    def detector(self, tmp_path):
        return ChangeDetector(MetadataManager(tmp_path), DefinitionHasher())

    def test_new_pipelines(self, detector):
        changes = detector.detect_changes({'ci': ci_pipeline(), 'runtime': runtime_pipeline()})

        assert sorted(changes.new) == ['ci', 'runtime']
        assert changes.changed_stages['ci'] == ['flatc', 'ci']

    def test_unchanged_and_modified(self, detector):
        hasher = detector.hasher
        detector.metadata_manager.save_record(_record('ci', ci_pipeline(), hasher))
        detector.metadata_manager.save_record(_record('runtime', runtime_pipeline(), hasher))

        changes = detector.detect_changes({
            'ci': ci_pipeline(dependency=PinnedDependency(url=FLATBUFFERS_URL, tag='v2.0.0')),
            'runtime': runtime_pipeline(),
        })

        assert changes.modified == ['ci']
        assert changes.unchanged == ['runtime']
        assert changes.changed_stages['ci'] == ['flatc', 'ci']
        assert changes.changed_stages['runtime'] == []
        assert changes.change_type('ci') == ChangeType.MODIFIED

    def test_lock_change(self, detector):
        detector.metadata_manager.save_record(_record('runtime', runtime_pipeline(), detector.hasher, lock_hash='old'))

        changes = detector.detect_changes({'runtime': runtime_pipeline()}, lock_hash='new')

        assert changes.lock_changed == ['runtime']
        assert changes.get_pipelines_to_build() == ['runtime']


class TestBuildLockManager:

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, tmp_path):
        lock = BuildLockManager(tmp_path, timeout=1)

        async with lock:
            assert lock.lock_file_path.read_text().strip() == str(os.getpid())

        other = BuildLockManager(tmp_path, timeout=0)
        await other.acquire()
        await other.release()

    @pytest.mark.asyncio
    async def test_second_holder_times_out(self, tmp_path):
        first = BuildLockManager(tmp_path, timeout=1)
        second = BuildLockManager(tmp_path, timeout=0.2, poll_interval=0.05)

        async with first:
            with pytest.raises(TimeoutError):
                await second.acquire()

        await second.acquire()
        await second.release()

    @pytest.mark.asyncio
    async def test_double_acquire(self, tmp_path):
        lock = BuildLockManager(tmp_path)
        async with lock:
            with pytest.raises(RuntimeError):
                await lock.acquire()


class TestPipelineScanner:

    def test_catalog_only(self, tmp_path):
        pipelines = PipelineScanner(tmp_path / 'missing').load_all()

        assert set(pipelines) == {'ci', 'runtime'}
        assert pipelines['ci'].source == 'catalog'

    def test_files_override_catalog(self, tmp_path):
        (tmp_path / 'nested').mkdir()
        (tmp_path / 'nested' / 'runtime.yml').write_text(
            "name: runtime\ntag: custom:1.0\nstages:\n  - recipe: packager\n    name: runtime\n"
        )
        (tmp_path / 'broken.yaml').write_text("name: broken\nstages:\n  - recipe: nope\n")

        scanner = PipelineScanner(tmp_path)
        pipelines = scanner.load_all()

        assert pipelines['runtime'].definition.tag == 'custom:1.0'
        assert pipelines['runtime'].source.endswith('runtime.yml')
        assert 'broken' not in pipelines
        assert list(scanner.errors) == [str(tmp_path / 'broken.yaml')]
        assert set(scanner.scan_pipeline_files()) == {'broken', 'nested.runtime'}

    def test_duplicate_names_in_files(self, tmp_path):
        body = "name: tools\nstages:\n  - name: a\n    base_image: debian\n"
        (tmp_path / 'a.yaml').write_text(body)
        (tmp_path / 'b.yaml').write_text(body)

        scanner = PipelineScanner(tmp_path, include_catalog=False)
        pipelines = scanner.load_all()

        assert list(pipelines) == ['tools']
        assert len(scanner.errors) == 1


class TestImageBuildManager:

    @pytest.fixture
    def manager(self, memory_backend, tmp_path, context_dir):
        return ImageBuildManager(
            backend=memory_backend,
            state_dir=tmp_path / 'state',
            context_dir=context_dir,
        )

    @pytest.fixture
    def definitions(self, ci_definition, runtime_definition):
        return {'ci': ci_definition, 'runtime': runtime_definition}

    @pytest.mark.asyncio
    async def test_builds_new_pipelines_and_records_them(self, manager, definitions, memory_backend):
        report = await manager.build(definitions)

        assert sorted(r.pipeline_name for r in report.successful) == ['ci', 'runtime']
        assert report.failed == []
        assert set(memory_backend.images) == {'influxdb_iox_ci:latest', 'influxdb_iox:latest'}

        record = manager.metadata_manager.load_record('ci')
        assert record.version == 1
        assert record.image_id == memory_backend.images['influxdb_iox_ci:latest'].image_id
        assert record.metadata['user'] == 'rust'

    @pytest.mark.asyncio
    async def test_second_build_is_noop(self, manager, definitions):
        await manager.build(definitions)
        report = await manager.build(definitions)

        assert report.successful == []
        assert sorted(report.unchanged) == ['ci', 'runtime']

    @pytest.mark.asyncio
    async def test_force_rebuild(self, manager, definitions):
        await manager.build(definitions)
        report = await manager.build({'ci': definitions['ci']}, force=True)

        [result] = report.successful
        assert result.change_type == 'forced'
        assert result.version == 2

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, tmp_path, definitions):
        backend = InMemoryBuildBackend(sources={})
        empty = tmp_path / 'ctx'
        empty.mkdir()
        (empty / 'target' / 'release').mkdir(parents=True)
        (empty / 'target' / 'release' / 'influxdb_iox').write_bytes(b'binary')
        manager = ImageBuildManager(backend=backend, state_dir=tmp_path / 'state', context_dir=empty)

        report = await manager.build(definitions)

        assert [r.pipeline_name for r in report.successful] == ['runtime']
        [failed] = report.failed
        assert failed.pipeline_name == 'ci'
        assert failed.failed_stage == 'flatc'
        assert '[retrieval]' in failed.error
        assert failed.transitions == [['pending', 'stage:flatc'], ['stage:flatc', 'aborted']]
        assert manager.metadata_manager.load_record('ci') is None
        assert manager.metadata_manager.load_record('runtime') is not None
        assert report.has_issues()

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, memory_backend, tmp_path, context_dir, definitions):
        manager = ImageBuildManager(
            backend=memory_backend,
            state_dir=tmp_path / 'state',
            context_dir=context_dir,
            max_concurrent_pipelines=1,
        )
        running = 0
        peak = 0
        real_build_stage = memory_backend.build_stage

        async def tracking_build_stage(stage, context):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            try:
                await asyncio.sleep(0.01)
                return await real_build_stage(stage, context)
            finally:
                running -= 1

        with patch.object(memory_backend, 'build_stage', side_effect=tracking_build_stage):
            report = await manager.build(definitions)

        assert len(report.successful) == 2
        assert peak == 1

    def test_status(self, manager, definitions):
        rows = manager.status(definitions)

        assert [row['name'] for row in rows] == ['ci', 'runtime']
        assert rows[0]['state'] == 'new'
        assert rows[0]['version'] is None

    def test_invalid_concurrency(self, memory_backend, tmp_path):
        with pytest.raises(ValueError):
            ImageBuildManager(backend=memory_backend, state_dir=tmp_path, max_concurrent_pipelines=0)


class TestBuildReport:

    def test_summary_and_dict(self, capsys):
        report = BuildReport(
            successful=[BuildResult(pipeline_name='runtime', success=True, tag='influxdb_iox:latest', image_id='sha256:1')],
            failed=[BuildResult(pipeline_name='ci', success=False, failed_stage='flatc',
                                error='[retrieval] boom', output='fatal: repository not found')],
            unchanged=['tools'],
        )

        report.print_summary()
        out = capsys.readouterr().out

        assert report.total_pipelines() == 3
        assert 'runtime: influxdb_iox:latest' in out
        assert 'ci [stage flatc]: [retrieval] boom' in out
        assert '| fatal: repository not found' in out
        assert json.loads(json.dumps(report.to_dict()))['unchanged'] == ['tools']
