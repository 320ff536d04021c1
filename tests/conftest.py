"""Pytest configuration and fixtures for imagetool tests."""

import logging
import os
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from imagetool.build_backend import InMemoryBuildBackend
from imagetool.core.models import BuildSettings
from imagetool.pipeline import PipelineBuilder
from imagetool.recipes import ci_pipeline, runtime_pipeline
from imagetool.recipes.toolchain import DEFAULT_DEPENDENCY

logging.basicConfig(level=logging.INFO)

FLATBUFFERS_URL = DEFAULT_DEPENDENCY.url
BINARY_PATH = "target/release/influxdb_iox"


def flatbuffers_tree(version: str) -> dict:
    return {
        "CMakeLists.txt": b"cmake_minimum_required(VERSION 2.8)\nproject(FlatBuffers)\n",
        "src/flatc.cpp": f"// flatc {version}\nint main() {{ return 0; }}\n".encode(),
        "include/flatbuffers/base.h": f"#define FLATBUFFERS_VERSION \"{version}\"\n".encode(),
    }


@pytest.fixture
def flatbuffers_sources():
    """Source trees for two tags of the schema compiler repository."""
    return {
        (FLATBUFFERS_URL, "v1.12.0"): flatbuffers_tree("1.12.0"),
        (FLATBUFFERS_URL, "v2.0.0"): flatbuffers_tree("2.0.0"),
    }


@pytest.fixture
def memory_backend(flatbuffers_sources):
    """In-memory backend that can retrieve the pinned compiler sources."""
    return InMemoryBuildBackend(sources=flatbuffers_sources)


@pytest.fixture
def build_settings():
    return BuildSettings(parallel_jobs=4)


@pytest.fixture
def ci_definition(build_settings):
    return ci_pipeline(settings=build_settings)


@pytest.fixture
def runtime_definition(build_settings):
    return runtime_pipeline(settings=build_settings)


@pytest.fixture
def context_dir(tmp_path):
    """Build context holding an externally built release binary."""
    context = tmp_path / "context"
    binary = context / BINARY_PATH
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"\x7fELF-influxdb_iox-release")
    os.chmod(binary, 0o755)
    return context


@pytest.fixture
def empty_context_dir(tmp_path):
    """Build context without the release binary."""
    context = tmp_path / "empty-context"
    context.mkdir()
    return context


@pytest.fixture
def run_pipeline():
    """Build and execute a definition; returns (pipeline, context, image)."""
    async def _run(definition, backend, context_dir):
        pipeline, context = PipelineBuilder(backend, context_dir=context_dir).build(definition)
        image = await pipeline.execute(context)
        return pipeline, context, image
    return _run
