"""
Pytest configuration and fixtures for the dependency manager tests.

HTTP is never performed: sessions and release clients are mocks, and
responses are built with the ``make_response`` factory fixture.
"""

import hashlib
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from deps_config import DepsConfig
from deps_manager import DependencyManager
from deps_models import Library
from platform_paths import Paths


LIBRARY_CONTENT = b"\x7fELF" + b"gpu-runtime-library" * 4096


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for each test."""
    temp_dir = tempfile.mkdtemp(prefix="gpu_deps_test_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def paths(temp_dir) -> Paths:
    return Paths(
        config_dir=temp_dir / "config",
        cache_dir=temp_dir / "cache",
        lib_dir=temp_dir / "lib",
    )


@pytest.fixture
def make_response():
    """Factory for mock ``requests`` responses."""
    def _make(status_code=200, chunks=(), json_data=None, text=""):
        response = MagicMock()
        response.status_code = status_code
        response.iter_content.side_effect = lambda chunk_size=None: iter(list(chunks))
        response.json.return_value = json_data
        response.text = text
        return response
    return _make


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def releases_client():
    return MagicMock()


@pytest.fixture
def config() -> DepsConfig:
    return DepsConfig()


@pytest.fixture
def manager(paths, config, session, releases_client) -> DependencyManager:
    return DependencyManager(
        paths=paths,
        config=config,
        releases_client=releases_client,
        session=session,
    )


@pytest.fixture
def library_content() -> bytes:
    return LIBRARY_CONTENT


@pytest.fixture
def library() -> Library:
    """A linux/amd64 artifact whose digest matches LIBRARY_CONTENT."""
    return Library(
        name="libcuda-vgpu.so",
        version="1.0.0",
        platform="linux",
        arch="amd64",
        url="https://cdn.example.com/releases/1.0.0/libcuda-vgpu.so",
        sha256=hashlib.sha256(LIBRARY_CONTENT).hexdigest(),
        size=len(LIBRARY_CONTENT),
        type="vgpu-library",
        vendor_slug="nvidia",
        vendor_name="NVIDIA",
    )
