#!/usr/bin/env python3
"""
Tests for the GPU binary registry and archive-based fetcher.
"""

import io
import os
import stat
import sys
import zipfile

import pytest
import requests

from concurrency import CancellationToken
from deps_config import ConfigurationError, DepsConfig
from deps_models import DownloadCancelledError
from gpu_binaries import (
    GPUBinaryError,
    GPUBinaryFetcher,
    GPUBinaryInfo,
    GPUBinaryRegistry,
    default_gpu_binary_registry,
    gpu_binary_name,
)


ARCHIVE_URL = "https://cdn.example.com/tools/nvidia-smi-linux-amd64.zip"


def build_zip(entries):
    """Build zip bytes from (name, content) pairs, in order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in entries:
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def registry():
    return GPUBinaryRegistry({
        "nvidia": {
            "linux": {"amd64": GPUBinaryInfo(url=ARCHIVE_URL, binary_name="nvidia-smi")},
            "windows": {"amd64": GPUBinaryInfo(url=ARCHIVE_URL, binary_name="nvidia-smi")},
        },
    })


@pytest.fixture
def fetcher(paths, registry, session):
    return GPUBinaryFetcher(paths, registry, session=session)


class TestGPUBinaryName:
    def test_known_vendors(self):
        assert gpu_binary_name("nvidia") == "nvidia-smi"
        assert gpu_binary_name("AMD") == "amdsmi"
        assert gpu_binary_name("hygon") == "amdsmi"

    def test_unknown_vendor(self):
        assert gpu_binary_name("intel") == ""


class TestGPUBinaryRegistry:
    """Test registry lookup and construction."""

    def test_lookup_normalizes_aliases(self, registry):
        info = registry.lookup("NVIDIA", "Linux", "x86_64")

        assert info == GPUBinaryInfo(url=ARCHIVE_URL, binary_name="nvidia-smi")

    def test_lookup_miss(self, registry):
        assert registry.lookup("nvidia", "linux", "arm64") is None
        assert registry.lookup("amd", "linux", "amd64") is None

    def test_default_registry_has_no_urls(self):
        registry = default_gpu_binary_registry()

        assert set(registry.vendors()) == {"nvidia", "amd"}
        assert registry.lookup("nvidia", "linux", "amd64") is None
        assert registry.lookup("amd", "linux", "arm64") is None

    def test_from_config(self):
        registry = GPUBinaryRegistry.from_config({
            "amd": {"linux": {"x64": {"url": "https://cdn.example.com/amdsmi.zip"}}},
        })

        info = registry.lookup("amd", "linux", "amd64")
        assert info.binary_name == "amdsmi"
        assert info.url == "https://cdn.example.com/amdsmi.zip"

    def test_from_config_invalid_shape(self):
        with pytest.raises(ConfigurationError):
            GPUBinaryRegistry.from_config({"nvidia": {"linux": ["amd64"]}})

    def test_from_config_unknown_vendor_needs_name(self):
        with pytest.raises(ConfigurationError):
            GPUBinaryRegistry.from_config({"intel": {"linux": {"amd64": {"url": "https://x/y.zip"}}}})

    def test_registry_is_read_only(self, registry):
        with pytest.raises(TypeError):
            registry._entries["intel"] = {}


class TestGPUBinaryFetcher:
    """Test downloading and extracting vendor binaries."""

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_extracts_first_file(self, fetcher, session, make_response, paths):
        archive = build_zip([
            ("bin/", ""),
            ("bin/nvidia-smi", b"#!/bin/sh\necho gpu\n"),
            ("README", b"docs"),
        ])
        session.get.return_value = make_response(chunks=[archive])

        result = fetcher.ensure("nvidia", "linux", "amd64")

        target = paths.bin_dir / "nvidia-smi"
        assert result == str(target)
        assert target.read_bytes() == b"#!/bin/sh\necho gpu\n"
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o755
        assert not (paths.bin_dir / "nvidia-smi.tmp").exists()
        assert session.get.call_args[0][0] == ARCHIVE_URL

    def test_extracted_file_takes_binary_name(self, fetcher, session, make_response, paths):
        session.get.return_value = make_response(
            chunks=[build_zip([("dist/", ""), ("dist/payload.bin", b"\x7fELF-smi")])]
        )

        result = fetcher.ensure("nvidia", "linux", "amd64")

        assert result == str(paths.bin_dir / "nvidia-smi")
        assert (paths.bin_dir / "nvidia-smi").read_bytes() == b"\x7fELF-smi"
        assert not (paths.bin_dir / "payload.bin").exists()
        assert not (paths.bin_dir / "dist").exists()

    def test_existing_binary_skips_network(self, fetcher, session, paths):
        paths.bin_dir.mkdir(parents=True)
        (paths.bin_dir / "nvidia-smi").write_bytes(b"existing")

        result = fetcher.ensure("nvidia", "linux", "amd64")

        assert result == str(paths.bin_dir / "nvidia-smi")
        session.get.assert_not_called()

    def test_windows_target_name(self, fetcher, session, make_response, paths):
        session.get.return_value = make_response(chunks=[build_zip([("nvidia-smi.exe", b"MZ")])])

        result = fetcher.ensure("nvidia", "windows", "amd64")

        assert result == str(paths.bin_dir / "nvidia-smi.exe")
        assert (paths.bin_dir / "nvidia-smi.exe").read_bytes() == b"MZ"

    def test_no_entry_returns_empty(self, fetcher, session):
        assert fetcher.ensure("amd", "linux", "amd64") == ""
        session.get.assert_not_called()

    def test_default_registry_returns_empty(self, paths, session):
        fetcher = GPUBinaryFetcher(paths, session=session)

        assert fetcher.ensure("nvidia", "linux", "amd64") == ""
        session.get.assert_not_called()

    def test_bad_archive(self, fetcher, session, make_response, paths):
        session.get.return_value = make_response(chunks=[b"this is not a zip"])

        with pytest.raises(GPUBinaryError):
            fetcher.ensure("nvidia", "linux", "amd64")

        assert not (paths.bin_dir / "nvidia-smi").exists()
        assert not (paths.bin_dir / "nvidia-smi.tmp").exists()

    def test_archive_without_files(self, fetcher, session, make_response, paths):
        session.get.return_value = make_response(chunks=[build_zip([("bin/", "")])])

        with pytest.raises(GPUBinaryError) as exc_info:
            fetcher.ensure("nvidia", "linux", "amd64")

        assert "No file found" in str(exc_info.value)
        assert not (paths.bin_dir / "nvidia-smi").exists()

    def test_http_error(self, fetcher, session, make_response, paths):
        response = make_response(status_code=403)
        session.get.return_value = response

        with pytest.raises(GPUBinaryError) as exc_info:
            fetcher.ensure("nvidia", "linux", "amd64")

        assert "403" in str(exc_info.value)
        response.close.assert_called_once()
        assert not (paths.bin_dir / "nvidia-smi").exists()

    def test_transport_error(self, fetcher, session):
        session.get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(GPUBinaryError):
            fetcher.ensure("nvidia", "linux", "amd64")

    def test_cancellation(self, fetcher, session, make_response, paths):
        token = CancellationToken()
        token.cancel()
        session.get.return_value = make_response(chunks=[build_zip([("nvidia-smi", b"x")])])

        with pytest.raises(DownloadCancelledError):
            fetcher.ensure("nvidia", "linux", "amd64", cancel_token=token)

        assert not (paths.bin_dir / "nvidia-smi").exists()

    def test_from_config(self, paths, session):
        config = DepsConfig(download_timeout=60, gpu_binaries={
            "nvidia": {"linux": {"amd64": {"url": ARCHIVE_URL}}},
        })

        fetcher = GPUBinaryFetcher.from_config(config, paths=paths, session=session)

        assert fetcher.timeout == 60
        assert fetcher.registry.lookup("nvidia", "linux", "amd64").binary_name == "nvidia-smi"

    def test_binary_path(self, fetcher, paths):
        assert fetcher.binary_path("amdsmi", "linux") == paths.bin_dir / "amdsmi"
        assert fetcher.binary_path("nvidia-smi", "windows") == paths.bin_dir / "nvidia-smi.exe"
