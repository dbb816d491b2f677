#!/usr/bin/env python3
"""
Tests for platform detection and the directory layout.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from platform_paths import (
    Paths,
    PlatformDetector,
    default_paths,
    detect_platform_string,
    is_windows,
    normalize_arch,
    normalize_os,
)


class TestNormalization:
    def test_arch_aliases(self):
        assert normalize_arch("x86_64") == "amd64"
        assert normalize_arch("X64") == "amd64"
        assert normalize_arch("aarch64") == "arm64"
        assert normalize_arch("arm64") == "arm64"

    def test_os_aliases(self):
        assert normalize_os("macos") == "darwin"
        assert normalize_os("Linux") == "linux"
        assert normalize_os("Windows") == "windows"

    def test_is_windows(self):
        assert is_windows("windows") is True
        assert is_windows("linux") is False


class TestPlatformDetector:
    @pytest.mark.parametrize("system,machine,expected", [
        ("Linux", "x86_64", ("linux", "amd64")),
        ("Linux", "aarch64", ("linux", "arm64")),
        ("Darwin", "arm64", ("darwin", "arm64")),
        ("Windows", "AMD64", ("windows", "amd64")),
    ])
    def test_detect(self, system, machine, expected):
        with patch("platform_paths.platform.system", return_value=system), \
             patch("platform_paths.platform.machine", return_value=machine):
            assert PlatformDetector.detect() == expected

    def test_unsupported_architecture(self):
        with patch("platform_paths.platform.system", return_value="Linux"), \
             patch("platform_paths.platform.machine", return_value="riscv64"):
            with pytest.raises(ValueError):
                PlatformDetector.detect()

    def test_platform_string(self):
        with patch("platform_paths.PlatformDetector.detect", return_value=("linux", "arm64")):
            assert detect_platform_string() == "linux/arm64"


class TestDefaultPaths:
    def test_user_defaults(self, monkeypatch, temp_dir):
        monkeypatch.delenv("GGO_CONFIG_DIR", raising=False)
        monkeypatch.delenv("GGO_CACHE_DIR", raising=False)

        with patch("platform_paths.Path.home", return_value=temp_dir):
            paths = default_paths()

        assert paths.config_dir == temp_dir / ".gpugo" / "config"
        assert paths.cache_dir == temp_dir / ".gpugo" / "cache"
        assert paths.lib_dir == temp_dir / ".gpugo" / "lib"
        assert paths.bin_dir == temp_dir / ".gpugo" / "cache" / "bin"

    def test_environment_overrides(self, monkeypatch, temp_dir):
        monkeypatch.setenv("GGO_CONFIG_DIR", str(temp_dir / "cfg"))
        monkeypatch.setenv("GGO_CACHE_DIR", str(temp_dir / "cache"))

        paths = default_paths()

        assert paths.config_dir == temp_dir / "cfg"
        assert paths.cache_dir == temp_dir / "cache"

    def test_explicit_wins(self, monkeypatch, temp_dir):
        monkeypatch.setenv("GGO_CACHE_DIR", str(temp_dir / "env-cache"))

        paths = default_paths(cache_dir=str(temp_dir / "explicit"))

        assert paths.cache_dir == temp_dir / "explicit"

    def test_with_overrides(self):
        paths = Paths(Path("/c"), Path("/k"), Path("/l")).with_lib_dir("/opt/lib")

        assert paths.lib_dir == Path("/opt/lib")
        assert paths.cache_dir == Path("/k")
