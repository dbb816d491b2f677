#!/usr/bin/env python3
"""
Platform detection and directory layout for GPU dependency management.

This module resolves the current OS/architecture pair using the naming the
release catalog uses ("linux"/"darwin"/"windows", "amd64"/"arm64") and
provides the cache, library and config directories the dependency manager
operates on.
"""

import os
import platform
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Tuple


OS_WINDOWS = "windows"
OS_DARWIN = "darwin"
OS_LINUX = "linux"

ARCH_ALIASES = {
    "x86_64": "amd64",
    "x64": "amd64",
    "aarch64": "arm64",
}

OS_ALIASES = {
    "macos": OS_DARWIN,
    "win32": OS_WINDOWS,
}


def normalize_arch(arch: str) -> str:
    """Map architecture aliases onto the catalog naming (amd64, arm64)."""
    arch = arch.lower()
    return ARCH_ALIASES.get(arch, arch)


def normalize_os(os_name: str) -> str:
    """Map OS aliases onto the catalog naming (linux, darwin, windows)."""
    os_name = os_name.lower()
    return OS_ALIASES.get(os_name, os_name)


class PlatformDetector:
    """Handles robust platform detection across different environments."""

    @staticmethod
    def detect() -> Tuple[str, str]:
        """
        Detects the current platform and architecture.

        Returns:
            Tuple of (os, arch) where:
            - os: "linux", "darwin", or "windows"
            - arch: "amd64" or "arm64"

        Raises:
            ValueError: If the OS or architecture is not supported
        """
        system = normalize_os(platform.system())
        if system not in (OS_LINUX, OS_DARWIN, OS_WINDOWS):
            raise ValueError(f"Unsupported operating system: {system}")

        machine = normalize_arch(platform.machine())
        if machine not in ("amd64", "arm64"):
            raise ValueError(f"Unsupported architecture: {machine}")

        return system, machine


def detect_platform_string() -> str:
    """
    Detect the current platform and return as a standard string.

    Returns:
        Platform string like "linux/amd64", "darwin/arm64", etc.
    """
    os_name, arch = PlatformDetector.detect()
    return f"{os_name}/{arch}"


def is_windows(os_name: Optional[str] = None) -> bool:
    """Return True if ``os_name`` (or the running OS) is Windows."""
    if os_name is None:
        os_name = platform.system()
    return normalize_os(os_name) == OS_WINDOWS


def _default_user_dir() -> Path:
    try:
        return Path.home() / ".gpugo"
    except RuntimeError:
        if is_windows():
            return Path(r"C:\Users\Default\.gpugo")
        return Path("/tmp/.gpugo")


@dataclass(frozen=True)
class Paths:
    """Directories used by the dependency manager."""
    config_dir: Path
    cache_dir: Path
    lib_dir: Path

    @property
    def bin_dir(self) -> Path:
        """Directory holding extracted vendor diagnostic binaries."""
        return self.cache_dir / "bin"

    def with_config_dir(self, config_dir) -> "Paths":
        return replace(self, config_dir=Path(config_dir))

    def with_cache_dir(self, cache_dir) -> "Paths":
        return replace(self, cache_dir=Path(cache_dir))

    def with_lib_dir(self, lib_dir) -> "Paths":
        return replace(self, lib_dir=Path(lib_dir))


def default_paths(config_dir: Optional[str] = None,
                  cache_dir: Optional[str] = None,
                  lib_dir: Optional[str] = None) -> Paths:
    """
    Build the default directory layout (~/.gpugo/{config,cache,lib}).

    Explicit arguments win over the GGO_CONFIG_DIR / GGO_CACHE_DIR
    environment variables, which win over the user directory defaults.

    Args:
        config_dir: Override for the config directory
        cache_dir: Override for the cache directory
        lib_dir: Override for the library install directory

    Returns:
        Resolved Paths
    """
    user_dir = _default_user_dir()

    resolved_config = config_dir or os.environ.get("GGO_CONFIG_DIR") or user_dir / "config"
    resolved_cache = cache_dir or os.environ.get("GGO_CACHE_DIR") or user_dir / "cache"
    resolved_lib = lib_dir or user_dir / "lib"

    return Paths(
        config_dir=Path(resolved_config).expanduser(),
        cache_dir=Path(resolved_cache).expanduser(),
        lib_dir=Path(resolved_lib).expanduser(),
    )
