#!/usr/bin/env python3
"""
Archive-based fetcher for vendor GPU diagnostic binaries.

Vendor tools such as nvidia-smi and amdsmi are published as zip archives
per OS/architecture. The registry maps vendor -> OS -> arch to the archive
URL and the binary name; the fetcher downloads the archive, extracts the
binary into the binaries directory and marks it executable.
"""

import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import requests

from concurrency import CancellationToken
from deps_config import ConfigurationError, DepsConfig
from deps_models import DepsError, DownloadCancelledError
from platform_paths import (
    OS_LINUX,
    OS_WINDOWS,
    Paths,
    PlatformDetector,
    is_windows,
    normalize_arch,
    normalize_os,
)


CHUNK_SIZE = 32 * 1024
CONNECT_TIMEOUT = 10

VENDOR_BINARY_NAMES = {
    "nvidia": "nvidia-smi",
    "amd": "amdsmi",
    "hygon": "amdsmi",
}


class GPUBinaryError(DepsError):
    """Fetching or extracting a vendor binary archive failed."""
    pass


@dataclass(frozen=True)
class GPUBinaryInfo:
    """Where to fetch a vendor binary and what it is called."""
    url: str
    binary_name: str


def gpu_binary_name(vendor: str) -> str:
    """Return the diagnostic binary name for ``vendor``, or "" if unknown."""
    return VENDOR_BINARY_NAMES.get(vendor.lower(), "")


class GPUBinaryRegistry:
    """Read-only vendor -> OS -> arch table of GPU binary archives."""

    def __init__(self, entries: Mapping[str, Mapping[str, Mapping[str, GPUBinaryInfo]]]):
        self._entries = MappingProxyType({
            vendor.lower(): MappingProxyType({
                normalize_os(os_name): MappingProxyType({
                    normalize_arch(arch): info for arch, info in arches.items()
                })
                for os_name, arches in platforms.items()
            })
            for vendor, platforms in entries.items()
        })

    def lookup(self, vendor: str, os_name: str, arch: str) -> Optional[GPUBinaryInfo]:
        """
        Find the archive for a vendor and platform.

        Returns:
            The entry, or None if there is none or its URL is empty
        """
        info = (
            self._entries.get(vendor.lower(), {})
            .get(normalize_os(os_name), {})
            .get(normalize_arch(arch))
        )
        if info is None or not info.url:
            return None
        return info

    def vendors(self):
        return list(self._entries)

    @classmethod
    def from_config(cls, data: Mapping[str, Any]) -> "GPUBinaryRegistry":
        """
        Build a registry from the ``gpu_binaries`` configuration section.

        Entries without a ``binary_name`` use the vendor's default name.

        Raises:
            ConfigurationError: If the section does not have the
                vendor -> os -> arch -> {url, binary_name} shape
        """
        entries: Dict[str, Dict[str, Dict[str, GPUBinaryInfo]]] = {}
        for vendor, platforms in data.items():
            if not isinstance(platforms, Mapping):
                raise ConfigurationError(f"gpu_binaries.{vendor} must be a mapping")
            for os_name, arches in platforms.items():
                if not isinstance(arches, Mapping):
                    raise ConfigurationError(f"gpu_binaries.{vendor}.{os_name} must be a mapping")
                for arch, entry in arches.items():
                    if not isinstance(entry, Mapping):
                        raise ConfigurationError(
                            f"gpu_binaries.{vendor}.{os_name}.{arch} must be a mapping"
                        )
                    binary_name = entry.get("binary_name") or gpu_binary_name(vendor)
                    if not binary_name:
                        raise ConfigurationError(
                            f"gpu_binaries.{vendor}.{os_name}.{arch} needs a binary_name"
                        )
                    entries.setdefault(vendor, {}).setdefault(os_name, {})[arch] = GPUBinaryInfo(
                        url=str(entry.get("url") or ""),
                        binary_name=str(binary_name),
                    )
        return cls(entries)


def default_gpu_binary_registry() -> GPUBinaryRegistry:
    """
    Registry of known vendor binaries.

    No archive URLs are published yet, so every lookup misses until a
    ``gpu_binaries`` configuration section provides them.
    """
    return GPUBinaryRegistry({
        "nvidia": {
            OS_LINUX: {
                "amd64": GPUBinaryInfo(url="", binary_name="nvidia-smi"),
                "arm64": GPUBinaryInfo(url="", binary_name="nvidia-smi"),
            },
            OS_WINDOWS: {
                "amd64": GPUBinaryInfo(url="", binary_name="nvidia-smi"),
            },
        },
        "amd": {
            OS_LINUX: {
                "amd64": GPUBinaryInfo(url="", binary_name="amdsmi"),
                "arm64": GPUBinaryInfo(url="", binary_name="amdsmi"),
            },
        },
    })


class GPUBinaryFetcher:
    """Downloads and extracts vendor GPU binaries into the binaries directory."""

    def __init__(self, paths: Paths, registry: Optional[GPUBinaryRegistry] = None,
                 session: Optional[requests.Session] = None, timeout: float = 300):
        """
        Initialize the fetcher.

        Args:
            paths: Directory layout; binaries go to ``paths.bin_dir``
            registry: Archive table; the built-in registry if omitted
            session: HTTP session used for archive downloads
            timeout: Read timeout for archive downloads in seconds
        """
        self.paths = paths
        self.registry = registry or default_gpu_binary_registry()
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logging.getLogger("gpu-binaries")

    @classmethod
    def from_config(cls, config: DepsConfig, paths: Optional[Paths] = None,
                    session: Optional[requests.Session] = None) -> "GPUBinaryFetcher":
        """Build a fetcher from the ``gpu_binaries`` section, or the built-in registry."""
        if config.gpu_binaries:
            registry = GPUBinaryRegistry.from_config(config.gpu_binaries)
        else:
            registry = default_gpu_binary_registry()
        return cls(paths or config.paths(), registry, session=session,
                   timeout=config.download_timeout)

    def binary_path(self, binary_name: str, os_name: Optional[str] = None) -> Path:
        """Target path of a binary, with ".exe" appended for Windows."""
        if is_windows(os_name):
            binary_name += ".exe"
        return self.paths.bin_dir / binary_name

    def ensure(self, vendor: str, os_name: Optional[str] = None, arch: Optional[str] = None,
               cancel_token: Optional[CancellationToken] = None) -> str:
        """
        Make sure the vendor's diagnostic binary is present.

        Args:
            vendor: GPU vendor slug (e.g., "nvidia")
            os_name: Target OS; the current platform if omitted
            arch: Target architecture; the current platform if omitted
            cancel_token: Aborts the archive download when cancelled

        Returns:
            Path to the binary, or "" if no archive is registered for the
            vendor and platform

        Raises:
            GPUBinaryError: If the archive cannot be fetched or extracted
            DownloadCancelledError: If the download was cancelled
        """
        if not os_name or not arch:
            current_os, current_arch = PlatformDetector.detect()
            os_name = os_name or current_os
            arch = arch or current_arch
        os_name = normalize_os(os_name)
        arch = normalize_arch(arch)

        info = self.registry.lookup(vendor, os_name, arch)
        if info is None:
            self.logger.debug(f"No GPU binary registered for {vendor} on {os_name}/{arch}")
            return ""

        target = self.binary_path(info.binary_name, os_name)
        if target.is_file():
            return str(target)

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise GPUBinaryError(f"Failed to create binaries directory: {e}") from e

        fd, archive_name = tempfile.mkstemp(prefix=f"{info.binary_name}-", suffix=".zip")
        os.close(fd)
        archive_path = Path(archive_name)

        self.logger.info(f"Fetching {info.binary_name} for {vendor} from {info.url}")
        try:
            self._download_archive(info.url, archive_path, cancel_token)
            self._extract_first_file(archive_path, target)
        finally:
            archive_path.unlink(missing_ok=True)

        self.logger.info(f"Installed GPU binary: {target}")
        return str(target)

    def _download_archive(self, url: str, archive_path: Path,
                          cancel_token: Optional[CancellationToken]) -> None:
        try:
            response = self.session.get(url, stream=True, timeout=(CONNECT_TIMEOUT, self.timeout))
        except requests.RequestException as e:
            raise GPUBinaryError(f"Failed to download {url}: {e}") from e

        try:
            if response.status_code != requests.codes.ok:
                raise GPUBinaryError(f"Failed to download {url}: status {response.status_code}")

            with open(archive_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel_token is not None and cancel_token.is_cancelled():
                        raise DownloadCancelledError(f"Download of {url} cancelled")
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as e:
            raise GPUBinaryError(f"Failed to read {url}: {e}") from e
        except OSError as e:
            raise GPUBinaryError(f"Failed to write {archive_path}: {e}") from e
        finally:
            response.close()

    def _extract_first_file(self, archive_path: Path, target: Path) -> None:
        """Extract the first regular file of the archive to ``target``."""
        tmp_path = target.with_name(target.name + ".tmp")
        try:
            with zipfile.ZipFile(archive_path) as zf:
                # Vendor archives carry a single binary; extra entries are ignored
                member = next((info for info in zf.infolist() if not info.is_dir()), None)
                if member is None:
                    raise GPUBinaryError(f"No file found in archive {archive_path.name}")

                with zf.open(member) as src, open(tmp_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)

            if not is_windows():
                tmp_path.chmod(0o755)
            os.replace(tmp_path, target)
        except zipfile.BadZipFile as e:
            raise GPUBinaryError(f"Invalid zip archive: {e}") from e
        except OSError as e:
            raise GPUBinaryError(f"Failed to extract {target.name}: {e}") from e
        finally:
            tmp_path.unlink(missing_ok=True)
