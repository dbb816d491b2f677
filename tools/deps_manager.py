#!/usr/bin/env python3
"""
Dependency manager for GPU runtime libraries.

This module syncs the release catalog from the ecosystem API, downloads
catalog artifacts into a content-verified cache, installs cached artifacts
into the library directory, and reports which installed artifacts are
out of date.

Downloads stream into a temporary sibling file while hashing; the final
cache path is only ever produced by an atomic rename after the SHA-256
digest matched, so a partial or corrupt artifact is never visible under
its real name.
"""

import hashlib
import logging
import os
import posixpath
import shutil
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

import requests

from concurrency import CancellationToken, ReadWriteLock
from deps_config import DepsConfig
from deps_models import (
    LIBRARY_TYPE_REMOTE_GPU_WORKER,
    DepsError,
    DepsFilesystemError,
    DownloadCancelledError,
    DownloadError,
    DownloadResult,
    DownloadStatus,
    HashMismatchError,
    IntegrityError,
    Library,
    LocalManifest,
    ReleaseManifest,
    UpdateDiff,
    utc_now,
)
from local_state import LocalStateStore
from platform_paths import Paths, PlatformDetector, is_windows, normalize_arch, normalize_os
from releases_client import ReleasesClient


CHUNK_SIZE = 32 * 1024
CONNECT_TIMEOUT = 10

ProgressCallback = Callable[[int, int], None]
BatchProgressCallback = Callable[[Library, int, int], None]


def extract_library_name(url: str) -> str:
    """Return the last path segment of ``url`` (query and fragment dropped)."""
    if not url:
        return ""
    return posixpath.basename(urlsplit(url).path)


def check_library_name(name: str) -> str:
    """
    Ensure ``name`` is a single path component.

    Raises:
        DepsFilesystemError: If the name is empty or would leave its directory
    """
    if name in ("", ".", "..") or Path(name).name != name or "/" in name or "\\" in name:
        raise DepsFilesystemError(f"Invalid library name: {name!r}")
    return name


def calculate_sha256(file_path: Path) -> str:
    """
    Calculate SHA256 hash of a file.

    Args:
        file_path: Path to the file

    Returns:
        Hexadecimal SHA256 hash string
    """
    hash_sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            hash_sha256.update(chunk)
    return hash_sha256.hexdigest()


class DependencyManager:
    """
    Manages the release catalog, artifact cache and installed libraries.

    One reader/writer lock guards the cache directory and the local state
    documents: downloads, installs, syncs and cache cleaning are exclusive,
    listing queries are shared.
    """

    def __init__(self, paths: Optional[Paths] = None,
                 config: Optional[DepsConfig] = None,
                 releases_client: Optional[ReleasesClient] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the dependency manager.

        Args:
            paths: Directory layout; resolved from the config if omitted
            config: Manager settings; defaults if omitted
            releases_client: Upstream release listing client
            session: HTTP session used for artifact downloads
        """
        self.config = config or DepsConfig()
        self.paths = paths or self.config.paths()
        self.session = session or requests.Session()
        self.releases_client = releases_client or ReleasesClient(
            self.config.api_base_url,
            session=self.session,
            timeout=self.config.request_timeout,
        )
        self.state = LocalStateStore(self.paths.config_dir)
        self.logger = logging.getLogger("deps-manager")
        self._lock = ReadWriteLock()

        self.metrics = {
            "downloads": 0,
            "cache_hits": 0,
            "failures": 0,
            "bytes_downloaded": 0,
        }

    # Manifest source

    def sync_releases(self, os_name: str = "", arch: str = "") -> ReleaseManifest:
        """
        Fetch releases from the API and cache them as the release manifest.

        Args:
            os_name: Target OS; the current platform if empty
            arch: Target architecture; the current platform if empty

        Returns:
            The synced catalog

        Raises:
            ReleasesClientError: If the upstream listing fails
            DepsFilesystemError: If the catalog cannot be persisted
        """
        with self._lock.write_locked():
            return self._sync_releases_unsafe(os_name, arch)

    def _sync_releases_unsafe(self, os_name: str, arch: str) -> ReleaseManifest:
        target_os, target_arch = os_name, arch
        if not target_os or not target_arch:
            current_os, current_arch = PlatformDetector.detect()
            target_os = target_os or current_os
            target_arch = target_arch or current_arch
        target_os = normalize_os(target_os)
        target_arch = normalize_arch(target_arch)

        releases = self.releases_client.get_releases("", self.config.release_fetch_size)

        now = utc_now()
        manifest = ReleaseManifest(version=f"api-{int(now.timestamp())}", updated_at=now)

        for release in releases:
            for artifact in release.artifacts:
                artifact_os = normalize_os(artifact.os)
                artifact_arch = normalize_arch(artifact.cpu_arch)
                if artifact_os != target_os or artifact_arch != target_arch:
                    continue

                name = extract_library_name(artifact.url)
                if name in ("", ".", ".."):
                    self.logger.warning(
                        f"Cannot extract library name: vendor={release.vendor.slug} url={artifact.url!r}"
                    )
                    continue

                try:
                    size = int(artifact.metadata.get("size", "0"))
                except ValueError:
                    size = 0

                manifest.libraries.append(Library(
                    name=name,
                    version=release.version,
                    platform=artifact_os,
                    arch=artifact_arch,
                    url=artifact.url,
                    sha256=artifact.sha256,
                    size=size,
                    type=artifact.metadata.get("type", ""),
                    vendor_slug=release.vendor.slug.lower(),
                    vendor_name=release.vendor.name,
                ))

        self.state.save_release_manifest(manifest)
        self.logger.info(
            f"Synced {len(manifest.libraries)} libraries for platform {target_os}/{target_arch}"
        )
        return manifest

    def load_release_manifest(self) -> Optional[ReleaseManifest]:
        """Load the cached catalog, or None if it has never been synced."""
        with self._lock.read_locked():
            return self.state.load_release_manifest()

    def _is_stale(self, manifest: ReleaseManifest) -> bool:
        interval = self.config.auto_sync_interval_hours
        if interval <= 0:
            return False
        if manifest.updated_at is None:
            return True
        return utc_now() - manifest.updated_at > timedelta(hours=interval)

    def fetch_release_manifest(self) -> Tuple[ReleaseManifest, bool]:
        """
        Load the catalog, syncing from the API if missing or outdated.

        A stale catalog is still returned when the sync fails.

        Returns:
            Tuple of (catalog, synced) where synced is True if a network
            refresh happened

        Raises:
            ManifestError: If the cached catalog is malformed
            ReleasesClientError: If no catalog is cached and the sync fails
        """
        manifest = self.load_release_manifest()
        if manifest is not None and not self._is_stale(manifest):
            return manifest, False

        last_sync = "never"
        if manifest is not None and manifest.updated_at is not None:
            last_sync = manifest.updated_at.isoformat()
        self.logger.info(
            f"Release manifest missing or outdated (last sync: {last_sync}), syncing from API..."
        )

        try:
            return self.sync_releases(), True
        except DepsError as e:
            if manifest is None:
                raise
            self.logger.warning(f"Failed to sync releases, using stale manifest: {e}")
            return manifest, False

    def get_libraries_for_platform(self, manifest: ReleaseManifest,
                                   os_name: str = "", arch: str = "",
                                   name: str = "", version: str = "",
                                   lib_type: str = "") -> List[Library]:
        """
        Select catalog artifacts matching the given filters.

        If both os_name and arch are empty the current platform is used;
        any other empty filter matches everything.

        Returns:
            Matching artifacts in catalog order
        """
        if not os_name and not arch:
            os_name, arch = PlatformDetector.detect()
        target_os = normalize_os(os_name) if os_name else ""
        target_arch = normalize_arch(arch) if arch else ""

        result = []
        for lib in manifest.libraries:
            if target_os and lib.platform != target_os:
                continue
            if target_arch and lib.arch != target_arch:
                continue
            if name and lib.name != name:
                continue
            if version and lib.version != version:
                continue
            if lib_type and lib.type != lib_type:
                continue
            result.append(lib)
        return result

    def get_all_libraries(self, manifest: ReleaseManifest) -> List[Library]:
        return list(manifest.libraries)

    # Download engine

    def get_cached_path(self, name: str) -> Path:
        return self.paths.cache_dir / check_library_name(name)

    def verify_library(self, path: Path, expected_hash: str) -> bool:
        """Check that ``path`` exists and matches ``expected_hash``."""
        with self._lock.read_locked():
            return self._verify_library_unsafe(Path(path), expected_hash)

    def _verify_library_unsafe(self, path: Path, expected_hash: str) -> bool:
        if not expected_hash:
            return path.is_file()
        try:
            return calculate_sha256(path) == expected_hash.lower()
        except OSError:
            return False

    def download_library(self, library: Library,
                         progress: Optional[ProgressCallback] = None,
                         cancel_token: Optional[CancellationToken] = None) -> Path:
        """
        Download a library into the cache directory.

        Args:
            library: Catalog artifact to download
            progress: Called with (bytes_downloaded, total_bytes) per chunk
            cancel_token: Aborts the transfer when cancelled

        Returns:
            Path to the verified artifact in the cache

        Raises:
            DownloadError: On request, transport, status or timeout failure
            DownloadCancelledError: If the transfer was cancelled
            HashMismatchError: If the content does not match the digest
            IntegrityError: If no digest is declared and checksums are required
            DepsFilesystemError: If the cache cannot be written
        """
        with self._lock.write_locked():
            path, _ = self._download_library_unsafe(library, progress, cancel_token)
            return path

    def _download_library_unsafe(self, library: Library,
                                 progress: Optional[ProgressCallback],
                                 cancel_token: Optional[CancellationToken]) -> Tuple[Path, bool]:
        """Download into the cache; return (path, fetched) where fetched is False on a cache hit."""
        dest_path = self.get_cached_path(library.name)
        cache_dir = dest_path.parent
        tmp_path = cache_dir / f"{library.name}.tmp"

        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DepsFilesystemError(f"Failed to create cache directory: {e}") from e

        if library.sha256:
            if dest_path.is_file() and self._verify_library_unsafe(dest_path, library.sha256):
                self._record_cache_hit(library, dest_path)
                return dest_path, False
        else:
            if self.config.require_checksums:
                raise IntegrityError(
                    f"No SHA-256 declared for {library.name}, refusing unverified download"
                )
            recorded = self.state.load_downloaded().get(library.name)
            if recorded is not None and recorded.version == library.version and dest_path.is_file():
                self._record_cache_hit(library, dest_path)
                return dest_path, False
            self.logger.warning(f"No SHA-256 declared for {library.name}, content will not be verified")

        if cancel_token is not None and cancel_token.is_cancelled():
            raise DownloadCancelledError(f"Download of {library.name} cancelled")

        self.logger.info(f"Downloading {library.name} {library.version} from {library.url}")

        try:
            response = self.session.get(
                library.url,
                stream=True,
                timeout=(CONNECT_TIMEOUT, self.config.request_timeout),
            )
        except (requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as e:
            self.metrics["failures"] += 1
            raise DownloadError(f"Failed to create request for {library.name}: {e}") from e
        except requests.RequestException as e:
            self.metrics["failures"] += 1
            raise DownloadError(f"Failed to download {library.name}: {e}") from e

        committed = False
        try:
            if response.status_code != requests.codes.ok:
                raise DownloadError(
                    f"Failed to download {library.name}: status {response.status_code}"
                )

            actual_hash, downloaded_bytes = self._stream_to_file(
                response, tmp_path, library, progress, cancel_token
            )

            if library.sha256 and actual_hash != library.sha256.lower():
                raise HashMismatchError(library.name, library.sha256, actual_hash)

            try:
                os.replace(tmp_path, dest_path)
            except OSError as e:
                raise DepsFilesystemError(f"Failed to move {tmp_path} to {dest_path}: {e}") from e
            committed = True
        except DepsError:
            self.metrics["failures"] += 1
            raise
        finally:
            response.close()
            if not committed:
                tmp_path.unlink(missing_ok=True)

        self.metrics["downloads"] += 1
        self.metrics["bytes_downloaded"] += downloaded_bytes

        if library.size == 0:
            library = library.with_size(downloaded_bytes)
        self._record_downloaded(library)

        self.logger.info(f"Successfully downloaded and verified: {dest_path}")
        return dest_path, True

    def _record_downloaded(self, library: Library) -> None:
        try:
            self.state.record_downloaded(library)
        except DepsFilesystemError as e:
            self.logger.warning(f"Failed to update downloaded manifest: {e}")

    def _record_cache_hit(self, library: Library, path: Path) -> None:
        """Bring the downloaded manifest in line with a verified cached file."""
        self.logger.info(f"Already downloaded: {library.name} {library.version}")
        self.metrics["cache_hits"] += 1

        recorded = self.state.load_downloaded().get(library.name)
        if recorded is not None and recorded.version == library.version and recorded.sha256 == library.sha256:
            return

        if library.size == 0:
            library = library.with_size(path.stat().st_size)
        self._record_downloaded(library)

    def _stream_to_file(self, response, tmp_path: Path, library: Library,
                        progress: Optional[ProgressCallback],
                        cancel_token: Optional[CancellationToken]) -> Tuple[str, int]:
        """Write the response body to ``tmp_path``; return (sha256, byte count)."""
        hasher = hashlib.sha256()
        downloaded = 0
        deadline = time.monotonic() + self.config.download_timeout

        try:
            with open(tmp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel_token is not None and cancel_token.is_cancelled():
                        raise DownloadCancelledError(f"Download of {library.name} cancelled")
                    if time.monotonic() > deadline:
                        raise DownloadError(
                            f"Download of {library.name} timed out after {self.config.download_timeout:.0f}s"
                        )
                    if not chunk:
                        continue

                    f.write(chunk)
                    hasher.update(chunk)
                    downloaded += len(chunk)
                    if progress is not None:
                        progress(downloaded, library.size)
        except requests.RequestException as e:
            raise DownloadError(f"Failed to read response for {library.name}: {e}") from e
        except OSError as e:
            raise DepsFilesystemError(f"Failed to write {tmp_path}: {e}") from e

        return hasher.hexdigest(), downloaded

    def download_all(self, libraries: Iterable[Library],
                     progress: Optional[BatchProgressCallback] = None,
                     cancel_token: Optional[CancellationToken] = None) -> List[DownloadResult]:
        """
        Download several libraries one at a time.

        A failing library is recorded and the batch continues; only
        cancellation aborts the whole batch.

        Args:
            libraries: Artifacts to download
            progress: Called with (library, bytes_downloaded, total_bytes)
            cancel_token: Aborts the batch when cancelled

        Returns:
            One result per library, in input order
        """
        results = []

        with self._lock.write_locked():
            downloaded = self.state.load_downloaded()

            for lib in libraries:
                lib_progress = None
                if progress is not None:
                    lib_progress = lambda d, t, lib=lib: progress(lib, d, t)

                try:
                    recorded = downloaded.get(lib.name)
                    file_exists = self.get_cached_path(lib.name).is_file()

                    if recorded is not None and recorded.version == lib.version and file_exists:
                        results.append(DownloadResult(library=lib, status=DownloadStatus.EXISTING))
                        continue

                    _, fetched = self._download_library_unsafe(lib, lib_progress, cancel_token)
                except DownloadCancelledError:
                    raise
                except DepsError as e:
                    self.logger.error(f"Failed to download library: name={lib.name} error={e}")
                    results.append(DownloadResult(library=lib, status=DownloadStatus.FAILED, error=str(e)))
                    continue

                if not fetched:
                    status = DownloadStatus.EXISTING
                elif recorded is not None and file_exists:
                    status = DownloadStatus.UPDATED
                else:
                    status = DownloadStatus.NEW
                results.append(DownloadResult(library=lib, status=status))

        succeeded = len([r for r in results if r.success])
        self.logger.info(f"Download completed: {succeeded} successful, {len(results) - succeeded} failed")
        return results

    # Type-driven selection

    def select_required_libraries(self, manifest: ReleaseManifest) -> List[Library]:
        """
        Select the latest version of every library type for the current platform.

        All artifacts published under that version are kept, so a type that
        ships several files comes back complete. Untyped artifacts are skipped.

        Returns:
            Selected artifacts in catalog order
        """
        by_type: Dict[str, List[Library]] = {}
        for lib in self.get_libraries_for_platform(manifest):
            if lib.type:
                by_type.setdefault(lib.type, []).append(lib)

        selected = set()
        for lib_type, libs in by_type.items():
            # Plain string ordering, as published versions are semver-like
            latest = max(lib.version for lib in libs)
            chosen = [lib for lib in libs if lib.version == latest]
            self.logger.debug(f"Selected {lib_type} {latest} ({len(chosen)} artifacts)")
            selected.update((lib.key(), lib.version) for lib in chosen)

        return [lib for lib in manifest.libraries if (lib.key(), lib.version) in selected]

    def ensure_library_by_type(self, lib_type: str, vendor_slug: str = "",
                               progress: Optional[ProgressCallback] = None,
                               cancel_token: Optional[CancellationToken] = None) -> Path:
        """
        Make sure a library of ``lib_type`` from the latest release is in the cache.

        Args:
            lib_type: Library type (e.g., "remote-gpu-worker")
            vendor_slug: Optional vendor filter

        Returns:
            Path to the cached library

        Raises:
            DepsError: If no such library is in the catalog or download fails
        """
        manifest, _ = self.fetch_release_manifest()
        candidates = [
            lib for lib in self.select_required_libraries(manifest)
            if lib.type == lib_type and (not vendor_slug or lib.vendor_slug == vendor_slug.lower())
        ]
        if not candidates:
            raise DepsError(f"Library of type {lib_type} (vendor: {vendor_slug}) not found in releases")

        return self.download_library(candidates[0], progress, cancel_token)

    def ensure_libraries_by_types(self, lib_types: Iterable[str],
                                  progress: Optional[BatchProgressCallback] = None,
                                  cancel_token: Optional[CancellationToken] = None) -> List[Library]:
        """
        Make sure every selected artifact of the given types is in the cache.

        Artifacts are downloaded when the downloaded manifest has no entry or
        another version for them, or when the cached file is missing or does
        not match its digest.

        Args:
            lib_types: Library types to ensure
            progress: Called with (library, bytes_downloaded, total_bytes)
            cancel_token: Aborts the downloads when cancelled

        Returns:
            All selected artifacts of the requested types

        Raises:
            DepsError: If the catalog cannot be fetched or any download fails
        """
        wanted = set(lib_types)
        manifest, _ = self.fetch_release_manifest()
        targets = [lib for lib in self.select_required_libraries(manifest) if lib.type in wanted]
        if not targets:
            self.logger.warning(f"No libraries found for types: {sorted(wanted)}")
            return []

        with self._lock.write_locked():
            downloaded = self.state.load_downloaded()

            for lib in targets:
                recorded = downloaded.get(lib.name)
                path = self.get_cached_path(lib.name)
                if (recorded is not None and recorded.version == lib.version and path.is_file()
                        and self._verify_library_unsafe(path, lib.sha256)):
                    continue

                lib_progress = None
                if progress is not None:
                    lib_progress = lambda d, t, lib=lib: progress(lib, d, t)

                self.logger.info(f"Downloading library: name={lib.name} version={lib.version} type={lib.type}")
                self._download_library_unsafe(lib, lib_progress, cancel_token)

        return targets

    def get_remote_gpu_worker_path(self) -> Path:
        """Path to the cached remote GPU worker binary, downloading it if needed."""
        return self.ensure_library_by_type(LIBRARY_TYPE_REMOTE_GPU_WORKER)

    # Installer

    def get_library_path(self, name: str) -> Path:
        """Path of an installed library in the library directory."""
        return self.paths.lib_dir / check_library_name(name)

    def install_library(self, library: Library) -> Path:
        """
        Copy a cached library into the library directory and record it.

        Args:
            library: Artifact previously fetched with download_library

        Returns:
            Path to the installed library

        Raises:
            DepsFilesystemError: If the cached file is missing or the copy fails
            IntegrityError: If the cached file no longer matches its digest
        """
        with self._lock.write_locked():
            src_path = self.get_cached_path(library.name)
            if not src_path.is_file():
                raise DepsFilesystemError(
                    f"{library.name} is not in the cache ({src_path}), download it first"
                )
            if library.sha256 and not self._verify_library_unsafe(src_path, library.sha256):
                raise IntegrityError(f"Cached copy of {library.name} does not match its SHA-256")

            dest_path = self.get_library_path(library.name)
            lib_dir = dest_path.parent
            tmp_path = lib_dir / f"{library.name}.tmp"

            try:
                lib_dir.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src_path, tmp_path)
                if not is_windows():
                    tmp_path.chmod(0o755)
                os.replace(tmp_path, dest_path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise DepsFilesystemError(f"Failed to install {library.name}: {e}") from e

            self.state.record_installed(library)
            self.logger.info(f"Installed {library.name} {library.version} to {dest_path}")
            return dest_path

    def get_installed_libraries(self) -> LocalManifest:
        with self._lock.read_locked():
            return self.state.load_installed()

    def get_downloaded_libraries(self) -> LocalManifest:
        with self._lock.read_locked():
            return self.state.load_downloaded()

    # Update checker

    def compute_update_diff(self, manifest: ReleaseManifest) -> UpdateDiff:
        """Compare current-platform catalog artifacts with installed ones."""
        installed = self.get_installed_libraries()
        diff = UpdateDiff()

        for lib in self.get_libraries_for_platform(manifest):
            local = installed.get(lib.name)
            if local is None or local.version != lib.version:
                diff.to_download.append(lib)
            else:
                diff.up_to_date.append(lib)

        return diff

    def check_updates(self) -> List[Library]:
        """
        Return catalog artifacts that are not installed or whose version differs.

        Raises:
            ManifestError: If the cached catalog is malformed
            ReleasesClientError: If the catalog must be synced and that fails
        """
        manifest, _ = self.fetch_release_manifest()
        return self.compute_update_diff(manifest).to_download

    # Cache cleaner

    def clean_cache(self) -> None:
        """
        Remove everything under the cache directory.

        A missing cache directory counts as already clean. The downloaded
        manifest describes the cache contents and is removed as well.

        Raises:
            DepsFilesystemError: If an entry cannot be removed
        """
        with self._lock.write_locked():
            cache_dir = self.paths.cache_dir
            if not cache_dir.exists():
                return

            try:
                for entry in cache_dir.iterdir():
                    if entry.is_dir() and not entry.is_symlink():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
            except OSError as e:
                raise DepsFilesystemError(f"Failed to clean cache: {e}") from e

            self.state.remove_downloaded()
            self.logger.info(f"Cleaned cache directory {cache_dir}")
