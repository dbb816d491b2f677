#!/usr/bin/env python3
"""
Local state store for GPU dependency management.

Three JSON documents live in the config directory:

- releases-manifest.json: the cached catalog synced from the release API
- installed-manifest.json: artifacts copied into the library directory
- downloaded-manifest.json: artifacts verified and committed to the cache

Every write rewrites the whole document through a temporary file and an
atomic rename. Read-merge-write updates of the local manifests hold a file
lock so that two processes cannot interleave their updates.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from filelock import FileLock, Timeout

from deps_models import (
    DepsFilesystemError,
    Library,
    LocalManifest,
    ManifestError,
    ReleaseManifest,
)


RELEASE_MANIFEST_FILE = "releases-manifest.json"
INSTALLED_MANIFEST_FILE = "installed-manifest.json"
DOWNLOADED_MANIFEST_FILE = "downloaded-manifest.json"

MANIFEST_LOCK_TIMEOUT = 30.0


class LocalStateStore:
    """Reads and writes the manifest documents under a config directory."""

    def __init__(self, config_dir: Union[str, Path]):
        """
        Initialize the state store.

        Args:
            config_dir: Directory holding the manifest documents
        """
        self.config_dir = Path(config_dir)
        self.logger = logging.getLogger("local-state")

    @property
    def release_manifest_path(self) -> Path:
        return self.config_dir / RELEASE_MANIFEST_FILE

    @property
    def installed_manifest_path(self) -> Path:
        return self.config_dir / INSTALLED_MANIFEST_FILE

    @property
    def downloaded_manifest_path(self) -> Path:
        return self.config_dir / DOWNLOADED_MANIFEST_FILE

    def _write_json(self, path: Path, data: dict) -> None:
        """Atomically replace ``path`` with ``data`` encoded as indented JSON."""
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise DepsFilesystemError(f"Failed to write {path}: {e}") from e

    def _lock_for(self, path: Path) -> FileLock:
        return FileLock(str(path.with_name(path.name + ".lock")), timeout=MANIFEST_LOCK_TIMEOUT)

    # Release manifest (catalog)

    def load_release_manifest(self) -> Optional[ReleaseManifest]:
        """
        Load the cached catalog.

        Returns:
            The catalog, or None if nothing has been cached yet

        Raises:
            ManifestError: If the cached document cannot be read or decoded
        """
        path = self.release_manifest_path
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ManifestError(f"Failed to read release manifest: {e}") from e
        except ValueError as e:
            raise ManifestError(f"Failed to decode release manifest: {e}") from e

        try:
            return ReleaseManifest.from_dict(data)
        except ValueError as e:
            raise ManifestError(f"Failed to decode release manifest: {e}") from e

    def save_release_manifest(self, manifest: ReleaseManifest) -> None:
        self._write_json(self.release_manifest_path, manifest.to_dict())

    # Installed / downloaded manifests

    def _load_local_manifest(self, path: Path) -> LocalManifest:
        """Load a local manifest; absent or malformed documents are empty."""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return LocalManifest.from_dict(data)
        except FileNotFoundError:
            return LocalManifest()
        except (OSError, ValueError) as e:
            self.logger.warning(f"Ignoring unreadable manifest {path}: {e}")
            return LocalManifest()

    def _upsert(self, path: Path, library: Library) -> LocalManifest:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DepsFilesystemError(f"Failed to create config directory: {e}") from e

        try:
            with self._lock_for(path):
                manifest = self._load_local_manifest(path)
                manifest.upsert(library)
                self._write_json(path, manifest.to_dict())
        except Timeout as e:
            raise DepsFilesystemError(f"Timed out waiting for lock on {path}") from e
        return manifest

    def load_installed(self) -> LocalManifest:
        return self._load_local_manifest(self.installed_manifest_path)

    def load_downloaded(self) -> LocalManifest:
        return self._load_local_manifest(self.downloaded_manifest_path)

    def record_installed(self, library: Library) -> LocalManifest:
        """Upsert ``library`` into the installed manifest, keyed by name."""
        return self._upsert(self.installed_manifest_path, library)

    def record_downloaded(self, library: Library) -> LocalManifest:
        """Upsert ``library`` into the downloaded manifest, keyed by name."""
        return self._upsert(self.downloaded_manifest_path, library)

    def remove_downloaded(self) -> None:
        """Delete the downloaded manifest; a missing document is fine."""
        try:
            self.downloaded_manifest_path.unlink(missing_ok=True)
        except OSError as e:
            raise DepsFilesystemError(f"Failed to remove downloaded manifest: {e}") from e
