#!/usr/bin/env python3
"""
Data models and errors for GPU dependency management.

This module defines the artifact, catalog and local manifest records that
are persisted as JSON, the download result types reported to callers, and
the exception hierarchy shared by the dependency manager and the GPU
binary fetcher.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# Library type constants
LIBRARY_TYPE_VGPU_LIBRARY = "vgpu-library"
LIBRARY_TYPE_REMOTE_GPU_WORKER = "remote-gpu-worker"
LIBRARY_TYPE_REMOTE_GPU_CLIENT = "remote-gpu-client"


class DepsError(Exception):
    """Base exception for dependency management operations."""
    pass


class DownloadError(DepsError):
    """Artifact transfer failed (request, connection, status or timeout)."""
    pass


class DownloadCancelledError(DownloadError):
    """Artifact transfer was cancelled by the caller."""
    pass


class IntegrityError(DepsError):
    """Artifact content could not be verified."""
    pass


class HashMismatchError(IntegrityError):
    """Downloaded bytes do not match the declared SHA-256 digest."""

    def __init__(self, name: str, expected: str, actual: str):
        super().__init__(
            f"Hash mismatch for {name}: expected {expected}, got {actual}"
        )
        self.name = name
        self.expected = expected
        self.actual = actual


class ManifestError(DepsError):
    """A cached catalog could not be read or decoded."""
    pass


class DepsFilesystemError(DepsError):
    """A cache, install or config path could not be written."""
    pass


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as ISO 8601."""
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO 8601 / RFC 3339 timestamp.

    Accepts a trailing "Z" and fractional seconds longer than microseconds.

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    # Trim sub-microsecond precision, fromisoformat only takes 6 digits
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Library:
    """A downloadable binary artifact for one platform/architecture."""
    name: str
    version: str
    platform: str
    arch: str
    url: str
    sha256: str = ""
    size: int = 0
    type: str = ""
    vendor_slug: str = ""
    vendor_name: str = ""

    def key(self) -> str:
        """Unique identifier of the artifact (version is not part of it)."""
        return f"{self.name}:{self.platform}:{self.arch}"

    def with_size(self, size: int) -> "Library":
        return replace(self, size=size)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "version": self.version,
            "platform": self.platform,
            "arch": self.arch,
            "url": self.url,
            "sha256": self.sha256,
            "size": self.size,
        }
        if self.type:
            data["type"] = self.type
        if self.vendor_slug:
            data["vendorSlug"] = self.vendor_slug
        if self.vendor_name:
            data["vendorName"] = self.vendor_name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Library":
        """
        Build a Library from its JSON form.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError(f"Library entry must be an object, got {type(data).__name__}")

        missing = [k for k in ("name", "version", "platform", "arch", "url") if k not in data]
        if missing:
            raise ValueError(f"Library entry missing fields: {', '.join(missing)}")

        try:
            size = int(data.get("size") or 0)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid size for {data['name']}: {data.get('size')!r}") from e

        return cls(
            name=str(data["name"]),
            version=str(data["version"]),
            platform=str(data["platform"]),
            arch=str(data["arch"]),
            url=str(data["url"]),
            sha256=str(data.get("sha256") or ""),
            size=size,
            type=str(data.get("type") or ""),
            vendor_slug=str(data.get("vendorSlug") or ""),
            vendor_name=str(data.get("vendorName") or ""),
        )


@dataclass
class ReleaseManifest:
    """Catalog of available artifacts."""
    version: str
    updated_at: Optional[datetime] = None
    libraries: List[Library] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "updated_at": format_timestamp(self.updated_at),
            "libraries": [lib.to_dict() for lib in self.libraries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseManifest":
        """
        Build a catalog from its JSON form.

        Raises:
            ValueError: If the document does not have the catalog shape
        """
        if not isinstance(data, dict):
            raise ValueError("Release manifest must be a JSON object")

        libraries = data.get("libraries") or []
        if not isinstance(libraries, list):
            raise ValueError("Release manifest 'libraries' must be a list")

        return cls(
            version=str(data.get("version", "")),
            updated_at=parse_timestamp(data.get("updated_at")),
            libraries=[Library.from_dict(item) for item in libraries],
        )


@dataclass
class LocalManifest:
    """Installed or downloaded artifacts, keyed by artifact name."""
    installed_at: Optional[datetime] = None
    libraries: Dict[str, Library] = field(default_factory=dict)

    def upsert(self, library: Library) -> None:
        self.libraries[library.name] = library
        self.installed_at = utc_now()

    def get(self, name: str) -> Optional[Library]:
        return self.libraries.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installed_at": format_timestamp(self.installed_at),
            "libraries": {name: lib.to_dict() for name, lib in self.libraries.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalManifest":
        if not isinstance(data, dict):
            raise ValueError("Local manifest must be a JSON object")

        libraries = data.get("libraries") or {}
        if not isinstance(libraries, dict):
            raise ValueError("Local manifest 'libraries' must be an object")

        return cls(
            installed_at=parse_timestamp(data.get("installed_at")),
            libraries={name: Library.from_dict(item) for name, item in libraries.items()},
        )


class DownloadStatus(str, Enum):
    """Outcome of one artifact in a batch download."""
    NEW = "new"
    UPDATED = "updated"
    EXISTING = "existing"
    FAILED = "failed"


@dataclass
class DownloadResult:
    """Result of downloading one artifact in a batch."""
    library: Library
    status: DownloadStatus
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status != DownloadStatus.FAILED


@dataclass
class UpdateDiff:
    """Difference between the catalog and the installed manifest."""
    to_download: List[Library] = field(default_factory=list)
    up_to_date: List[Library] = field(default_factory=list)
