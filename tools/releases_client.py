#!/usr/bin/env python3
"""
Client for the upstream release listing.

The ecosystem API publishes vendor middleware releases; each release
carries one artifact per OS/architecture target. Only the listing call
is needed by the dependency manager.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from deps_models import DepsError


RELEASES_ENDPOINT = "/api/ecosystem/releases"


class ReleasesClientError(DepsError):
    """Fetching or decoding the release listing failed."""
    pass


@dataclass
class VendorInfo:
    """Vendor of a release."""
    slug: str
    name: str


@dataclass
class ReleaseArtifact:
    """A downloadable artifact of a release for one target."""
    cpu_arch: str
    os: str
    url: str
    sha256: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ReleaseInfo:
    """A vendor middleware release."""
    id: str
    vendor: VendorInfo
    version: str
    artifacts: List[ReleaseArtifact] = field(default_factory=list)
    release_type: str = ""
    is_latest: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseInfo":
        vendor = data.get("vendor") or {}
        artifacts = []
        for item in data.get("artifacts") or []:
            metadata = item.get("metadata") or {}
            artifacts.append(ReleaseArtifact(
                cpu_arch=str(item.get("cpuArch", "")),
                os=str(item.get("os", "")),
                url=str(item.get("url", "")),
                sha256=str(item.get("sha256") or ""),
                metadata={str(k): str(v) for k, v in metadata.items()},
            ))

        return cls(
            id=str(data.get("id", "")),
            vendor=VendorInfo(
                slug=str(vendor.get("slug", "")),
                name=str(vendor.get("name", "")),
            ),
            version=str(data.get("version", "")),
            artifacts=artifacts,
            release_type=str(data.get("releaseType", "")),
            is_latest=bool(data.get("isLatest", False)),
        )


class ReleasesClient:
    """Fetches release listings from the ecosystem API."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = 30):
        """
        Initialize the releases client.

        Args:
            base_url: API base URL (e.g., "https://go.gpu.tf")
            session: HTTP session to use; a new one is created if omitted
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.logger = logging.getLogger("releases-client")

    def get_releases(self, vendor: str = "", size: int = 0) -> List[ReleaseInfo]:
        """
        Fetch releases from the ecosystem API.

        Args:
            vendor: Optional vendor slug filter (e.g., "nvidia")
            size: Optional maximum number of results

        Returns:
            List of releases

        Raises:
            ReleasesClientError: On transport failure, non-200 status or a
                malformed response body
        """
        params = {}
        if vendor:
            params["vendor"] = vendor
        if size > 0:
            params["size"] = str(size)

        url = f"{self.base_url}{RELEASES_ENDPOINT}"
        self.logger.debug(f"Fetching releases from {url} params={params}")

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ReleasesClientError(f"Request failed: {e}") from e

        if response.status_code != requests.codes.ok:
            raise ReleasesClientError(
                f"Request failed: status {response.status_code}, body: {response.text}"
            )

        try:
            payload = response.json()
            releases = [ReleaseInfo.from_dict(item) for item in payload.get("releases") or []]
        except (ValueError, AttributeError, TypeError) as e:
            raise ReleasesClientError(f"Invalid releases response: {e}") from e

        self.logger.info(f"Found {len(releases)} releases")
        return releases
