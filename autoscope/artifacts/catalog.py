"""Release catalog backed by the GitHub releases API."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ArtifactNotFoundError, NetworkError, NoMatchingReleaseError
from ..logging import get_logger
from ..models import Artifact
from .platform import archive_suffix

GITHUB_API = "https://api.github.com"
CHECKSUM_ASSETS = ("sha256sums.txt", "checksums.txt", "SHA256SUMS")
_MAX_PAGES = 10
_HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class ReleaseChannel:
    """Where releases of one artifact kind are published and how assets are named."""

    kind: str
    repository: str
    asset_prefix: str
    binary: str

    def asset_name(self, version: str, platform: str) -> str:
        return f"{self.asset_prefix}-{version}.{platform}{archive_suffix(platform)}"


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    url: str
    digest: Optional[str] = None


@dataclass(frozen=True)
class Release:
    version: Version
    tag: str
    prerelease: bool
    assets: Tuple[ReleaseAsset, ...]

    def asset(self, name: str) -> Optional[ReleaseAsset]:
        return next((asset for asset in self.assets if asset.name == name), None)


def parse_constraint(constraint: Optional[str]) -> Optional[SpecifierSet]:
    """Turn ``2.45.0``, ``v2.45.0``, ``>=2.40,<3`` or ``latest`` into a specifier set."""
    if constraint is None:
        return None
    cleaned = constraint.strip()
    if not cleaned or cleaned.lower() == "latest":
        return None
    if cleaned[0].isdigit() or (cleaned[0] in "vV" and cleaned[1:2].isdigit()):
        cleaned = f"=={cleaned.lstrip('vV')}"
    try:
        return SpecifierSet(cleaned)
    except InvalidSpecifier:
        raise ValueError(f"Invalid version constraint: '{constraint}'") from None


def is_exact_pin(specifier: Optional[SpecifierSet]) -> bool:
    """True when ``specifier`` names a single version, such as ``==3.0.0rc1``."""
    if specifier is None:
        return False
    return any(spec.operator in ("==", "===") and not spec.version.endswith(".*") for spec in specifier)


def parse_digest(value: Optional[str]) -> Optional[str]:
    """Normalise ``sha256:<hex>`` or a bare hex digest; other algorithms are ignored."""
    if not value:
        return None
    algorithm, sep, hexdigest = value.strip().partition(":")
    if not sep:
        algorithm, hexdigest = "sha256", algorithm
    if algorithm.lower() != "sha256" or not _HEX_DIGEST.match(hexdigest):
        return None
    return f"sha256:{hexdigest.lower()}"


def parse_checksums(text: str) -> Dict[str, str]:
    """Parse ``sha256sum``-style lines into ``{filename: "sha256:<hex>"}``."""
    digests: Dict[str, str] = {}
    for line in text.splitlines():
        parts = line.strip().split()
        if len(parts) != 2:
            continue
        digest = parse_digest(parts[0])
        if digest:
            digests[parts[1].lstrip("*")] = digest
    return digests


def select_release(
    releases: Iterable[Release],
    constraint: Optional[str],
    *,
    allow_prerelease: bool = False,
) -> Optional[Release]:
    """Return the newest release satisfying ``constraint``.

    Pre-releases are skipped unless ``allow_prerelease`` is set or the
    constraint pins one exact version.
    """
    specifier = parse_constraint(constraint)
    prereleases = allow_prerelease or is_exact_pin(specifier)
    candidates = []
    for release in releases:
        if release.prerelease and not prereleases:
            continue
        if specifier is not None and not specifier.contains(release.version, prereleases=prereleases or None):
            continue
        candidates.append(release)
    return max(candidates, key=lambda release: release.version, default=None)


class ReleaseCatalog:
    """Reads the append-only release history of a repository."""

    def __init__(
        self,
        *,
        api_url: str = GITHUB_API,
        token: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": "autoscope"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )
        self.logger = get_logger("catalog")

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ReleaseCatalog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def releases(self, channel: ReleaseChannel) -> List[Release]:
        url: Optional[str] = f"/repos/{channel.repository}/releases"
        params: Optional[Dict[str, Any]] = {"per_page": 100}
        releases: List[Release] = []
        for _ in range(_MAX_PAGES):
            if url is None:
                break
            response = self._get(url, params=params)
            for payload in response.json():
                release = _release_from_payload(payload)
                if release is not None:
                    releases.append(release)
            url = response.links.get("next", {}).get("url")
            params = None
        self.logger.debug("Catalog %s lists %d release(s)", channel.repository, len(releases))
        return releases

    def resolve(
        self,
        channel: ReleaseChannel,
        constraint: Optional[str],
        platform: str,
        *,
        allow_prerelease: bool = False,
    ) -> Artifact:
        release = select_release(self.releases(channel), constraint, allow_prerelease=allow_prerelease)
        if release is None:
            raise NoMatchingReleaseError(
                f"No {channel.kind} release of {channel.repository} satisfies '{constraint or 'latest'}'"
            )
        version = release.tag.lstrip("vV")
        name = channel.asset_name(version, platform)
        asset = release.asset(name)
        if asset is None:
            raise ArtifactNotFoundError(f"Release {release.tag} has no asset {name} for {platform}")

        digest = asset.digest or self._checksum_for(release, name)
        if digest is None:
            raise ArtifactNotFoundError(f"Release {release.tag} publishes no sha256 digest for {name}")
        return Artifact(
            kind=channel.kind,
            name=name,
            version=version,
            platform=platform,
            url=asset.url,
            digest=digest,
        )

    def _checksum_for(self, release: Release, name: str) -> Optional[str]:
        for checksum_name in CHECKSUM_ASSETS:
            checksums = release.asset(checksum_name)
            if checksums is None:
                continue
            digest = parse_checksums(self._get(checksums.url).text).get(name)
            if digest:
                return digest
        return None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=8),
        retry=retry_if_exception_type(NetworkError),
        reraise=True,
    )
    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = self._client.get(url, params=params)
        except httpx.TransportError as exc:
            raise NetworkError(f"Release catalog request failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"Release catalog returned HTTP {response.status_code}")
        if response.status_code == 404:
            raise ArtifactNotFoundError(f"Release catalog has no entry at {url}")
        response.raise_for_status()
        return response


def _release_from_payload(payload: Dict[str, Any]) -> Optional[Release]:
    if payload.get("draft"):
        return None
    tag = str(payload.get("tag_name") or "")
    try:
        version = Version(tag.lstrip("vV"))
    except InvalidVersion:
        return None
    assets = tuple(
        ReleaseAsset(
            name=str(asset.get("name", "")),
            url=str(asset.get("browser_download_url", "")),
            digest=parse_digest(asset.get("digest")),
        )
        for asset in payload.get("assets") or ()
    )
    return Release(
        version=version,
        tag=tag,
        prerelease=bool(payload.get("prerelease")) or version.is_prerelease,
        assets=assets,
    )


__all__ = [
    "ReleaseAsset",
    "ReleaseCatalog",
    "ReleaseChannel",
    "Release",
    "parse_checksums",
    "is_exact_pin",
    "parse_constraint",
    "parse_digest",
    "select_release",
]
