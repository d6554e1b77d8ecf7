"""In-memory release archives served through httpx mock transports."""

from __future__ import annotations

import hashlib
import io
import tarfile
import zipfile
from typing import Dict, List, Mapping, Optional

import httpx
from packaging.version import Version

from autoscope.artifacts import ReleaseChannel, parse_constraint
from autoscope.errors import NoMatchingReleaseError
from autoscope.models import Artifact

SCRIPT = "#!/bin/sh\necho \"{binary} {version}\"\n"


def tarball(root: str, files: Mapping[str, str]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{root}/{name}")
            info.size = len(data)
            info.mode = 0o755
            bundle.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def zipball(files: Mapping[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as bundle:
        for name, content in files.items():
            bundle.writestr(name, content)
    return buffer.getvalue()


def sha256(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def engine_release(version: str, platform: str = "linux-amd64") -> tuple[Artifact, bytes]:
    root = f"prometheus-{version}.{platform}"
    data = tarball(root, {"prometheus": SCRIPT.format(binary="prometheus", version=version), "LICENSE": "Apache-2.0\n"})
    artifact = Artifact(
        kind="engine",
        name=f"{root}.tar.gz",
        version=version,
        platform=platform,
        url=f"https://downloads.test/v{version}/{root}.tar.gz",
        digest=sha256(data),
    )
    return artifact, data


def self_release(version: str, *, prints: Optional[str] = None, platform: str = "linux-amd64") -> tuple[Artifact, bytes]:
    root = f"autoscope-{version}.{platform}"
    data = tarball(root, {"autoscope": SCRIPT.format(binary="autoscope", version=prints or version)})
    artifact = Artifact(
        kind="self",
        name=f"{root}.tar.gz",
        version=version,
        platform=platform,
        url=f"https://downloads.test/autoscope/v{version}/{root}.tar.gz",
        digest=sha256(data),
    )
    return artifact, data


class StubCatalog:
    """Resolves against a fixed set of artifacts instead of the network."""

    def __init__(self, artifacts: List[Artifact]) -> None:
        self.artifacts: Dict[str, Artifact] = {artifact.version: artifact for artifact in artifacts}
        self.constraints: List[Optional[str]] = []

    def resolve(
        self,
        channel: ReleaseChannel,
        constraint: Optional[str],
        platform: str,
        *,
        allow_prerelease: bool = False,
    ) -> Artifact:
        self.constraints.append(constraint)
        specifier = parse_constraint(constraint)
        versions = [
            version
            for version in self.artifacts
            if specifier is None or specifier.contains(version, prereleases=allow_prerelease or None)
        ]
        if not versions:
            raise NoMatchingReleaseError(f"nothing satisfies {constraint}")
        return self.artifacts[max(versions, key=Version)]


class AssetServer:
    """Serves fixed payloads by URL and records every request."""

    def __init__(self, payloads: Optional[Dict[str, bytes]] = None) -> None:
        self.payloads: Dict[str, bytes] = dict(payloads or {})
        self.failures: List[int] = []
        self.requests: List[httpx.Request] = []

    def add(self, artifact: Artifact, data: bytes) -> None:
        self.payloads[artifact.url] = data

    def fail_next(self, *status_codes: int) -> None:
        self.failures.extend(status_codes)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failures:
            return httpx.Response(self.failures.pop(0))
        data = self.payloads.get(str(request.url))
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


__all__ = ["AssetServer", "StubCatalog", "engine_release", "self_release", "sha256", "tarball", "zipball"]
