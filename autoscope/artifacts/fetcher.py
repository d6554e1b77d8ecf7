"""Verified download, extraction and versioned installation of release artifacts."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import shutil
import stat
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import httpx
from packaging.version import InvalidVersion, Version
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import ArtifactNotFoundError, IntegrityError, NetworkError
from ..logging import get_logger
from ..models import Artifact, InstalledArtifact
from .catalog import ReleaseCatalog, ReleaseChannel, parse_digest
from .platform import current_platform, executable_name

ACTIVE_POINTER = "active"
METADATA_FILE = ".autoscope-install.json"

ENGINE_CHANNEL = ReleaseChannel(
    kind="engine",
    repository="prometheus/prometheus",
    asset_prefix="prometheus",
    binary="prometheus",
)
SELF_CHANNEL = ReleaseChannel(
    kind="self",
    repository="autometrics-dev/autoscope",
    asset_prefix="autoscope",
    binary="autoscope",
)


@dataclass
class _SharedFetch:
    task: "asyncio.Task[InstalledArtifact]"
    waiters: int = 0


def _version_key(version: str) -> Tuple[int, object]:
    try:
        return (1, Version(version))
    except InvalidVersion:
        return (0, version)


class ArtifactFetcher:
    """Resolves, downloads and installs artifacts under ``<root>/<kind>/<version>``."""

    def __init__(
        self,
        install_root: Path,
        *,
        catalog: Optional[ReleaseCatalog] = None,
        channels: Optional[Mapping[str, ReleaseChannel]] = None,
        platform: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        keep_versions: int = 3,
        chunk_size: int = 64 * 1024,
        stall_timeout: float = 30.0,
        attempt_timeout: float = 600.0,
        max_attempts: int = 4,
        backoff: float = 1.0,
    ) -> None:
        self.install_root = Path(install_root)
        self.catalog = catalog
        self.channels: Dict[str, ReleaseChannel] = dict(
            channels or {ENGINE_CHANNEL.kind: ENGINE_CHANNEL, SELF_CHANNEL.kind: SELF_CHANNEL}
        )
        self.platform = current_platform(platform)
        self.transport = transport
        self.keep_versions = max(1, keep_versions)
        self.chunk_size = chunk_size
        self.stall_timeout = stall_timeout
        self.attempt_timeout = attempt_timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self._inflight: Dict[Tuple[str, str], _SharedFetch] = {}
        self.logger = get_logger("fetcher")

    def channel(self, kind: str) -> ReleaseChannel:
        try:
            return self.channels[kind]
        except KeyError:
            raise ValueError(f"Unknown artifact kind '{kind}'") from None

    def resolve(
        self,
        kind: str,
        constraint: Optional[str] = None,
        platform: Optional[str] = None,
        *,
        allow_prerelease: bool = False,
    ) -> Artifact:
        """Pick the newest release of ``kind`` satisfying ``constraint`` for ``platform``."""
        if self.catalog is None:
            self.catalog = ReleaseCatalog()
        artifact = self.catalog.resolve(
            self.channel(kind),
            constraint,
            platform or self.platform,
            allow_prerelease=allow_prerelease,
        )
        self.logger.debug("Resolved %s %s -> %s", kind, constraint or "latest", artifact.name)
        return artifact

    async def fetch(self, artifact: Artifact, *, activate: bool = True) -> InstalledArtifact:
        """Install ``artifact``; concurrent calls for the same kind and version share one download.

        Cancelling one caller only abandons its own wait. The shared download is
        cancelled once no caller is left waiting for it.
        """
        key = (artifact.kind, artifact.version)
        shared = self._inflight.get(key)
        if shared is None:
            shared = _SharedFetch(asyncio.ensure_future(self._install(artifact)))
            self._inflight[key] = shared
            shared.task.add_done_callback(lambda _: self._forget(key, shared))
        else:
            self.logger.debug("Joining in-flight fetch of %s %s", artifact.kind, artifact.version)
        shared.waiters += 1
        try:
            installed = await asyncio.shield(shared.task)
        finally:
            shared.waiters -= 1
            if shared.waiters == 0 and not shared.task.done():
                self.logger.info("Cancelling download of %s", artifact.name)
                shared.task.cancel()
        if activate:
            self.activate(installed.kind, installed.version)
            self.prune(installed.kind, self.keep_versions)
        return installed

    def _forget(self, key: Tuple[str, str], shared: _SharedFetch) -> None:
        if self._inflight.get(key) is shared:
            del self._inflight[key]

    # Install tree -----------------------------------------------------------

    def kind_dir(self, kind: str) -> Path:
        return self.install_root / kind

    def installed(self, kind: str) -> List[InstalledArtifact]:
        """Completed installs of ``kind``, newest version first."""
        kind_dir = self.kind_dir(kind)
        if not kind_dir.is_dir():
            return []
        installs = []
        for entry in kind_dir.iterdir():
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            record = self._read_metadata(kind, entry)
            if record is not None:
                installs.append(record)
        return sorted(installs, key=lambda item: _version_key(item.version), reverse=True)

    def active(self, kind: str) -> Optional[InstalledArtifact]:
        pointer = self.kind_dir(kind) / ACTIVE_POINTER
        if not pointer.is_file():
            return None
        version = pointer.read_text(encoding="utf-8").strip()
        if not version:
            return None
        return self._read_metadata(kind, self.kind_dir(kind) / version)

    def activate(self, kind: str, version: str) -> InstalledArtifact:
        """Point ``kind`` at an already verified install."""
        install = self._read_metadata(kind, self.kind_dir(kind) / version)
        if install is None:
            raise ArtifactNotFoundError(f"{kind} {version} is not installed")
        pointer = self.kind_dir(kind) / ACTIVE_POINTER
        fd, tmp_name = tempfile.mkstemp(prefix=".active-", dir=self.kind_dir(kind))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(version + "\n")
            os.replace(tmp_name, pointer)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        self.logger.info("Activated %s %s", kind, version)
        return install

    def prune(self, kind: str, keep: Optional[int] = None) -> List[InstalledArtifact]:
        """Remove all but the ``keep`` newest installs; the active one always stays."""
        keep = self.keep_versions if keep is None else max(0, keep)
        active = self.active(kind)
        removed = []
        kept = 0
        for install in self.installed(kind):
            if active is not None and install.version == active.version:
                continue
            if kept < keep - (1 if active is not None else 0):
                kept += 1
                continue
            shutil.rmtree(install.path)
            removed.append(install)
            self.logger.info("Pruned %s %s", kind, install.version)
        return removed

    def remove_all(self, kind: str) -> List[InstalledArtifact]:
        removed = self.installed(kind)
        kind_dir = self.kind_dir(kind)
        if kind_dir.exists():
            shutil.rmtree(kind_dir)
        return removed

    def binary_path(self, install: InstalledArtifact) -> Path:
        """Locate the channel's executable inside an install directory."""
        name = executable_name(self.channel(install.kind).binary, self.platform)
        direct = install.path / name
        if direct.is_file():
            return direct
        for candidate in sorted(install.path.rglob(name)):
            if candidate.is_file():
                return candidate
        raise ArtifactNotFoundError(f"{name} not found in {install.path}")

    # Download and install ---------------------------------------------------

    async def _install(self, artifact: Artifact) -> InstalledArtifact:
        target = self.kind_dir(artifact.kind) / artifact.version
        existing = self._read_metadata(artifact.kind, target)
        if existing is not None and existing.digest == parse_digest(artifact.digest):
            self.logger.debug("%s %s already installed", artifact.kind, artifact.version)
            return existing

        expected = parse_digest(artifact.digest)
        if expected is None:
            raise IntegrityError(artifact.name, artifact.digest or "<missing>", "<not verified>")

        self.kind_dir(artifact.kind).mkdir(parents=True, exist_ok=True)
        self.logger.info("Downloading %s", artifact.name)
        archive, actual = await self._download_with_retry(artifact)
        try:
            if actual != expected:
                raise IntegrityError(artifact.name, expected, actual)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._unpack, artifact, archive, target, actual)
        finally:
            archive.unlink(missing_ok=True)

    async def _download_with_retry(self, artifact: Artifact) -> Tuple[Path, str]:
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=30),
            retry=retry_if_exception_type(NetworkError),
        ):
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    self.logger.warning("Retrying download of %s (attempt %d)", artifact.name, number)
                try:
                    return await asyncio.wait_for(self._download(artifact), self.attempt_timeout)
                except asyncio.TimeoutError:
                    raise NetworkError(
                        f"Download of {artifact.name} exceeded {self.attempt_timeout:.0f}s"
                    ) from None
        raise NetworkError(f"Download of {artifact.name} failed")  # pragma: no cover

    async def _download(self, artifact: Artifact) -> Tuple[Path, str]:
        hasher = hashlib.sha256()
        fd, tmp_name = tempfile.mkstemp(prefix=".download-", dir=self.kind_dir(artifact.kind))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                async with httpx.AsyncClient(
                    transport=self.transport,
                    follow_redirects=True,
                    timeout=httpx.Timeout(self.stall_timeout),
                ) as client:
                    async with client.stream("GET", artifact.url) as response:
                        _check_status(response, artifact)
                        chunks = response.aiter_bytes(self.chunk_size)
                        while True:
                            try:
                                chunk = await asyncio.wait_for(chunks.__anext__(), self.stall_timeout)
                            except StopAsyncIteration:
                                break
                            except asyncio.TimeoutError:
                                raise NetworkError(
                                    f"Download of {artifact.name} stalled for {self.stall_timeout:.0f}s"
                                ) from None
                            handle.write(chunk)
                            hasher.update(chunk)
        except httpx.TransportError as exc:
            tmp_path.unlink(missing_ok=True)
            raise NetworkError(f"Download of {artifact.name} failed: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path, "sha256:" + hasher.hexdigest()

    def _unpack(self, artifact: Artifact, archive: Path, target: Path, digest: str) -> InstalledArtifact:
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.kind_dir(artifact.kind)))
        try:
            _extract(archive, artifact.name, staging)
            source = _single_root(staging)
            _mark_executable(source, executable_name(self.channel(artifact.kind).binary, artifact.platform))
            installed_at = datetime.now(timezone.utc)
            (source / METADATA_FILE).write_text(
                json.dumps(
                    {
                        "kind": artifact.kind,
                        "version": artifact.version,
                        "name": artifact.name,
                        "platform": artifact.platform,
                        "digest": digest,
                        "installedAt": installed_at.isoformat(),
                    },
                    indent=2,
                ),
                encoding="utf-8",
            )
            _promote(source, target)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        self.logger.info("Installed %s %s into %s", artifact.kind, artifact.version, target)
        return InstalledArtifact(
            kind=artifact.kind,
            version=artifact.version,
            path=target,
            installed_at=installed_at,
            digest=digest,
        )

    def _read_metadata(self, kind: str, path: Path) -> Optional[InstalledArtifact]:
        metadata = path / METADATA_FILE
        if not metadata.is_file():
            return None
        try:
            data = json.loads(metadata.read_text(encoding="utf-8"))
            installed_at = datetime.fromisoformat(str(data["installedAt"]))
        except (ValueError, KeyError) as exc:
            self.logger.warning("Ignoring install with unreadable metadata %s: %s", metadata, exc)
            return None
        return InstalledArtifact(
            kind=kind,
            version=path.name,
            path=path,
            installed_at=installed_at,
            digest=str(data.get("digest", "")),
        )


def _check_status(response: httpx.Response, artifact: Artifact) -> None:
    if response.status_code == 404:
        raise ArtifactNotFoundError(f"{artifact.url} returned 404")
    if response.status_code == 429 or response.status_code >= 500:
        raise NetworkError(f"Download of {artifact.name} returned HTTP {response.status_code}")
    if response.status_code >= 400:
        raise NetworkError(f"Download of {artifact.name} rejected with HTTP {response.status_code}")


def _extract(archive: Path, name: str, destination: Path) -> None:
    if name.endswith(".zip"):
        with zipfile.ZipFile(archive) as bundle:
            root = destination.resolve()
            for info in bundle.infolist():
                member = (root / info.filename).resolve()
                try:
                    member.relative_to(root)
                except ValueError:
                    raise IntegrityError(name, "archive members inside the install", info.filename) from None
            bundle.extractall(destination)
            for info in bundle.infolist():
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    os.chmod(destination / info.filename, mode)
        return
    if name.endswith((".tar.gz", ".tgz", ".tar")):
        with tarfile.open(archive, "r:*") as bundle:
            bundle.extractall(path=str(destination), filter="data")
        return
    # Bare binary asset.
    shutil.copyfile(archive, destination / name)


def _promote(source: Path, target: Path) -> None:
    """Rename ``source`` to ``target``; an existing ``target`` is restored if that fails."""
    if not target.exists():
        os.rename(source, target)
        return
    retired = target.with_name(f".old-{target.name}")
    if retired.exists():
        shutil.rmtree(retired)
    os.replace(target, retired)
    try:
        os.rename(source, target)
    except BaseException:
        os.replace(retired, target)
        raise
    shutil.rmtree(retired, ignore_errors=True)


def _single_root(staging: Path) -> Path:
    entries = [entry for entry in staging.iterdir()]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return staging


def _mark_executable(root: Path, binary: str) -> None:
    for candidate in root.rglob(binary):
        if candidate.is_file():
            mode = candidate.stat().st_mode
            candidate.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


__all__ = [
    "ACTIVE_POINTER",
    "ArtifactFetcher",
    "ENGINE_CHANNEL",
    "SELF_CHANNEL",
]
