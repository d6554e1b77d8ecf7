"""Pipeline orchestration for the list, start, proxy, system and update commands."""

from __future__ import annotations

import asyncio
import functools
import threading
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import httpx
from fastapi import FastAPI

from .artifacts import ArtifactFetcher, ReleaseChannel, is_exact_pin, parse_constraint
from .artifacts.fetcher import ENGINE_CHANNEL, SELF_CHANNEL
from .config import AutoscopeConfig, http_url, split_address
from .errors import ArtifactNotFoundError
from .logging import get_logger
from .models import InstalledArtifact
from .registry import RegistryStore, ScanResult
from .repo_scanner import RepoScanner
from .scrape import ScrapeConfigGenerator
from .selfupdate import SelfUpdater, UpdateOutcome
from .service import RemoteEngine, create_app, run_service
from .supervisor import ProcessSupervisor, State

ARTIFACT_KINDS = (ENGINE_CHANNEL.kind, SELF_CHANNEL.kind)


@dataclass
class StartSession:
    """Everything `start` wires together; torn down by :meth:`close`."""

    store: RegistryStore
    supervisor: ProcessSupervisor
    host: str
    port: int
    rescanner: Optional["Rescanner"] = None
    _closed: bool = field(default=False, repr=False)

    @property
    def explorer_url(self) -> str:
        return f"{http_url(self.host, self.port, loopback='localhost')}/explorer/"

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.rescanner is not None:
            self.rescanner.stop()
        self.supervisor.close()


class Rescanner:
    """Periodically rescans the tree and publishes changed registries."""

    def __init__(self, scanner: RepoScanner, root: Path, store: RegistryStore, interval: float) -> None:
        self.scanner = scanner
        self.root = root
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="autoscope-rescan", daemon=True)
        self.logger = get_logger("rescan")

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=self.interval + 1)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.rescan()

    def rescan(self) -> bool:
        """Scan once and publish the result; a failed scan keeps the last registry."""
        try:
            self.store.publish(self.scanner.scan(self.root))
        except Exception:
            self.logger.exception("Rescan of %s failed; keeping the previous registry", self.root)
            return False
        return True


class Orchestrator:
    """Coordinates scanning, engine acquisition, supervision and the explorer."""

    def __init__(
        self,
        config: AutoscopeConfig,
        *,
        scanner: RepoScanner | None = None,
        fetcher: ArtifactFetcher | None = None,
    ) -> None:
        self.config = config
        self.scanner = scanner or RepoScanner(exclude_paths=config.exclude_paths)
        self.fetcher = fetcher or ArtifactFetcher(
            config.install_dir,
            channels=self._channels(config),
            platform=config.platform,
            keep_versions=config.engine.keep_versions,
        )
        self.logger = get_logger("orchestrator")

    # list -----------------------------------------------------------------------

    def scan_root(self, path: str | Path | None = None) -> Path:
        if path is not None:
            return Path(path).expanduser().resolve()
        return self.config.source_dir or self.config.root

    def run_list(self, path: str | Path | None = None) -> ScanResult:
        """Scan the tree and return the registry with its diagnostics."""
        root = self.scan_root(path)
        self.logger.info("Scanning %s", root)
        return self.scanner.scan(root)

    # start ----------------------------------------------------------------------

    async def ensure_engine(self) -> InstalledArtifact:
        """Return an active engine install satisfying the configured version, fetching one if needed."""
        engine = self.config.engine
        active = self.fetcher.active(ENGINE_CHANNEL.kind)
        wanted = parse_constraint(engine.version)
        prereleases = engine.allow_prerelease or is_exact_pin(wanted)
        if active is not None and (wanted is None or wanted.contains(active.version, prereleases=prereleases)):
            self.logger.debug("Using installed engine %s", active.version)
            return active

        loop = asyncio.get_running_loop()
        artifact = await loop.run_in_executor(
            None,
            functools.partial(
                self.fetcher.resolve,
                ENGINE_CHANNEL.kind,
                engine.version,
                allow_prerelease=engine.allow_prerelease,
            ),
        )
        self.logger.info("Installing Prometheus %s", artifact.version)
        return await self.fetcher.fetch(artifact)

    def prepare_start(
        self,
        path: str | Path | None = None,
        *,
        endpoints: Optional[Sequence[str]] = None,
        listen_address: Optional[str] = None,
        rescan_interval: float = 0.0,
    ) -> StartSession:
        """Scan, install and launch the engine; the caller serves the explorer."""
        root = self.scan_root(path)
        result = self.run_list(root)
        store = RegistryStore(result)

        asyncio.run(self.ensure_engine())

        host, port = split_address(listen_address or self.config.server.listen_address)
        supervisor = self.build_supervisor(
            endpoints if endpoints else self.config.metrics_endpoints,
            external_url=f"{http_url(host, port, loopback='localhost')}/prometheus",
        )
        supervisor.apply_registry(result.registry)
        store.subscribe(lambda published: supervisor.apply_registry(published.registry))

        session = StartSession(store=store, supervisor=supervisor, host=host, port=port)
        state = supervisor.start()
        if state is not State.RUNNING:
            self.logger.error("Prometheus is %s: %s", state.value, supervisor.last_error or "no active install")
        supervisor.start_monitor()

        if rescan_interval > 0:
            session.rescanner = Rescanner(self.scanner, root, store, rescan_interval)
            session.rescanner.start()
        return session

    def run_start(
        self,
        path: str | Path | None = None,
        *,
        endpoints: Optional[Sequence[str]] = None,
        listen_address: Optional[str] = None,
        rescan_interval: float = 0.0,
        open_browser: Optional[bool] = None,
    ) -> None:  # pragma: no cover - blocks serving requests
        session = self.prepare_start(
            path,
            endpoints=endpoints,
            listen_address=listen_address,
            rescan_interval=rescan_interval,
        )
        try:
            app = create_app(session.supervisor, session.store)
            self.logger.info("Explorer available at %s", session.explorer_url)
            if open_browser if open_browser is not None else self.config.server.open_browser:
                threading.Timer(1.0, webbrowser.open, args=(session.explorer_url,)).start()
            run_service(app, session.host, session.port)
        finally:
            session.close()

    def build_supervisor(self, endpoints: Sequence[str], *, external_url: str) -> ProcessSupervisor:
        engine = self.config.engine
        generator = ScrapeConfigGenerator(endpoints, scrape_interval=engine.scrape_interval)
        return ProcessSupervisor(
            self._engine_binary,
            generator,
            self.config.install_dir / "run",
            listen_address=engine.listen_address,
            external_url=external_url,
            startup_timeout=engine.startup_timeout,
            probe_interval=engine.probe_interval,
            probe_failures=engine.probe_failures,
            restart_cooldown=engine.restart_cooldown,
            stop_grace_period=engine.stop_grace_period,
        )

    # proxy ----------------------------------------------------------------------

    def build_proxy_app(
        self,
        upstream: str,
        path: str | Path | None = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> FastAPI:
        """Serve the explorer against an existing Prometheus at ``upstream``."""
        engine = RemoteEngine(upstream)
        store = RegistryStore(self.run_list(path))
        self.logger.info("Proxying Prometheus at %s", engine.url)
        return create_app(engine, store, transport=transport, forward_prefix=False)

    def run_proxy(
        self,
        upstream: str,
        path: str | Path | None = None,
        *,
        listen_address: Optional[str] = None,
        open_browser: Optional[bool] = None,
    ) -> None:  # pragma: no cover - blocks serving requests
        app = self.build_proxy_app(upstream, path)
        host, port = split_address(listen_address or self.config.server.listen_address)
        explorer_url = f"{http_url(host, port, loopback='localhost')}/explorer/"
        self.logger.info("Explorer available at %s", explorer_url)
        if open_browser if open_browser is not None else self.config.server.open_browser:
            threading.Timer(1.0, webbrowser.open, args=(explorer_url,)).start()
        run_service(app, host, port)

    # explore --------------------------------------------------------------------

    def run_explore(self, listen_address: Optional[str] = None, *, open_browser: bool = True) -> str:
        """Return the explorer URL of a running session, opening it in a browser."""
        host, port = split_address(listen_address or self.config.server.listen_address)
        url = http_url(host, port)
        try:
            httpx.get(f"{url}/health", timeout=2.0).raise_for_status()
        except httpx.HTTPError as exc:
            raise ConnectionError(
                f"No autoscope session is listening on {host}:{port}; run `autoscope start` first"
            ) from exc
        explorer = f"{url}/explorer/"
        if open_browser:
            webbrowser.open(explorer)
        return explorer

    # system ---------------------------------------------------------------------

    def run_prune(self, *, keep: Optional[int] = None, remove_all: bool = False) -> Dict[str, List[InstalledArtifact]]:
        """Delete old installs of every artifact kind."""
        removed: Dict[str, List[InstalledArtifact]] = {}
        for kind in ARTIFACT_KINDS:
            if remove_all:
                removed[kind] = self.fetcher.remove_all(kind)
            else:
                removed[kind] = self.fetcher.prune(kind, keep)
        return removed

    def installed(self) -> Dict[str, List[InstalledArtifact]]:
        return {kind: self.fetcher.installed(kind) for kind in ARTIFACT_KINDS}

    # update ---------------------------------------------------------------------

    def self_updater(self, *, executable: Optional[Path] = None) -> SelfUpdater:
        return SelfUpdater(
            self.fetcher,
            executable=executable,
            allow_prerelease=self.config.update.allow_prerelease,
            self_check_timeout=self.config.update.self_check_timeout,
        )

    def run_update(self, *, check_only: bool = False, executable: Optional[Path] = None) -> UpdateOutcome:
        updater = self.self_updater(executable=executable)
        artifact = updater.check_for_update(self.config.update.version)
        if artifact is None:
            return UpdateOutcome(status="up-to-date", current_version=updater.current_version)
        if check_only:
            return UpdateOutcome(
                status="available",
                current_version=updater.current_version,
                target_version=artifact.version,
            )
        return asyncio.run(updater.apply_update(artifact))

    # internals ------------------------------------------------------------------

    def _engine_binary(self) -> Optional[Path]:
        install = self.fetcher.active(ENGINE_CHANNEL.kind)
        if install is None:
            return None
        try:
            return self.fetcher.binary_path(install)
        except ArtifactNotFoundError as exc:
            self.logger.warning("%s", exc)
            return None

    @staticmethod
    def _channels(config: AutoscopeConfig) -> Dict[str, ReleaseChannel]:
        return {
            ENGINE_CHANNEL.kind: ReleaseChannel(
                kind=ENGINE_CHANNEL.kind,
                repository=config.engine.repository,
                asset_prefix=ENGINE_CHANNEL.asset_prefix,
                binary=ENGINE_CHANNEL.binary,
            ),
            SELF_CHANNEL.kind: ReleaseChannel(
                kind=SELF_CHANNEL.kind,
                repository=config.update.repository,
                asset_prefix=SELF_CHANNEL.asset_prefix,
                binary=SELF_CHANNEL.binary,
            ),
        }


__all__ = ["Orchestrator", "Rescanner", "StartSession"]
