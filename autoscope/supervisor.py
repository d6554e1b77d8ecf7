"""Lifecycle supervision of the local Prometheus engine."""

from __future__ import annotations

import os
import subprocess
import tempfile
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple
from urllib.parse import urlparse

import httpx

from .config import http_url, split_address
from .errors import InvalidTransition, ProcessError
from .logging import get_logger
from .registry import Registry
from .scrape import ScrapeConfigGenerator


class State(str, Enum):
    UNINSTALLED = "uninstalled"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


class Event(str, Enum):
    START = "start"
    HEALTHY = "healthy"
    STARTUP_FAILED = "startup_failed"
    EXITED = "exited"
    PROBE_FAILED = "probe_failed"
    STOP = "stop"
    STOPPED = "stopped"


_TRANSITIONS: Dict[Tuple[State, Event], State] = {
    (State.UNINSTALLED, Event.START): State.STARTING,
    (State.STOPPED, Event.START): State.STARTING,
    (State.CRASHED, Event.START): State.STARTING,
    (State.STARTING, Event.HEALTHY): State.RUNNING,
    (State.STARTING, Event.STARTUP_FAILED): State.CRASHED,
    (State.STARTING, Event.EXITED): State.CRASHED,
    (State.STARTING, Event.STOP): State.STOPPING,
    (State.RUNNING, Event.EXITED): State.CRASHED,
    (State.RUNNING, Event.PROBE_FAILED): State.CRASHED,
    (State.RUNNING, Event.STOP): State.STOPPING,
    (State.CRASHED, Event.STOP): State.STOPPING,
    (State.STOPPING, Event.STOPPED): State.STOPPED,
    (State.STOPPING, Event.EXITED): State.STOPPED,
}


def transition(state: State, event: Event) -> State:
    """Return the state reached from ``state`` on ``event``."""
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"Event '{event.value}' is not valid in state '{state.value}'") from None


class ProcessHandle(Protocol):
    pid: int

    def poll(self) -> Optional[int]: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: Optional[float] = None) -> int: ...


Spawn = Callable[[List[str], Path], ProcessHandle]
Probe = Callable[[str], bool]


def spawn_process(args: List[str], log_path: Path) -> ProcessHandle:
    """Start ``args`` with stdout and stderr captured into ``log_path``."""
    with log_path.open("wb") as log:
        return subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT)


def http_probe(url: str, timeout: float = 2.0) -> bool:
    try:
        return httpx.get(url, timeout=timeout).status_code == 200
    except httpx.HTTPError:
        return False


def http_reload(url: str, timeout: float = 10.0) -> bool:
    try:
        return httpx.post(url, timeout=timeout).status_code == 200
    except httpx.HTTPError:
        return False


@dataclass
class PrometheusLauncher:
    """Command line and URLs of one engine instance."""

    binary: Path
    work_dir: Path
    listen_address: str = "127.0.0.1:9090"
    external_url: str = "http://localhost:6789/prometheus"

    @property
    def config_file(self) -> Path:
        return self.work_dir / "prometheus.yml"

    @property
    def storage_path(self) -> Path:
        return self.work_dir / "data"

    @property
    def log_file(self) -> Path:
        return self.work_dir / "prometheus.log"

    @property
    def base_url(self) -> str:
        return http_url(*split_address(self.listen_address))

    @property
    def route_prefix(self) -> str:
        return urlparse(self.external_url).path.rstrip("/")

    @property
    def ready_url(self) -> str:
        return f"{self.base_url}{self.route_prefix}/-/ready"

    @property
    def reload_url(self) -> str:
        return f"{self.base_url}{self.route_prefix}/-/reload"

    def args(self) -> List[str]:
        return [
            str(self.binary),
            f"--config.file={self.config_file}",
            f"--web.listen-address={self.listen_address}",
            "--web.enable-lifecycle",
            f"--web.external-url={self.external_url}",
            f"--storage.tsdb.path={self.storage_path}",
        ]


@dataclass
class EngineProcess:
    handle: ProcessHandle
    launcher: PrometheusLauncher
    config_snapshot: str
    started_at: float
    last_probe_ok: Optional[bool] = None


@dataclass(frozen=True)
class SupervisorStatus:
    state: State
    endpoint: Optional[str]
    needs_attention: bool
    restarts: int
    last_error: Optional[str] = None
    pid: Optional[int] = None


class _ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._readers = 0
        self._writing = False

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._condition:
            while self._writing:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if not self._readers:
                    self._condition.notify_all()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._condition:
            while self._writing or self._readers:
                self._condition.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._condition:
                self._writing = False
                self._condition.notify_all()


@dataclass
class _CrashPolicy:
    cooldown: float
    last_crash_at: Optional[float] = None
    needs_attention: bool = False
    restarts: int = 0

    def record(self, now: float) -> bool:
        """Record a crash and return True when an automatic restart is allowed."""
        recent = self.last_crash_at is not None and now - self.last_crash_at < self.cooldown
        self.last_crash_at = now
        if recent:
            self.needs_attention = True
            return False
        return True

    def clear(self) -> None:
        self.last_crash_at = None
        self.needs_attention = False


class ProcessSupervisor:
    """Owns the engine process and drives it through the lifecycle state machine."""

    def __init__(
        self,
        locate_binary: Callable[[], Optional[Path]],
        generator: ScrapeConfigGenerator,
        work_dir: Path,
        *,
        listen_address: str = "127.0.0.1:9090",
        external_url: str = "http://localhost:6789/prometheus",
        startup_timeout: float = 30.0,
        probe_interval: float = 5.0,
        probe_failures: int = 3,
        restart_cooldown: float = 60.0,
        stop_grace_period: float = 10.0,
        spawn: Spawn = spawn_process,
        probe: Probe = http_probe,
        reload: Probe = http_reload,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.locate_binary = locate_binary
        self.generator = generator
        self.work_dir = Path(work_dir)
        self.listen_address = listen_address
        self.external_url = external_url
        self.startup_timeout = startup_timeout
        self.probe_interval = probe_interval
        self.probe_failures = max(1, probe_failures)
        self.stop_grace_period = stop_grace_period
        self._spawn = spawn
        self._probe = probe
        self._reload = reload
        self._clock = clock
        self._sleep = sleep

        self._lifecycle = threading.RLock()
        self._endpoint_lock = _ReadWriteLock()
        self._endpoint: Optional[str] = None
        self._state = State.UNINSTALLED if locate_binary() is None else State.STOPPED
        self._process: Optional[EngineProcess] = None
        self._registry = Registry()
        self._failed_probes = 0
        self._policy = _CrashPolicy(cooldown=restart_cooldown)
        self._last_error: Optional[ProcessError] = None
        self._monitor: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()
        self.logger = get_logger("supervisor")

    # Read side ---------------------------------------------------------------

    @property
    def state(self) -> State:
        return self._state

    @property
    def needs_attention(self) -> bool:
        return self._policy.needs_attention

    @property
    def last_error(self) -> Optional[ProcessError]:
        return self._last_error

    def endpoint(self) -> Optional[str]:
        """Base URL of the running engine, or None."""
        with self._endpoint_lock.reading():
            return self._endpoint

    def status(self) -> SupervisorStatus:
        process = self._process
        return SupervisorStatus(
            state=self._state,
            endpoint=self.endpoint(),
            needs_attention=self._policy.needs_attention,
            restarts=self._policy.restarts,
            last_error=str(self._last_error) if self._last_error else None,
            pid=process.handle.pid if process else None,
        )

    # Lifecycle ---------------------------------------------------------------

    def start(self) -> State:
        """Start the engine; a no-op while already Starting or Running."""
        with self._lifecycle:
            if self._state in (State.STARTING, State.RUNNING):
                return self._state
            self._policy.clear()
            return self._start()

    def reset(self) -> State:
        """Clear the terminal crash condition without starting."""
        with self._lifecycle:
            self._policy.clear()
            self._last_error = None
            return self._state

    def stop(self) -> State:
        with self._lifecycle:
            if self._state in (State.UNINSTALLED, State.STOPPED):
                return self._state
            self._state = transition(self._state, Event.STOP)
            self._set_endpoint(None)
            self._terminate()
            self._state = transition(self._state, Event.STOPPED)
            self.logger.info("Engine stopped")
            return self._state

    def poll(self) -> State:
        """Check liveness once and apply the crash policy."""
        with self._lifecycle:
            process = self._process
            if self._state is not State.RUNNING or process is None:
                return self._state

            code = process.handle.poll()
            if code is not None:
                self._crash(Event.EXITED, ProcessError(f"Engine exited with code {code}", self._log_tail()))
            else:
                healthy = self._probe(process.launcher.ready_url)
                process.last_probe_ok = healthy
                if healthy:
                    self._failed_probes = 0
                    return self._state
                self._failed_probes += 1
                if self._failed_probes < self.probe_failures:
                    self.logger.debug("Health probe failed (%d/%d)", self._failed_probes, self.probe_failures)
                    return self._state
                self._kill(process.handle)
                self._crash(
                    Event.PROBE_FAILED,
                    ProcessError(f"Engine failed {self._failed_probes} consecutive health probes", self._log_tail()),
                )

            if self._policy.record(self._clock()):
                self._policy.restarts += 1
                self.logger.warning("Restarting engine after crash")
                if self._start() is not State.RUNNING:
                    self._policy.needs_attention = True
            else:
                self.logger.error("Engine crashed again within %.0fs; manual start required", self._policy.cooldown)
            return self._state

    def apply_registry(self, registry: Registry) -> State:
        """Regenerate the scrape configuration and push it to a running engine."""
        with self._lifecycle:
            self._registry = registry
            process = self._process
            if self._state is not State.RUNNING or process is None:
                return self._state
            snapshot = self._write_config(process.launcher)
            process.config_snapshot = snapshot
            if self._reload(process.launcher.reload_url):
                self.logger.info("Reloaded engine configuration (%d function(s))", len(registry))
                return self._state
            self.logger.info("Engine rejected live reload; restarting")
            self.stop()
            return self._start()

    # Probe thread -------------------------------------------------------------

    def start_monitor(self) -> None:
        if self._monitor is not None and self._monitor.is_alive():
            return
        self._monitor_stop.clear()
        self._monitor = threading.Thread(target=self._monitor_loop, name="autoscope-probe", daemon=True)
        self._monitor.start()

    def stop_monitor(self) -> None:
        self._monitor_stop.set()
        if self._monitor is not None:
            self._monitor.join(timeout=self.probe_interval + 1)
            self._monitor = None

    def close(self) -> None:
        self.stop_monitor()
        self.stop()

    def _monitor_loop(self) -> None:
        while not self._monitor_stop.wait(self.probe_interval):
            try:
                self.poll()
            except Exception:
                self.logger.exception("Engine health check failed; retrying in %.0fs", self.probe_interval)

    # Internals ----------------------------------------------------------------

    def _start(self) -> State:
        binary = self.locate_binary()
        if binary is None:
            self.logger.warning("No active engine install; run `autoscope start` with network access first")
            return self._state

        self._state = transition(self._state, Event.START)
        self._failed_probes = 0
        self.work_dir.mkdir(parents=True, exist_ok=True)
        launcher = PrometheusLauncher(
            binary=binary,
            work_dir=self.work_dir,
            listen_address=self.listen_address,
            external_url=self.external_url,
        )
        snapshot = self._write_config(launcher)
        self.logger.info("Starting engine %s", binary)
        self.logger.debug("Engine command: %s", " ".join(launcher.args()))
        try:
            handle = self._spawn(launcher.args(), launcher.log_file)
        except OSError as exc:
            return self._fail(Event.STARTUP_FAILED, ProcessError(f"Could not launch {binary}: {exc}"))
        self._process = EngineProcess(handle, launcher, snapshot, started_at=self._clock())

        deadline = self._clock() + self.startup_timeout
        while True:
            code = handle.poll()
            if code is not None:
                return self._fail(
                    Event.EXITED,
                    ProcessError(f"Engine exited during startup with code {code}", self._log_tail()),
                )
            if self._probe(launcher.ready_url):
                self._process.last_probe_ok = True
                self._state = transition(self._state, Event.HEALTHY)
                self._last_error = None
                self._set_endpoint(launcher.base_url)
                self.logger.info("Engine ready at %s", launcher.base_url)
                return self._state
            if self._clock() >= deadline:
                self._kill(handle)
                return self._fail(
                    Event.STARTUP_FAILED,
                    ProcessError(
                        f"Engine not ready after {self.startup_timeout:.0f}s", self._log_tail()
                    ),
                )
            self._sleep(min(0.25, self.startup_timeout))

    def _fail(self, event: Event, error: ProcessError) -> State:
        self._state = transition(self._state, event)
        self._last_error = error
        self._set_endpoint(None)
        self.logger.error("%s", error)
        return self._state

    def _crash(self, event: Event, error: ProcessError) -> None:
        self._fail(event, error)
        self._process = None

    def _terminate(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.handle.poll() is not None:
            return
        process.handle.terminate()
        try:
            process.handle.wait(timeout=self.stop_grace_period)
        except subprocess.TimeoutExpired:
            self.logger.warning("Engine ignored SIGTERM for %.0fs; killing", self.stop_grace_period)
            self._kill(process.handle)

    @staticmethod
    def _kill(handle: ProcessHandle) -> None:
        if handle.poll() is None:
            handle.kill()
            handle.wait()

    def _set_endpoint(self, endpoint: Optional[str]) -> None:
        with self._endpoint_lock.writing():
            self._endpoint = endpoint

    def _write_config(self, launcher: PrometheusLauncher) -> str:
        rendered = self.generator.render(self._registry)
        fd, tmp_name = tempfile.mkstemp(prefix=".prometheus-", suffix=".yml", dir=self.work_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(rendered)
            os.replace(tmp_name, launcher.config_file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return rendered

    def _log_tail(self, lines: int = 20) -> str:
        process = self._process
        log_file = process.launcher.log_file if process else self.work_dir / "prometheus.log"
        if not log_file.is_file():
            return ""
        with log_file.open("r", encoding="utf-8", errors="replace") as handle:
            return "".join(deque(handle, maxlen=lines)).rstrip()


__all__ = [
    "EngineProcess",
    "Event",
    "ProcessSupervisor",
    "PrometheusLauncher",
    "State",
    "SupervisorStatus",
    "http_probe",
    "http_reload",
    "spawn_process",
    "transition",
]
