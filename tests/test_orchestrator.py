"""Tests for autoscope.orchestrator."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from autoscope.artifacts import ArtifactFetcher
from autoscope.config import AutoscopeConfig, EngineConfig
from autoscope.orchestrator import Orchestrator, Rescanner, StartSession
from autoscope.registry import RegistryStore, ScanResult
from autoscope.repo_scanner import RepoScanner
from autoscope.supervisor import State
from tests._fixtures.archives import AssetServer, StubCatalog, engine_release, self_release
from tests._fixtures.repo_builder import RepoBuilder


def _orchestrator(tmp_path: Path, *releases: tuple, **config_options: object) -> tuple[Orchestrator, AssetServer]:
    server = AssetServer()
    for artifact, data in releases:
        server.add(artifact, data)
    config = AutoscopeConfig(root=tmp_path, install_dir=tmp_path / "installs", **config_options)  # type: ignore[arg-type]
    fetcher = ArtifactFetcher(
        config.install_dir,
        catalog=StubCatalog([artifact for artifact, _ in releases]),  # type: ignore[arg-type]
        platform="linux-amd64",
        transport=server.transport(),
        keep_versions=config.engine.keep_versions,
        backoff=0,
    )
    return Orchestrator(config, fetcher=fetcher), server


def test_run_list_scans_configured_source_dir(tmp_path: Path, repo_builder: RepoBuilder) -> None:
    repo_builder.write(
        {
            "services/billing.py": """
            from autometrics import autometrics


            @autometrics
            def checkout(cart):
                return cart
            """,
            "scripts/tool.py": """
            from autometrics import autometrics


            @autometrics
            def run():
                pass
            """,
        }
    )
    orchestrator, _ = _orchestrator(tmp_path, source_dir=repo_builder.path() / "services")

    result = orchestrator.run_list()
    explicit = orchestrator.run_list(repo_builder.path())

    assert [function.qualified_name for function in result.registry] == ["billing.checkout"]
    assert [function.qualified_name for function in explicit.registry] == [
        "scripts.tool.run",
        "services.billing.checkout",
    ]


def test_ensure_engine_installs_then_reuses_active_version(tmp_path: Path) -> None:
    orchestrator, server = _orchestrator(tmp_path, engine_release("2.44.0"), engine_release("2.45.0"))

    installed = asyncio.run(orchestrator.ensure_engine())
    again = asyncio.run(orchestrator.ensure_engine())

    assert installed.version == "2.45.0"
    assert again.version == "2.45.0"
    assert len(server.requests) == 1
    assert orchestrator._engine_binary() == installed.path / "prometheus"


def test_ensure_engine_fetches_when_active_version_does_not_match(tmp_path: Path) -> None:
    orchestrator, server = _orchestrator(tmp_path, engine_release("2.44.0"), engine_release("2.45.0"))
    asyncio.run(orchestrator.ensure_engine())

    orchestrator.config.engine = EngineConfig(version="2.44.0")
    installed = asyncio.run(orchestrator.ensure_engine())

    assert installed.version == "2.44.0"
    assert orchestrator.fetcher.active("engine").version == "2.44.0"  # type: ignore[union-attr]
    assert len(server.requests) == 2


def test_build_supervisor_without_engine_is_uninstalled(tmp_path: Path) -> None:
    orchestrator, _ = _orchestrator(tmp_path)

    supervisor = orchestrator.build_supervisor(["localhost:3000"], external_url="http://localhost:6789/prometheus")

    assert supervisor.state is State.UNINSTALLED
    assert supervisor.work_dir == tmp_path / "installs" / "run"
    assert supervisor.external_url == "http://localhost:6789/prometheus"


def test_run_prune_reports_removed_installs(tmp_path: Path) -> None:
    releases = [engine_release(version) for version in ("2.43.0", "2.44.0", "2.45.0")]
    orchestrator, _ = _orchestrator(tmp_path, *releases)
    for artifact, _ in releases:
        asyncio.run(orchestrator.fetcher.fetch(artifact))

    removed = orchestrator.run_prune(keep=1)

    assert [install.version for install in removed["engine"]] == ["2.44.0", "2.43.0"]
    assert removed["self"] == []
    assert [install.version for install in orchestrator.installed()["engine"]] == ["2.45.0"]

    everything = orchestrator.run_prune(remove_all=True)
    assert [install.version for install in everything["engine"]] == ["2.45.0"]
    assert orchestrator.installed() == {"engine": [], "self": []}


def test_run_update_reports_up_to_date_and_available(tmp_path: Path) -> None:
    current, _ = _orchestrator(tmp_path / "current", self_release("0.4.0"))
    newer, _ = _orchestrator(tmp_path / "newer", self_release("0.4.0"), self_release("0.9.0"))
    executable = tmp_path / "autoscope"

    up_to_date = current.run_update(executable=executable)
    available = newer.run_update(check_only=True, executable=executable)

    assert up_to_date.status == "up-to-date"
    assert up_to_date.ok
    assert available.status == "available"
    assert available.target_version == "0.9.0"


@pytest.mark.parametrize("host", ["127.0.0.1", "0.0.0.0"])
def test_run_explore_requires_a_running_session(tmp_path: Path, host: str) -> None:
    orchestrator, _ = _orchestrator(tmp_path)

    with pytest.raises(ConnectionError, match="autoscope start"):
        orchestrator.run_explore(f"{host}:1", open_browser=False)


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("0.0.0.0", "http://localhost:6789/explorer/"),
        ("::", "http://localhost:6789/explorer/"),
        ("::1", "http://[::1]:6789/explorer/"),
    ],
)
def test_explorer_url_is_browsable_for_any_bind_host(tmp_path: Path, host: str, expected: str) -> None:
    orchestrator, _ = _orchestrator(tmp_path)
    supervisor = orchestrator.build_supervisor([], external_url="http://localhost:6789/prometheus")
    session = StartSession(store=None, supervisor=supervisor, host=host, port=6789)  # type: ignore[arg-type]

    assert session.explorer_url == expected


class _FlakyScanner:
    """Fails its first scan, then scans for real."""

    def __init__(self) -> None:
        self.calls = 0

    def scan(self, root: Path) -> ScanResult:
        self.calls += 1
        if self.calls == 1:
            raise FileNotFoundError(f"Source path not found: {root}")
        return RepoScanner().scan(root)


def test_rescanner_survives_a_failed_scan(repo_builder: RepoBuilder) -> None:
    repo_builder.write(
        {
            "billing.py": """
            from autometrics import autometrics


            @autometrics
            def checkout(cart):
                return cart
            """,
        }
    )
    store = RegistryStore()
    published = threading.Event()
    store.subscribe(lambda result: published.set())
    scanner = _FlakyScanner()
    rescanner = Rescanner(scanner, repo_builder.path(), store, interval=0.01)  # type: ignore[arg-type]

    rescanner.start()
    try:
        assert published.wait(5)
    finally:
        rescanner.stop()

    assert scanner.calls >= 2
    assert store.current().registry.metric_names()
    assert [function.qualified_name for function in store.current().registry] == ["billing.checkout"]


def test_failed_rescan_keeps_the_previous_registry(repo_builder: RepoBuilder) -> None:
    repo_builder.write({"billing.py": "from autometrics import autometrics\n\n\n@autometrics\ndef checkout():\n    pass\n"})
    initial = RepoScanner().scan(repo_builder.path())
    store = RegistryStore(initial)
    rescanner = Rescanner(RepoScanner(), repo_builder.path() / "missing", store, interval=60)

    assert rescanner.rescan() is False
    assert store.current() is initial


def test_proxy_app_lists_scanned_functions_and_forwards_to_upstream(
    tmp_path: Path, repo_builder: RepoBuilder
) -> None:
    repo_builder.write(
        {
            "billing.py": """
            from autometrics import autometrics


            @autometrics
            def checkout(cart):
                return cart
            """,
        }
    )
    seen: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "success"})

    orchestrator, server = _orchestrator(tmp_path)
    app = orchestrator.build_proxy_app(
        "https://metrics.example.com/prom",
        repo_builder.path(),
        transport=httpx.MockTransport(handler),
    )
    client = TestClient(app)

    functions = client.get("/api/functions").json()
    response = client.get("/prometheus/api/v1/query", params={"query": "up"})

    assert [function["qualifiedName"] for function in functions] == ["billing.checkout"]
    assert response.status_code == 200
    assert seen[0].url.path == "/prom/api/v1/query"
    assert seen[0].url.host == "metrics.example.com"
    assert server.requests == []
