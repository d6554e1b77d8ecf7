"""Tests for the explorer service, registry API and engine proxy."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from autoscope.models import Diagnostic, InstrumentedFunction
from autoscope.registry import Registry, RegistryStore, ScanResult
from autoscope.service import RemoteEngine, create_app
from autoscope.supervisor import State, SupervisorStatus


class _StubSupervisor:
    def __init__(self, endpoint: Optional[str] = "http://127.0.0.1:9090") -> None:
        self._endpoint = endpoint

    def endpoint(self) -> Optional[str]:
        return self._endpoint

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            state=State.RUNNING if self._endpoint else State.CRASHED,
            endpoint=self._endpoint,
            needs_attention=self._endpoint is None,
            restarts=1,
            last_error=None if self._endpoint else "Engine exited with code 1",
            pid=4242 if self._endpoint else None,
        )


def _function(name: str, file: str, line: int) -> InstrumentedFunction:
    return InstrumentedFunction(
        qualified_name=name,
        module=name.rsplit(".", 1)[0],
        file=file,
        line_start=line,
        line_end=line + 3,
        language="python",
        metric_names=("function_calls_total", "function_calls_duration_seconds"),
    )


@pytest.fixture
def store() -> RegistryStore:
    return RegistryStore(
        ScanResult(
            registry=Registry(
                (
                    _function("billing.checkout", "billing.py", 5),
                    _function("handlers.get", "a/handlers.py", 1),
                    _function("handlers.get", "b/handlers.py", 1),
                )
            ),
            diagnostics=(Diagnostic(file="legacy.py", code="scan-error", message="not valid UTF-8"),),
            files_scanned=4,
        )
    )


@pytest.fixture
def ui_dir(tmp_path: Path) -> Path:
    ui = tmp_path / "ui"
    ui.mkdir()
    (ui / "index.html").write_text("<h1>autoscope</h1>", encoding="utf-8")
    (ui / "app.js").write_text("console.log('hi');", encoding="utf-8")
    (tmp_path / "secret.txt").write_text("do not serve", encoding="utf-8")
    return ui


def _client(store: RegistryStore, ui_dir: Path, supervisor: _StubSupervisor, handler=None) -> TestClient:  # type: ignore[no-untyped-def]
    transport = httpx.MockTransport(handler) if handler is not None else None
    return TestClient(create_app(supervisor, store, ui_dir=ui_dir, transport=transport))


def test_health_endpoint(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor())

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_functions_are_listed_in_registry_order(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor())

    response = client.get("/api/functions")

    assert response.status_code == 200
    data = response.json()
    assert [item["qualifiedName"] for item in data] == ["billing.checkout", "handlers.get", "handlers.get"]
    assert data[0]["lineStart"] == 5
    assert data[0]["metricNames"] == ["function_calls_total", "function_calls_duration_seconds"]


def test_function_lookup_returns_every_file_and_404s_unknown_names(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor())

    found = client.get("/api/functions/handlers.get")
    missing = client.get("/api/functions/orders.place")

    assert [item["file"] for item in found.json()] == ["a/handlers.py", "b/handlers.py"]
    assert missing.status_code == 404


def test_status_reports_engine_and_registry_counts(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor())

    data = client.get("/api/status").json()

    assert data == {
        "state": "running",
        "endpoint": "http://127.0.0.1:9090",
        "needs_attention": False,
        "restarts": 1,
        "last_error": None,
        "functions": 3,
        "diagnostics": 1,
    }


def test_proxy_forwards_path_query_and_body(store: RegistryStore, ui_dir: Path) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"status": "success", "data": {"resultType": "vector", "result": []}},
            headers={"X-Prometheus-Api": "v1"},
        )

    client = _client(store, ui_dir, _StubSupervisor(), handler)

    response = client.get("/prometheus/api/v1/query", params={"query": 'sum(function_calls_total{function="checkout"})'})
    posted = client.post("/prometheus/api/v1/query_range", data={"query": "up", "step": "15s"})

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert response.headers["x-prometheus-api"] == "v1"
    assert str(seen[0].url).startswith("http://127.0.0.1:9090/prometheus/api/v1/query?query=")
    assert seen[0].url.params["query"] == 'sum(function_calls_total{function="checkout"})'
    assert posted.status_code == 200
    assert seen[1].method == "POST"
    assert seen[1].url.path == "/prometheus/api/v1/query_range"
    assert b"query=up" in seen[1].content


def test_proxy_passes_upstream_errors_through(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(
        store,
        ui_dir,
        _StubSupervisor(),
        lambda request: httpx.Response(400, json={"status": "error", "error": "parse error"}),
    )

    response = client.get("/prometheus/api/v1/query", params={"query": "sum("})

    assert response.status_code == 400
    assert response.json()["error"] == "parse error"


def test_proxy_without_running_engine_is_503(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor(endpoint=None))

    response = client.get("/prometheus/api/v1/query", params={"query": "up"})

    assert response.status_code == 503
    assert response.json() == {"detail": "upstream unavailable"}


def test_unreachable_engine_is_502(store: RegistryStore, ui_dir: Path) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(store, ui_dir, _StubSupervisor(), refuse)

    response = client.get("/prometheus/-/ready")

    assert response.status_code == 502
    assert "unreachable" in response.json()["detail"]


def test_explorer_serves_ui_files(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor())

    redirect = client.get("/", follow_redirects=False)
    index = client.get("/explorer/")
    script = client.get("/explorer/app.js")

    assert redirect.status_code in {302, 307}
    assert redirect.headers["location"] == "/explorer/"
    assert index.status_code == 200
    assert "autoscope" in index.text
    assert script.status_code == 200


def test_explorer_rejects_traversal_and_missing_files(store: RegistryStore, ui_dir: Path) -> None:
    client = _client(store, ui_dir, _StubSupervisor())

    assert client.get("/explorer/..%2Fsecret.txt").status_code == 404
    assert client.get("/explorer/missing.css").status_code == 404


def test_packaged_explorer_has_an_index(store: RegistryStore) -> None:
    client = TestClient(create_app(_StubSupervisor(), store))

    response = client.get("/explorer/")

    assert response.status_code == 200
    assert "/api/functions" in client.get("/explorer/app.js").text


def test_remote_engine_is_reached_at_the_root_of_its_url(store: RegistryStore, ui_dir: Path) -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "success", "data": []})

    engine = RemoteEngine("prometheus.internal:9090/")
    client = TestClient(
        create_app(engine, store, ui_dir=ui_dir, transport=httpx.MockTransport(handler), forward_prefix=False)
    )

    response = client.get("/prometheus/api/v1/label/__name__/values", params={"match[]": "function_calls_total"})
    status = client.get("/api/status").json()

    assert response.status_code == 200
    assert str(seen[0].url).startswith("http://prometheus.internal:9090/api/v1/label/__name__/values?")
    assert status["state"] == "running"
    assert status["endpoint"] == "http://prometheus.internal:9090"
    assert status["functions"] == 3


@pytest.mark.parametrize("url", ["ftp://prometheus.internal", "http://", "https:///api"])
def test_remote_engine_requires_an_http_url(url: str) -> None:
    with pytest.raises(ValueError, match="Prometheus URL"):
        RemoteEngine(url)
