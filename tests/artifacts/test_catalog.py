"""Tests for release selection and the GitHub-backed release catalog."""

from __future__ import annotations

from typing import Any, Dict, List

import httpx
import pytest
from packaging.version import Version

from autoscope.artifacts import ENGINE_CHANNEL, ReleaseCatalog, is_exact_pin, parse_constraint, select_release
from autoscope.artifacts.catalog import Release, parse_checksums, parse_digest
from autoscope.errors import ArtifactNotFoundError, NetworkError

DIGEST = "a" * 64


def _release(version: str, *, prerelease: bool = False) -> Release:
    return Release(version=Version(version), tag=f"v{version}", prerelease=prerelease, assets=())


def _payload(tag: str, *, prerelease: bool = False, digest: bool = True, **extra: Any) -> Dict[str, Any]:
    version = tag.lstrip("v")
    name = f"prometheus-{version}.linux-amd64.tar.gz"
    asset: Dict[str, Any] = {
        "name": name,
        "browser_download_url": f"https://github.com/prometheus/prometheus/releases/download/{tag}/{name}",
    }
    if digest:
        asset["digest"] = f"sha256:{DIGEST}"
    payload = {"tag_name": tag, "prerelease": prerelease, "draft": False, "assets": [asset]}
    payload.update(extra)
    return payload


@pytest.mark.parametrize(
    ("constraint", "expected"),
    [
        (None, "2.45.0"),
        ("latest", "2.45.0"),
        ("2.44.1", "2.44.1"),
        ("v2.44.1", "2.44.1"),
        (">=2.40,<2.45", "2.44.1"),
        ("~=2.43.0", "2.43.2"),
    ],
)
def test_select_release_picks_newest_match(constraint: str, expected: str) -> None:
    releases = [_release("2.43.2"), _release("2.45.0"), _release("2.44.1"), _release("3.0.0rc1", prerelease=True)]

    selected = select_release(releases, constraint)

    assert selected is not None
    assert str(selected.version) == expected


def test_select_release_includes_prereleases_only_when_allowed() -> None:
    releases = [_release("2.45.0"), _release("3.0.0rc1", prerelease=True)]

    assert select_release(releases, None, allow_prerelease=True).version == Version("3.0.0rc1")  # type: ignore[union-attr]
    assert select_release(releases, ">=3.0.0rc1") is None


@pytest.mark.parametrize("constraint", ["3.0.0-rc.1", "v3.0.0rc1", "==3.0.0rc1"])
def test_exact_pin_selects_a_prerelease(constraint: str) -> None:
    releases = [_release("2.45.0"), _release("3.0.0rc1", prerelease=True)]

    selected = select_release(releases, constraint)

    assert selected is not None
    assert selected.version == Version("3.0.0rc1")
    assert is_exact_pin(parse_constraint(constraint))
    assert not is_exact_pin(parse_constraint(">=3.0.0rc1"))


def test_parse_constraint_rejects_garbage() -> None:
    assert parse_constraint("") is None
    with pytest.raises(ValueError, match="Invalid version constraint"):
        parse_constraint("newest please")


def test_parse_digest_and_checksum_lines() -> None:
    assert parse_digest(f"SHA256:{DIGEST.upper()}") == f"sha256:{DIGEST}"
    assert parse_digest(DIGEST) == f"sha256:{DIGEST}"
    assert parse_digest("md5:abc") is None
    assert parse_checksums(f"{DIGEST}  prometheus.tar.gz\n{DIGEST} *other.zip\nnoise\n") == {
        "prometheus.tar.gz": f"sha256:{DIGEST}",
        "other.zip": f"sha256:{DIGEST}",
    }


def test_resolve_returns_artifact_for_platform_asset() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json=[
                _payload("v2.45.0"),
                _payload("v2.44.0"),
                _payload("v2.46.0", draft=True),
                _payload("nightly"),
            ],
        )

    with ReleaseCatalog(transport=httpx.MockTransport(handler)) as catalog:
        artifact = catalog.resolve(ENGINE_CHANNEL, None, "linux-amd64")

    assert artifact.kind == "engine"
    assert artifact.version == "2.45.0"
    assert artifact.name == "prometheus-2.45.0.linux-amd64.tar.gz"
    assert artifact.url.endswith("/v2.45.0/prometheus-2.45.0.linux-amd64.tar.gz")
    assert artifact.digest == f"sha256:{DIGEST}"
    assert requests[0].url.path == "/repos/prometheus/prometheus/releases"
    assert requests[0].url.params["per_page"] == "100"


def test_resolve_follows_pagination_links() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json=[_payload("v2.30.0")])
        return httpx.Response(
            200,
            json=[_payload("v2.45.0")],
            headers={"Link": '<https://api.github.com/repos/prometheus/prometheus/releases?page=2>; rel="next"'},
        )

    with ReleaseCatalog(transport=httpx.MockTransport(handler)) as catalog:
        versions = [str(release.version) for release in catalog.releases(ENGINE_CHANNEL)]

    assert versions == ["2.45.0", "2.30.0"]


def test_resolve_falls_back_to_checksum_asset() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("sha256sums.txt"):
            return httpx.Response(200, text=f"{'b' * 64}  prometheus-2.45.0.linux-amd64.tar.gz\n")
        payload = _payload("v2.45.0", digest=False)
        payload["assets"].append(
            {"name": "sha256sums.txt", "browser_download_url": "https://github.com/dl/v2.45.0/sha256sums.txt"}
        )
        return httpx.Response(200, json=[payload])

    with ReleaseCatalog(transport=httpx.MockTransport(handler)) as catalog:
        artifact = catalog.resolve(ENGINE_CHANNEL, "2.45.0", "linux-amd64")

    assert artifact.digest == f"sha256:{'b' * 64}"


def test_resolve_reports_missing_release_and_missing_asset() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[_payload("v2.45.0")]))

    with ReleaseCatalog(transport=transport) as catalog:
        with pytest.raises(ArtifactNotFoundError, match="satisfies '==9.9'"):
            catalog.resolve(ENGINE_CHANNEL, "==9.9", "linux-amd64")
        with pytest.raises(ArtifactNotFoundError, match="darwin-arm64"):
            catalog.resolve(ENGINE_CHANNEL, None, "darwin-arm64")


def test_transient_failures_are_retried_then_surface_as_network_error() -> None:
    calls = {"count": 0}

    def flaky(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=[_payload("v2.45.0")])

    with ReleaseCatalog(transport=httpx.MockTransport(flaky)) as catalog:
        assert catalog.resolve(ENGINE_CHANNEL, None, "linux-amd64").version == "2.45.0"
    assert calls["count"] == 2

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with ReleaseCatalog(transport=httpx.MockTransport(down)) as catalog:
        with pytest.raises(NetworkError):
            catalog.releases(ENGINE_CHANNEL)
