"""Prometheus scrape configuration derived from a registry snapshot."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import yaml

from .models import ScrapeTarget

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from .registry import Registry

DEFAULT_INTERVAL = "15s"
_JOB_NAME = "app"
_HISTOGRAM_SUFFIXES = "(?:_bucket|_sum|_count)?"
_ALWAYS_KEPT = ("build_info",)


def derive_targets(registry: "Registry", endpoints: Sequence[str]) -> List[ScrapeTarget]:
    """Return one scrape job per metrics endpoint, filtered to the registry's series."""
    metric_names = registry.metric_names()
    targets: List[ScrapeTarget] = []
    for index, endpoint in enumerate(endpoints):
        parsed = urlparse(endpoint if "://" in endpoint else f"http://{endpoint}")
        if not parsed.hostname:
            raise ValueError(f"Metrics endpoint has no host: {endpoint}")
        host = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname
        scheme = parsed.scheme if parsed.scheme in {"http", "https"} else None
        targets.append(
            ScrapeTarget(
                job_name=_JOB_NAME if index == 0 else f"{_JOB_NAME}_{index + 1}",
                targets=(host,),
                metrics_path=parsed.path or "/metrics",
                scheme=scheme,
                metric_names=metric_names,
            )
        )
    return targets


def _keep_rule(metric_names: Sequence[str]) -> Dict[str, Any]:
    names = sorted(set(metric_names) | set(_ALWAYS_KEPT))
    pattern = "|".join(re.escape(name) for name in names)
    return {
        "source_labels": ["__name__"],
        "regex": f"(?:{pattern}){_HISTOGRAM_SUFFIXES}",
        "action": "keep",
    }


def to_scrape_config(target: ScrapeTarget) -> Dict[str, Any]:
    config: Dict[str, Any] = {
        "job_name": target.job_name,
        "static_configs": [{"targets": list(target.targets)}],
        "metrics_path": target.metrics_path,
    }
    if target.scheme:
        config["scheme"] = target.scheme
    if target.metric_names:
        config["metric_relabel_configs"] = [_keep_rule(target.metric_names)]
    return config


class ScrapeConfigGenerator:
    """Renders the engine configuration; regenerated whole on every registry change."""

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        scrape_interval: str = DEFAULT_INTERVAL,
        evaluation_interval: Optional[str] = None,
    ) -> None:
        self.endpoints = list(endpoints)
        self.scrape_interval = scrape_interval
        self.evaluation_interval = evaluation_interval or scrape_interval

    def build(self, registry: "Registry") -> Dict[str, Any]:
        targets = derive_targets(registry, self.endpoints)
        return {
            "global": {
                "scrape_interval": self.scrape_interval,
                "evaluation_interval": self.evaluation_interval,
            },
            "scrape_configs": [to_scrape_config(target) for target in targets],
        }

    def render(self, registry: "Registry") -> str:
        return yaml.safe_dump(self.build(registry), sort_keys=False, default_flow_style=False)


__all__ = ["DEFAULT_INTERVAL", "ScrapeConfigGenerator", "derive_targets", "to_scrape_config"]
