"""Prometheus Pushgateway client (text exposition format)."""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def render_gauges(samples: dict[str, list[tuple[dict[str, str], float]]], help_text: dict[str, str]) -> str:
    """Render ``{metric: [(labels, value), ...]}`` as Prometheus text format."""
    lines: list[str] = []
    for metric, points in samples.items():
        if metric in help_text:
            lines.append(f"# HELP {metric} {help_text[metric]}")
        lines.append(f"# TYPE {metric} gauge")
        for labels, value in points:
            if labels:
                rendered = ",".join(f'{k}="{_escape_label(v)}"' for k, v in sorted(labels.items()))
                lines.append(f"{metric}{{{rendered}}} {value}")
            else:
                lines.append(f"{metric} {value}")
    return "\n".join(lines) + "\n"


class PushgatewayClient:
    """Push a group of gauges for one job to a Pushgateway."""

    def __init__(self, base_url: str, job: str) -> None:
        if not base_url:
            raise RuntimeError("Pushgateway not configured — set SIGSYNC_PROMETHEUS_PUSHGATEWAY")
        if "://" not in base_url:
            base_url = f"http://{base_url}"
        self._url = f"{base_url.rstrip('/')}/metrics/job/{job}"
        self._client = httpx.AsyncClient(timeout=10.0)

    async def push(self, body: str) -> None:
        # POST replaces only the metrics with the same names in the group.
        resp = await self._client.post(
            self._url,
            content=body.encode(),
            headers={"Content-Type": "text/plain; version=0.0.4"},
        )
        resp.raise_for_status()
        logger.info("Pushed metrics to %s", self._url)

    async def close(self) -> None:
        await self._client.aclose()
