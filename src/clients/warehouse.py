"""BigQuery REST client (jobs.query + getQueryResults paging)."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

_BIGQUERY_API = "https://bigquery.googleapis.com/bigquery/v2"


class WarehouseError(RuntimeError):
    """The warehouse could not run a query or page through its results."""


class Warehouse(Protocol):
    def query(self, sql: str, params: dict[str, Any] | None = None) -> AsyncIterator[dict]:
        ...


def _query_parameter(name: str, value: Any) -> dict:
    if isinstance(value, (list, tuple)):
        return {
            "name": name,
            "parameterType": {"type": "ARRAY", "arrayType": {"type": "STRING"}},
            "parameterValue": {"arrayValues": [{"value": str(v)} for v in value]},
        }
    if isinstance(value, bool):
        return {
            "name": name,
            "parameterType": {"type": "BOOL"},
            "parameterValue": {"value": "true" if value else "false"},
        }
    if isinstance(value, int):
        return {
            "name": name,
            "parameterType": {"type": "INT64"},
            "parameterValue": {"value": str(value)},
        }
    return {
        "name": name,
        "parameterType": {"type": "STRING"},
        "parameterValue": {"value": str(value)},
    }


def _decode_scalar(field: dict, raw: Any) -> Any:
    if raw is None:
        return None
    kind = field.get("type", "STRING")
    if kind in ("RECORD", "STRUCT"):
        return decode_row(field.get("fields", []), raw)
    if kind in ("INTEGER", "INT64"):
        return int(raw)
    if kind in ("FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC"):
        return float(raw)
    if kind in ("BOOLEAN", "BOOL"):
        return raw in (True, "true", "TRUE")
    if kind == "TIMESTAMP":
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    return raw


def decode_row(fields: list[dict], row: dict) -> dict:
    """Turn a BigQuery ``{"f": [{"v": ...}]}`` row into a plain dict."""
    decoded: dict[str, Any] = {}
    for field, cell in zip(fields, row.get("f", [])):
        raw = cell.get("v") if isinstance(cell, dict) else cell
        if field.get("mode") == "REPEATED":
            decoded[field["name"]] = [_decode_scalar(field, item.get("v")) for item in raw or []]
        else:
            decoded[field["name"]] = _decode_scalar(field, raw)
    return decoded


class WarehouseClient:
    """Run standard-SQL queries against BigQuery and stream the rows back."""

    def __init__(self, project: str | None = None, token: str | None = None) -> None:
        self._project = project or settings.bigquery_project
        token = token or settings.bigquery_token
        if not self._project or not token:
            raise RuntimeError(
                "Warehouse not configured — set SIGSYNC_BIGQUERY_PROJECT and SIGSYNC_BIGQUERY_TOKEN"
            )
        self._location = settings.bigquery_location
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, read=120.0))

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, url, headers=self._headers, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise WarehouseError(f"failed to execute query: {exc}") from exc
        data = resp.json()
        errors = data.get("errors")
        if errors:
            raise WarehouseError(f"query returned errors: {errors[0].get('message', errors[0])}")
        return data

    async def query(self, sql: str, params: dict[str, Any] | None = None) -> AsyncIterator[dict]:
        """Yield decoded rows for ``sql``, following page tokens until exhausted."""
        body: dict[str, Any] = {
            "query": sql,
            "useLegacySql": False,
            "location": self._location,
            "timeoutMs": 60000,
        }
        if params:
            body["parameterMode"] = "NAMED"
            body["queryParameters"] = [_query_parameter(k, v) for k, v in params.items()]

        data = await self._request(
            "POST", f"{_BIGQUERY_API}/projects/{self._project}/queries", json=body
        )
        job_id = data.get("jobReference", {}).get("jobId", "")
        results_url = f"{_BIGQUERY_API}/projects/{self._project}/queries/{job_id}"

        while not data.get("jobComplete", False):
            logger.debug("Waiting on warehouse job %s", job_id)
            data = await self._request(
                "GET", results_url, params={"location": self._location, "timeoutMs": 60000}
            )

        fields = data.get("schema", {}).get("fields", [])
        while True:
            for row in data.get("rows", []):
                yield decode_row(fields, row)
            page_token = data.get("pageToken")
            if not page_token:
                break
            data = await self._request(
                "GET",
                results_url,
                params={"location": self._location, "pageToken": page_token},
            )

    async def close(self) -> None:
        await self._client.aclose()
