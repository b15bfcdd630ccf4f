"""Tests for the warehouse, blob store and pushgateway HTTP clients."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from src.clients.blob_store import BlobStoreClient, BlobStoreError
from src.clients.pushgateway import PushgatewayClient, render_gauges
from src.clients.warehouse import WarehouseClient, WarehouseError, decode_row

FIELDS = [
    {"name": "key", "type": "STRING"},
    {"name": "jira_id", "type": "STRING"},
    {"name": "last_changed_time", "type": "TIMESTAMP"},
    {"name": "labels", "type": "STRING", "mode": "REPEATED"},
]


def _bq_row(key, jira_id, labels):
    return {"f": [
        {"v": key},
        {"v": jira_id},
        {"v": "1.7592E9"},
        {"v": [{"v": label} for label in labels]},
    ]}


def _mock_client(client, handler):
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_decode_row():
    row = decode_row(FIELDS, _bq_row("OCPBUGS-1", "101", ["ci-fail"]))

    assert row == {
        "key": "OCPBUGS-1",
        "jira_id": "101",
        "last_changed_time": datetime.fromtimestamp(1.7592e9, tz=timezone.utc),
        "labels": ["ci-fail"],
    }


def test_decode_row_nulls():
    row = decode_row(FIELDS, {"f": [{"v": "OCPBUGS-2"}, {"v": None}, {"v": None}, {"v": None}]})

    assert row["jira_id"] is None
    assert row["last_changed_time"] is None
    assert row["labels"] == []


async def test_query_polls_and_pages():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"jobReference": {"jobId": "job_1"}, "jobComplete": False})
        if "pageToken" not in request.url.params:
            return httpx.Response(200, json={
                "jobComplete": True,
                "schema": {"fields": FIELDS},
                "rows": [_bq_row("OCPBUGS-1", "101", [])],
                "pageToken": "page-2",
            })
        return httpx.Response(200, json={
            "jobComplete": True,
            "schema": {"fields": FIELDS},
            "rows": [_bq_row("OCPBUGS-2", "102", ["a", "b"])],
        })

    client = WarehouseClient(project="ci-project", token="secret")
    _mock_client(client, handler)
    rows = [row async for row in client.query("SELECT 1", {"keys": ["OCPBUGS-1"], "days": 14})]
    await client.close()

    assert [r["key"] for r in rows] == ["OCPBUGS-1", "OCPBUGS-2"]
    assert rows[1]["labels"] == ["a", "b"]
    body = json.loads(requests[0].content)
    assert body["useLegacySql"] is False
    assert body["queryParameters"][0]["parameterType"]["type"] == "ARRAY"
    assert body["queryParameters"][1]["parameterType"]["type"] == "INT64"
    assert requests[0].headers["Authorization"] == "Bearer secret"
    assert requests[-1].url.params["pageToken"] == "page-2"


async def test_query_failure_raises_warehouse_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"message": "denied"}})

    client = WarehouseClient(project="ci-project", token="secret")
    _mock_client(client, handler)
    with pytest.raises(WarehouseError):
        async for _ in client.query("SELECT 1"):
            pass
    await client.close()


def test_warehouse_requires_configuration():
    with pytest.raises(RuntimeError):
        WarehouseClient(project="", token="")


async def test_list_objects_follows_page_tokens():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["prefix"] == "logs/job/1/"
        assert request.url.params["matchGlob"] == "logs/job/1/**/*.log"
        if request.url.params.get("pageToken") == "next":
            return httpx.Response(200, json={"items": [{"name": "logs/job/1/c.log"}]})
        return httpx.Response(200, json={
            "items": [{"name": "logs/job/1/a.log"}, {"name": "logs/job/1/b.log"}],
            "nextPageToken": "next",
        })

    client = BlobStoreClient(bucket="test-platform-results")
    _mock_client(client, handler)
    names = [n async for n in client.list_objects("logs/job/1/", "logs/job/1/**/*.log")]
    await client.close()

    assert names == ["logs/job/1/a.log", "logs/job/1/b.log", "logs/job/1/c.log"]


async def test_open_lines_streams_object():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["alt"] == "media"
        return httpx.Response(200, content=b"first\nsecond\n")

    client = BlobStoreClient(bucket="test-platform-results")
    _mock_client(client, handler)
    async with client.open_lines("logs/job/1/build-log.txt") as lines:
        read = [line async for line in lines]
    await client.close()

    assert [line.rstrip("\n") for line in read] == ["first", "second"]


async def test_open_lines_error_status():
    client = BlobStoreClient(bucket="test-platform-results")
    _mock_client(client, lambda request: httpx.Response(404))
    with pytest.raises(BlobStoreError):
        async with client.open_lines("logs/job/1/missing.txt"):
            pass
    await client.close()


def test_render_gauges():
    body = render_gauges(
        {"refresh_millis": [({"view": 'a"b'}, 12.5)], "total_millis": [({}, 40.0)]},
        {"refresh_millis": "Refresh time"},
    )

    assert body == (
        "# HELP refresh_millis Refresh time\n"
        "# TYPE refresh_millis gauge\n"
        'refresh_millis{view="a\\"b"} 12.5\n'
        "# TYPE total_millis gauge\n"
        "total_millis 40.0\n"
    )


async def test_pushgateway_posts_to_job_group():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    client = PushgatewayClient("pushgateway:9091", "matviews")
    _mock_client(client, handler)
    await client.push("total_millis 1\n")
    await client.close()

    assert str(seen[0].url) == "http://pushgateway:9091/metrics/job/matviews"
    assert seen[0].content == b"total_millis 1\n"
