"""Tests for the materialized view refresher."""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from src.config import settings
from src.handlers.matview_refresh import (
    ALL_MATVIEWS_REFRESH_METRIC,
    MATVIEW_REFRESH_METRIC,
    refresh_materialized_views,
)


class FakeResult:
    def __init__(self, value):
        self._value = value

    def scalar_one(self):
        return self._value


class FakeSession:
    def __init__(self, db):
        self._db = db

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, statement):
        sql = str(statement)
        self._db.statements.append(sql)
        self._db.active += 1
        self._db.peak = max(self._db.peak, self._db.active)
        try:
            await asyncio.sleep(0.01)
            if sql in self._db.broken:
                raise self._db.broken[sql]
            if sql in self._db.failing:
                raise OperationalError(sql, {}, Exception("boom"))
            if sql.startswith("SELECT COUNT(*) FROM "):
                return FakeResult(self._db.counts.get(sql.rsplit(" ", 1)[-1], 0))
            return FakeResult(None)
        finally:
            self._db.active -= 1

    async def commit(self):
        self._db.commits += 1

    async def rollback(self):
        self._db.rollbacks += 1


class FakeDatabase:
    """Stands in for an ``async_sessionmaker`` bound to PostgreSQL."""

    def __init__(self, counts=None, failing=(), broken=None):
        self.counts = counts or {}
        self.failing = set(failing)
        self.broken = dict(broken or {})
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        self.active = 0
        self.peak = 0

    def __call__(self):
        return FakeSession(self)


async def test_refreshes_every_view_concurrently():
    db = FakeDatabase()

    result = await refresh_materialized_views(db, ["view_a", "view_b", "view_c"], pushgateway_url="")

    assert sorted(result.refreshed) == ["view_a", "view_b", "view_c"]
    assert result.failed == []
    assert sorted(db.statements) == [
        "REFRESH MATERIALIZED VIEW CONCURRENTLY view_a",
        "REFRESH MATERIALIZED VIEW CONCURRENTLY view_b",
        "REFRESH MATERIALIZED VIEW CONCURRENTLY view_c",
    ]
    assert set(result.view_elapsed_ms) == {"view_a", "view_b", "view_c"}
    assert result.elapsed_ms > 0


async def test_falls_back_to_blocking_refresh():
    db = FakeDatabase(failing={"REFRESH MATERIALIZED VIEW CONCURRENTLY view_b"})

    result = await refresh_materialized_views(db, ["view_a", "view_b"], pushgateway_url="")

    assert sorted(result.refreshed) == ["view_a", "view_b"]
    assert result.failed == []
    assert "REFRESH MATERIALIZED VIEW view_b" in db.statements
    assert db.rollbacks == 1


async def test_view_failing_both_strategies_is_reported():
    db = FakeDatabase(failing={
        "REFRESH MATERIALIZED VIEW CONCURRENTLY view_b",
        "REFRESH MATERIALIZED VIEW view_b",
    })

    result = await refresh_materialized_views(db, ["view_a", "view_b"], pushgateway_url="")

    assert result.refreshed == ["view_a"]
    assert result.failed == ["view_b"]
    assert result.summary().failed == ["view_b"]


async def test_unexpected_error_fails_only_that_view():
    db = FakeDatabase(broken={
        "REFRESH MATERIALIZED VIEW CONCURRENTLY view_1": ConnectionResetError("socket closed"),
    })
    views = [f"view_{i}" for i in range(6)]

    result = await refresh_materialized_views(db, views, pushgateway_url="")

    assert result.failed == ["view_1"]
    assert sorted(result.refreshed) == [v for v in views if v != "view_1"]
    # Nothing is still running once the caller has its result.
    assert db.active == 0
    assert len(db.statements) == len(views)


async def test_only_if_empty_skips_populated_views():
    db = FakeDatabase(
        counts={"view_a": 42, "view_b": 0},
        failing={"SELECT COUNT(*) FROM view_c"},
    )

    result = await refresh_materialized_views(
        db, ["view_a", "view_b", "view_c"], only_if_empty=True, pushgateway_url=""
    )

    assert result.skipped == ["view_a"]
    # A failing count does not block the refresh.
    assert sorted(result.refreshed) == ["view_b", "view_c"]
    assert "REFRESH MATERIALIZED VIEW CONCURRENTLY view_a" not in db.statements


async def test_worker_pool_bounds_parallel_refreshes(monkeypatch):
    monkeypatch.setattr(settings, "matview_workers", 2)
    db = FakeDatabase()
    views = [f"view_{i}" for i in range(6)]

    result = await refresh_materialized_views(db, views, pushgateway_url="")

    assert sorted(result.refreshed) == views
    assert db.peak == 2


async def test_invalid_view_name_is_rejected():
    with pytest.raises(ValueError):
        await refresh_materialized_views(FakeDatabase(), ["view_a; DROP TABLE tickets"])


async def test_no_database_skips_refresh():
    result = await refresh_materialized_views(None, ["view_a"])

    assert result.refreshed == []
    assert result.skipped == []


async def test_metrics_are_pushed_when_gateway_configured():
    mock_pusher = AsyncMock()
    mock_pusher.close = AsyncMock()

    with patch("src.handlers.matview_refresh.PushgatewayClient", return_value=mock_pusher) as cls:
        await refresh_materialized_views(
            FakeDatabase(), ["view_a"], pushgateway_url="pushgateway:9091"
        )

    cls.assert_called_once_with("pushgateway:9091", "ci-signal-sync-matviews")
    body = mock_pusher.push.await_args.args[0]
    assert f'{MATVIEW_REFRESH_METRIC}{{view="view_a"}}' in body
    assert f"{ALL_MATVIEWS_REFRESH_METRIC} " in body


async def test_push_failure_does_not_fail_refresh():
    mock_pusher = AsyncMock()
    mock_pusher.push.side_effect = httpx.ConnectError("gateway down")
    mock_pusher.close = AsyncMock()

    with patch("src.handlers.matview_refresh.PushgatewayClient", return_value=mock_pusher):
        result = await refresh_materialized_views(
            FakeDatabase(), ["view_a"], pushgateway_url="pushgateway:9091"
        )

    assert result.refreshed == ["view_a"]
    mock_pusher.close.assert_awaited()
