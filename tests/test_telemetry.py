"""
Unit tests for the metric store, call tracking and correlation ids.
"""

import asyncio
import re

import pytest

from circuit_breaker import CircuitBreaker
from errors import RateLimitedError
from structured_logging import correlation_id_var
from telemetry import MetricsStore, generate_correlation_id, summarize, track_api_call


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestMetricsStore:

    def test_record_and_query_by_name(self):
        store = MetricsStore()
        store.record("azure_costs_success", 1)
        store.record("azure_costs_failure", 1)
        store.record("completion_chat_success", 1)
        result = store.query(name="azure_costs")
        assert [m["name"] for m in result["metrics"]] == ["azure_costs_success", "azure_costs_failure"]
        assert set(result["summary"]) == {"azure_costs_success", "azure_costs_failure"}

    def test_query_since(self):
        clock = FakeClock()
        store = MetricsStore(clock=clock)
        store.record("old")
        clock.now += 10
        store.record("new")
        since = (clock.now - 5) * 1000
        assert [m["name"] for m in store.query(since=since)["metrics"]] == ["new"]

    def test_ttl_and_capacity(self):
        clock = FakeClock()
        store = MetricsStore(max_size=2, ttl=60, clock=clock)
        store.record("a")
        store.record("b")
        store.record("c")
        assert [m.name for m in store.all()] == ["b", "c"]
        clock.now += 61
        assert store.all() == []

    def test_correlation_id_attached_from_context(self):
        store = MetricsStore()
        token = correlation_id_var.set("cid-1")
        try:
            metric = store.record("request_received", intent="unknown")
        finally:
            correlation_id_var.reset(token)
        assert metric.tags == {"intent": "unknown", "correlation_id": "cid-1"}

    def test_stats(self):
        store = MetricsStore()
        store.record("request_received")
        store.record("request_received")
        store.record("request_completed", 100, duration_ms=100)
        store.record("request_error", kind="timeout")
        store.record("rate_limit_exceeded")
        stats = store.stats()
        assert stats["totalRequests"] == 2
        assert stats["successRate"] == 0.5
        assert stats["errorRate"] == 0.5
        assert stats["averageLatency"] == 100
        assert stats["rateLimit"] == {"exceeded": 1, "total": 3}

    def test_stats_empty(self):
        stats = MetricsStore().stats()
        assert stats["totalRequests"] == 0
        assert stats["successRate"] == 0.0


def test_summarize():
    store = MetricsStore()
    store.record("latency", 10)
    store.record("latency", 30)
    summary = summarize(store.all())["latency"]
    assert summary == {"count": 2, "sum": 40.0, "avg": 20.0, "min": 10, "max": 30}


class TestTrackApiCall:

    def test_success_metric(self):
        store = MetricsStore()
        breaker = CircuitBreaker("completion")

        async def call():
            return "done"

        assert asyncio.run(track_api_call(store, breaker, "completion", "chat", call)) == "done"
        metric = store.all()[0]
        assert metric.name == "completion_chat_success"
        assert "duration_ms" in metric.tags

    def test_failure_metric_carries_kind(self):
        store = MetricsStore()
        breaker = CircuitBreaker("completion")

        async def call():
            raise RateLimitedError("slow down", "completion")

        with pytest.raises(RateLimitedError):
            asyncio.run(track_api_call(store, breaker, "completion", "chat", call))
        metric = store.all()[0]
        assert metric.name == "completion_chat_failure"
        assert metric.tags["error_kind"] == "rate_limit"
        assert breaker.failures == 1


def test_correlation_ids_are_unique():
    ids = {generate_correlation_id() for _ in range(100)}
    assert len(ids) == 100
    assert all(re.fullmatch(r"\d{13}-[0-9a-f]{12}", cid) for cid in ids)
