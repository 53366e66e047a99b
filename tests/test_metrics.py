import asyncio

import pytest

from schemas.recommendation_schemas import RefreshOutcome
from services.obs.metrics import MetricsCollector


def test_record_refresh_counts_outcomes():
    collector = MetricsCollector()

    collector.record_refresh(RefreshOutcome(status="completed", orders_processed=4, pairs_merged=10, duration_ms=12.0))
    collector.record_refresh(RefreshOutcome(status="up_to_date", duration_ms=1.0))
    collector.record_refresh(RefreshOutcome(status="locked_out"))
    collector.record_refresh(RefreshOutcome(status="completed", full=True, orders_processed=6, pairs_merged=2))

    assert collector.counters["refresh_attempts"] == 4
    assert collector.counters["refresh_completed"] == 2
    assert collector.counters["refresh_up_to_date"] == 1
    assert collector.counters["refresh_locked_out"] == 1
    assert collector.counters["full_rebuilds"] == 1
    assert collector.counters["orders_processed"] == 10
    assert collector.counters["pairs_merged"] == 12
    assert collector.last_refresh["full"] is True


def test_lock_contention_raises_alert():
    collector = MetricsCollector()
    for _ in range(3):
        collector.record_refresh(RefreshOutcome(status="locked_out"))
    collector.record_refresh(RefreshOutcome(status="completed", orders_processed=1))

    summary = collector.get_performance_summary()

    assert summary["refresh"]["lock_contention_rate"] == 0.75
    assert [a["type"] for a in summary["alerts"]] == ["lock_contention"]
    assert collector.get_real_time_metrics()["health_status"] == "warning"


def test_refresh_failures_are_critical():
    collector = MetricsCollector()
    collector.record_refresh(RefreshOutcome(status="completed"))
    collector.record_refresh_failure(RuntimeError("boom"))

    summary = collector.get_performance_summary()

    assert summary["counters"]["refresh_failed"] == 1
    assert summary["refresh"]["success_rate"] == 0.5
    assert collector.get_real_time_metrics()["health_status"] == "critical"


def test_record_query_tracks_latency_and_empty_results():
    collector = MetricsCollector()
    for duration in (10.0, 20.0, 30.0):
        collector.record_query(duration, result_count=2)
    collector.record_query(5.0, result_count=0)
    collector.record_query(1.0, result_count=0, success=False)

    summary = collector.get_performance_summary()

    assert collector.counters["queries"] == 5
    assert collector.counters["query_failures"] == 1
    assert collector.counters["empty_results"] == 1
    assert collector.counters["products_recommended"] == 6
    assert summary["queries"]["count"] == 4
    assert summary["queries"]["p50_duration_ms"] == 15.0


def test_phase_timer_records_timings_and_drops():
    collector = MetricsCollector()

    async def scenario():
        async with collector.phase_timer("filter", input_count=8) as phase:
            phase.output_count = 3
        with pytest.raises(ValueError):
            async with collector.phase_timer("filter"):
                raise ValueError("bad page")

    asyncio.run(scenario())

    diagnostics = collector.get_phase_diagnostics("filter")
    assert diagnostics["filter"]["count"] == 2
    assert collector.drop_reasons["filter:filtered"] == 5


def test_percentile_interpolates():
    collector = MetricsCollector()

    assert collector._percentile([], 95) == 0
    assert collector._percentile([1.0, 2.0, 3.0, 4.0], 50) == 2.5
    assert collector._percentile([5.0], 99) == 5.0


def test_reset_clears_everything():
    collector = MetricsCollector()
    collector.record_refresh(RefreshOutcome(status="completed", orders_processed=2))
    collector.record_query(3.0, 1)

    collector.reset()

    assert all(value == 0 for value in collector.counters.values())
    assert collector.last_refresh is None
    assert collector.get_phase_diagnostics() == {}
