import pytest

from sparkhistory.analytics import (
    capacity_usage_trends,
    cost_optimization_opportunities,
    efficiency_analysis,
    top_resource_consumers,
)
from sparkhistory.records import (
    AnalyticsQuery,
    DifficultyLevel,
    EfficiencyCategory,
    OptimizationType,
    ResourceType,
    RiskLevel,
)
from sparkhistory.store import EventStore, StoreError


def _task_end(ts, task_id, host, run, cpu, gc, peak, disk, mem):
    return {
        "Event": "SparkListenerTaskEnd",
        "Timestamp": ts,
        "Stage ID": 0,
        "Task Info": {"Task ID": task_id, "Executor ID": "1", "Host": host},
        "Task End Reason": {"Reason": "Success"},
        "Task Metrics": {
            "Executor Run Time": run,
            "Executor CPU Time": cpu,
            "JVM GC Time": gc,
            "Peak Execution Memory": peak,
            "Disk Bytes Spilled": disk,
            "Memory Bytes Spilled": mem,
        },
    }


EVENTS = [
    ("memory-hog-app", {"Event": "SparkListenerApplicationStart", "Timestamp": 1609459200000}),
    ("memory-hog-app", {
        "Event": "SparkListenerExecutorAdded", "Timestamp": 1609459201000, "Executor ID": "1",
        "Executor Info": {"Host": "worker-1:12345", "Total Cores": 4, "Max Memory": 8589934592},
    }),
    ("memory-hog-app", _task_end(1609459205000, 1, "worker-1", 2000, 1800000000, 150, 4294967296, 0, 0)),
    ("memory-hog-app", _task_end(1609459206000, 2, "worker-1", 1800, 1600000000, 120, 3758096384, 0, 0)),
    ("memory-hog-app", _task_end(1609459207000, 3, "worker-1", 2200, 2000000000, 180, 5368709120, 0, 0)),
    ("cpu-heavy-app", {"Event": "SparkListenerApplicationStart", "Timestamp": 1609459220000}),
    ("cpu-heavy-app", _task_end(1609459225000, 1, "worker-2", 5000, 4800000000, 50, 268435456, 0, 0)),
    ("cpu-heavy-app", _task_end(1609459226000, 2, "worker-2", 4800, 4600000000, 45, 536870912, 0, 0)),
    ("spill-heavy-app", {"Event": "SparkListenerApplicationStart", "Timestamp": 1609459240000}),
    ("spill-heavy-app", _task_end(1609459245000, 1, "worker-3", 3000, 900000000, 400, 1073741824, 2147483648, 536870912)),
    ("spill-heavy-app", _task_end(1609459246000, 2, "worker-3", 3200, 950000000, 420, 1073741824, 1610612736, 805306368)),
]


@pytest.fixture
def store(tmp_path):
    with EventStore(tmp_path / "events.db") as event_store:
        for event_id, (app_id, raw) in enumerate(EVENTS, start=1):
            event_store.store_event(event_id, app_id, raw)
        yield event_store


@pytest.fixture
def empty_store(tmp_path):
    with EventStore(tmp_path / "empty.db") as event_store:
        yield event_store


def test_resource_hogs_ordered_by_peak_memory(store):
    hogs = top_resource_consumers(store, AnalyticsQuery())
    assert [h.app_id for h in hogs] == ["memory-hog-app", "spill-heavy-app", "cpu-heavy-app"]
    values = [h.consumption_value for h in hogs]
    assert values == sorted(values, reverse=True)
    for hog in hogs:
        assert hog.resource_type is ResourceType.MEMORY
        assert hog.consumption_unit == "MB"
        assert 0.0 <= hog.efficiency_score <= 100.0
        assert hog.consumption_value > 0.0
        assert hog.app_name == f"app_{hog.app_id}"


def test_resource_hogs_spilling_and_well_tuned(store):
    hogs = {h.app_id: h for h in top_resource_consumers(store, AnalyticsQuery())}
    spill = hogs["spill-heavy-app"]
    assert spill.efficiency_score == 35.0
    assert spill.recommendation == "Increase executor memory to reduce spilling"
    assert spill.efficiency_explanation.endswith("MB spilling)")
    cpu = hogs["cpu-heavy-app"]
    assert cpu.efficiency_score == 85.0
    assert cpu.efficiency_explanation == "85.0% (well-tuned)"
    assert hogs["memory-hog-app"].recommendation == "Memory usage appears optimal"


def test_resource_hogs_last_seen_and_cost(store):
    hog = top_resource_consumers(store, AnalyticsQuery(app_id="memory-hog-app"))[0]
    assert hog.last_seen == "2021-01-01 00:00:07"
    assert hog.cost_impact == pytest.approx(hog.consumption_value * 0.001)


def test_resource_hogs_filters_and_limit(store):
    only = top_resource_consumers(store, AnalyticsQuery(app_id="cpu-heavy-app"))
    assert [h.app_id for h in only] == ["cpu-heavy-app"]
    assert len(top_resource_consumers(store, AnalyticsQuery(limit=1))) == 1
    early = AnalyticsQuery(end_date="2020-12-31T00:00:00Z")
    assert top_resource_consumers(store, early) == []


def test_efficiency_analysis_categories(store):
    results = {r.app_id: r for r in efficiency_analysis(store, AnalyticsQuery())}
    assert set(results) == {"memory-hog-app", "cpu-heavy-app", "spill-heavy-app"}
    spill = results["spill-heavy-app"]
    assert spill.efficiency_category is EfficiencyCategory.OVER_PROVISIONED
    assert spill.memory_efficiency == 25.0
    assert spill.risk_level is RiskLevel.HIGH
    assert spill.optimization_actions[0] == "Reduce executor memory allocation"
    cpu = results["cpu-heavy-app"]
    assert cpu.efficiency_category is EfficiencyCategory.UNDER_PROVISIONED
    assert cpu.optimization_actions == [
        "Increase executor memory allocation",
        "Add more executor cores",
        "Monitor for OOM errors",
    ]
    assert results["memory-hog-app"].risk_level is RiskLevel.MEDIUM


def test_efficiency_analysis_ranges_and_order(store):
    results = efficiency_analysis(store, AnalyticsQuery(limit=10))
    savings = [r.potential_cost_savings for r in results]
    assert savings == sorted(savings, reverse=True)
    assert results[0].app_id == "spill-heavy-app"
    for result in results:
        assert 0.0 <= result.memory_efficiency <= 100.0
        assert 0.0 <= result.cpu_efficiency <= 100.0
        assert result.recommended_cpu_cores >= 1.0
        assert result.cpu_efficiency_explanation.endswith(")")


def test_capacity_usage_trends_single_day(store):
    trends = capacity_usage_trends(store, AnalyticsQuery())
    assert len(trends) == 1
    trend = trends[0]
    assert trend.date == "2021-01-01"
    assert trend.peak_concurrent_applications == 3
    assert trend.projected_growth_rate is None
    assert trend.average_resource_utilization == pytest.approx(
        trend.total_memory_gb_used / 3
    )
    assert 0.0 <= trend.cluster_capacity_percentage <= 100.0


def test_capacity_usage_trends_ignores_app_filter(store):
    all_apps = capacity_usage_trends(store, AnalyticsQuery())
    filtered = capacity_usage_trends(store, AnalyticsQuery(app_id="cpu-heavy-app"))
    assert filtered == all_apps


def test_cost_optimization_types_and_order(store):
    found = cost_optimization_opportunities(store, AnalyticsQuery())
    assert [o.app_id for o in found] == ["cpu-heavy-app", "memory-hog-app", "spill-heavy-app"]
    assert [o.optimization_type for o in found] == [
        OptimizationType.REDUCE_MEMORY,
        OptimizationType.ENABLE_SPOT_INSTANCES,
        OptimizationType.OPTIMIZE_PARTITIONING,
    ]
    assert [o.savings_percentage for o in found] == [40.0, 30.0, 20.0]
    assert [o.implementation_difficulty for o in found] == [
        DifficultyLevel.EASY,
        DifficultyLevel.EASY,
        DifficultyLevel.MEDIUM,
    ]


def test_cost_optimization_costs_consistent(store):
    for item in cost_optimization_opportunities(store, AnalyticsQuery()):
        assert item.confidence_score == 50.0
        assert item.current_cost >= item.optimized_cost
        assert item.formatted_savings == f"${item.current_cost - item.optimized_cost:.4f}"
    spot = cost_optimization_opportunities(store, AnalyticsQuery(app_id="memory-hog-app"))
    assert spot[0].optimization_details == "Consider using spot instances for cost savings"
    memory = cost_optimization_opportunities(store, AnalyticsQuery(app_id="cpu-heavy-app"))
    assert memory[0].optimization_details.startswith("Reduce executor memory from ")


def test_empty_store_returns_nothing(empty_store):
    query = AnalyticsQuery()
    assert top_resource_consumers(empty_store, query) == []
    assert efficiency_analysis(empty_store, query) == []
    assert capacity_usage_trends(empty_store, query) == []
    assert cost_optimization_opportunities(empty_store, query) == []


def test_negative_limit_rejected(store):
    with pytest.raises(StoreError):
        top_resource_consumers(store, AnalyticsQuery(limit=-1))


def test_invalid_date_rejected(store):
    with pytest.raises(StoreError):
        efficiency_analysis(store, AnalyticsQuery(start_date="not a date"))