import json
from dataclasses import asdict
from datetime import datetime, timezone

import pytest

from sparkhistory.records import (
    AnalyticsQuery,
    ApplicationInfo,
    CostOptimization,
    DifficultyLevel,
    EfficiencyCategory,
    ExecutorSummary,
    OptimizationType,
    ResourceType,
    RiskLevel,
    SparkEvent,
)

TASK_END = {
    "Event": "SparkListenerTaskEnd",
    "Timestamp": 1609459205000,
    "Stage ID": 0,
    "Task Info": {"Task ID": 1, "Executor ID": "1", "Host": "worker-1"},
    "Task Metrics": {"Executor Run Time": 2000, "JVM GC Time": 150},
}


def test_task_end_fields_extracted():
    event = SparkEvent.from_json(TASK_END, "memory-hog-app", 7)
    assert event.id == 7
    assert event.app_id == "memory-hog-app"
    assert event.event_type == "SparkListenerTaskEnd"
    assert event.stage_id == 0
    assert event.task_id == 1
    assert event.job_id is None
    assert event.duration_ms == 2000
    assert event.raw_data == TASK_END


def test_timestamp_round_trips_from_millis():
    event = SparkEvent.from_json(TASK_END, "a", 1)
    parsed = datetime.fromisoformat(event.timestamp)
    assert parsed == datetime.fromtimestamp(1609459205, tz=timezone.utc)
    assert event.timestamp.endswith("+00:00")


def test_timestamp_keeps_milliseconds():
    raw = {"Event": "SparkListenerJobStart", "Timestamp": 1609459205123, "Job ID": 3}
    event = SparkEvent.from_json(raw, "a", 1)
    parsed = datetime.fromisoformat(event.timestamp)
    assert parsed.microsecond == 123000
    assert event.job_id == 3


def test_missing_timestamp_uses_current_time():
    before = datetime.now(timezone.utc).replace(microsecond=0)
    event = SparkEvent.from_json({"Event": "SparkListenerLogStart"}, "a", 1)
    after = datetime.now(timezone.utc)
    assert before <= datetime.fromisoformat(event.timestamp) <= after


def test_non_integer_timestamp_uses_current_time():
    before = datetime.now(timezone.utc).replace(microsecond=0)
    event = SparkEvent.from_json({"Event": "X", "Timestamp": 12.5}, "a", 1)
    assert datetime.fromisoformat(event.timestamp) >= before


def test_duration_only_for_task_end():
    raw = dict(TASK_END, Event="SparkListenerTaskStart")
    event = SparkEvent.from_json(raw, "a", 1)
    assert event.duration_ms is None
    assert event.task_id == 1


def test_boolean_ids_are_ignored():
    raw = {"Event": "SparkListenerJobStart", "Job ID": True, "Stage ID": "4"}
    event = SparkEvent.from_json(raw, "a", 1)
    assert event.job_id is None
    assert event.stage_id is None


@pytest.mark.parametrize(
    "raw",
    [{}, {"Event": 5}, {"Timestamp": 1}, [], "SparkListenerTaskEnd", None],
)
def test_missing_event_field_raises(raw):
    with pytest.raises(ValueError, match="Missing Event field"):
        SparkEvent.from_json(raw, "a", 1)


def test_raw_data_is_independent_copy():
    raw = {"Event": "E", "Task Info": {"Task ID": 9}}
    event = SparkEvent.from_json(raw, "a", 1)
    raw["Task Info"]["Task ID"] = 10
    assert event.raw_data["Task Info"]["Task ID"] == 9


@pytest.mark.parametrize(
    "enum_cls, label, expected",
    [
        (EfficiencyCategory, "OverProvisioned", EfficiencyCategory.OVER_PROVISIONED),
        (EfficiencyCategory, "unknown", EfficiencyCategory.WELL_TUNED),
        (RiskLevel, "High", RiskLevel.HIGH),
        (RiskLevel, "unknown", RiskLevel.MEDIUM),
        (OptimizationType, "ReduceMemory", OptimizationType.REDUCE_MEMORY),
        (OptimizationType, "unknown", OptimizationType.SCHEDULE_OFF_PEAK),
        (DifficultyLevel, "Easy", DifficultyLevel.EASY),
        (DifficultyLevel, "unknown", DifficultyLevel.MEDIUM),
    ],
)
def test_enum_labels_and_fallbacks(enum_cls, label, expected):
    assert enum_cls(label) is expected


def test_resource_type_rejects_unknown():
    with pytest.raises(ValueError):
        ResourceType("Bandwidth")


def test_enums_serialise_as_labels():
    assert json.dumps(ResourceType("Memory")) == '"Memory"'
    assert json.dumps(EfficiencyCategory("UnderProvisioned")) == '"UnderProvisioned"'


def test_cost_optimization_serialises():
    item = CostOptimization(
        optimization_type=OptimizationType.ENABLE_SPOT_INSTANCES,
        app_id="cpu-heavy-app",
        app_name="app_cpu-heavy-app",
        current_cost=0.5,
        optimized_cost=0.35,
        savings_percentage=30.0,
        confidence_score=50.0,
        implementation_difficulty=DifficultyLevel.EASY,
        optimization_details="Consider using spot instances for cost savings",
        formatted_savings="$0.1500",
    )
    decoded = json.loads(json.dumps(asdict(item)))
    assert decoded["optimization_type"] == "EnableSpotInstances"
    assert decoded["implementation_difficulty"] == "Easy"
    assert decoded["app_id"] == "cpu-heavy-app"


def test_analytics_query_defaults():
    query = AnalyticsQuery()
    assert (query.start_date, query.end_date, query.app_id, query.limit) == (
        None,
        None,
        None,
        None,
    )


def test_default_collections_are_not_shared():
    first = ApplicationInfo(id="a", name="A")
    second = ApplicationInfo(id="b", name="B")
    first.attempts.append({"attempt": 1})
    assert second.attempts == []

    exec_a = ExecutorSummary(id="1", host_port="worker-1:12345")
    exec_b = ExecutorSummary(id="2", host_port="worker-2:12345")
    exec_a.executor_logs["stdout"] = "log"
    assert exec_b.executor_logs == {}
    assert exec_a.add_time.tzinfo is not None and exec_a.remove_time is None