"""Records exchanged with the event store: stored events, summaries and analytics results."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1


def _as_i64(value: Any) -> Optional[int]:
    """Return ``value`` if it is a JSON integer that fits in a signed 64-bit int."""
    if isinstance(value, int) and not isinstance(value, bool):
        if _I64_MIN <= value <= _I64_MAX:
            return value
    return None


def _rfc3339(moment: datetime) -> str:
    """Format a UTC datetime with only as much sub-second precision as it carries."""
    if moment.microsecond == 0:
        timespec = "seconds"
    elif moment.microsecond % 1000 == 0:
        timespec = "milliseconds"
    else:
        timespec = "microseconds"
    return moment.isoformat(timespec=timespec)


def _now_rfc3339() -> str:
    return _rfc3339(datetime.now(timezone.utc))


def _millis_to_rfc3339(millis: int) -> str:
    try:
        moment = _EPOCH + timedelta(milliseconds=millis)
    except (OverflowError, ValueError):
        return _now_rfc3339()
    return _rfc3339(moment)


@dataclass
class SparkEvent:
    """A single Spark listener event, with frequently queried fields pulled out."""

    id: int
    app_id: str
    event_type: str
    timestamp: str
    raw_data: Any
    job_id: Optional[int] = None
    stage_id: Optional[int] = None
    task_id: Optional[int] = None
    duration_ms: Optional[int] = None

    @classmethod
    def from_json(cls, raw_event: Any, app_id: str, event_id: int) -> "SparkEvent":
        """Build an event from its decoded JSON form.

        Raises ValueError when the ``Event`` field is missing or not a string.
        """
        if not isinstance(raw_event, dict):
            raise ValueError("Missing Event field")
        event_type = raw_event.get("Event")
        if not isinstance(event_type, str):
            raise ValueError("Missing Event field")

        millis = _as_i64(raw_event.get("Timestamp"))
        timestamp = _millis_to_rfc3339(millis) if millis is not None else _now_rfc3339()

        task_info = raw_event.get("Task Info")
        task_id = _as_i64(task_info.get("Task ID")) if isinstance(task_info, dict) else None

        duration_ms = None
        if event_type == "SparkListenerTaskEnd":
            metrics = raw_event.get("Task Metrics")
            if isinstance(metrics, dict):
                duration_ms = _as_i64(metrics.get("Executor Run Time"))

        return cls(
            id=event_id,
            app_id=app_id,
            event_type=event_type,
            timestamp=timestamp,
            raw_data=copy.deepcopy(raw_event),
            job_id=_as_i64(raw_event.get("Job ID")),
            stage_id=_as_i64(raw_event.get("Stage ID")),
            task_id=task_id,
            duration_ms=duration_ms,
        )


@dataclass
class ResourceUsage:
    """Per-application, per-day event counts and average durations."""

    app_id: str
    event_type: str
    event_count: int
    avg_duration_ms: Optional[float]
    event_date: str


@dataclass
class ApplicationInfo:
    """Basic description of an application seen in the event store."""

    id: str
    name: str
    cores_granted: Optional[int] = None
    max_cores: Optional[int] = None
    cores_per_executor: Optional[int] = None
    memory_per_executor_mb: Optional[int] = None
    attempts: list = field(default_factory=list)


@dataclass
class ExecutorSummary:
    """Aggregated executor statistics for one application."""

    id: str
    host_port: str
    is_active: bool = True
    rdd_blocks: int = 0
    memory_used: int = 0
    disk_used: int = 0
    total_cores: int = 0
    max_tasks: int = 0
    active_tasks: int = 0
    failed_tasks: int = 0
    completed_tasks: int = 0
    total_tasks: int = 0
    total_duration: int = 0
    total_gc_time: int = 0
    total_input_bytes: int = 0
    total_shuffle_read: int = 0
    total_shuffle_write: int = 0
    is_excluded: bool = False
    max_memory: int = 0
    add_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    remove_time: Optional[datetime] = None
    remove_reason: Optional[str] = None
    executor_logs: dict = field(default_factory=dict)
    memory_metrics: Optional[dict] = None
    attributes: dict = field(default_factory=dict)
    resources: dict = field(default_factory=dict)
    resource_profile_id: int = 0
    excluded_in_stages: list = field(default_factory=list)


@dataclass
class CrossAppSummary:
    """Totals across every application in the store."""

    total_applications: int
    active_applications: int
    total_events: int
    total_tasks_completed: int
    total_tasks_failed: int
    avg_task_duration_ms: str
    total_data_processed_gb: str
    peak_concurrent_executors: int


@dataclass
class ApplicationSummary:
    """Short application overview for dashboards."""

    id: str
    user: str
    duration: str
    cores: int
    memory: int
    status: str


@dataclass
class AnalyticsQuery:
    """Filters shared by the analytics queries."""

    start_date: Optional[str] = None
    end_date: Optional[str] = None
    app_id: Optional[str] = None
    limit: Optional[int] = None


class ResourceType(str, Enum):
    MEMORY = "Memory"
    CPU = "CPU"
    DISK = "Disk"


class EfficiencyCategory(str, Enum):
    OVER_PROVISIONED = "OverProvisioned"
    UNDER_PROVISIONED = "UnderProvisioned"
    WELL_TUNED = "WellTuned"

    @classmethod
    def _missing_(cls, value: object) -> "EfficiencyCategory":
        return cls.WELL_TUNED


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def _missing_(cls, value: object) -> "RiskLevel":
        return cls.MEDIUM


class OptimizationType(str, Enum):
    REDUCE_MEMORY = "ReduceMemory"
    OPTIMIZE_PARTITIONING = "OptimizePartitioning"
    REDUCE_EXECUTORS = "ReduceExecutors"
    ENABLE_SPOT_INSTANCES = "EnableSpotInstances"
    SCHEDULE_OFF_PEAK = "ScheduleOffPeak"

    @classmethod
    def _missing_(cls, value: object) -> "OptimizationType":
        return cls.SCHEDULE_OFF_PEAK


class DifficultyLevel(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"

    @classmethod
    def _missing_(cls, value: object) -> "DifficultyLevel":
        return cls.MEDIUM


@dataclass
class ResourceHog:
    """An application that consumes a large share of some resource."""

    app_id: str
    app_name: str
    resource_type: ResourceType
    consumption_value: float
    consumption_unit: str
    utilization_percentage: float
    efficiency_score: float
    efficiency_explanation: str
    cost_impact: float
    recommendation: str
    last_seen: str


@dataclass
class EfficiencyAnalysis:
    """How well an application's resources match what it actually used."""

    app_id: str
    app_name: str
    efficiency_category: EfficiencyCategory
    memory_efficiency: float
    memory_efficiency_explanation: str
    cpu_efficiency: float
    cpu_efficiency_explanation: str
    recommended_memory_gb: Optional[float]
    recommended_cpu_cores: Optional[float]
    potential_cost_savings: float
    risk_level: RiskLevel
    optimization_actions: list = field(default_factory=list)


@dataclass
class CapacityTrend:
    """Cluster usage for one day."""

    date: str
    total_memory_gb_used: float
    total_cpu_cores_used: float
    peak_concurrent_applications: int
    average_resource_utilization: float
    cluster_capacity_percentage: float
    projected_growth_rate: Optional[float] = None


@dataclass
class CostOptimization:
    """A suggested change and its estimated savings."""

    optimization_type: OptimizationType
    app_id: str
    app_name: str
    current_cost: float
    optimized_cost: float
    savings_percentage: float
    confidence_score: float
    implementation_difficulty: DifficultyLevel
    optimization_details: str
    formatted_savings: str