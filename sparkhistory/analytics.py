"""Platform-engineering analytics over stored task-end events."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from .records import (
    AnalyticsQuery,
    CapacityTrend,
    CostOptimization,
    DifficultyLevel,
    EfficiencyAnalysis,
    EfficiencyCategory,
    OptimizationType,
    ResourceHog,
    ResourceType,
    RiskLevel,
)
from .store import EventStore, StoreError, _cast_int, _lookup, _normalize_timestamp

_MB = 1048576.0
_GB = 1073741824.0

_ACTIONS = {
    EfficiencyCategory.OVER_PROVISIONED: [
        "Reduce executor memory allocation",
        "Decrease number of executor cores",
        "Consider smaller instance types",
    ],
    EfficiencyCategory.UNDER_PROVISIONED: [
        "Increase executor memory allocation",
        "Add more executor cores",
        "Monitor for OOM errors",
    ],
    EfficiencyCategory.WELL_TUNED: ["Configuration appears optimal"],
}


@dataclass
class _Task:
    app_id: str
    timestamp: str
    raw: Any
    duration_ms: Optional[int]

    def metric(self, *keys: str) -> Optional[int]:
        return _cast_int(_lookup(self.raw, "Task Metrics", *keys))


def _present(values: Iterable[Optional[float]]) -> list[float]:
    return [v for v in values if v is not None]


def _avg(values: Iterable[Optional[float]]) -> Optional[float]:
    found = _present(values)
    return sum(found) / len(found) if found else None


def _sum(values: Iterable[Optional[float]]) -> Optional[float]:
    found = _present(values)
    return float(sum(found)) if found else None


def _max(values: Iterable[Optional[float]]) -> Optional[float]:
    found = _present(values)
    return float(max(found)) if found else None


def _scale(value: Optional[float], divisor: float) -> Optional[float]:
    return None if value is None else value / divisor


def _mul(value: Optional[float], factor: float) -> Optional[float]:
    return None if value is None else value * factor


def _div(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    if numerator is None or denominator is None or denominator == 0:
        return None
    return numerator / denominator


def _least(*values: Optional[float]) -> Optional[float]:
    found = _present(values)
    return min(found) if found else None


def _greatest(*values: Optional[float]) -> Optional[float]:
    found = _present(values)
    return max(found) if found else None


def _coalesce(*values: Optional[float]) -> Optional[float]:
    return next((v for v in values if v is not None), None)


def _gt(value: Optional[float], bound: float) -> bool:
    return value is not None and value > bound


def _lt(value: Optional[float], bound: Optional[float]) -> bool:
    return value is not None and bound is not None and value < bound


def _round(value: Optional[float], digits: int) -> Optional[float]:
    """Round half away from zero, as SQL ROUND does."""
    if value is None or not math.isfinite(value):
        return value
    step = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(float(value))).quantize(step, rounding=ROUND_HALF_UP))


def _text(value: float) -> str:
    return repr(float(value))


def _limit(query: AnalyticsQuery, default: int) -> int:
    limit = default if query.limit is None else int(query.limit)
    if limit < 0:
        raise StoreError(f"Invalid limit: {limit}")
    return limit


def _task_ends(store: EventStore, query: AnalyticsQuery, *, filter_app: bool) -> list[_Task]:
    conditions = ["event_type = 'SparkListenerTaskEnd'"]
    params: list[Any] = []
    if query.start_date is not None:
        conditions.append("timestamp >= ?")
        params.append(_normalize_timestamp(query.start_date))
    if query.end_date is not None:
        conditions.append("timestamp <= ?")
        params.append(_normalize_timestamp(query.end_date))
    if filter_app and query.app_id is not None:
        conditions.append("app_id = ?")
        params.append(query.app_id)
    rows = store.query(
        "SELECT app_id, timestamp, raw_data, duration_ms FROM events "
        f"WHERE {' AND '.join(conditions)} ORDER BY id",
        params,
    )
    tasks = []
    for app_id, timestamp, raw_text, duration_ms in rows:
        try:
            raw = json.loads(raw_text)
        except (TypeError, ValueError):
            raw = {}
        tasks.append(_Task(app_id, timestamp, raw, duration_ms))
    return tasks


def _by_key(tasks: Iterable[_Task], key) -> dict[str, list[_Task]]:
    groups: dict[str, list[_Task]] = {}
    for task in tasks:
        groups.setdefault(key(task), []).append(task)
    return groups


def top_resource_consumers(
    store: EventStore, query: Optional[AnalyticsQuery] = None
) -> list[ResourceHog]:
    """Applications with the highest peak execution memory, largest first."""
    query = query or AnalyticsQuery()
    limit = _limit(query, 10)
    groups = _by_key(_task_ends(store, query, filter_app=True), lambda t: t.app_id)

    hogs = []
    for app_id, tasks in groups.items():
        peak = _scale(_max(t.metric("Peak Execution Memory") for t in tasks), _MB)
        if not _gt(peak, 0):
            continue
        spill = _scale(_sum(t.metric("Memory Bytes Spilled") for t in tasks), _MB)
        gc = _scale(_avg(t.metric("JVM GC Time") for t in tasks), 1000.0)
        run = _scale(_avg(t.metric("Executor Run Time") for t in tasks), 1000.0)
        ratio = _div(gc, run)

        if _gt(spill, 2000):
            score = 15.0
            explanation = f"15.0% ({_text(_round(spill / 1024, 1))}GB spilling)"
            recommendation = (
                "URGENT: Reduce executors or increase memory - massive spilling detected"
            )
        elif _gt(spill, 500):
            score = 35.0
            explanation = f"35.0% ({_text(_round(spill, 0))}MB spilling)"
            recommendation = "Increase executor memory to reduce spilling"
        elif _gt(ratio, 0.15):
            score = 25.0
            explanation = f"25.0% (high GC overhead: {_text(_round(ratio * 100, 1))}%)"
            recommendation = "Tune GC settings or increase heap size"
        else:
            if _gt(ratio, 0.05):
                score = 65.0
                explanation = f"65.0% (moderate GC: {_text(_round(ratio * 100, 1))}%)"
            else:
                score = 85.0
                explanation = "85.0% (well-tuned)"
            if peak > 8192:
                recommendation = "Consider reducing executor memory"
            else:
                recommendation = "Memory usage appears optimal"

        hogs.append(
            ResourceHog(
                app_id=app_id,
                app_name=f"app_{app_id}",
                resource_type=ResourceType.MEMORY,
                consumption_value=peak,
                consumption_unit="MB",
                utilization_percentage=0.0,
                efficiency_score=score,
                efficiency_explanation=explanation,
                cost_impact=peak * 0.001,
                recommendation=recommendation,
                last_seen=max(t.timestamp for t in tasks),
            )
        )
    hogs.sort(key=lambda h: (-h.consumption_value, h.app_id))
    return hogs[:limit]


def efficiency_analysis(
    store: EventStore, query: Optional[AnalyticsQuery] = None
) -> list[EfficiencyAnalysis]:
    """Classify applications as over-provisioned, under-provisioned or well tuned."""
    query = query or AnalyticsQuery()
    limit = _limit(query, 20)
    groups = _by_key(_task_ends(store, query, filter_app=True), lambda t: t.app_id)

    results = []
    for app_id, tasks in groups.items():
        task_count = len(tasks)
        if task_count <= 1:
            continue
        peaks = [t.metric("Peak Execution Memory") for t in tasks]
        avg_mem = _scale(_avg(peaks), _MB)
        peak_mem = _scale(_max(peaks), _MB)
        cpu = _scale(_avg(t.metric("Executor CPU Time") for t in tasks), 1000.0)
        wall = _scale(_avg(t.metric("Executor Run Time") for t in tasks), 1000.0)
        spill = _scale(_sum(t.metric("Memory Bytes Spilled") for t in tasks), _MB)
        gc = _scale(_avg(t.metric("JVM GC Time") for t in tasks), 1000.0)

        cpu_pct = _mul(_div(cpu, wall), 100)
        cpu0 = _coalesce(cpu_pct, 0.0)
        mem_pct = _mul(_div(avg_mem, peak_mem), 100)

        if _gt(spill, 1000) or cpu0 < 30:
            category = EfficiencyCategory.OVER_PROVISIONED
        elif cpu0 > 90:
            category = EfficiencyCategory.UNDER_PROVISIONED
        else:
            category = EfficiencyCategory.WELL_TUNED

        if _gt(spill, 1000):
            memory_efficiency = 25.0
            memory_text = f"25.0% ({_text(_round(spill / 1024, 1))}GB spilling)"
        elif _gt(spill, 100):
            memory_efficiency = 45.0
            memory_text = f"45.0% ({_text(_round(spill, 0))}MB spilling)"
        else:
            memory_efficiency = _round(_coalesce(_least(100.0, mem_pct), 0.0), 1)
            if _gt(_div(gc, wall), 0.15):
                value = _round(_coalesce(mem_pct, 0.0), 0)
                memory_text = f"{_text(value)}% (high GC overhead)"
            else:
                value = _round(_coalesce(mem_pct, 50.0), 0)
                memory_text = f"{_text(value)}% (normal usage)"

        cpu_efficiency = _round(_coalesce(_least(100.0, cpu_pct), 0.0), 1)
        if cpu0 < 10:
            cpu_text = f"{_text(_round(cpu0, 1))}% (serial processing)"
        elif cpu0 > 95:
            cpu_text = f"{_text(_round(cpu0, 1))}% (CPU bottleneck)"
        else:
            cpu_text = f"{_text(_round(_coalesce(cpu_pct, 50.0), 1))}% (good parallelism)"

        if _gt(spill, 1000):
            savings = _mul(peak_mem, 0.002)
        elif cpu0 < 30:
            savings = _mul(peak_mem, 0.0005)
        else:
            savings = 0.0

        if task_count < 3:
            risk = RiskLevel.HIGH
        elif cpu0 < 20:
            risk = RiskLevel.LOW
        else:
            risk = RiskLevel.MEDIUM

        results.append(
            EfficiencyAnalysis(
                app_id=app_id,
                app_name=f"app_{app_id}",
                efficiency_category=category,
                memory_efficiency=memory_efficiency,
                memory_efficiency_explanation=memory_text,
                cpu_efficiency=cpu_efficiency,
                cpu_efficiency_explanation=cpu_text,
                recommended_memory_gb=_mul(peak_mem, 0.0007),
                recommended_cpu_cores=_greatest(1.0, _div(cpu, wall)),
                potential_cost_savings=_coalesce(savings, 0.0),
                risk_level=risk,
                optimization_actions=list(_ACTIONS[category]),
            )
        )
    results.sort(key=lambda r: (-r.potential_cost_savings, r.app_id))
    return results[:limit]


def capacity_usage_trends(
    store: EventStore, query: Optional[AnalyticsQuery] = None
) -> list[CapacityTrend]:
    """Daily cluster usage, most recent day first."""
    query = query or AnalyticsQuery()
    limit = _limit(query, 30)
    groups = _by_key(_task_ends(store, query, filter_app=False), lambda t: t.timestamp[:10])

    trends = []
    for date, tasks in groups.items():
        memory_gb = _scale(_sum(t.metric("Peak Execution Memory") for t in tasks), _GB)
        apps = len({t.app_id for t in tasks})
        avg_cpu = _scale(_avg(t.metric("Executor CPU Time") for t in tasks), 1000.0)
        trends.append(
            CapacityTrend(
                date=date,
                total_memory_gb_used=_coalesce(memory_gb, 0.0),
                total_cpu_cores_used=_coalesce(_mul(avg_cpu, apps), 0.0),
                peak_concurrent_applications=apps,
                average_resource_utilization=_coalesce(_div(memory_gb, apps), 0.0),
                cluster_capacity_percentage=_least(
                    100.0, _coalesce(_mul(_scale(memory_gb, 1024), 100), 0.0)
                ),
                projected_growth_rate=None,
            )
        )
    trends.sort(key=lambda t: t.date, reverse=True)
    return trends[:limit]


def cost_optimization_opportunities(
    store: EventStore, query: Optional[AnalyticsQuery] = None
) -> list[CostOptimization]:
    """Suggested cost savings per application, largest percentage first."""
    query = query or AnalyticsQuery()
    limit = _limit(query, 15)
    groups = _by_key(_task_ends(store, query, filter_app=True), lambda t: t.app_id)

    opportunities = []
    for app_id, tasks in groups.items():
        task_count = len(tasks)
        if task_count <= 1:
            continue
        peaks = [t.metric("Peak Execution Memory") for t in tasks]
        avg_mem = _scale(_avg(peaks), _MB)
        peak_mem = _scale(_max(peaks), _MB)
        duration_s = _scale(_avg(t.duration_ms for t in tasks), 1000.0)
        spill = _scale(_sum(t.metric("Disk Bytes Spilled") for t in tasks), _MB)

        over_memory = _lt(avg_mem, _mul(peak_mem, 0.8))
        heavy_spill = _gt(spill, 100)
        long_tasks = _gt(duration_s, 30)
        if not (over_memory or heavy_spill or long_tasks or _gt(peak_mem, 1024)):
            continue

        if over_memory:
            kind = OptimizationType.REDUCE_MEMORY
            factor, percentage, difficulty = 0.0006, 40.0, DifficultyLevel.EASY
            details = (
                f"Reduce executor memory from {_text(peak_mem)}MB to "
                f"{_text(avg_mem * 1.2)}MB"
            )
        elif heavy_spill:
            kind = OptimizationType.OPTIMIZE_PARTITIONING
            factor, percentage, difficulty = 0.0008, 20.0, DifficultyLevel.MEDIUM
            details = f"Optimize data partitioning to reduce {_text(spill)}MB of disk spill"
        else:
            kind = (
                OptimizationType.REDUCE_EXECUTORS
                if long_tasks
                else OptimizationType.ENABLE_SPOT_INSTANCES
            )
            factor, percentage, difficulty = 0.0007, 30.0, DifficultyLevel.EASY
            details = "Consider using spot instances for cost savings"

        current = _coalesce(_round(_mul(peak_mem, 0.001), 4), 0.0)
        optimized = _coalesce(_round(_mul(peak_mem, factor), 4), 0.0)
        if task_count > 50:
            confidence = 85.0
        elif task_count > 20:
            confidence = 70.0
        else:
            confidence = 50.0
        savings = max(current - optimized, 0.0)

        opportunities.append(
            CostOptimization(
                optimization_type=kind,
                app_id=app_id,
                app_name=f"app_{app_id}",
                current_cost=current,
                optimized_cost=optimized,
                savings_percentage=percentage,
                confidence_score=confidence,
                implementation_difficulty=difficulty,
                optimization_details=details,
                formatted_savings=f"${savings:.4f}",
            )
        )
    opportunities.sort(key=lambda o: (-o.savings_percentage, o.app_id))
    return opportunities[:limit]