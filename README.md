# sparkhistory

Store Spark listener events in a local SQLite database and ask
platform-engineering questions of them: which applications use the most
memory, which are over- or under-provisioned, how cluster usage develops day
by day, and where money can be saved.

The package has no dependencies outside the standard library.

## Modules

- `sparkhistory.records` – the dataclasses and enums that go in and out of
  the store (`SparkEvent`, `ApplicationInfo`, `ExecutorSummary`,
  `CrossAppSummary`, `ApplicationSummary`, `ResourceUsage`, `AnalyticsQuery`,
  `ResourceHog`, `EfficiencyAnalysis`, `CapacityTrend`, `CostOptimization`,
  and the enums `ResourceType`, `EfficiencyCategory`, `RiskLevel`,
  `OptimizationType`, `DifficultyLevel`).
- `sparkhistory.store` – `EventStore`, the SQLite-backed event table and the
  queries on it, and `StoreError`.
- `sparkhistory.analytics` – four analytics functions over the stored
  task-end events.

## Storing events

Events are the JSON objects found in Spark event logs, one per line. Each is
turned into a `SparkEvent` with `SparkEvent.from_json(raw_event, app_id,
event_id)`, which keeps a copy of the raw JSON and pulls out the fields
queried most often: event type (`Event`), timestamp (`Timestamp`, in epoch
milliseconds, formatted as an RFC 3339 UTC string; the current time when it
is missing), `Job ID`, `Stage ID`, the task id from `Task Info`, and, for
`SparkListenerTaskEnd` events, the `Executor Run Time` from `Task Metrics`.
An event without a string `Event` field raises `ValueError`.

```python
import json
from sparkhistory.records import SparkEvent
from sparkhistory.store import EventStore

with EventStore("events.db") as store:
    with open("eventLog") as log:
        events = [
            SparkEvent.from_json(json.loads(line), "app-0001", number)
            for number, line in enumerate(log, start=1)
            if line.strip()
        ]
    store.insert_events_batch(events)

    print(store.count_events())
    print(store.get_max_event_id())
```

`insert_events_batch` writes a batch in a single transaction; if any event
fails (a duplicate id, an unreadable timestamp), none of the batch is kept
and `StoreError` is raised. Timestamps are stored in UTC. A single event can
also be stored with `store.store_event(event_id, app_id, raw_event)`.

After repeated failures in a short time, writes and the cross-application
summary are refused with `StoreError` for a few seconds before they are
tried again.

## Reading back

- `get_applications(limit, min_date, max_date, status)` lists applications,
  most recently active first, optionally restricted to events in a time
  range. `status` is accepted but does not filter.
- `list()` returns every application; `get(app_id)` returns the most
  recently active application if its id is `app_id`, otherwise `None`.
- `put(app_id, app_info)` is accepted for compatibility and stores nothing;
  applications come from their events.
- `get_app_events(app_id)` returns the stored JSON of one application in time
  order; entries that cannot be decoded come back as `None`.
- `get_executor_summary(app_id)` combines executor-added, executor-removed
  and task events into per-executor totals (tasks, run time, GC time, input
  and shuffle bytes), ordered by executor id.
- `get_cross_app_summary()` and `get_active_applications(limit)` give the
  figures a dashboard shows; an application counts as active or running when
  it has events from the last day.
- `get_resource_usage_summary()` counts task, job and stage completions per
  application and day.
- `count_events()` and `get_max_event_id()` report on the table;
  `query(sql, params)` runs any SQL statement and returns its rows.

Database failures are raised as `StoreError`.

`cleanup_database()` deletes every stored event, and only does so when the
environment variable `ENABLE_DB_CLEANUP` is set to `true`; otherwise it
raises `StoreError`.

## Analytics

The functions in `sparkhistory.analytics` take a store and an optional
`AnalyticsQuery`, which may narrow the data to a date range or one
application and cap the number of rows. A negative limit raises
`StoreError`.

```python
from sparkhistory.analytics import (
    capacity_usage_trends,
    cost_optimization_opportunities,
    efficiency_analysis,
    top_resource_consumers,
)
from sparkhistory.records import AnalyticsQuery
from sparkhistory.store import EventStore

with EventStore("events.db") as store:
    query = AnalyticsQuery(limit=5)

    for hog in top_resource_consumers(store, query):
        print(hog.app_id, hog.consumption_value, hog.recommendation)

    for item in efficiency_analysis(store, query):
        print(item.app_id, item.efficiency_category, item.risk_level)

    for day in capacity_usage_trends(store, query):
        print(day.date, day.total_memory_gb_used)

    for saving in cost_optimization_opportunities(store, query):
        print(saving.app_id, saving.optimization_type, saving.formatted_savings)
```

- `top_resource_consumers` (default limit 10) ranks applications by peak
  execution memory and scores how well that memory is used, judging by
  spilling and GC overhead (`ResourceHog`).
- `efficiency_analysis` (default limit 20) classifies applications with more
  than one task as over-provisioned, under-provisioned or well tuned, with
  suggested actions (`EfficiencyAnalysis`, `EfficiencyCategory`,
  `RiskLevel`).
- `capacity_usage_trends` (default limit 30) sums memory and CPU use per day,
  newest first (`CapacityTrend`). It ignores `app_id`.
- `cost_optimization_opportunities` (default limit 15) estimates current and
  optimised cost and proposes the kind of change to make
  (`CostOptimization`, `OptimizationType`, `DifficultyLevel`).

The cost model is deliberately rough: peak memory in megabytes times 0.001
is taken as the current cost, and each kind of optimisation is assumed to
save a fixed share of it.

## What it does not do

The package is a library only. It does not scan log directories or watch
them for new files, read compressed logs or remote file systems, serve an
HTTP API or dashboard, or provide a command-line program. Reading event logs
and feeding their lines to the store is left to the caller.