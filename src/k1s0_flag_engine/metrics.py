"""OpenTelemetry メトリクス定義"""

from __future__ import annotations

from opentelemetry import metrics

_meter = metrics.get_meter("k1s0.flag_engine", version="0.1.0")

evaluations_total = _meter.create_counter(
    name="flag_engine_evaluations_total",
    description="Total number of flag evaluations",
    unit="1",
)

cache_hits_total = _meter.create_counter(
    name="flag_engine_cache_hits_total",
    description="Cache-aside reads served from cache",
    unit="1",
)

cache_misses_total = _meter.create_counter(
    name="flag_engine_cache_misses_total",
    description="Cache-aside reads that fell through to the store",
    unit="1",
)

version_conflicts_total = _meter.create_counter(
    name="flag_engine_version_conflicts_total",
    description="Flag writes rejected by optimistic concurrency",
    unit="1",
)

invalidations_published_total = _meter.create_counter(
    name="flag_engine_invalidations_published_total",
    description="Cache invalidation notifications handed to the bus",
    unit="1",
)

background_failures_total = _meter.create_counter(
    name="flag_engine_background_failures_total",
    description="Fire-and-forget tasks that raised",
    unit="1",
)

exposure_failures_total = _meter.create_counter(
    name="flag_engine_exposure_failures_total",
    description="Exposure batches the sink failed to accept",
    unit="1",
)

batch_duration_seconds = _meter.create_histogram(
    name="flag_engine_batch_duration_seconds",
    description="evaluate_many duration in seconds",
    unit="s",
)
