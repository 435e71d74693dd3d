"""k1s0 flag engine library."""

from .bus import (
    InMemoryInvalidationBus,
    InvalidationEvent,
    InvalidationPublisher,
    KafkaInvalidationPublisher,
    NoOpInvalidationPublisher,
)
from .cache import CacheClient, InMemoryCacheClient
from .conditions import (
    CountryIn,
    EmailDomainIn,
    Percentage,
    PlanIn,
    TenantTagIn,
    TimeWindow,
    matches,
    percentage_bucket,
)
from .config import FlagEngineConfig, load_config
from .engine import FlagEngine
from .evaluator import BatchEvaluator
from .exceptions import (
    ConfigError,
    ConfigErrorCodes,
    FlagEngineError,
    FlagEngineErrorCodes,
    ForbiddenError,
    InfrastructureError,
    ValidationError,
    VersionConflictError,
)
from .exposure import (
    BufferedExposureSink,
    ExposureSink,
    HttpExposureSink,
    InMemoryExposureSink,
    LoggingExposureSink,
    NoOpExposureSink,
)
from .guard import DEFAULT_PLATFORM_ONLY_KEYS, ensure_override_allowed
from .log import configure_logging
from .memory import InMemoryFlagStore, InMemoryOverrideStore
from .models import (
    Environment,
    EvaluationContext,
    ExposureRecord,
    FlagDefinition,
    Override,
    OverridePatch,
    OverrideValue,
    Rule,
    ScopeType,
    merge_override,
)
from .repository import CachedFlagRepository
from .resolver import OverrideResolver
from .rules import apply_rules
from .store import FlagStore, OverrideStore
from .sweep import sweep_expired_overrides

__all__ = [
    "BatchEvaluator",
    "BufferedExposureSink",
    "CacheClient",
    "CachedFlagRepository",
    "ConfigError",
    "ConfigErrorCodes",
    "CountryIn",
    "DEFAULT_PLATFORM_ONLY_KEYS",
    "EmailDomainIn",
    "Environment",
    "EvaluationContext",
    "ExposureRecord",
    "ExposureSink",
    "FlagDefinition",
    "FlagEngine",
    "FlagEngineConfig",
    "FlagEngineError",
    "FlagEngineErrorCodes",
    "FlagStore",
    "ForbiddenError",
    "HttpExposureSink",
    "InMemoryCacheClient",
    "InMemoryExposureSink",
    "InMemoryFlagStore",
    "InMemoryInvalidationBus",
    "InMemoryOverrideStore",
    "InfrastructureError",
    "InvalidationEvent",
    "InvalidationPublisher",
    "KafkaInvalidationPublisher",
    "LoggingExposureSink",
    "NoOpExposureSink",
    "NoOpInvalidationPublisher",
    "Override",
    "OverridePatch",
    "OverrideResolver",
    "OverrideStore",
    "OverrideValue",
    "Percentage",
    "PlanIn",
    "Rule",
    "ScopeType",
    "TenantTagIn",
    "TimeWindow",
    "ValidationError",
    "VersionConflictError",
    "apply_rules",
    "configure_logging",
    "ensure_override_allowed",
    "load_config",
    "matches",
    "merge_override",
    "percentage_bucket",
    "sweep_expired_overrides",
]
