# SPDX-License-Identifier: MIT
"""Security-gated progressive delivery of canary revisions."""

from .analysis import AnalysisEngine
from .controller import RolloutController
from .documents import (
    RolloutDocument,
    default_security_template,
    load_rollout_document,
    parse_rollout_document,
)
from .errors import (
    AnalysisFailed,
    ConcurrencyViolation,
    DeliveryError,
    InvalidSpec,
    ProviderUnavailable,
    RolloutExists,
    RolloutNotFound,
    TrafficApplyFailed,
)
from .history import HistoryStore, InMemoryHistoryStore, Incident, SQLiteHistoryStore
from .models import (
    Analysis,
    AnalysisRun,
    AnalysisTemplate,
    Check,
    Operator,
    Pause,
    Phase,
    Revision,
    RolloutKey,
    RolloutSpec,
    RolloutStatus,
    SetWeight,
    Verdict,
)
from .providers import (
    MetricProvider,
    MetricReading,
    PrometheusMetricProvider,
    ScriptedMetricProvider,
    StaticMetricProvider,
)
from .state_machine import RolloutStateMachine, validate_spec
from .store import InMemoryRolloutStore, RolloutStore, SQLiteRolloutStore
from .traffic import InMemoryTrafficManager, InMemoryTrafficMesh, TrafficManager

__all__ = [
    "Analysis",
    "AnalysisEngine",
    "AnalysisFailed",
    "AnalysisRun",
    "AnalysisTemplate",
    "Check",
    "ConcurrencyViolation",
    "DeliveryError",
    "HistoryStore",
    "InMemoryHistoryStore",
    "InMemoryRolloutStore",
    "InMemoryTrafficManager",
    "InMemoryTrafficMesh",
    "Incident",
    "InvalidSpec",
    "MetricProvider",
    "MetricReading",
    "Operator",
    "Pause",
    "Phase",
    "PrometheusMetricProvider",
    "ProviderUnavailable",
    "Revision",
    "RolloutController",
    "RolloutDocument",
    "RolloutExists",
    "RolloutKey",
    "RolloutNotFound",
    "RolloutSpec",
    "RolloutStateMachine",
    "RolloutStatus",
    "RolloutStore",
    "SQLiteHistoryStore",
    "SQLiteRolloutStore",
    "ScriptedMetricProvider",
    "SetWeight",
    "StaticMetricProvider",
    "TrafficApplyFailed",
    "TrafficManager",
    "Verdict",
    "default_security_template",
    "load_rollout_document",
    "parse_rollout_document",
    "validate_spec",
]
