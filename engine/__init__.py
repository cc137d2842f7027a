"""
Assist Core - Engine Package

Shared runtime pieces with no orchestration logic of their own:
  - engine.entities: EntityMap, EntityStore
  - engine.config:   load_config, OrchestratorSettings
  - engine.logging:  configure_logging, TurnLogger
  - engine.metrics:  TurnMetrics
  - engine.retry:    RetryPolicy, CircuitBreaker, call_with_retry
"""

from engine.entities import EntityMap, EntityStore
from engine.config import OrchestratorSettings, load_config, load_settings
from engine.logging import TurnLogger, configure_logging, get_logger
from engine.metrics import TurnMetrics
from engine.retry import BreakerRegistry, CircuitBreaker, CircuitBreakerOpen, RetryPolicy, call_with_retry

__all__ = [
    "EntityMap",
    "EntityStore",
    "OrchestratorSettings",
    "load_config",
    "load_settings",
    "TurnLogger",
    "configure_logging",
    "get_logger",
    "TurnMetrics",
    "BreakerRegistry",
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "RetryPolicy",
    "call_with_retry",
]
