"""
Orchestration Package

Core components that turn a classified scene into one aggregated reply:
- Scheduling strategies and the intelligent scheduler
- Phase execution with retry policies and phase timeouts
- Rule-based message routing with middleware
- Result aggregation strategies and quality repair
"""

from .aggregation import (
    AggregationContext,
    AggregationStrategy,
    ResultAggregator,
    StrategyOutput,
    default_aggregation_strategies,
)
from .engine import EventSink, Orchestrator
from .enums import EventType, MessageType, SkipReason, StrategyTrait
from .executor import PhaseExecutor, TurnInput
from .middleware import MessageMiddleware, default_middleware
from .routing import MessageRouter, RoutingCondition, RoutingContext, RoutingRule, RoutingTarget
from .scheduler import ExecutionRecord, IntelligentScheduler
from .strategies import SchedulingStrategy, default_scheduling_strategies

__all__ = [
    "AggregationContext",
    "AggregationStrategy",
    "EventSink",
    "EventType",
    "ExecutionRecord",
    "IntelligentScheduler",
    "MessageMiddleware",
    "MessageRouter",
    "MessageType",
    "Orchestrator",
    "PhaseExecutor",
    "ResultAggregator",
    "RoutingCondition",
    "RoutingContext",
    "RoutingRule",
    "RoutingTarget",
    "SchedulingStrategy",
    "SkipReason",
    "StrategyOutput",
    "StrategyTrait",
    "TurnInput",
    "default_aggregation_strategies",
    "default_middleware",
    "default_scheduling_strategies",
]
