"""
Services of the self-improvement loop.

This package contains the loop phases (monitor, analyzer, executor, learner),
their safety gates (allowlist, circuit breaker), the reasoning pipes, storage
and the orchestrator that drives one cycle after another.
"""

from .allowlist import ActionAllowlist, ConfigState, ParamBounds, ResourceBounds, ValidatedAction
from .analyzer import Analyzer
from .baseline import BaselineCalculator
from .circuit_breaker import CircuitBreaker
from .executor import ConfigStore, ExecutionResult, Executor, InMemoryConfigStore
from .learner import Learner, LearningOutcome, compute_reward
from .monitor import Monitor, aggregate
from .pipes import AgentPipeClient, PipeClient, SelfImprovementPipes
from .result import Result
from .storage import InMemoryStorage, JsonlStorage, Storage, create_storage
from .system import HistoryKind, SelfImprovementSystem

__all__ = [
    "ActionAllowlist",
    "AgentPipeClient",
    "Analyzer",
    "BaselineCalculator",
    "CircuitBreaker",
    "ConfigState",
    "ConfigStore",
    "ExecutionResult",
    "Executor",
    "HistoryKind",
    "InMemoryConfigStore",
    "InMemoryStorage",
    "JsonlStorage",
    "Learner",
    "LearningOutcome",
    "Monitor",
    "ParamBounds",
    "PipeClient",
    "ResourceBounds",
    "Result",
    "SelfImprovementPipes",
    "SelfImprovementSystem",
    "Storage",
    "ValidatedAction",
    "aggregate",
    "compute_reward",
    "create_storage",
]
