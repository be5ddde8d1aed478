"""
Partition lifecycle management for ILM.

Tracks partition age and temperature, evaluates policies into a queue,
executes queued storage actions, builds tiered partition layouts and
consolidates fine-grained partitions once they reach coarse tiers.

Usage:
    from ilm.lifecycle import EvaluationEngine, ExecutionEngine, PartitionTracker

    PartitionTracker().refresh_all()
    EvaluationEngine().evaluate_all()
    report = ExecutionEngine().execute(max_actions=50)
"""

from ilm.lifecycle.audit import AuditLog
from ilm.lifecycle.boundaries import (
    Interval,
    PartitionBoundary,
    TierConfig,
    TierSpec,
    build_boundaries,
    provision_object,
)
from ilm.lifecycle.errors import IlmError
from ilm.lifecycle.evaluation import EvaluationEngine
from ilm.lifecycle.execution import ExecutionEngine, ExecutionScope
from ilm.lifecycle.merge import PartitionMerger
from ilm.lifecycle.policies import ActionType, Policy, PolicyStore, PolicyType
from ilm.lifecycle.profiles import ProfileStore, Temperature, ThresholdProfile, ThresholdResolver
from ilm.lifecycle.settings import ConfigStore, LifecycleConfig, load_config
from ilm.lifecycle.templates import TemplateStore
from ilm.lifecycle.tracker import PartitionTracker
from ilm.lifecycle.validation import PolicyValidator

__all__ = [
    "ActionType",
    "AuditLog",
    "ConfigStore",
    "EvaluationEngine",
    "ExecutionEngine",
    "ExecutionScope",
    "IlmError",
    "Interval",
    "LifecycleConfig",
    "PartitionBoundary",
    "PartitionMerger",
    "PartitionTracker",
    "Policy",
    "PolicyStore",
    "PolicyType",
    "PolicyValidator",
    "ProfileStore",
    "Temperature",
    "TemplateStore",
    "ThresholdProfile",
    "ThresholdResolver",
    "TierConfig",
    "TierSpec",
    "build_boundaries",
    "load_config",
    "provision_object",
]
