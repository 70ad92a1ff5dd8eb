"""
shieldpool.engine — planning, consolidation and staged execution of spends.
"""

from shieldpool.engine.consolidation import ConsolidationEngine, ConsolidationPlan, partition_notes, rounds_needed
from shieldpool.engine.executor import PipelineStep, StagedExecutor, StepOutcome
from shieldpool.engine.locks import SpendLockRegistry
from shieldpool.engine.planner import SpendPlanner, select_notes
from shieldpool.engine.retry import RetryPolicy
from shieldpool.engine.wallet import ShieldedWallet

__all__ = [
    "ConsolidationEngine",
    "ConsolidationPlan",
    "PipelineStep",
    "RetryPolicy",
    "ShieldedWallet",
    "SpendLockRegistry",
    "SpendPlanner",
    "StagedExecutor",
    "StepOutcome",
    "partition_notes",
    "rounds_needed",
    "select_notes",
]
