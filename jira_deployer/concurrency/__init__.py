"""
Concurrency Module

Named provisioning stages on bounded thread pools.
"""

from .stages import (
    Stage,
    StagePlan,
    StageContext,
    StageFuture,
    StagePool,
    await_all,
)

__all__ = [
    "Stage",
    "StagePlan",
    "StageContext",
    "StageFuture",
    "StagePool",
    "await_all",
]
