"""
Quest Engine - Engine Package

Task-execution core: the node interpreter, task contract, resource
acquisition and progress-signal monitoring. The orchestrator package
drives these; nothing here holds global state.

Common imports:
  - engine.nodes: ActionNode, DecisionNode, ExecutionResult, execute_node
  - engine.task: TreeTask, StepTask, StepOutcome
  - engine.acquisition: ResourceCoordinator, ResourceRequirement, SourcePolicy
  - engine.monitor: ProgressSignalMonitor
  - engine.errors: ValidationError, ResourceError, ActionError, FatalError
"""

from engine.errors import (
    EngineError, ValidationError, ResourceError, ActionError,
    SignalReadError, FatalError,
)
from engine.nodes import (
    ActionNode, DecisionNode, ExecutionResult, Status, Transition,
    TaskContext, execute_node,
)
from engine.acquisition import (
    AcquisitionResult, ResourceCoordinator, ResourceRequirement, SourcePolicy,
)
from engine.pricing import PricingStrategy, offer_price
from engine.monitor import ProgressSignalMonitor, SignalChange
from engine.task import StepOutcome, StepTask, TreeTask

__all__ = [
    "AcquisitionResult", "ActionError", "ActionNode", "DecisionNode",
    "EngineError", "ExecutionResult", "FatalError", "PricingStrategy",
    "ProgressSignalMonitor", "ResourceCoordinator", "ResourceError",
    "ResourceRequirement", "SignalChange", "SignalReadError", "SourcePolicy",
    "Status", "StepOutcome", "StepTask", "TaskContext", "Transition",
    "TreeTask", "ValidationError", "execute_node", "offer_price",
]
