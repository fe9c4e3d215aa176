"""
Quest Engine - Step Nodes

The executable units of a task tree. There are exactly two kinds:

  ActionNode    performs one piece of work; bounded retries; optional
                fixed successor
  DecisionNode  computes a discriminant string and routes to a branch
                (or the default branch)

Node is a closed union of the two and execute_node() dispatches on it
with a match statement. Executing a node never raises: faults inside
the node's callables become a Failed result.

A successful result carries an explicit transition:

  CONTINUE          move to result.next_node
  RETURN_TO_CALLER  hand control back to the enclosing decision
  COMPLETE          the task is finished

Usage:
    from engine.nodes import ActionNode, DecisionNode, TaskContext, execute_node

    talk = ActionNode("talk", "Talk to the cook", perform=lambda ctx: world.interact("Cook", "Talk-to"))
    root = DecisionNode("stage", "Branch on stage", decide=lambda ctx: str(world.read_signal(29)))
    root.add_branch("0", talk)

    result = execute_node(root, TaskContext())
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Union

from engine.kill_switch import AbortFlag, AnyFlag

logger = logging.getLogger("quest_engine.nodes")

DEFAULT_MAX_RETRIES = 3


# ═══════════════════════════════════════════════════════════════════
# Context
# ═══════════════════════════════════════════════════════════════════

@dataclass
class TaskContext:
    """
    Shared mutable state for the nodes of one active task.

    Only the driver thread touches it, so it carries no lock. It is
    cleared on every task reset.
    """
    values: dict[str, Any] = field(default_factory=dict)
    abort: AbortFlag | AnyFlag | None = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def clear(self) -> None:
        self.values.clear()

    @property
    def aborted(self) -> bool:
        return self.abort is not None and self.abort.is_set()


# ═══════════════════════════════════════════════════════════════════
# Execution Result
# ═══════════════════════════════════════════════════════════════════

class Status(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    RETRY = "retry"


class Transition(str, enum.Enum):
    CONTINUE = "continue"
    RETURN_TO_CALLER = "return_to_caller"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of executing one node once. Produced fresh, never stored."""
    status: Status
    message: str = ""
    transition: Transition | None = None
    next_node: Node | None = field(default=None, repr=False)
    failure_reason: str | None = None

    @classmethod
    def continue_to(cls, node: Node, message: str = "") -> ExecutionResult:
        return cls(Status.SUCCESS, message, Transition.CONTINUE, node)

    @classmethod
    def return_to_caller(cls, message: str = "") -> ExecutionResult:
        return cls(Status.SUCCESS, message, Transition.RETURN_TO_CALLER)

    @classmethod
    def complete(cls, message: str = "") -> ExecutionResult:
        return cls(Status.SUCCESS, message, Transition.COMPLETE)

    @classmethod
    def failure(cls, reason: str) -> ExecutionResult:
        return cls(Status.FAILED, reason, failure_reason=reason)

    @classmethod
    def retry(cls, message: str = "") -> ExecutionResult:
        return cls(Status.RETRY, message)

    @classmethod
    def in_progress(cls, message: str = "") -> ExecutionResult:
        return cls(Status.IN_PROGRESS, message)

    @property
    def is_success(self) -> bool:
        return self.status is Status.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status is Status.FAILED


# ═══════════════════════════════════════════════════════════════════
# Node Kinds
# ═══════════════════════════════════════════════════════════════════

class NodeKind(str, enum.Enum):
    ACTION = "action"
    DECISION = "decision"


@dataclass(eq=False)
class ActionNode:
    """
    Performs one unit of work.

    perform(ctx) returns True on success. should_skip(ctx), when given
    and true, succeeds without calling perform. On success the node
    continues to `then`, or returns to its caller when
    return_to_caller is set, or completes the task.
    """
    kind: ClassVar[NodeKind] = NodeKind.ACTION

    node_id: str
    description: str
    perform: Callable[[TaskContext], bool] = field(repr=False)
    should_skip: Callable[[TaskContext], bool] | None = field(default=None, repr=False)
    then: Node | None = field(default=None, repr=False)
    return_to_caller: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_count: int = field(default=0, init=False)

    def reset(self) -> None:
        self.retry_count = 0


@dataclass(eq=False)
class DecisionNode:
    """Routes to the branch matching decide(ctx), falling back to default."""
    kind: ClassVar[NodeKind] = NodeKind.DECISION

    node_id: str
    description: str
    decide: Callable[[TaskContext], str] = field(repr=False)
    branches: dict[str, Node | None] = field(default_factory=dict, repr=False)
    default: Node | None = field(default=None, repr=False)

    def add_branch(self, discriminant: str, node: Node) -> DecisionNode:
        self.branches[str(discriminant)] = node
        return self

    def reset(self) -> None:
        pass


Node = Union[ActionNode, DecisionNode]


# ═══════════════════════════════════════════════════════════════════
# Interpreter
# ═══════════════════════════════════════════════════════════════════

def execute_node(node: Node, ctx: TaskContext) -> ExecutionResult:
    """Execute a node once. Never raises."""
    match node:
        case ActionNode():
            result = _execute_action(node, ctx)
        case DecisionNode():
            result = _execute_decision(node, ctx)
        case _:
            raise TypeError(f"Not a node: {node!r}")
    logger.debug("Node %s -> %s %s", node.node_id, result.status.value, result.message)
    return result


def _advance(node: ActionNode, message: str) -> ExecutionResult:
    if node.then is not None:
        return ExecutionResult.continue_to(node.then, message)
    if node.return_to_caller:
        return ExecutionResult.return_to_caller(message)
    return ExecutionResult.complete(message)


def _execute_action(node: ActionNode, ctx: TaskContext) -> ExecutionResult:
    if ctx.aborted:
        return ExecutionResult.failure("execution aborted")

    try:
        if node.should_skip is not None and node.should_skip(ctx):
            node.retry_count = 0
            return _advance(node, "Action skipped")

        ok = node.perform(ctx)
    except Exception as e:
        logger.warning("Action %s raised: %s", node.node_id, e, exc_info=True)
        return ExecutionResult.failure(f"Exception in action {node.node_id}: {e}")

    if ok:
        node.retry_count = 0
        return _advance(node, f"Completed: {node.description}")

    node.retry_count += 1
    if node.retry_count >= node.max_retries:
        return ExecutionResult.failure(
            f"Action failed after {node.retry_count} attempts: {node.description}"
        )
    return ExecutionResult.retry(
        f"Attempt {node.retry_count}/{node.max_retries} failed: {node.description}"
    )


def _execute_decision(node: DecisionNode, ctx: TaskContext) -> ExecutionResult:
    try:
        discriminant = str(node.decide(ctx))
    except Exception as e:
        logger.warning("Decision %s raised: %s", node.node_id, e, exc_info=True)
        return ExecutionResult.failure(f"Exception in decision {node.node_id}: {e}")

    branch = node.branches.get(discriminant)
    if branch is None:
        branch = node.default
    if branch is None:
        return ExecutionResult.failure(
            f"no valid branch found for decision {node.node_id}: {discriminant!r}"
        )
    return ExecutionResult.continue_to(branch, f"Decision {node.node_id} -> {discriminant}")


def iter_nodes(root: Node):
    """Yield every node reachable from root once, tolerating cycles."""
    seen: set[int] = set()
    stack: list[Node] = [root]
    while stack:
        node = stack.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        yield node
        match node:
            case ActionNode(then=successor) if successor is not None:
                stack.append(successor)
            case DecisionNode():
                stack.extend(b for b in node.branches.values() if b is not None)
                if node.default is not None:
                    stack.append(node.default)
