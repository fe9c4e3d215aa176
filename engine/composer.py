"""
Quest Engine - Task Composer

Builds a runnable TreeTask from a declarative definition:

    id: cooks_assistant
    name: Cook's Assistant
    signal: {key: 29, completion: 2, stages: {0: Not started, 1: Started, 2: Complete}}
    requirements:
      - {name: Egg, quantity: 1, pricing: aggressive}
    root: stage
    nodes:
      stage:    {kind: decision, branch_on: signal, key: 29, branches: {"0": talk}, default: finish}
      talk:     {kind: action, do: interact, entity: Cook, verb: Talk-to, return: true}
      finish:   {kind: action, do: acquire, then: hand_in}
      ...

Definitions are validated first (engine.validate); an invalid
definition raises ValidationError carrying the issue summary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from engine.acquisition import ResourceRequirement
from engine.actions import ActionLibrary
from engine.capability import Coordinate
from engine.errors import ValidationError
from engine.nodes import ActionNode, DecisionNode, Node
from engine.task import TreeTask
from engine.validate import validate_task_definition

logger = logging.getLogger("quest_engine.composer")


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_yaml(path: str | Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_task_definitions(directory: str | Path) -> list[dict[str, Any]]:
    """Every *.yaml definition in a directory, sorted by file name."""
    return [load_yaml(p) for p in sorted(Path(directory).glob("*.yaml"))]


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

def parse_requirements(raw: list[dict[str, Any]] | None) -> list[ResourceRequirement]:
    return [ResourceRequirement.from_dict(r) for r in (raw or [])]


def _build_node(node_id: str, spec: dict[str, Any], library: ActionLibrary,
                requirements: list[ResourceRequirement]) -> Node:
    description = spec.get("description", "")

    if spec["kind"] == "decision":
        match spec["branch_on"]:
            case "signal":
                return library.branch_on_signal(node_id, int(spec["key"]), description)
            case "inventory":
                return library.branch_on_inventory(node_id, spec["item"],
                                                   int(spec.get("quantity", 1)), description)
            case "flag":
                return library.branch_on_flag(node_id, str(spec["key"]), description)

    kwargs: dict[str, Any] = {
        "return_to_caller": bool(spec.get("return", False)),
    }
    if "max_retries" in spec:
        kwargs["max_retries"] = int(spec["max_retries"])

    match spec["do"]:
        case "interact":
            return library.interact(node_id, spec["entity"], spec["verb"], description, **kwargs)
        case "navigate":
            return library.navigate(
                node_id, Coordinate.from_value(spec["target"]),
                tolerance=int(spec.get("tolerance", 3)),
                timeout_s=float(spec.get("timeout_s", 20)),
                description=description, **kwargs)
        case "acquire":
            reqs = parse_requirements(spec["requirements"]) if "requirements" in spec else requirements
            return library.acquire(node_id, reqs, description, **kwargs)
        case "wait_for_signal":
            return library.wait_for_signal(
                node_id, int(spec["key"]), int(spec["value"]),
                timeout_s=float(spec.get("timeout_s", 10)),
                description=description, **kwargs)
        case "set_flag":
            return library.set_flag(node_id, str(spec["key"]), spec.get("value", True),
                                    description, **kwargs)
    raise ValidationError(f"Unsupported node {node_id}: {spec}")


def compose_task(definition: dict[str, Any], library: ActionLibrary,
                 source: str = "") -> TreeTask:
    """Validate a definition and build its TreeTask."""
    result = validate_task_definition(definition, source)
    if not result.valid:
        raise ValidationError(
            f"Invalid task definition {definition.get('id', source)!r}:\n{result.summary()}",
            {"errors": [str(i) for i in result.errors]},
        )
    for issue in result.warnings:
        logger.warning("Task definition %s:%s", source or definition["id"], issue)

    task_id = str(definition["id"])
    requirements = parse_requirements(definition.get("requirements"))
    specs: dict[str, dict] = {str(k): v for k, v in definition["nodes"].items()}

    nodes = {nid: _build_node(nid, spec, library, requirements) for nid, spec in specs.items()}

    # Second pass: wire references now that every node exists
    for nid, spec in specs.items():
        node = nodes[nid]
        if isinstance(node, ActionNode) and spec.get("then"):
            node.then = nodes[str(spec["then"])]
        elif isinstance(node, DecisionNode):
            for disc, target in (spec.get("branches") or {}).items():
                node.add_branch(str(disc), nodes[str(target)])
            if spec.get("default"):
                node.default = nodes[str(spec["default"])]

    kwargs: dict[str, Any] = {}
    signal = definition.get("signal")
    if signal and library.monitor is not None:
        monitor = library.monitor
        key = int(signal["key"])
        registered = monitor.register(
            key, task_id,
            stages=signal.get("stages"),
            completion_threshold=signal.get("completion"),
        )
        kwargs["completion_check"] = lambda ctx: monitor.is_task_complete(task_id)
        threshold = registered.threshold()
        if threshold:
            kwargs["progress_fn"] = lambda ctx: (monitor.value(key) or 0) * 100 // threshold

    task = TreeTask(
        task_id,
        nodes[str(definition["root"])],
        display_name=str(definition.get("name", task_id)),
        requirements=requirements,
        expected_steps=definition.get("expected_steps") or len(nodes),
        gather_on_prepare=bool(definition.get("gather_on_prepare", False)),
        **kwargs,
    )
    logger.info("Composed task %s with %d nodes", task_id, len(nodes))
    return task
