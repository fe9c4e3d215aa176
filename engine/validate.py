"""
Quest Engine - Task Definition Validator

Two-layer validation for declarative YAML task definitions:

  1. SYNTACTIC  required fields, types, valid kinds/primitives/enums
  2. SEMANTIC   node references resolve (root, then, branches, default),
                unreachable nodes

Usage:
    python -m engine.validate tasks/cooks_assistant.yaml
    python -m engine.validate --strict tasks/

From code:
    from engine.validate import validate_task_definition
    result = validate_task_definition(definition, "cooks_assistant.yaml")
    if not result.valid:
        print(result.summary())
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from engine.pricing import PricingStrategy

# ═══════════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════════


@dataclass
class Issue:
    level: str       # "error", "warning"
    layer: str       # "syntactic", "semantic"
    file: str
    location: str    # "node:talk_cook", "requirements[1]"
    message: str

    def __str__(self):
        icon = {"error": "✗", "warning": "⚠"}.get(self.level, "?")
        return f"  {icon} [{self.layer}] {self.file}:{self.location}: {self.message}"


@dataclass
class ValidationResult:
    issues: list[Issue] = field(default_factory=list)

    @property
    def errors(self) -> list[Issue]:
        return [i for i in self.issues if i.level == "error"]

    @property
    def warnings(self) -> list[Issue]:
        return [i for i in self.issues if i.level == "warning"]

    @property
    def valid(self) -> bool:
        return len(self.errors) == 0

    def add(self, level: str, layer: str, file: str, location: str, message: str):
        self.issues.append(Issue(level, layer, file, location, message))

    def merge(self, other: ValidationResult):
        self.issues.extend(other.issues)

    def summary(self) -> str:
        lines = []
        if self.valid:
            lines.append(f"✓ Valid ({len(self.warnings)} warnings)")
        else:
            lines.append(f"✗ {len(self.errors)} errors, {len(self.warnings)} warnings")
        for issue in self.issues:
            lines.append(str(issue))
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════

VALID_KINDS = {"action", "decision"}

# primitive -> required params
ACTION_PARAMS: dict[str, list[str]] = {
    "interact": ["entity", "verb"],
    "navigate": ["target"],
    "acquire": [],
    "wait_for_signal": ["key", "value"],
    "set_flag": ["key"],
}

DECISION_PARAMS: dict[str, list[str]] = {
    "signal": ["key"],
    "inventory": ["item"],
    "flag": ["key"],
}

VALID_SOURCES = {"any", "local_only", "storage_only", "market_only", "no_market"}
VALID_PRICING = {p.value for p in PricingStrategy}


# ═══════════════════════════════════════════════════════════════════
# Layer 1: Syntax
# ═══════════════════════════════════════════════════════════════════

def validate_task_syntax(task: dict, filepath: str) -> ValidationResult:
    r = ValidationResult()
    fname = os.path.basename(filepath) or "<definition>"

    if not isinstance(task, dict):
        r.add("error", "syntactic", fname, "root", f"Definition must be a mapping, got {type(task).__name__}")
        return r

    for required in ("id", "root", "nodes"):
        if required not in task:
            r.add("error", "syntactic", fname, "root", f"Missing required field '{required}'")

    nodes = task.get("nodes", {})
    if not isinstance(nodes, dict) or not nodes:
        r.add("error", "syntactic", fname, "root", "'nodes' must be a non-empty mapping")
        nodes = {}

    for node_id, node in nodes.items():
        loc = f"node:{node_id}"
        if not isinstance(node, dict):
            r.add("error", "syntactic", fname, loc, f"Node must be a mapping, got {type(node).__name__}")
            continue

        bool_keys = [k for k in node if isinstance(k, bool)]
        if bool_keys:
            # YAML 1.1 reads bare on/off/yes/no keys as booleans
            r.add("error", "syntactic", fname, loc,
                  f"Boolean key(s) {bool_keys}; quote the key or rename it")
            continue

        kind = node.get("kind")
        if kind not in VALID_KINDS:
            r.add("error", "syntactic", fname, loc, f"Unknown kind '{kind}'. Valid: {sorted(VALID_KINDS)}")
            continue

        if kind == "action":
            do = node.get("do")
            if do not in ACTION_PARAMS:
                r.add("error", "syntactic", fname, loc,
                      f"Unknown action '{do}'. Valid: {sorted(ACTION_PARAMS)}")
            else:
                for param in ACTION_PARAMS[do]:
                    if param not in node:
                        r.add("error", "syntactic", fname, loc, f"Missing '{param}' for '{do}' action")
            retries = node.get("max_retries")
            if retries is not None and (not isinstance(retries, int) or retries < 1):
                r.add("error", "syntactic", fname, loc, "'max_retries' must be a positive int")
            if node.get("then") and node.get("return"):
                r.add("warning", "syntactic", fname, loc, "'return' is ignored when 'then' is set")
        else:
            source = node.get("branch_on")
            if source not in DECISION_PARAMS:
                r.add("error", "syntactic", fname, loc,
                      f"Unknown decision source '{source}'. Valid: {sorted(DECISION_PARAMS)}")
            else:
                for param in DECISION_PARAMS[source]:
                    if param not in node:
                        r.add("error", "syntactic", fname, loc, f"Missing '{param}' for '{source}' decision")
            branches = node.get("branches", {})
            if not isinstance(branches, dict):
                r.add("error", "syntactic", fname, loc, "'branches' must be a mapping")
            elif not branches and not node.get("default"):
                r.add("warning", "syntactic", fname, loc, "Decision has no branches and no default")

    for i, req in enumerate(task.get("requirements", []) or []):
        loc = f"requirements[{i}]"
        if not isinstance(req, dict) or "name" not in req:
            r.add("error", "syntactic", fname, loc, "Requirement needs a 'name'")
            continue
        qty = req.get("quantity", 1)
        if not isinstance(qty, int) or qty < 1:
            r.add("error", "syntactic", fname, loc, "'quantity' must be a positive int")
        if req.get("source", "any") not in VALID_SOURCES:
            r.add("error", "syntactic", fname, loc, f"Unknown source '{req.get('source')}'")
        if req.get("pricing", "moderate") not in VALID_PRICING:
            r.add("error", "syntactic", fname, loc, f"Unknown pricing '{req.get('pricing')}'")

    signal = task.get("signal")
    if signal is not None and (not isinstance(signal, dict) or "key" not in signal):
        r.add("error", "syntactic", fname, "signal", "'signal' needs a 'key'")

    return r


# ═══════════════════════════════════════════════════════════════════
# Layer 2: Semantics
# ═══════════════════════════════════════════════════════════════════

def _references(node: dict) -> list[tuple[str, str]]:
    refs = []
    if node.get("then"):
        refs.append(("then", str(node["then"])))
    for disc, target in (node.get("branches") or {}).items():
        refs.append((f"branches.{disc}", str(target)))
    if node.get("default"):
        refs.append(("default", str(node["default"])))
    return refs


def validate_task_semantics(task: dict, filepath: str) -> ValidationResult:
    r = ValidationResult()
    fname = os.path.basename(filepath) or "<definition>"
    nodes = task.get("nodes") or {}
    if not isinstance(nodes, dict):
        return r

    root = task.get("root")
    if root is not None and str(root) not in nodes:
        r.add("error", "semantic", fname, "root", f"Root node '{root}' is not defined")

    for node_id, node in nodes.items():
        if not isinstance(node, dict):
            continue
        for where, target in _references(node):
            if target not in nodes:
                r.add("error", "semantic", fname, f"node:{node_id}.{where}",
                      f"Unknown node '{target}'")

    if root is not None and str(root) in nodes:
        reachable = set()
        stack = [str(root)]
        while stack:
            current = stack.pop()
            if current in reachable or current not in nodes:
                continue
            reachable.add(current)
            if isinstance(nodes[current], dict):
                stack.extend(t for _, t in _references(nodes[current]))
        for node_id in nodes:
            if str(node_id) not in reachable:
                r.add("warning", "semantic", fname, f"node:{node_id}", "Unreachable from root")

    return r


def validate_task_definition(task: dict, filepath: str = "") -> ValidationResult:
    result = validate_task_syntax(task, filepath)
    if result.valid:
        result.merge(validate_task_semantics(task, filepath))
    return result


def validate_path(path: str | Path) -> ValidationResult:
    """Validate one task file or every *.yaml file in a directory."""
    path = Path(path)
    files = sorted(path.glob("*.yaml")) if path.is_dir() else [path]
    result = ValidationResult()
    for f in files:
        try:
            with open(f) as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as e:
            result.add("error", "syntactic", f.name, "file", f"Cannot load: {e}")
            continue
        result.merge(validate_task_definition(data, str(f)))
    return result


# ═══════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════

def main(argv: list[str] | None = None) -> int:
    import argparse
    parser = argparse.ArgumentParser(description="Quest Engine task definition validator")
    parser.add_argument("paths", nargs="+", help="Task files or directories")
    parser.add_argument("--strict", action="store_true", help="Treat warnings as errors")
    args = parser.parse_args(argv)

    result = ValidationResult()
    for p in args.paths:
        result.merge(validate_path(p))

    if args.strict:
        for issue in result.issues:
            if issue.level == "warning":
                issue.level = "error"

    print(result.summary())
    return 0 if result.valid else 1


if __name__ == "__main__":
    sys.exit(main())
