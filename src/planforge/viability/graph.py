"""Graph rules: missing tests, dangling or cyclic dependencies, grounding order."""

from __future__ import annotations

from planforge.plan import Instruction, OpCode
from planforge.viability.refs import CONTEXT_OPS, EXECUTION_OPS
from planforge.viability.types import Violation, rule_id


def check_missing_test(instructions: list[Instruction]) -> Violation | None:
    """V-001: any EDIT_CODE needs at least one RUN_TEST somewhere in the plan."""
    edit = next((ins for ins in instructions if ins.op == OpCode.EDIT_CODE), None)
    if edit is None:
        return None
    if any(ins.op == OpCode.RUN_TEST for ins in instructions):
        return None
    return Violation(
        rule_id=rule_id(1),
        severity="critical",
        message="Code edit without test verification",
        remediation="Add RUN_TEST instruction after EDIT_CODE to verify changes",
        instruction_id=edit.id,
    )


def find_cycle(instructions: list[Instruction]) -> list[str] | None:
    """Return the first dependency cycle found, closed on its start node."""
    deps = {ins.id: list(ins.dependencies) for ins in instructions}
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visited.add(node)
        on_stack.add(node)
        path.append(node)
        for neighbor in deps.get(node, []):
            if neighbor not in visited:
                cycle = visit(neighbor)
                if cycle is not None:
                    return cycle
            elif neighbor in on_stack:
                start = path.index(neighbor)
                return path[start:] + [neighbor]
        path.pop()
        on_stack.discard(node)
        return None

    for ins in instructions:
        if ins.id not in visited:
            cycle = visit(ins.id)
            if cycle is not None:
                return cycle
    return None


def check_logical_flow(instructions: list[Instruction]) -> list[Violation]:
    """V-002: dependencies resolve and the graph is acyclic."""
    violations: list[Violation] = []
    known = {ins.id for ins in instructions}
    for ins in instructions:
        for dep in ins.dependencies:
            if dep in known:
                continue
            violations.append(
                Violation(
                    rule_id=rule_id(2),
                    severity="critical",
                    message=f"Instruction '{ins.id}' depends on non-existent instruction '{dep}'",
                    remediation=f"Either remove dependency '{dep}' or add the missing instruction",
                    instruction_id=ins.id,
                )
            )
    cycle = find_cycle(instructions)
    if cycle:
        violations.append(
            Violation(
                rule_id=rule_id(2),
                severity="critical",
                message=f"Circular dependency detected: {' -> '.join(cycle)}",
                remediation="Remove or restructure dependencies to eliminate the cycle",
                instruction_id=cycle[0],
            )
        )
    return violations


def _reaches_context_op(start: Instruction, by_id: dict[str, Instruction]) -> bool:
    visited: set[str] = set()
    pending = [start.id]
    while pending:
        current = pending.pop()
        if current in visited or current not in by_id:
            continue
        visited.add(current)
        node = by_id[current]
        if node.op in CONTEXT_OPS:
            return True
        pending.extend(node.dependencies)
    return False


def check_grounding_order(instructions: list[Instruction]) -> list[Violation]:
    """V-011: execution ops must transitively depend on a context-gathering op."""
    by_id = {ins.id: ins for ins in instructions}
    violations: list[Violation] = []
    for ins in instructions:
        if ins.op not in EXECUTION_OPS:
            continue
        if not ins.dependencies:
            violations.append(
                Violation(
                    rule_id=rule_id(11),
                    severity="warning",
                    message=(
                        f"Execution op '{ins.id}' ({ins.op.value}) has no dependencies"
                        " - missing grounding phase"
                    ),
                    remediation="Add SEARCH_CODE or READ_FILES before this instruction to gather context",
                    instruction_id=ins.id,
                )
            )
        elif not _reaches_context_op(ins, by_id):
            violations.append(
                Violation(
                    rule_id=rule_id(11),
                    severity="warning",
                    message=(
                        f"Execution op '{ins.id}' ({ins.op.value}) has no context-gathering"
                        " ops in its dependency chain"
                    ),
                    remediation=(
                        "Add SEARCH_CODE or READ_FILES instructions before execution ops"
                        " to establish context"
                    ),
                    instruction_id=ins.id,
                )
            )
    return violations
