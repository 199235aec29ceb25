"""Per-op parameter rules: presence, JSON types and the AgentTask schema."""

from __future__ import annotations

from typing import Any, Callable

from planforge.plan import Instruction, OpCode
from planforge.viability.refs import has_variable_ref, is_variable_ref_value
from planforge.viability.types import Violation, rule_id

_AGENT_TASK_OPS = (OpCode.EDIT_CODE, OpCode.GENERATE_TEST)
_AGENT_TASK_FIELDS = ("role", "context_files", "constraints")


def _has(ins: Instruction, *names: str) -> bool:
    return isinstance(ins.params, dict) and any(name in ins.params for name in names)


def _params_present(ins: Instruction) -> bool | None:
    """True or False for ops with required params, None for ops without."""
    op = ins.op
    if op in (OpCode.SEARCH_CODE, OpCode.SEARCH_SEMANTIC):
        return _has(ins, "query")
    if op == OpCode.READ_FILES:
        return _has(ins, "paths") or has_variable_ref(ins.params_text())
    if op == OpCode.EDIT_CODE:
        return _has(ins, "goal", "files")
    if op in (OpCode.RUN_TEST, OpCode.GENERATE_TEST):
        return _has(ins, "target", "behavior") or has_variable_ref(ins.params_text())
    if op == OpCode.RUN_COMMAND:
        return _has(ins, "command")
    if op == OpCode.VERIFY_EXISTS:
        return _has(ins, "path")
    return None


def check_params_presence(instructions: list[Instruction]) -> list[Violation]:
    """V-005."""
    violations: list[Violation] = []
    for ins in instructions:
        if _params_present(ins) is not False:
            continue
        violations.append(
            Violation(
                rule_id=rule_id(5),
                severity="warning",
                message=f"Instruction '{ins.id}' ({ins.op.value}) missing required params",
                remediation=f"Add appropriate params for {ins.op.value} operation",
                instruction_id=ins.id,
            )
        )
    return violations


def json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _is_string(value: Any) -> bool:
    return isinstance(value, str)


def _is_array(value: Any) -> bool:
    return isinstance(value, list) or is_variable_ref_value(value)


def _is_array_or_string(value: Any) -> bool:
    return isinstance(value, (list, str))


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


# name -> (predicate, expected description); reference strings already satisfy _is_string
_PARAM_SCHEMA: dict[OpCode, dict[str, tuple[Callable[[Any], bool], str]]] = {
    OpCode.SEARCH_CODE: {"query": (_is_string, "string"), "limit": (_is_count, "number")},
    OpCode.SEARCH_SEMANTIC: {"query": (_is_string, "string"), "limit": (_is_count, "number")},
    OpCode.READ_FILES: {
        "paths": (_is_array_or_string, "array or string or variable reference"),
    },
    OpCode.EDIT_CODE: {
        "goal": (_is_string, "string"),
        "files": (_is_array, "array or variable reference"),
    },
    OpCode.RUN_COMMAND: {"command": (_is_string, "string")},
    OpCode.RUN_TEST: {
        "target": (_is_string, "string or variable reference"),
        "behavior": (_is_string, "string"),
    },
    OpCode.GENERATE_TEST: {
        "target": (_is_string, "string or variable reference"),
        "behavior": (_is_string, "string"),
    },
    OpCode.VERIFY_EXISTS: {"path": (_is_string, "string or variable reference")},
    OpCode.GET_DEPENDENCIES: {"path": (_is_string, "string or variable reference")},
}


def check_params_schema(instructions: list[Instruction]) -> list[Violation]:
    """V-009: params present for an op must carry the expected JSON type."""
    violations: list[Violation] = []
    for ins in instructions:
        schema = _PARAM_SCHEMA.get(ins.op)
        if not schema or not isinstance(ins.params, dict):
            continue
        for name, (accepts, expected) in schema.items():
            if name not in ins.params:
                continue
            value = ins.params[name]
            if accepts(value):
                continue
            violations.append(
                Violation(
                    rule_id=rule_id(9),
                    severity="warning",
                    message=(
                        f"Instruction '{ins.id}' param '{name}' should be {expected}"
                        f" but got {json_type_name(value)}"
                    ),
                    remediation=f"Change '{name}' to be a {expected}",
                    instruction_id=ins.id,
                )
            )
    return violations


def check_agent_task_params(instructions: list[Instruction]) -> list[Violation]:
    """V-013: EDIT_CODE and GENERATE_TEST carry AgentTask params."""
    violations: list[Violation] = []
    for ins in instructions:
        if ins.op not in _AGENT_TASK_OPS:
            continue
        params = ins.params if isinstance(ins.params, dict) else {}
        goal = params.get("goal", params.get("task"))
        if not isinstance(goal, str):
            violations.append(
                Violation(
                    rule_id=rule_id(13),
                    severity="critical",
                    message=(
                        f"Instruction '{ins.id}' ({ins.op.value}) missing required"
                        " 'goal' or 'task' param"
                    ),
                    remediation="Add AgentTask params: goal (required), role, context_files, constraints",
                    instruction_id=ins.id,
                )
            )
        missing = [name for name in _AGENT_TASK_FIELDS if name not in params]
        if missing:
            violations.append(
                Violation(
                    rule_id=rule_id(13),
                    severity="warning",
                    message=(
                        f"Instruction '{ins.id}' ({ins.op.value}) missing AgentTask fields:"
                        f" {', '.join(missing)}"
                    ),
                    remediation=(
                        f"Add missing fields: {', '.join(missing)}."
                        " AgentTask expects role, goal, context_files, constraints"
                    ),
                    instruction_id=ins.id,
                )
            )
        if "action" in params or "content_description" in params:
            violations.append(
                Violation(
                    rule_id=rule_id(13),
                    severity="critical",
                    message=(
                        f"Instruction '{ins.id}' uses legacy params (action/content_description)"
                        " instead of AgentTask schema"
                    ),
                    remediation="Replace with: goal, role, context_files, files, constraints",
                    instruction_id=ins.id,
                )
            )
    return violations
