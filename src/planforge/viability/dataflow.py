"""Data-flow rules over `${id.field}` references and test ordering."""

from __future__ import annotations

from planforge.plan import STEP_RESULT_FIELDS, Instruction, OpCode
from planforge.viability.refs import REF_FIELD_RE, referenced_ids
from planforge.viability.types import Violation, rule_id


def check_variable_refs(instructions: list[Instruction]) -> list[Violation]:
    """V-006: referencing a known instruction requires depending on it."""
    known = {ins.id for ins in instructions}
    violations: list[Violation] = []
    for ins in instructions:
        for ref_id in referenced_ids(ins.params_text()):
            # unknown ids are reported by the logical flow rule
            if ref_id not in known or ref_id in ins.dependencies:
                continue
            violations.append(
                Violation(
                    rule_id=rule_id(6),
                    severity="critical",
                    message=(
                        f"Instruction '{ins.id}' references ${{{ref_id}.*}}"
                        f" but doesn't depend on '{ref_id}'"
                    ),
                    remediation=f"Add '{ref_id}' to dependencies array to ensure proper execution order",
                    instruction_id=ins.id,
                )
            )
    return violations


def check_tdd_order(instructions: list[Instruction]) -> list[Violation]:
    """V-007: an edit verified only afterwards skipped the failing-test step."""
    violations: list[Violation] = []
    for index, ins in enumerate(instructions):
        if ins.op != OpCode.EDIT_CODE:
            continue
        test_before = any(item.op == OpCode.GENERATE_TEST for item in instructions[:index])
        test_after = any(item.op == OpCode.RUN_TEST for item in instructions[index:])
        if test_after and not test_before:
            violations.append(
                Violation(
                    rule_id=rule_id(7),
                    severity="warning",
                    message=(
                        f"EDIT_CODE '{ins.id}' has tests after but not before"
                        " (violates TDD Red-Green pattern)"
                    ),
                    remediation="Add GENERATE_TEST and initial RUN_TEST (expect failure) before EDIT_CODE",
                    instruction_id=ins.id,
                )
            )
    return violations


def check_variable_field_names(instructions: list[Instruction]) -> list[Violation]:
    """V-008: reference fields must name a step result field."""
    valid = ", ".join(STEP_RESULT_FIELDS)
    violations: list[Violation] = []
    for ins in instructions:
        for match in REF_FIELD_RE.finditer(ins.params_text()):
            field_name = match.group(2)
            if field_name in STEP_RESULT_FIELDS:
                continue
            violations.append(
                Violation(
                    rule_id=rule_id(8),
                    severity="warning",
                    message=(
                        f"Instruction '{ins.id}' uses invalid variable field '{field_name}'"
                        f" - valid fields: [{valid}]"
                    ),
                    remediation=f"Use a valid StepResult field: {valid}",
                    instruction_id=ins.id,
                )
            )
    return violations
