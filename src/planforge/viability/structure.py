"""Structural rules: emptiness, complexity limits, parallelism and token estimates."""

from __future__ import annotations

from planforge.plan import Instruction, OpCode
from planforge.viability.types import ViabilityConfig, Violation, rule_id

TOKEN_ESTIMATE_OPS = frozenset(
    {
        OpCode.EDIT_CODE,
        OpCode.READ_FILES,
        OpCode.SEARCH_CODE,
        OpCode.SEARCH_SEMANTIC,
        OpCode.GENERATE_TEST,
    }
)

EMPTY_PLAN_REMEDIATION = (
    "Plans MUST have instructions for execution. If viability violations were reported,"
    " FIX the instructions rather than removing them. Generate instructions following the"
    " pattern: SEARCH_CODE -> READ_FILES -> GENERATE_TEST -> RUN_TEST (expect fail)"
    " -> EDIT_CODE -> RUN_TEST (expect pass)."
)


def check_empty_instructions(instructions: list[Instruction]) -> Violation | None:
    """V-014."""
    if instructions:
        return None
    return Violation(
        rule_id=rule_id(14),
        severity="critical",
        message="Instructions array is empty - plan has no executable instructions",
        remediation=EMPTY_PLAN_REMEDIATION,
    )


def check_complexity(
    instructions: list[Instruction], config: ViabilityConfig
) -> list[Violation]:
    """V-004: oversized edits and vague searches."""
    violations: list[Violation] = []
    for ins in instructions:
        if ins.op == OpCode.EDIT_CODE:
            files = ins.param("files")
            if isinstance(files, list) and len(files) > config.max_files_per_edit:
                violations.append(
                    Violation(
                        rule_id=rule_id(4),
                        severity="warning",
                        message=(
                            f"EDIT_CODE instruction '{ins.id}' touches {len(files)} files"
                            f" (max {config.max_files_per_edit})"
                        ),
                        remediation="Consider splitting into multiple EDIT_CODE instructions",
                        instruction_id=ins.id,
                    )
                )
        elif ins.op == OpCode.SEARCH_CODE:
            query = ins.param("query")
            if isinstance(query, str) and len(query) < config.min_search_query_length:
                violations.append(
                    Violation(
                        rule_id=rule_id(4),
                        severity="warning",
                        message=(
                            f"SEARCH_CODE query '{query}' is too short"
                            f" (min {config.min_search_query_length} chars)"
                        ),
                        remediation="Use a more specific search query",
                        instruction_id=ins.id,
                    )
                )
    return violations


def check_parallelism(instructions: list[Instruction]) -> list[Violation]:
    """V-010: sequencing dependencies are legitimate, so this never fires."""
    return []


def check_token_estimates(instructions: list[Instruction]) -> list[Violation]:
    """V-012."""
    return [
        Violation(
            rule_id=rule_id(12),
            severity="warning",
            message=f"Instruction '{ins.id}' ({ins.op.value}) missing estimated_tokens",
            remediation="Add estimated_tokens field for context budget planning",
            instruction_id=ins.id,
        )
        for ins in instructions
        if ins.op in TOKEN_ESTIMATE_OPS and ins.estimated_tokens is None
    ]
