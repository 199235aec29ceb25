"""Grounding rule: files the planner saw missing must be created by the plan."""

from __future__ import annotations

from planforge.plan import FileReference, GroundingSnapshot
from planforge.viability.types import Violation, rule_id


def check_grounding(
    snapshot: GroundingSnapshot, file_references: list[FileReference]
) -> list[Violation]:
    """V-003."""
    created = {ref.path for ref in file_references if ref.action == "create"}
    violations: list[Violation] = []
    for verified in snapshot.verified_files:
        if verified.exists or verified.path in created:
            continue
        violations.append(
            Violation(
                rule_id=rule_id(3),
                severity="critical",
                message=f"Plan references non-existent file: {verified.path}",
                remediation="Verify file path is correct or add file_reference with action=create",
            )
        )
    return violations
