"""Viability checker: runs every rule over a plan's instruction graph."""

from __future__ import annotations

from planforge.plan import FileReference, GroundingSnapshot, Instruction, Plan
from planforge.viability import dataflow, graph, grounding, params, structure
from planforge.viability.types import ViabilityConfig, ViabilityResult, Violation


class ViabilityChecker:
    """Deterministic static analysis over the instruction graph."""

    def __init__(
        self, max_files_per_edit: int = 4, min_search_query_length: int = 3
    ) -> None:
        self.config = ViabilityConfig(
            max_files_per_edit=max(1, max_files_per_edit),
            min_search_query_length=max(0, min_search_query_length),
        )

    def check_all(
        self,
        instructions: list[Instruction],
        snapshot: GroundingSnapshot | None = None,
        file_references: list[FileReference] | None = None,
    ) -> ViabilityResult:
        empty = structure.check_empty_instructions(instructions)
        if empty is not None:
            return ViabilityResult.from_violations([empty])
        violations: list[Violation] = []
        missing_test = graph.check_missing_test(instructions)
        if missing_test is not None:
            violations.append(missing_test)
        violations.extend(graph.check_logical_flow(instructions))
        violations.extend(structure.check_complexity(instructions, self.config))
        violations.extend(params.check_params_presence(instructions))
        violations.extend(dataflow.check_variable_refs(instructions))
        violations.extend(dataflow.check_tdd_order(instructions))
        violations.extend(dataflow.check_variable_field_names(instructions))
        violations.extend(params.check_params_schema(instructions))
        violations.extend(structure.check_parallelism(instructions))
        violations.extend(graph.check_grounding_order(instructions))
        violations.extend(structure.check_token_estimates(instructions))
        violations.extend(params.check_agent_task_params(instructions))
        if snapshot is not None:
            violations.extend(grounding.check_grounding(snapshot, file_references or []))
        return ViabilityResult.from_violations(violations)

    def check_plan(self, plan: Plan) -> ViabilityResult:
        return self.check_all(
            plan.instructions or [], plan.grounding_snapshot, plan.file_references
        )
