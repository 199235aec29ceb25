from __future__ import annotations

import pytest

from planforge.plan import Instruction
from planforge.viability.dag import analyze_dag, topological_levels


def _ins(id_: str, deps: list[str], params: dict | None = None) -> Instruction:
    return Instruction(id=id_, op="DEFINE_TASK", dependencies=deps, params=params or {})


def test_levels_respect_every_edge(happy_instructions) -> None:
    instructions = [Instruction.model_validate(item) for item in happy_instructions]
    levels = topological_levels(instructions)
    for ins in instructions:
        for dep in ins.dependencies:
            assert levels[ins.id] > levels[dep]
    assert levels["search"] == 0
    assert levels["run_test_green"] == 4


def test_metrics_for_happy_path(happy_instructions) -> None:
    instructions = [Instruction.model_validate(item) for item in happy_instructions]
    metrics = analyze_dag(instructions)
    assert metrics.total_nodes == 6
    assert metrics.total_edges == 6
    assert metrics.root_nodes == 1
    assert metrics.leaf_nodes == 2
    assert metrics.critical_path_length == 5
    assert metrics.max_width == 2
    assert metrics.parallelization_ratio == pytest.approx(0.4)
    assert "gen_test->run_test_red" in metrics.unnecessary_deps
    assert "search->read" not in metrics.unnecessary_deps


def test_cycle_members_default_to_level_zero() -> None:
    levels = topological_levels([_ins("a", ["b"]), _ins("b", ["a"]), _ins("c", [])])
    assert levels == {"c": 0, "a": 0, "b": 0}


def test_empty_graph_metrics() -> None:
    metrics = analyze_dag([])
    assert metrics.total_nodes == 0
    assert metrics.to_markdown() == ""


def test_markdown_notes_low_parallelism() -> None:
    chain = [_ins("n0", [])] + [_ins(f"n{i}", [f"n{i - 1}"]) for i in range(1, 12)]
    markdown = analyze_dag(chain).to_markdown()
    assert "| Total Instructions | 12 |" in markdown
    assert "Parallelization ratio is low" in markdown
    assert analyze_dag(chain).to_dict()["critical_path_length"] == 12
