"""Parallelization metrics for the instruction graph."""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any

from planforge.plan import Instruction


@dataclass
class DagMetrics:
    total_nodes: int = 0
    total_edges: int = 0
    root_nodes: int = 0
    leaf_nodes: int = 0
    critical_path_length: int = 0
    max_width: int = 0
    parallelization_ratio: float = 0.0
    unnecessary_deps: list[str] = field(default_factory=list)
    levels: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_markdown(self) -> str:
        if self.total_nodes == 0:
            return ""
        rows = [
            ("Total Instructions", str(self.total_nodes)),
            ("Root Nodes (parallel start)", str(self.root_nodes)),
            ("Critical Path Length", str(self.critical_path_length)),
            ("Max Concurrent Operations", str(self.max_width)),
            ("Parallelization Ratio", f"{self.parallelization_ratio:.2f}"),
        ]
        if self.unnecessary_deps:
            rows.append(("Unnecessary Dependencies", str(len(self.unnecessary_deps))))
        lines = ["| Metric | Value |", "|--------|-------|"]
        lines.extend(f"| {name} | {value} |" for name, value in rows)
        if self.total_nodes > 10 and self.parallelization_ratio < 1.0:
            lines.append("")
            lines.append(
                "> **Note**: Parallelization ratio is low."
                " Consider restructuring to allow more parallel execution."
            )
        return "\n".join(lines)


def topological_levels(instructions: list[Instruction]) -> dict[str, int]:
    """Level 0 for roots, else one more than the deepest dependency.

    Nodes that never settle (cycles, unknown dependencies) default to 0.
    """
    levels: dict[str, int] = {ins.id: 0 for ins in instructions if not ins.dependencies}
    changed = True
    while changed:
        changed = False
        for ins in instructions:
            if ins.id in levels:
                continue
            if all(dep in levels for dep in ins.dependencies):
                levels[ins.id] = max(levels[dep] for dep in ins.dependencies) + 1
                changed = True
    for ins in instructions:
        levels.setdefault(ins.id, 0)
    return levels


def find_unnecessary_deps(instructions: list[Instruction]) -> list[str]:
    unnecessary: list[str] = []
    for ins in instructions:
        params_text = ins.params_text()
        for dep in ins.dependencies:
            if f"${{{dep}" not in params_text:
                unnecessary.append(f"{dep}->{ins.id}")
    return unnecessary


def analyze_dag(instructions: list[Instruction]) -> DagMetrics:
    if not instructions:
        return DagMetrics()
    depended_on = {dep for ins in instructions for dep in ins.dependencies}
    levels = topological_levels(instructions)
    critical_path = max(levels.values()) + 1
    max_width = max(Counter(levels.values()).values())
    return DagMetrics(
        total_nodes=len(instructions),
        total_edges=sum(len(ins.dependencies) for ins in instructions),
        root_nodes=sum(1 for ins in instructions if not ins.dependencies),
        leaf_nodes=sum(1 for ins in instructions if ins.id not in depended_on),
        critical_path_length=critical_path,
        max_width=max_width,
        parallelization_ratio=max_width / critical_path,
        unnecessary_deps=find_unnecessary_deps(instructions),
        levels=levels,
    )
