"""Violation and result types for the viability checker."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

ViolationSeverity = Literal["critical", "warning"]

CRITICAL_WEIGHT = 0.2
WARNING_WEIGHT = 0.05


def rule_id(number: int) -> str:
    return f"VIABILITY-{number:03d}"


@dataclass(frozen=True)
class ViabilityConfig:
    max_files_per_edit: int = 4
    min_search_query_length: int = 3


@dataclass(frozen=True)
class Violation:
    rule_id: str
    severity: ViolationSeverity
    message: str
    remediation: str
    instruction_id: str | None = None

    @property
    def is_critical(self) -> bool:
        return self.severity == "critical"


@dataclass
class ViabilityResult:
    passed: bool
    violations: list[Violation] = field(default_factory=list)
    score: float = 1.0

    @classmethod
    def from_violations(cls, violations: list[Violation]) -> "ViabilityResult":
        critical = sum(1 for item in violations if item.is_critical)
        warning = len(violations) - critical
        score = 1.0 - CRITICAL_WEIGHT * critical - WARNING_WEIGHT * warning
        return cls(
            passed=critical == 0,
            violations=list(violations),
            score=min(1.0, max(0.0, score)),
        )

    @property
    def critical_count(self) -> int:
        return sum(1 for item in self.violations if item.is_critical)

    @property
    def warning_count(self) -> int:
        return len(self.violations) - self.critical_count

    def by_rule(self, rule: str) -> list[Violation]:
        return [item for item in self.violations if item.rule_id == rule]

    def summary(self) -> str:
        if not self.violations:
            return f"Viability passed (score {self.score:.2f}); no violations."
        status = "passed" if self.passed else "FAILED"
        lines = [
            f"Viability {status} (score {self.score:.2f}): "
            f"{self.critical_count} critical, {self.warning_count} warning"
        ]
        for item in self.violations:
            where = f" [{item.instruction_id}]" if item.instruction_id else ""
            lines.append(f"- {item.rule_id} {item.severity}{where}: {item.message}")
            lines.append(f"  Fix: {item.remediation}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "score": self.score,
            "violations": [asdict(item) for item in self.violations],
        }
