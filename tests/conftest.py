from __future__ import annotations

from typing import Any

import pytest


def _agent_params(goal: str, files: list[str]) -> dict[str, Any]:
    return {
        "goal": goal,
        "role": "implementer",
        "context_files": files,
        "constraints": ["no new dependencies"],
    }


@pytest.fixture
def happy_instructions() -> list[dict[str, Any]]:
    return [
        {
            "id": "search",
            "op": "SEARCH_CODE",
            "params": {"query": "function foo"},
            "estimated_tokens": 100,
        },
        {
            "id": "read",
            "op": "READ_FILES",
            "params": {"paths": "${search.artifacts}"},
            "dependencies": ["search"],
            "estimated_tokens": 50,
        },
        {
            "id": "gen_test",
            "op": "GENERATE_TEST",
            "params": {**_agent_params("test foo", ["a.rs"]), "target": "foo"},
            "dependencies": ["read"],
            "estimated_tokens": 100,
        },
        {
            "id": "run_test_red",
            "op": "RUN_TEST",
            "params": {"target": "foo"},
            "dependencies": ["gen_test"],
        },
        {
            "id": "edit",
            "op": "EDIT_CODE",
            "params": {**_agent_params("impl foo", ["a.rs"]), "files": ["a.rs"]},
            "dependencies": ["gen_test", "read"],
            "estimated_tokens": 500,
        },
        {
            "id": "run_test_green",
            "op": "RUN_TEST",
            "params": {"target": "foo"},
            "dependencies": ["edit"],
        },
    ]


@pytest.fixture
def plan_payload(happy_instructions: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "title": "Add foo",
        "description": "Implement foo behind a test",
        "tier": "quick",
        "context": {"problem_statement": "foo is missing"},
        "phases": [
            {
                "name": "Core",
                "goal": "Ship foo",
                "checkpoints": [
                    {
                        "id": "cp-1",
                        "description": "foo works",
                        "tasks": [{"description": "Write foo", "file_references": ["a.rs"]}],
                    }
                ],
            }
        ],
        "acceptance_criteria": [{"description": "foo returns 42"}],
        "file_references": [{"path": "a.rs", "action": "modify"}],
        "risks": [{"description": "foo is used elsewhere", "severity": "info"}],
        "instructions": happy_instructions,
    }


@pytest.fixture
def passing_review() -> dict[str, Any]:
    return {"overall_assessment": "Solid plan", "score": 0.9}


@pytest.fixture
def failing_review() -> dict[str, Any]:
    return {
        "overall_assessment": "Needs work",
        "score": 0.6,
        "gaps": [
            {
                "description": "No rollback step",
                "severity": "error",
                "suggested_fix": "Add a revert checkpoint",
            }
        ],
        "unclear_areas": [{"description": "Which crate?", "questions": ["core or cli?"]}],
    }
