from __future__ import annotations

import pytest

from aip.memory.schema import ImplementationRequest, ProjectContext
from aip.planning import generate_plan
from aip.planning.estimates import assess_risk, confidence, dependencies, estimate_minutes


def _request(identifier: str, **overrides) -> ImplementationRequest:
    payload = {"id": identifier, "title": f"Item {identifier}", "description": "Do the thing."}
    payload.update(overrides)
    return ImplementationRequest(**payload)


CONTEXT = ProjectContext(repo_url="https://github.com/acme/demo", project_name="Demo", tech_stack=["React"])


@pytest.mark.parametrize(
    ("difficulty", "category", "expected"),
    [
        ("Advanced", "Security", 180),
        ("Intermediate", "Performance", 78),
        ("Beginner", "Documentation", 24),
        ("Expert", "Unknown", 60),
    ],
)
def test_estimate_minutes(difficulty: str, category: str, expected: int) -> None:
    assert estimate_minutes(_request("a", difficulty=difficulty, category=category)) == expected


def test_risk_is_capped_and_additive() -> None:
    assert assess_risk(_request("a", difficulty="Advanced", category="Security", priority="High")) == 4.5
    assert assess_risk(_request("b", difficulty="Beginner", category="Quality", priority="Low")) == 1.0


def test_confidence_depends_on_stack_and_difficulty() -> None:
    assert confidence(_request("a", difficulty="Advanced"), ["React"]) == 70
    assert confidence(_request("b", difficulty="Beginner"), ["Rust"]) == 70
    assert confidence(_request("c"), ["Go"]) == 60


def test_dependencies_prefer_security_and_high_priority() -> None:
    security = _request("sec", category="Security")
    urgent = _request("urgent", priority="High")
    later = _request("later", priority="Low")

    found = dependencies(later, [security, urgent, later])

    assert [item["id"] for item in found] == ["sec", "urgent"]
    assert dependencies(security, [security, urgent, later]) == []


def test_plan_summary_and_order() -> None:
    requests = [
        _request("q", category="Quality", difficulty="Beginner"),
        _request("s", category="Security", difficulty="Advanced", priority="High"),
        _request("t", category="Testing"),
    ]

    plan = generate_plan(CONTEXT, requests)
    payload = plan.to_dict()

    assert plan.total_minutes == 30 + 180 + 72
    assert [entry["id"] for entry in plan.suggested_order()] == ["s", "q", "t"]
    assert plan.recommended_batch_size() == 3
    assert "Consider manual review for high-risk implementations" in plan.recommendations()
    assert "Prioritize security implementations and test thoroughly" in plan.recommendations()
    assert payload["summary"]["total_items"] == 3
    assert payload["implementations"][2]["prerequisites"] == ["Testing framework must be installed"]
    assert payload["metadata"]["project_name"] == "Demo"


def test_large_plans_use_bigger_batches() -> None:
    plan = generate_plan(CONTEXT, [_request(str(index)) for index in range(12)])

    assert plan.recommended_batch_size() == 5
    assert "Consider splitting into multiple batches for better control" in plan.recommendations()


def test_empty_plan_is_rejected() -> None:
    with pytest.raises(ValueError):
        generate_plan(CONTEXT, [])
