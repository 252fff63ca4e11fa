"""Dry-run implementation plans built from simple category/difficulty heuristics."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from aip.memory.schema import ImplementationRequest, ProjectContext, utc_now

BASE_MINUTES: Dict[str, int] = {"Beginner": 30, "Intermediate": 60, "Advanced": 120}
CATEGORY_MULTIPLIER: Dict[str, float] = {
    "Security": 1.5,
    "Performance": 1.3,
    "Testing": 1.2,
    "Quality": 1.0,
    "Documentation": 0.8,
}
COMMON_TECH: frozenset[str] = frozenset({"React", "Node.js", "JavaScript", "TypeScript"})

APPROACHES: Dict[str, str] = {
    "Security": "Add validation and security checks",
    "Performance": "Optimize code and add caching",
    "Testing": "Add test cases and test utilities",
    "Quality": "Refactor and improve code structure",
    "Documentation": "Add comments and documentation",
}
EXPECTED_FILES: Dict[str, List[str]] = {
    "Security": ["middleware", "validation", "auth"],
    "Performance": ["services", "components", "utils"],
    "Testing": ["tests", "spec files", "test utilities"],
    "Quality": ["core modules", "services", "components"],
    "Documentation": ["README", "comments", "docs"],
}
TESTING_STRATEGIES: Dict[str, str] = {
    "Security": "Security testing and penetration testing",
    "Performance": "Load testing and performance benchmarks",
    "Testing": "Test the tests and coverage analysis",
    "Quality": "Code review and static analysis",
    "Documentation": "Documentation review and validation",
}

HIGH_RISK = 3.0
MANUAL_REVIEW_RISK = 4.0
MAX_RISK = 5.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def estimate_minutes(request: ImplementationRequest) -> int:
    base = BASE_MINUTES.get(request.difficulty, 60)
    return _round_half_up(base * CATEGORY_MULTIPLIER.get(request.category, 1.0))


def assess_risk(request: ImplementationRequest) -> float:
    risk = 1.0
    if request.difficulty == "Advanced":
        risk += 2
    if request.category == "Security":
        risk += 1
    if request.priority == "High":
        risk += 0.5
    return min(risk, MAX_RISK)


def confidence(request: ImplementationRequest, tech_stack: Sequence[str]) -> int:
    score = 80 if COMMON_TECH.intersection(tech_stack) else 60
    if request.difficulty == "Beginner":
        score += 10
    elif request.difficulty == "Advanced":
        score -= 10
    return score


def dependencies(request: ImplementationRequest, others: Sequence[ImplementationRequest]) -> List[Dict[str, str]]:
    """Security work precedes everything else; High priority precedes Low."""
    found: List[Dict[str, str]] = []
    for other in others:
        if other.id == request.id:
            continue
        security_first = request.category != "Security" and other.category == "Security"
        priority_first = request.priority == "Low" and other.priority == "High"
        if security_first or priority_first:
            found.append({"id": other.id, "title": other.title, "reason": "Priority/Category dependency"})
    return found


def prerequisites(request: ImplementationRequest) -> List[str]:
    if request.category == "Testing":
        return ["Testing framework must be installed"]
    if request.category == "Security":
        return ["Security dependencies must be available"]
    return []


@dataclass(slots=True)
class PlanItem:
    order: int
    request: ImplementationRequest
    minutes: int
    risk: float
    confidence: int
    dependencies: List[Dict[str, str]] = field(default_factory=list)
    prerequisites: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        category = self.request.category
        return {
            "order": self.order,
            "implementation": {
                "id": self.request.id,
                "title": self.request.title,
                "description": self.request.description,
                "category": category,
                "priority": self.request.priority,
                "difficulty": self.request.difficulty,
            },
            "estimation": {
                "minutes": self.minutes,
                "complexity": self.request.difficulty,
                "risk_level": self.risk,
                "confidence": self.confidence,
            },
            "strategy": {
                "approach": APPROACHES.get(category, "Implement feature according to requirements"),
                "files_expected_to_change": list(EXPECTED_FILES.get(category, ["main application files"])),
                "testing_strategy": TESTING_STRATEGIES.get(category, "Unit and integration testing"),
                "rollback_plan": (
                    "Create backup branch, implement feature flags, and prepare revert commits "
                    f"for {self.request.title}"
                ),
            },
            "dependencies": self.dependencies,
            "prerequisites": self.prerequisites,
        }


@dataclass(slots=True)
class ImplementationPlan:
    context: ProjectContext
    items: List[PlanItem]

    @property
    def total_minutes(self) -> int:
        return sum(item.minutes for item in self.items)

    @property
    def average_risk(self) -> float:
        if not self.items:
            return 0.0
        mean = sum(item.risk for item in self.items) / len(self.items)
        return _round_half_up(mean * 10) / 10

    def recommended_batch_size(self) -> int:
        high_risk = sum(1 for item in self.items if item.risk >= HIGH_RISK)
        if high_risk > 3:
            return 2
        if len(self.items) > 10:
            return 5
        return 3

    def suggested_order(self) -> List[Dict[str, Any]]:
        ranked = sorted(
            self.items,
            key=lambda item: (0 if item.request.category == "Security" else 1, item.risk),
        )
        return [
            {"order": index, "id": item.request.id, "title": item.request.title}
            for index, item in enumerate(ranked, start=1)
        ]

    def recommendations(self) -> List[str]:
        notes: List[str] = []
        if any(item.risk >= MANUAL_REVIEW_RISK for item in self.items):
            notes.append("Consider manual review for high-risk implementations")
        if any(item.request.category == "Security" for item in self.items):
            notes.append("Prioritize security implementations and test thoroughly")
        if len(self.items) > 5:
            notes.append("Consider splitting into multiple batches for better control")
        return notes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "implementations": [item.to_dict() for item in self.items],
            "summary": {
                "total_items": len(self.items),
                "estimated_total_minutes": self.total_minutes,
                "average_risk_level": self.average_risk,
                "recommended_batch_size": self.recommended_batch_size(),
                "suggested_order": self.suggested_order(),
            },
            "recommendations": self.recommendations(),
            "metadata": {
                "project_name": self.context.project_name,
                "repo_url": self.context.repo_url,
                "generated_at": utc_now().isoformat(),
            },
        }


def generate_plan(context: ProjectContext, requests: Sequence[ImplementationRequest]) -> ImplementationPlan:
    """Build a plan for ``requests`` without touching any workspace."""
    if not requests:
        raise ValueError("At least one implementation request is required")
    tech_stack = list(context.tech_stack)
    items = [
        PlanItem(
            order=index,
            request=request,
            minutes=estimate_minutes(request),
            risk=assess_risk(request),
            confidence=confidence(request, tech_stack),
            dependencies=dependencies(request, requests),
            prerequisites=prerequisites(request),
        )
        for index, request in enumerate(requests, start=1)
    ]
    return ImplementationPlan(context=context, items=items)


__all__ = [
    "ImplementationPlan",
    "PlanItem",
    "assess_risk",
    "confidence",
    "dependencies",
    "estimate_minutes",
    "generate_plan",
    "prerequisites",
]
