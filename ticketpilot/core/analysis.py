"""Ticket complexity scoring and todo breakdown."""

import re
from dataclasses import dataclass, field
from typing import Any

from .results import TicketData

BREAKDOWN_THRESHOLD = 0.6
MAX_POINTS = 20

ARCHITECTURE_KEYWORDS = ("architecture", "refactor", "redesign", "restructure", "framework")
SYSTEM_KEYWORDS = ("system", "integration", "api", "database", "migration", "deployment")
SPECIALIST_KEYWORDS = (
    "security",
    "authentication",
    "authorization",
    "encryption",
    "vulnerability",
    "performance",
    "optimization",
    "scaling",
    "caching",
)
FUNCTIONALITY_INDICATORS = ("and", "also", "additionally", "furthermore", "plus", "including")
PRIORITY_POINTS = {"critical": 4, "highest": 4, "high": 3, "medium": 2}
LABEL_HINTS = {"epic": 4, "complex": 3, "refactoring": 3, "small": -2, "trivial": -3, "good first issue": -2}

_LIST_ITEM = re.compile(r"^\s*(?:[-*]|\d+\.)\s+", re.MULTILINE)


@dataclass
class ComplexityAssessment:
    score: float
    level: str
    points: int
    factors: list[str] = field(default_factory=list)

    @property
    def requires_breakdown(self) -> bool:
        return self.score > BREAKDOWN_THRESHOLD


def _words(text: str) -> list[str]:
    return re.findall(r"[a-z0-9]+", text.lower())


def assess_complexity(ticket: TicketData) -> ComplexityAssessment:
    """Score a ticket in [0, 1] from its text, priority and labels."""
    points = 0
    factors: list[str] = []

    length = len(ticket.description)
    if length > 2000:
        points += 5
        factors.append("very long description")
    elif length > 1000:
        points += 3
        factors.append("long description")
    elif length > 500:
        points += 2
        factors.append("medium description")

    priority = (ticket.priority or "").lower()
    if priority in PRIORITY_POINTS:
        points += PRIORITY_POINTS[priority]
        factors.append(f"priority: {priority}")

    content = f"{ticket.summary} {ticket.description}".lower()
    words = _words(content)
    for keyword in ARCHITECTURE_KEYWORDS:
        if keyword in content:
            points += 3
            factors.append(f"architecture keyword: {keyword}")
    for keyword in SYSTEM_KEYWORDS + SPECIALIST_KEYWORDS:
        if keyword in words:
            points += 2
            factors.append(f"keyword: {keyword}")

    indicator_count = sum(words.count(indicator) for indicator in FUNCTIONALITY_INDICATORS)
    if indicator_count:
        points += min(indicator_count, 4)
        factors.append(f"multiple functionalities ({indicator_count})")

    list_items = len(_LIST_ITEM.findall(ticket.description))
    if list_items > 3:
        points += min(list_items, 5)
        factors.append(f"list items ({list_items})")

    for label in ticket.labels:
        hint = LABEL_HINTS.get(label.lower())
        if hint:
            points += hint
            factors.append(f"label: {label}")

    points = max(points, 0)
    if points >= 15:
        level = "very_high"
    elif points >= 10:
        level = "high"
    elif points >= 6:
        level = "medium"
    elif points >= 3:
        level = "low"
    else:
        level = "very_low"

    return ComplexityAssessment(
        score=round(min(points / MAX_POINTS, 1.0), 3),
        level=level,
        points=points,
        factors=factors,
    )


def plan_todos(ticket: TicketData, assessment: ComplexityAssessment) -> list[dict[str, Any]]:
    """Ordered todos for a ticket. Each step of a breakdown depends on the previous one."""
    if not assessment.requires_breakdown:
        return [
            {
                "title": f"Implement {ticket.key}",
                "description": ticket.summary,
                "priority": 2,
                "estimated_hours": 2.0,
                "category": "backend",
                "acceptance_criteria": ["Change implemented", "Existing tests pass"],
            }
        ]

    planning = "Analyze requirements"
    implementation = "Implement the change"
    testing = "Add tests and verify"
    return [
        {
            "title": planning,
            "description": "Clarify the requirements and outline the technical approach",
            "priority": 1,
            "estimated_hours": 1.0,
            "category": "planning",
            "dependencies": [],
            "acceptance_criteria": ["Approach documented", "Open questions listed"],
        },
        {
            "title": implementation,
            "description": ticket.summary,
            "priority": 2,
            "estimated_hours": 3.0,
            "category": "backend",
            "dependencies": [planning],
            "acceptance_criteria": ["Code implemented"],
        },
        {
            "title": testing,
            "description": "Cover the change with tests and run the suite",
            "priority": 3,
            "estimated_hours": 1.5,
            "category": "testing",
            "dependencies": [implementation],
            "acceptance_criteria": ["Tests added", "All tests pass"],
        },
    ]
