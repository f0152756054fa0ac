"""
Project ranking and statistics.

Built on the per-project totals of a UsageSummary, so a project's figures
always equal the sum of its buckets.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ccost.core.aggregator import UsageSummary


class ProjectSortBy(Enum):
    """Orderings for project listings."""
    NAME = "name"
    COST = "cost"      # Highest first
    TOKENS = "tokens"  # Highest first


@dataclass(frozen=True)
class ProjectSummary:
    """Totals for one project."""
    project: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    cost: Decimal
    record_count: int
    model_count: int
    cost_unavailable: bool = False

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
            "cost": str(self.cost),
            "records": self.record_count,
            "models": self.model_count,
            "cost_unavailable": self.cost_unavailable,
        }


@dataclass(frozen=True)
class ProjectStatistics:
    """Cross-project figures for a ranked listing."""
    total_projects: int = 0
    total_cost: Decimal = field(default_factory=lambda: Decimal("0"))
    total_tokens: int = 0
    total_records: int = 0
    distinct_models: int = 0
    highest_cost_project: Optional[str] = None
    most_active_project: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_projects": self.total_projects,
            "total_cost": str(self.total_cost),
            "total_tokens": self.total_tokens,
            "total_records": self.total_records,
            "distinct_models": self.distinct_models,
            "highest_cost_project": self.highest_cost_project,
            "most_active_project": self.most_active_project,
        }


def analyze_projects(
    summary: UsageSummary,
    sort_by: ProjectSortBy = ProjectSortBy.NAME,
) -> List[ProjectSummary]:
    """Per-project totals of a summary, ordered by ``sort_by``.

    Cost and token orderings put the largest project first; ties are broken
    by project name.
    """
    models: Dict[str, set] = {}
    for bucket in summary.buckets.values():
        models.setdefault(bucket.project, set()).add(bucket.model)

    projects = [
        ProjectSummary(
            project=name,
            input_tokens=totals.input_tokens,
            output_tokens=totals.output_tokens,
            cache_creation_tokens=totals.cache_creation_tokens,
            cache_read_tokens=totals.cache_read_tokens,
            cost=totals.cost,
            record_count=totals.record_count,
            model_count=len(models.get(name, ())),
            cost_unavailable=totals.cost_unavailable,
        )
        for name, totals in summary.by_project().items()
    ]
    projects.sort(key=lambda p: p.project)
    if sort_by is ProjectSortBy.COST:
        projects.sort(key=lambda p: p.cost, reverse=True)
    elif sort_by is ProjectSortBy.TOKENS:
        projects.sort(key=lambda p: p.total_tokens, reverse=True)
    return projects


def project_statistics(summary: UsageSummary) -> ProjectStatistics:
    """Summarize a report across projects."""
    projects = analyze_projects(summary)
    if not projects:
        return ProjectStatistics()

    # max() keeps the first of equal items, and projects are in name order
    highest_cost = max(projects, key=lambda p: p.cost)
    most_active = max(projects, key=lambda p: p.record_count)
    return ProjectStatistics(
        total_projects=len(projects),
        total_cost=sum((p.cost for p in projects), Decimal("0")),
        total_tokens=sum(p.total_tokens for p in projects),
        total_records=sum(p.record_count for p in projects),
        distinct_models=len({bucket.model for bucket in summary.buckets.values()}),
        highest_cost_project=highest_cost.project,
        most_active_project=most_active.project,
    )
