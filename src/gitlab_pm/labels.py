"""Label interpretation: semantic facets from free-form GitLab labels."""

import re

from gitlab_pm.models import Issue, IterationRef, LabelFacets

_STORY_POINTS = re.compile(r"sp::\s*(\d+)")
_SPRINT = re.compile(r"sprint\s*(\d+)")

HIGH_PRIORITY_MARKERS = ("critical", "urgent", "high")
LOW_PRIORITY_MARKERS = ("low",)
BLOCKER_MARKER = "block"
INITIATIVE_PREFIX = "initiative::"
TEAM_PREFIXES = ("team::", "squad::")


def sprint_name(iteration) -> str | None:
    """Name of an iteration given as a string, dict or IterationRef."""
    if iteration is None:
        return None
    if isinstance(iteration, str):
        return iteration.strip() or None
    if isinstance(iteration, IterationRef):
        return iteration.title or None
    if isinstance(iteration, dict):
        return iteration.get("name") or iteration.get("title") or None
    return None


def _prefixed_value(lowered: list[str], labels: list[str], prefixes: tuple[str, ...]) -> str | None:
    for low, original in zip(lowered, labels):
        for prefix in prefixes:
            if low.startswith(prefix):
                value = original[len(prefix):].strip()
                if value:
                    return value
    return None


def interpret(labels: list[str], iteration=None, weight: int | None = None) -> LabelFacets:
    """Extract the facet bundle for a label list.

    Args:
        labels: Free-form label strings, matched case-insensitively
        iteration: Optional iteration as a name, dict or IterationRef
        weight: Issue weight used when no ``sp::<n>`` label is present

    Returns:
        LabelFacets; facets that cannot be derived are None
    """
    labels = [label for label in labels if isinstance(label, str)]
    lowered = [label.lower() for label in labels]

    blocker = any(BLOCKER_MARKER in low for low in lowered)

    if any(marker in low for low in lowered for marker in HIGH_PRIORITY_MARKERS):
        priority = "high"
    elif any(marker in low for low in lowered for marker in LOW_PRIORITY_MARKERS):
        priority = "low"
    else:
        priority = "medium"

    story_points = None
    for low in lowered:
        match = _STORY_POINTS.fullmatch(low.strip())
        if match:
            story_points = int(match.group(1))
            break
    if story_points is None and isinstance(weight, int) and not isinstance(weight, bool):
        story_points = weight

    sprint = sprint_name(iteration)
    if sprint is None:
        for low in lowered:
            match = _SPRINT.fullmatch(low.strip())
            if match:
                sprint = f"Sprint {int(match.group(1))}"
                break

    return LabelFacets(
        priority=priority,
        blocker=blocker,
        story_points=story_points,
        sprint=sprint,
        initiative=_prefixed_value(lowered, labels, (INITIATIVE_PREFIX,)),
        team=_prefixed_value(lowered, labels, TEAM_PREFIXES),
    )


def interpret_issue(issue: Issue) -> LabelFacets:
    """Facets for an issue's labels, iteration and weight."""
    return interpret(issue.labels, issue.iteration, issue.weight)
