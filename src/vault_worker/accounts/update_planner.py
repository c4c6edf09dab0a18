"""
Safe array-update planner.

Builds operator update documents ($set / $addToSet / positional $[id]) for
array fields such as an account's raw institution names, and validates that
no update document mixes operators on the same or overlapping paths.

Three modes:
- replace: wholesale overwrite, only when the resulting set differs
- append_unique: add genuinely new, deduplicated values
- element_update: rewrite one existing element matched by value through a
  positional filter identifier

Invariant: ensure_single_operator() runs before every persistence call. A
document like {"$set": {"names": [...]}, "$addToSet": {"names": ...}} is
rejected with UpdateConflictError rather than letting one operator win.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

RAW_NAMES_PATH = "raw_institution_names"

# Operators the state store knows how to apply
ROOT_OPERATORS = frozenset({"$set", "$setOnInsert", "$addToSet"})

# Identifier used for positional element updates
ELEMENT_IDENTIFIER = "elem"

# Number of additions included in log summaries
SUMMARY_SAMPLE_SIZE = 5


class UpdateConflictError(ValueError):
    """An update document touches one path with more than one operator."""

    pass


class UpdateMode(str, Enum):
    REPLACE = "replace"
    APPEND_UNIQUE = "append_unique"
    ELEMENT_UPDATE = "element_update"


@dataclass
class UpdateSummary:
    """Loggable description of a plan (never the full value list)."""

    mode: UpdateMode
    operators: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    additions_sample: list[str] = field(default_factory=list)
    additions_count: int = 0
    resulting_length: int = 0
    array_filters: list[dict[str, Any]] = field(default_factory=list)
    noop: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "operators": list(self.operators),
            "paths": list(self.paths),
            "additions_sample": list(self.additions_sample),
            "additions_count": self.additions_count,
            "resulting_length": self.resulting_length,
            "array_filters": list(self.array_filters),
            "noop": self.noop,
        }


@dataclass
class UpdatePlan:
    update: dict[str, dict[str, Any]]
    summary: UpdateSummary
    resulting: list[str]
    array_filters: list[dict[str, Any]] | None = None

    @property
    def applied(self) -> bool:
        """False for a no-op plan (nothing to write)."""
        return bool(self.update)


def normalize_raw_names_input(value: str | Iterable[Any] | None) -> list[str]:
    """Accept a single name or any iterable of names; trim and drop blanks."""
    if value is None:
        return []
    items = [value] if isinstance(value, str) else list(value)
    names = []
    for item in items:
        if item is None:
            continue
        text = " ".join(str(item).split())
        if text:
            names.append(text)
    return names


def dedupe(values: Iterable[str]) -> list[str]:
    """Remove duplicates, keeping first occurrence order."""
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def create_noop_summary(mode: UpdateMode, current: list[str]) -> UpdateSummary:
    return UpdateSummary(mode=mode, resulting_length=len(current), noop=True)


def _noop(mode: UpdateMode, current: list[str]) -> UpdatePlan:
    return UpdatePlan(update={}, summary=create_noop_summary(mode, current), resulting=list(current))


def build_update(
    mode: UpdateMode | str,
    current: Iterable[str] | None,
    incoming: str | Iterable[Any] | None,
    *,
    match_value: str | None = None,
    path: str = RAW_NAMES_PATH,
) -> UpdatePlan:
    """
    Plan an update of the array at `path`.

    Args:
        mode: replace, append_unique or element_update
        current: Array as currently stored
        incoming: New value(s)
        match_value: Element to rewrite (element_update only)
        path: Array field name

    Returns:
        UpdatePlan; a no-op plan has an empty update document.

    Raises:
        ValueError: element_update without match_value, or unknown mode
    """
    mode = UpdateMode(mode)
    existing = list(current or [])
    values = dedupe(normalize_raw_names_input(incoming))

    if mode == UpdateMode.REPLACE:
        if set(values) == set(existing):
            return _noop(mode, existing)
        summary = UpdateSummary(
            mode=mode,
            operators=["$set"],
            paths=[path],
            additions_sample=[v for v in values if v not in existing][:SUMMARY_SAMPLE_SIZE],
            additions_count=len([v for v in values if v not in existing]),
            resulting_length=len(values),
        )
        return UpdatePlan(update={"$set": {path: values}}, summary=summary, resulting=values)

    if mode == UpdateMode.APPEND_UNIQUE:
        additions = [v for v in values if v not in existing]
        if not additions:
            return _noop(mode, existing)
        resulting = existing + additions
        summary = UpdateSummary(
            mode=mode,
            operators=["$addToSet"],
            paths=[path],
            additions_sample=additions[:SUMMARY_SAMPLE_SIZE],
            additions_count=len(additions),
            resulting_length=len(resulting),
        )
        return UpdatePlan(
            update={"$addToSet": {path: {"$each": additions}}},
            summary=summary,
            resulting=resulting,
        )

    # element_update
    if match_value is None:
        raise ValueError("element_update requires match_value")
    replacement = values[0] if values else None
    if replacement is None or match_value not in existing or replacement == match_value:
        return _noop(mode, existing)
    if replacement in existing:
        # Rewriting would leave two equal elements
        return _noop(mode, existing)

    resulting = [replacement if item == match_value else item for item in existing]
    array_filters = [{ELEMENT_IDENTIFIER: {"$eq": match_value}}]
    element_path = f"{path}.$[{ELEMENT_IDENTIFIER}]"
    summary = UpdateSummary(
        mode=mode,
        operators=["$set"],
        paths=[element_path],
        additions_sample=[replacement],
        additions_count=1,
        resulting_length=len(resulting),
        array_filters=array_filters,
    )
    return UpdatePlan(
        update={"$set": {element_path: replacement}},
        summary=summary,
        resulting=resulting,
        array_filters=array_filters,
    )


def split_positional_path(path: str) -> tuple[str, str | None]:
    """Split "field.$[id]" into ("field", "id"); plain paths give (path, None)."""
    head, sep, tail = path.partition(".$[")
    if not sep:
        return path, None
    if not tail.endswith("]") or not tail[:-1]:
        raise ValueError(f"Malformed positional path: {path}")
    return head, tail[:-1]


def _paths_overlap(a: str, b: str) -> bool:
    return a == b or a.startswith(b + ".") or b.startswith(a + ".")


def ensure_single_operator(update: dict[str, Any]) -> None:
    """
    Validate an update document before it is persisted.

    Raises:
        UpdateConflictError: two operators (or one operator twice) touch the
            same path, or a root path and one of its sub-paths
        ValueError: an operator's value is not a mapping of paths
    """
    touched: list[tuple[str, str]] = []
    for operator, fields in update.items():
        if not isinstance(fields, dict):
            raise ValueError(f"Operator {operator} must map paths to values")
        for path in fields:
            for other_operator, other_path in touched:
                if _paths_overlap(path, other_path):
                    raise UpdateConflictError(
                        f"Conflicting update: {other_operator} {other_path} "
                        f"and {operator} {path}"
                    )
            touched.append((operator, path))


def summarize_for_logging(summary: UpdateSummary) -> dict[str, Any]:
    """Compact, PII-light view of a plan for log lines."""
    data: dict[str, Any] = {
        "mode": summary.mode.value,
        "noop": summary.noop,
        "resulting_length": summary.resulting_length,
    }
    if not summary.noop:
        data["operators"] = ",".join(summary.operators)
        data["paths"] = ",".join(summary.paths)
        data["additions_count"] = summary.additions_count
        data["additions_sample"] = summary.additions_sample[:SUMMARY_SAMPLE_SIZE]
    return data
