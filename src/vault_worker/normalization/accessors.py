"""
Typed field accessors.

Each canonical field has an explicit, ordered list of accessors into the
upstream payload. The first accessor yielding a usable value wins, and the
winning alias is reported so it can be stored and audited.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Accessor:
    """A dotted path into a nested mapping, e.g. "totals.gross"."""

    alias: str

    @property
    def path(self) -> tuple[str, ...]:
        return tuple(self.alias.split("."))

    def get(self, raw: Any) -> Any:
        cursor = raw
        for key in self.path:
            if not isinstance(cursor, dict):
                return None
            cursor = cursor.get(key)
            if cursor is None:
                return None
        return cursor


def accessors(*aliases: str) -> tuple[Accessor, ...]:
    return tuple(Accessor(alias) for alias in aliases)


def nested(prefixes: Sequence[str], *names: str) -> tuple[Accessor, ...]:
    """Accessors for each name under each prefix, name-major order."""
    return tuple(Accessor(f"{prefix}.{name}") for name in names for prefix in prefixes)


@dataclass(frozen=True)
class Resolved(Generic[T]):
    value: T | None
    alias: str | None = None

    @property
    def found(self) -> bool:
        return self.value is not None


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def first_present(
    raw: Any,
    candidates: Sequence[Accessor],
    coerce: Callable[[Any], T | None] | None = None,
) -> Resolved[T]:
    """
    Resolve a canonical field from its ordered accessors.

    A candidate whose value cannot be coerced is skipped, so a garbled
    alias does not hide a usable one further down the list.
    """
    for accessor in candidates:
        value = accessor.get(raw)
        if not _present(value):
            continue
        if coerce is not None:
            value = coerce(value)
            if value is None:
                continue
        return Resolved(value, accessor.alias)
    return Resolved(None, None)


def as_text(value: Any) -> str | None:
    if isinstance(value, (dict, list)):
        return None
    text = " ".join(str(value).split())
    return text or None


def record_source(sources: dict[str, str], field_name: str, resolved: Resolved[Any]) -> None:
    if resolved.alias:
        sources[field_name] = resolved.alias
