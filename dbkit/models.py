"""Shared value types used across the connection and backend modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

Record = dict[str, Any]


class ConnectionState(str, Enum):
    """Lifecycle states of a connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True, slots=True, init=False)
class In:
    """Membership operator for where clauses (``column IN (...)``)."""

    values: tuple[Any, ...]

    def __init__(self, values: Iterable[Any]) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True, slots=True)
class FindOptions:
    """Structured query handed to a table repository."""

    where: Mapping[str, Any] | None = None
    select: tuple[str, ...] | None = None
    order: Mapping[str, str] | None = None
    skip: int | None = None
    take: int | None = None


@dataclass(frozen=True, slots=True)
class InsertResult:
    """Primary keys generated for each inserted record, in insertion order."""

    identifiers: tuple[Mapping[str, Any], ...] = field(default_factory=tuple)

    def ids(self) -> list[Any]:
        return [_identifier(entry) for entry in self.identifiers]


def _identifier(entry: Mapping[str, Any]) -> Any:
    if "id" in entry:
        return entry["id"]
    return next(iter(entry.values()), None)


__all__ = ["ConnectionState", "FindOptions", "In", "InsertResult", "Record"]
