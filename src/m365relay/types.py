"""Type definitions and enums for the relay.

Usage:
    from m365relay.types import SinkAuthType, WorkerState

    # StrEnum members compare equal to their string values
    if auth_type == SinkAuthType.BEARER:
        ...

    SinkAuthType.is_valid("basic")  # True
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, TypeAlias

# An event item is an opaque JSON object passed from a source to a sink unmodified.
EventItem: TypeAlias = dict[str, Any]


class SinkAuthType(StrEnum):
    """Authorization schemes supported by webhook sinks.

    Values:
        BLANK: The configured value is sent as the raw Authorization header.
        BEARER: ``Authorization: Bearer <value>``.
        BASIC: ``Authorization: Basic <value>``.
    """

    BLANK = "blank"
    BEARER = "bearer"
    BASIC = "basic"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a string value is a valid sink auth type.

        Args:
            value: The string value to validate (case-insensitive).

        Returns:
            True if the value matches a valid auth type.
        """
        return value.lower() in cls._value2member_map_

    @classmethod
    def values(cls) -> frozenset[str]:
        """Return all valid auth type values as a frozenset."""
        return frozenset(member.value for member in cls)


class WorkerState(StrEnum):
    """Lifecycle states of a poll worker.

    A worker cycles ``POLLING -> DELIVERING -> SLEEPING`` until cancellation,
    after which it moves to the terminal ``CANCELLED`` state.
    """

    IDLE = "idle"
    POLLING = "polling"
    DELIVERING = "delivering"
    SLEEPING = "sleeping"
    CANCELLED = "cancelled"


__all__ = [
    "EventItem",
    "SinkAuthType",
    "WorkerState",
]
