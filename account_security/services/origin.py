from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Origin:
    """Network origin and client signature of the caller."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class Identity:
    user_id: str
    tenant_id: str


UNKNOWN_ORIGIN = Origin()
