"""Heuristics that flag suspicious sessions.

All checks are advisory: they add flags and security events but never block
session creation on their own.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

from account_security.models.user_session import UserSession
from account_security.repositories.base import SessionStore
from account_security.schemas.sessions import Location
from account_security.services import device, location as location_service

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
MAX_TRAVEL_SPEED_KMH = 1000.0
LONG_HOP_KM = 1000.0
MAX_DISTINCT_FINGERPRINTS = 2
MAX_RECENT_SESSIONS = 3
RECENT_WINDOW = timedelta(minutes=5)

FLAG_IMPOSSIBLE_TRAVEL = "impossible-travel"
FLAG_FINGERPRINT_CHURN = "fingerprint-churn"
FLAG_RAPID_SESSIONS = "rapid-session-creation"
FLAG_SUSPICIOUS_LOCATION = "suspicious-location"
FLAG_SUSPICIOUS_FINGERPRINT = "suspicious-fingerprint"


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_km(first: Location, second: Location) -> float:
    return haversine_km(first.latitude, first.longitude, second.latitude, second.longitude)


def is_impossible_travel(
    previous: Location,
    previous_at: datetime,
    current: Location,
    current_at: datetime,
    max_speed_kmh: float = MAX_TRAVEL_SPEED_KMH,
) -> bool:
    """True when the implied speed exceeds ``max_speed_kmh`` or a 1000 km hop took under an hour.

    Unresolved (0, 0) locations never flag.
    """
    if location_service.is_unknown(previous) or location_service.is_unknown(current):
        return False
    distance = distance_km(previous, current)
    hours = abs((current_at - previous_at).total_seconds()) / 3600
    if distance > hours * max_speed_kmh:
        return True
    return distance > LONG_HOP_KM and hours < 1


def count_distinct_fingerprints(sessions: Iterable[UserSession]) -> int:
    return len({s.fingerprint or (s.device_info or {}).get("fingerprint") for s in sessions} - {None})


def count_recent_sessions(
    sessions: Iterable[UserSession],
    now: datetime,
    window: timedelta = RECENT_WINDOW,
) -> int:
    cutoff = now - window
    return sum(1 for s in sessions if s.created_at is not None and s.created_at >= cutoff)


def detect_fingerprint_churn(active_sessions: list[UserSession], now: datetime) -> list[str]:
    flags = []
    if count_distinct_fingerprints(active_sessions) > MAX_DISTINCT_FINGERPRINTS:
        flags.append(FLAG_FINGERPRINT_CHURN)
    if count_recent_sessions(active_sessions, now) > MAX_RECENT_SESSIONS:
        flags.append(FLAG_RAPID_SESSIONS)
    return flags


@dataclass
class AnomalyReport:
    flags: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def suspicious(self) -> bool:
        return bool(self.flags)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnomalyDetector:
    def __init__(self, store: SessionStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def _travel_check(self, session: UserSession, others: list[UserSession]) -> dict[str, Any] | None:
        current = Location.model_validate(session.location or {})
        for other in others:
            previous = Location.model_validate(other.location or {})
            if is_impossible_travel(previous, other.last_activity, current, session.created_at):
                return {
                    "previous_session_id": str(other.id),
                    "distance_km": round(distance_km(previous, current), 1),
                    "elapsed_minutes": round(
                        abs((session.created_at - other.last_activity).total_seconds()) / 60, 1
                    ),
                }
        return None

    async def evaluate(self, session: UserSession) -> AnomalyReport:
        now = self._clock()
        report = AnomalyReport()
        active = await self._store.active_for_user(session.user_id, session.tenant_id, now)
        if all(s.id != session.id for s in active):
            active = [session, *active]
        others = sorted(
            (s for s in active if s.id != session.id),
            key=lambda s: s.last_activity,
            reverse=True,
        )

        travel = self._travel_check(session, others)
        if travel:
            report.flags.append(FLAG_IMPOSSIBLE_TRAVEL)
            report.details["impossible_travel"] = travel

        churn = detect_fingerprint_churn(active, now)
        if churn:
            report.flags.extend(churn)
            report.details["distinct_fingerprints"] = count_distinct_fingerprints(active)
            report.details["recent_sessions"] = count_recent_sessions(active, now)

        current = Location.model_validate(session.location or {})
        # An address that could not be resolved is not itself suspicious.
        if current != location_service.UNKNOWN_LOCATION and location_service.is_suspicious_location(current):
            report.flags.append(FLAG_SUSPICIOUS_LOCATION)
        if device.is_suspicious_fingerprint(session.fingerprint):
            report.flags.append(FLAG_SUSPICIOUS_FINGERPRINT)

        if report.flags:
            logger.warning(
                "Session %s flagged for user %s: %s",
                session.id,
                session.user_id,
                ",".join(report.flags),
            )
        return report
