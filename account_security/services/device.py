"""Device fingerprinting from user-agent strings and client-side signals."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from typing import Any

from account_security.schemas.sessions import DeviceInfo, DeviceSignals

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
_FINGERPRINT_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)

# Placeholder hashes emitted by headless clients and broken SDKs.
KNOWN_BOGUS_FINGERPRINTS = frozenset({"0" * 64, "1" * 64})

_WINDOWS_VERSIONS = (
    ("windows nt 10.0", "10"),
    ("windows nt 6.3", "8.1"),
    ("windows nt 6.2", "8"),
    ("windows nt 6.1", "7"),
)
_LINUX_DISTROS = ("ubuntu", "fedora", "centos")


def _extract_version(ua: str, keyword: str, pattern: str = r"[\d.]+") -> str:
    match = re.search(rf"{re.escape(keyword)}[\s/]({pattern})", ua, re.IGNORECASE)
    return match.group(1).replace("_", ".") if match else UNKNOWN


def _browser(ua: str) -> tuple[str, str]:
    if "chrome" in ua:
        return "chrome", _extract_version(ua, "chrome")
    if "firefox" in ua:
        return "firefox", _extract_version(ua, "firefox")
    if "safari" in ua:
        return "safari", _extract_version(ua, "version")
    if "edge" in ua:
        return "edge", _extract_version(ua, "edge")
    if "opera" in ua:
        return "opera", _extract_version(ua, "opera")
    return UNKNOWN, UNKNOWN


def _os(ua: str) -> tuple[str, str]:
    if "windows" in ua:
        for marker, version in _WINDOWS_VERSIONS:
            if marker in ua:
                return "windows", version
        return "windows", UNKNOWN
    if "mac os x" in ua:
        return "macos", _extract_version(ua, "mac os x", r"[\d._]+")
    if "linux" in ua:
        distro = next((name for name in _LINUX_DISTROS if name in ua), UNKNOWN)
        return "linux", distro
    if "android" in ua:
        return "android", _extract_version(ua, "android")
    if "ios" in ua:
        return "ios", _extract_version(ua, "os", r"[\d._]+")
    return UNKNOWN, UNKNOWN


def _device_type(ua: str) -> str:
    for kind in ("mobile", "tablet", "tv"):
        if kind in ua:
            return kind
    return "desktop"


def parse_user_agent(user_agent: str) -> dict[str, str]:
    """Ordered substring checks; the first match wins in each category.

    Because "linux" is checked before "android" and "mac os x" before "ios",
    Android and iPhone user agents report linux and macos respectively.
    """
    ua = user_agent.lower()
    browser, browser_version = _browser(ua)
    os_name, os_version = _os(ua)
    device_type = _device_type(ua)
    return {
        "browser": browser,
        "browser_version": browser_version,
        "os": os_name,
        "os_version": os_version,
        "device": device_type,
        "device_type": device_type,
    }


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def fingerprint(
    user_agent: str | None,
    extra_signals: dict[str, Any] | None = None,
    timestamp: float | None = None,
) -> str:
    """SHA-256 hex of parsed UA fields, extra signals and a timestamp. Never raises."""
    raw = user_agent or ""
    try:
        data: dict[str, Any] = {**parse_user_agent(raw), **(extra_signals or {})}
        data["timestamp"] = int((time.time() if timestamp is None else timestamp) * 1000)
        digest = _sha256(json.dumps(data, sort_keys=True, separators=(",", ":")))
    except Exception:
        logger.exception("Device fingerprint failed; hashing raw user agent")
        return _sha256(raw)
    logger.debug("Generated device fingerprint %s...", digest[:16])
    return digest


def detailed_fingerprint(
    user_agent: str | None,
    screen_resolution: str | None = None,
    timezone: str | None = None,
    language: str | None = None,
    plugins: list[str] | None = None,
    timestamp: float | None = None,
) -> str:
    extra = {
        "screen_resolution": screen_resolution,
        "timezone": timezone,
        "language": language,
        "plugins": ",".join(plugins) if plugins else None,
    }
    return fingerprint(user_agent, extra, timestamp=timestamp)


def build_device_info(
    user_agent: str | None,
    signals: DeviceSignals | None = None,
    timestamp: float | None = None,
) -> DeviceInfo:
    signals = signals or DeviceSignals()
    parsed = parse_user_agent(user_agent or "")
    return DeviceInfo(
        fingerprint=detailed_fingerprint(
            user_agent,
            screen_resolution=signals.screen_resolution,
            timezone=signals.timezone,
            language=signals.language,
            plugins=signals.plugins,
            timestamp=timestamp,
        ),
        device_type=parsed["device_type"],
        browser=parsed["browser"],
        browser_version=parsed["browser_version"],
        os=parsed["os"],
        os_version=parsed["os_version"],
        screen_resolution=signals.screen_resolution,
        timezone=signals.timezone,
        language=signals.language,
    )


def is_valid_fingerprint(value: str | None) -> bool:
    return bool(value) and bool(_FINGERPRINT_RE.match(value))


def same_device(first: str | None, second: str | None) -> bool:
    """Exact-match only; there is no similarity scoring."""
    if not is_valid_fingerprint(first) or not is_valid_fingerprint(second):
        return False
    return first == second


def is_suspicious_fingerprint(value: str | None) -> bool:
    if not is_valid_fingerprint(value):
        return True
    return value.lower() in KNOWN_BOGUS_FINGERPRINTS
