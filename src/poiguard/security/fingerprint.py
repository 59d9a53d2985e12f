"""Device fingerprinting.

Client-reported attributes (screen, timezone, language, platform...) are merged
with what the server observes (user agent, IP, accept-language). The stable
identifier excludes the IP, which only contributes to the weighted similarity.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Weights sum to 1.0.
SIMILARITY_WEIGHTS: dict[str, float] = {
    "browser": 0.15,
    "os": 0.10,
    "platform": 0.20,
    "screen_resolution": 0.10,
    "timezone": 0.10,
    "language": 0.10,
    "ip": 0.15,
    "vendor": 0.05,
    "cookies_enabled": 0.05,
}

_CLIENT_FIELDS = (
    "user_agent",
    "screen_resolution",
    "timezone",
    "language",
    "platform",
    "vendor",
    "cookies_enabled",
    "do_not_track",
)


@dataclass(frozen=True)
class ServerFingerprint:
    user_agent: str
    ip: str | None
    accept_language: str | None


@dataclass(frozen=True)
class DeviceFingerprint:
    id: str
    components: dict[str, Any] = field(default_factory=dict)


def extract_server_side(headers: Mapping[str, str], peer_ip: str | None = None) -> ServerFingerprint:
    """Pull user agent, client IP and accept-language from request headers."""
    lowered = {k.lower(): v for k, v in headers.items()}

    ip: str | None = None
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip() or None
    if ip is None:
        ip = (lowered.get("x-real-ip") or "").strip() or None
    if ip is None:
        ip = peer_ip

    return ServerFingerprint(
        user_agent=lowered.get("user-agent") or "unknown",
        ip=ip,
        accept_language=lowered.get("accept-language"),
    )


def combine(client: Mapping[str, Any], server: ServerFingerprint) -> DeviceFingerprint:
    """Merge client and server signals into one fingerprint."""
    components: dict[str, Any] = {name: client.get(name) for name in _CLIENT_FIELDS}
    if not components["user_agent"]:
        components["user_agent"] = server.user_agent
    if not components["language"] and server.accept_language:
        components["language"] = server.accept_language.split(",")[0].strip()
    components["ip"] = server.ip
    components["accept_language"] = server.accept_language
    return DeviceFingerprint(id=fingerprint_hash(components), components=components)


def fingerprint_hash(components: Mapping[str, Any]) -> str:
    """SHA-256 over the canonical JSON of the stable components."""
    canonical = {
        "ua": components.get("user_agent") or "unknown",
        "screen": components.get("screen_resolution") or "unknown",
        "tz": components.get("timezone") or "unknown",
        "lang": components.get("language") or "unknown",
        "platform": components.get("platform") or "unknown",
        "vendor": components.get("vendor") or "unknown",
        "cookies": bool(components.get("cookies_enabled")),
        "dnt": components.get("do_not_track") or "unknown",
    }
    data = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode()).hexdigest()


def browser_family(user_agent: str | None) -> str:
    ua = user_agent or ""
    # Order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari.
    if "Edg/" in ua or "Edge/" in ua:
        return "Edge"
    if "OPR/" in ua or "Opera" in ua:
        return "Opera"
    if "Firefox/" in ua:
        return "Firefox"
    if "Chrome/" in ua or "CriOS/" in ua:
        return "Chrome"
    if "Safari/" in ua:
        return "Safari"
    return "unknown"


def os_family(user_agent: str | None) -> str:
    ua = user_agent or ""
    if "Android" in ua:
        return "Android"
    if "iPhone" in ua or "iPad" in ua or "iPod" in ua:
        return "iOS"
    if "Windows" in ua:
        return "Windows"
    if "Mac OS X" in ua or "Macintosh" in ua:
        return "macOS"
    if "CrOS" in ua:
        return "ChromeOS"
    if "Linux" in ua:
        return "Linux"
    return "unknown"


def _same_network(a: str, b: str) -> bool:
    """Same /24 (IPv4) or /48 (IPv6)."""
    try:
        ip_a = ipaddress.ip_address(a)
        ip_b = ipaddress.ip_address(b)
    except ValueError:
        return False
    if ip_a.version != ip_b.version:
        return False
    prefix = 24 if ip_a.version == 4 else 48
    net = ipaddress.ip_network(f"{ip_a}/{prefix}", strict=False)
    return ip_b in net


def _component_scores(a: Mapping[str, Any], b: Mapping[str, Any]) -> dict[str, float]:
    """Per-component match in [0, 1]."""
    scores = {
        "browser": float(browser_family(a.get("user_agent")) == browser_family(b.get("user_agent"))),
        "os": float(os_family(a.get("user_agent")) == os_family(b.get("user_agent"))),
    }
    for name in ("platform", "screen_resolution", "timezone", "vendor"):
        scores[name] = float(a.get(name) == b.get(name))
    scores["language"] = float((a.get("language") or "").lower() == (b.get("language") or "").lower())
    scores["cookies_enabled"] = float(bool(a.get("cookies_enabled")) == bool(b.get("cookies_enabled")))

    ip_a, ip_b = a.get("ip"), b.get("ip")
    if ip_a == ip_b:
        scores["ip"] = 1.0
    elif ip_a and ip_b and _same_network(ip_a, ip_b):
        scores["ip"] = 0.5
    else:
        scores["ip"] = 0.0
    return scores


def similarity(a: DeviceFingerprint, b: DeviceFingerprint) -> float:
    """Weighted similarity in [0, 1]; identical id and IP are 1.0."""
    if a.id == b.id and a.components.get("ip") == b.components.get("ip"):
        return 1.0
    scores = _component_scores(a.components, b.components)
    total = sum(SIMILARITY_WEIGHTS[name] * scores[name] for name in SIMILARITY_WEIGHTS)
    return round(min(1.0, max(0.0, total)), 4)


def changed_components(a: DeviceFingerprint, b: DeviceFingerprint) -> list[str]:
    """Names of the components that differ, for the audit trail."""
    scores = _component_scores(a.components, b.components)
    return [name for name in SIMILARITY_WEIGHTS if scores[name] < 1.0]
