"""
Himaya Device Fingerprinting
Stable device hashes and coarse user-agent parsing
"""

import hashlib
import json
import re
from typing import Any, Dict, Mapping, Optional

SUSPICIOUS_USER_AGENT = re.compile(r"bot|crawler|spider|curl|wget|python|script", re.IGNORECASE)


def _pick(info: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = info.get(key)
        if value:
            return str(value)
    return ""


def generate_device_fingerprint(device_info: Mapping[str, Any]) -> str:
    """SHA-256 over user agent, screen, timezone and language.

    Accepts snake_case or camelCase keys so client payloads can be passed
    through unchanged.
    """
    data = {
        "userAgent": _pick(device_info, "user_agent", "userAgent"),
        "screen": _pick(device_info, "screen", "screen_resolution", "screenResolution"),
        "timezone": _pick(device_info, "timezone", "time_zone", "timeZone"),
        "language": _pick(device_info, "language", "lang"),
    }
    encoded = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def session_fingerprint(user_agent: str, device_info: Optional[Mapping[str, Any]] = None) -> str:
    """Fingerprint for a login, taking the user agent from the request when the client omits it"""
    info: Dict[str, Any] = dict(device_info or {})
    if not _pick(info, "user_agent", "userAgent"):
        info["user_agent"] = user_agent
    return generate_device_fingerprint(info)


def detect_device_type(user_agent: str) -> str:
    if re.search(r"iPad|Tablet", user_agent, re.IGNORECASE):
        return "tablet"
    if re.search(r"Mobile|Android|iPhone", user_agent, re.IGNORECASE):
        return "mobile"
    return "desktop"


def parse_device_info(user_agent: str, fingerprint: Optional[str] = None) -> Dict[str, Any]:
    """Best-effort device type, OS and browser from a user agent string"""
    info: Dict[str, Any] = {
        "user_agent": user_agent,
        "fingerprint": fingerprint,
        "type": detect_device_type(user_agent),
        "os": None,
        "browser": None,
    }

    if re.search(r"Android", user_agent, re.IGNORECASE):
        info["os"] = "Android"
    elif re.search(r"iPhone|iPad|iOS", user_agent, re.IGNORECASE):
        info["os"] = "iOS"
    elif re.search(r"Windows", user_agent, re.IGNORECASE):
        info["os"] = "Windows"
    elif re.search(r"Mac OS", user_agent, re.IGNORECASE):
        info["os"] = "macOS"
    elif re.search(r"Linux", user_agent, re.IGNORECASE):
        info["os"] = "Linux"

    # Edge and Chrome both advertise Safari; order matters
    if re.search(r"Edg(e|A|iOS)?/", user_agent):
        info["browser"] = "Edge"
    elif re.search(r"Chrome|CriOS", user_agent):
        info["browser"] = "Chrome"
    elif re.search(r"Firefox|FxiOS", user_agent):
        info["browser"] = "Firefox"
    elif re.search(r"Safari", user_agent):
        info["browser"] = "Safari"

    return info


def is_suspicious_user_agent(user_agent: str) -> bool:
    return not user_agent or bool(SUSPICIOUS_USER_AGENT.search(user_agent))
