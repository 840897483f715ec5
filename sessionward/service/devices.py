from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

DEVICE_TYPES = frozenset({"mobile", "desktop", "unknown"})
DEFAULT_PROVIDER = "local"
MAX_LOCATION_LENGTH = 255
MAX_USER_AGENT_LENGTH = 255


def classify_user_agent(user_agent: Optional[str]) -> str:
    """Coarse device type from a User-Agent header."""
    if not user_agent:
        return "unknown"
    lowered = user_agent.lower()
    if "mobile" in lowered:
        return "mobile"
    if "windows" in lowered or "macintosh" in lowered:
        return "desktop"
    return "unknown"


def _trim_to_none(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()[:limit]
    return trimmed or None


@dataclass(frozen=True)
class DeviceContext:
    """What the client told us about itself at login.

    ``device_id`` binds the refresh session; ``client_id`` stands in when the
    device id is blank.
    """

    device_id: Optional[str] = None
    client_id: Optional[str] = None
    location: Optional[str] = None
    provider: Optional[str] = None
    device_type: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def session_hint(self) -> Optional[str]:
        for candidate in (self.device_id, self.client_id):
            if candidate and candidate.strip():
                return candidate
        return None

    def resolved_device_type(self) -> str:
        declared = (self.device_type or "").strip().lower()
        if declared in DEVICE_TYPES and declared != "unknown":
            return declared
        return classify_user_agent(self.user_agent)

    def resolved_provider(self) -> str:
        return (self.provider or "").strip().lower() or DEFAULT_PROVIDER

    def resolved_location(self) -> Optional[str]:
        return _trim_to_none(self.location, MAX_LOCATION_LENGTH)

    def resolved_user_agent(self) -> Optional[str]:
        return _trim_to_none(self.user_agent, MAX_USER_AGENT_LENGTH)
