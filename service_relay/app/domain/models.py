"""
Request payloads accepted by the relay.

Field names follow the JSON sent by game servers and operator tooling
(camelCase); attributes are snake_case.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DURATION_PATTERN = re.compile(r"^(\d+)([mhd])$")
DURATION_UNITS = {"m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(duration: str) -> Optional[timedelta]:
    """Parse ``30m`` / ``2h`` / ``7d`` style durations."""
    match = DURATION_PATTERN.match(duration or "")
    if not match:
        return None
    amount, unit = match.groups()
    return timedelta(seconds=int(amount) * DURATION_UNITS[unit])


def calculate_expiry(duration: str, now: Optional[datetime] = None) -> Optional[str]:
    delta = parse_duration(duration)
    if delta is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now + delta).isoformat()


class RelayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)


class KickRequest(RelayRequest):
    player: str = Field(min_length=1)
    kicked_by: Optional[str] = Field(default=None, alias="kickedBy")


class BanRequest(RelayRequest):
    player: str = Field(min_length=1)
    reason: str = "No reason provided"
    duration: Optional[str] = None
    banned_by: Optional[str] = Field(default=None, alias="bannedBy")
    is_temp: bool = Field(default=False, alias="isTemp")

    @model_validator(mode="after")
    def _temp_bans_need_duration(self) -> "BanRequest":
        if self.is_temp and parse_duration(self.duration or "") is None:
            raise ValueError("temporary bans need a duration like 30m, 12h or 7d")
        return self

    @property
    def command(self) -> str:
        return "tempban" if self.is_temp else "ban"


class WarnRequest(RelayRequest):
    player: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    warned_by: Optional[str] = Field(default=None, alias="warnedBy")


class RegisterGameRequest(RelayRequest):
    game_name: str = Field(min_length=1, alias="gameName")
    owner_id: str = Field(min_length=1, alias="ownerId")


class AdminRequest(RelayRequest):
    admin_key: Optional[str] = Field(default=None, alias="adminKey")

    @field_validator("admin_key", mode="before")
    @classmethod
    def _coerce_key(cls, value):
        return value if isinstance(value, str) else None
