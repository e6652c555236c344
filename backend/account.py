"""Account-level lobby preferences and block list editing."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LobbyPreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    lobby_sounds: bool = Field(True, alias="lobby-sounds")
    sounds_volume: int = Field(100, alias="sounds-volume")
    blocked_users: List[str] = Field(default_factory=list, alias="blocked-users")

    @field_validator('sounds_volume')
    @classmethod
    def validate_volume(cls, v: int) -> int:
        if v < 0 or v > 100:
            raise ValueError('Volume must be between 0 and 100')
        return v

    @field_validator('blocked_users', mode="before")
    @classmethod
    def clean_blocked_users(cls, v) -> list:
        if v is None:
            return []
        seen = []
        for name in v:
            name = str(name).strip()
            if name and name not in seen:
                seen.append(name)
        return seen


def add_blocked_user(username: Optional[str], blocked_users: List[str], candidate: str) -> List[str]:
    """Return the block list with ``candidate`` added.

    Blank names, the user's own name and names already on the list leave
    the list unchanged.
    """
    candidate = (candidate or "").strip()
    if not candidate or candidate == username or candidate in blocked_users:
        return list(blocked_users)
    return [*blocked_users, candidate]


def remove_blocked_user(blocked_users: List[str], name: str) -> List[str]:
    return [u for u in blocked_users if u != name]
