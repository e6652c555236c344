"""Lobby records and wire messages shared by the server and the client."""

import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

import config


# --- Records ---

class UserOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    blocked_users: List[str] = Field(default_factory=list, alias="blocked-users")

    @field_validator("blocked_users", mode="before")
    @classmethod
    def default_blocked_users(cls, v):
        return [] if v is None else v


class User(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field("", alias="_id")
    username: str = ""
    options: UserOptions = Field(default_factory=UserOptions)
    isadmin: bool = False
    ismoderator: bool = False
    tournament_organizer: bool = Field(False, alias="tournament-organizer")

    @field_validator("options", mode="before")
    @classmethod
    def default_options(cls, v):
        return {} if v is None else v

    def is_superuser(self) -> bool:
        return self.isadmin or self.ismoderator or self.tournament_organizer


class Player(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    user: User = Field(default_factory=User)
    side: Optional[str] = None
    deck: Optional[dict] = None


class Game(BaseModel):
    """One lobby entry as the client sees it.

    Fields the server sends that are not modelled here (title, messages,
    spectator-count, ...) are kept as extras so that diff-ops addressing
    them still find their target.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    gameid: str
    room: Optional[str] = None
    title: str = ""
    players: List[Player] = Field(default_factory=list)
    spectators: List[Player] = Field(default_factory=list)
    started: bool = False
    date: float = 0.0
    password: Optional[Union[bool, str]] = None
    allow_spectator: bool = Field(False, alias="allow-spectator")
    spectatorhands: bool = False
    save_replay: bool = Field(False, alias="save-replay")
    format: str = config.DEFAULT_FORMAT
    version: Optional[int] = None

    @field_validator("players", "spectators", mode="before")
    @classmethod
    def default_empty(cls, v):
        # null and a missing key both mean "nobody"; a set-like container
        # from another producer is folded into the same list shape
        if v is None:
            return []
        if isinstance(v, (set, tuple)):
            return list(v)
        return v

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)

    def has_player(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and any(p.user.id == user_id for p in self.players)

    def is_protected(self) -> bool:
        return bool(self.password)


# --- Client-bound sync messages ---

class GamesDiff(BaseModel):
    update: Dict[str, dict] = Field(default_factory=dict)
    delete: List[str] = Field(default_factory=list)

    @field_validator("update", mode="before")
    @classmethod
    def default_update(cls, v):
        return {} if v is None else v

    @field_validator("delete", mode="before")
    @classmethod
    def default_delete(cls, v):
        return [] if v is None else v


class PatchDiff(BaseModel):
    update: Dict[str, List[dict]] = Field(default_factory=dict)


class Snapshot(BaseModel):
    """games/list: the complete game list."""
    games: List[dict]


class Diff(BaseModel):
    """games/diff: keyed upserts and deletes."""
    diff: GamesDiff = Field(default_factory=GamesDiff)
    notification: Optional[str] = None


class PatchStream(BaseModel):
    """games/differ: per-game diff-op sequences."""
    diff: PatchDiff = Field(default_factory=PatchDiff)
    notification: Optional[str] = None


SyncMessage = Union[Snapshot, Diff, PatchStream]


class LobbySelect(BaseModel):
    gameid: Optional[str] = None
    started: bool = False
    state: Any = None


class LobbyTimeout(BaseModel):
    gameid: Optional[str] = None


class ReplayResult(BaseModel):
    gameid: str
    history: Optional[List[dict]] = None
    error: Optional[str] = None


class Frame(BaseModel):
    type: str
    data: Any = None


def parse_sync_message(msg_type: str, payload: Any) -> SyncMessage:
    """Validate a game list payload into its message variant."""
    if msg_type == "games/list":
        return Snapshot(games=payload if payload is not None else [])
    if msg_type == "games/diff":
        return Diff.model_validate(payload or {})
    if msg_type == "games/differ":
        return PatchStream.model_validate(payload or {})
    raise ValueError(f"Not a game list message: {msg_type}")


# --- Server-bound commands ---

def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from user-supplied text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


class CreateGameRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    password: str = ""
    allow_spectator: bool = Field(True, alias="allow-spectator")
    spectatorhands: bool = False
    save_replay: Optional[bool] = Field(None, alias="save-replay")
    side: str = config.SIDES[0]
    format: str = config.DEFAULT_FORMAT
    room: str = config.DEFAULT_ROOM

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = _sanitize_text(v)
        if not v:
            raise ValueError('Please fill a game title')
        if len(v) > config.MAX_TITLE_LENGTH:
            raise ValueError(f'Title must be under {config.MAX_TITLE_LENGTH} characters')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) > config.MAX_PASSWORD_LENGTH:
            raise ValueError(f'Password must be under {config.MAX_PASSWORD_LENGTH} characters')
        return v

    @field_validator('side')
    @classmethod
    def validate_side(cls, v: str) -> str:
        if v not in config.SIDES:
            raise ValueError(f'Side must be one of: {", ".join(config.SIDES)}')
        return v

    @field_validator('room')
    @classmethod
    def validate_room(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in config.ROOMS:
            raise ValueError(f'Room must be one of: {", ".join(config.ROOMS)}')
        return v


class JoinGameRequest(BaseModel):
    gameid: str
    password: Optional[str] = None


class SayRequest(BaseModel):
    gameid: Optional[str] = None
    msg: str

    @field_validator('msg')
    @classmethod
    def validate_msg(cls, v: str) -> str:
        v = _sanitize_text(v)
        if not v:
            raise ValueError('Message is empty')
        return v[:config.MAX_CHAT_LENGTH]
