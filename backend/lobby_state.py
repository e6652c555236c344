"""Client-side lobby game list: reconciliation, visibility and ordering."""

from typing import Dict, Iterable, List, Optional, Tuple
import logging

import jsonpatch
from pydantic import ValidationError

import config
from models import Diff, Game, GamesDiff, PatchStream, Player, Snapshot, SyncMessage, User

logger = logging.getLogger(__name__)


def _with_spectators(record: dict) -> dict:
    if record.get("spectators") is None:
        return {**record, "spectators": []}
    return record


class GameMirror:
    """Local copy of the server's game list, keyed by gameid.

    The mirror is the only writer of its ``games`` mapping. Every other
    component reads the lists returned by :meth:`view` and friends.
    """

    def __init__(self, viewer: Optional[User] = None):
        self.games: Dict[str, Game] = {}
        self.viewer = viewer
        # raised when a patch stream could not be applied in sequence;
        # the owner answers it with a fresh snapshot request
        self.needs_resync = False

    def __len__(self) -> int:
        return len(self.games)

    def __contains__(self, gameid: str) -> bool:
        return gameid in self.games

    def get(self, gameid: Optional[str]) -> Optional[Game]:
        if gameid is None:
            return None
        return self.games.get(gameid)

    def apply(self, message: SyncMessage) -> List[Game]:
        """Merge one game list message and return the refreshed ordered view."""
        if isinstance(message, Snapshot):
            message = self.snapshot_to_diff(message)

        if isinstance(message, Diff):
            self._merge_diff(message.diff)
        elif isinstance(message, PatchStream):
            self._merge_patches(message.diff.update)
        else:
            logger.warning("Ignoring unknown game list message: %s", type(message).__name__)
        return self.view()

    def snapshot_to_diff(self, snapshot: Snapshot) -> Diff:
        """Express a full snapshot as updates for every listed game plus
        deletes for every game the snapshot no longer mentions."""
        update: Dict[str, dict] = {}
        for record in snapshot.games:
            gameid = record.get("gameid")
            if not isinstance(gameid, str) or not gameid:
                logger.warning("Snapshot entry with invalid gameid %r skipped", gameid)
                continue
            update[gameid] = record
        missing = [gameid for gameid in self.games if gameid not in update]
        return Diff(diff=GamesDiff(update=update, delete=missing))

    def _merge_diff(self, diff: GamesDiff):
        games = dict(self.games)
        for gameid, patch in diff.update.items():
            existing = games.get(gameid)
            base = existing.to_record() if existing else {}
            record = _with_spectators({**_with_spectators(base), **patch})
            record["gameid"] = gameid
            game = self._validate(gameid, record)
            if game is None:
                games.pop(gameid, None)
            else:
                games[gameid] = game
        for gameid in diff.delete:
            games.pop(gameid, None)
        self.games = games

    def _merge_patches(self, update: Dict[str, List[dict]]):
        games = dict(self.games)
        for gameid, ops in update.items():
            existing = games.get(gameid)
            record = existing.to_record() if existing else {}
            try:
                for op in ops:
                    record = jsonpatch.apply_patch(record, [op])
            except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException,
                    TypeError, KeyError, IndexError) as e:
                logger.warning("Dropping game %s: patch does not apply: %s", gameid, e)
                games.pop(gameid, None)
                self.needs_resync = True
                continue

            if not self._in_sequence(existing, record):
                logger.warning("Dropping game %s: expected version %s, patch produced %s",
                               gameid, existing.version + 1, record.get("version"))
                games.pop(gameid, None)
                self.needs_resync = True
                continue

            game = self._validate(gameid, _with_spectators(record))
            if game is None:
                games.pop(gameid, None)
                self.needs_resync = True
            else:
                games[gameid] = game
        self.games = games

    @staticmethod
    def _in_sequence(existing: Optional[Game], record: dict) -> bool:
        if existing is None or existing.version is None:
            return True
        return record.get("version") == existing.version + 1

    @staticmethod
    def _validate(gameid: str, record: dict) -> Optional[Game]:
        try:
            return Game.model_validate(record)
        except ValidationError as e:
            logger.warning("Dropping game %s: invalid record: %s", gameid, e)
            return None

    def view(self, viewer: Optional[User] = None) -> List[Game]:
        viewer = viewer or self.viewer
        return sort_games(self.games.values(), viewer.id if viewer else None)

    def visible(self, viewer: Optional[User] = None, room: Optional[str] = None) -> List[Game]:
        viewer = viewer or self.viewer
        games = self.view(viewer)
        if room is not None:
            games = room_games(games, room)
        return filter_blocked_games(viewer, games)


# --- Ordering ---

def sort_key(game: Game, user_id: Optional[str]) -> Tuple[bool, bool, float]:
    return (not game.has_player(user_id), game.started, game.date)


def sort_games(games: Iterable[Game], user_id: Optional[str] = None) -> List[Game]:
    """The viewer's games first, then open before started, then oldest first."""
    return sorted(games, key=lambda g: sort_key(g, user_id))


# --- Visibility ---

def blocked_from_game(viewer: User, game: Game) -> bool:
    """True when one of the players has the viewer on their block list."""
    if viewer.is_superuser():
        return False
    return any(viewer.username in p.user.options.blocked_users for p in game.players)


def blocking_game(blocked_users: Iterable[str], game: Game) -> bool:
    """True when the game has a player the viewer is blocking."""
    names = {p.user.username for p in game.players}
    return bool(names.intersection(blocked_users))


def filter_blocked_games(viewer: Optional[User], games: Iterable[Game]) -> List[Game]:
    if viewer is None:
        return list(games)
    blocked_users = set(viewer.options.blocked_users)
    visible = []
    for game in games:
        if game.room == config.TOURNAMENT_ROOM:
            visible.append(game)
        elif not blocked_from_game(viewer, game) and not blocking_game(blocked_users, game):
            visible.append(game)
    return visible


# --- Room and session projection ---

def room_games(games: Iterable[Game], room: str) -> List[Game]:
    return [g for g in games if g.room == room]


def room_counts(viewer: Optional[User], games: Iterable[Game], room: str) -> Tuple[int, int]:
    """(open, started) counts of the games the viewer can see in a room."""
    filtered = filter_blocked_games(viewer, room_games(games, room))
    closed = sum(1 for g in filtered if g.started)
    return len(filtered) - closed, closed


def room_tab_label(viewer: Optional[User], games: Iterable[Game], room: str) -> str:
    open_count, closed_count = room_counts(viewer, games, room)
    name = config.ROOM_NAMES.get(room, room.capitalize())
    return (f"{name} ({open_count}{config.OPEN_GAMES_SYMBOL} "
            f"{closed_count}{config.CLOSED_GAMES_SYMBOL})")


def find_game(games: Iterable[Game], gameid: Optional[str]) -> Optional[Game]:
    if gameid is None:
        return None
    return next((g for g in games if g.gameid == gameid), None)


def is_host(players: List[Player], viewer: Optional[User]) -> bool:
    return bool(viewer and players) and players[0].user.id == viewer.id


def in_any_game(viewer: Optional[User], games: Iterable[Game]) -> bool:
    return viewer is not None and any(g.has_player(viewer.id) for g in games)


def can_create_game(viewer: Optional[User], games: Iterable[Game], gameid: Optional[str],
                    editing: bool, room: str) -> bool:
    if gameid or editing or room == config.TOURNAMENT_ROOM:
        return False
    return not in_any_game(viewer, games)


# loading a replay is gated exactly like creating a game
can_load_replay = can_create_game


def can_start_game(game: Optional[Game], viewer: Optional[User]) -> bool:
    if game is None or game.started:
        return False
    return is_host(game.players, viewer) and all(p.deck for p in game.players)
