"""Lobby client: keeps the game list mirror and session in step with the server."""

from typing import Any, Callable, Dict, List, Optional
import asyncio
import json
import logging

import requests
from pydantic import ValidationError

import config
from account import LobbyPreferences, add_blocked_user, remove_blocked_user
from lobby_state import (
    GameMirror, can_create_game, can_start_game, find_game, is_host, room_tab_label,
    room_counts,
)
from models import Game, LobbySelect, LobbyTimeout, ReplayResult, User, parse_sync_message
from notifications import NotificationTrigger
from transport import Dispatcher, WebSocketTransport

logger = logging.getLogger(__name__)

Sender = Callable[[str, Any], None]


def parse_state(state: Any) -> Any:
    """Game state arrives JSON encoded inside lobby/select."""
    if isinstance(state, str):
        return json.loads(state)
    return state


def fetch_replay_history(gameid: str) -> Optional[dict]:
    """Blocking fetch of a shared replay; ``None`` when the link is invalid."""
    url = f"{config.HISTORY_URL}/{gameid}"
    try:
        response = requests.get(url, timeout=config.HISTORY_TIMEOUT)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
    except requests.Timeout:
        logger.warning("Replay fetch for %s timed out after %ds", gameid, config.HISTORY_TIMEOUT)
    except requests.RequestException as e:
        logger.error("HTTP error fetching replay %s: %s", gameid, e)
    except json.JSONDecodeError as e:
        logger.warning("Replay %s is not valid JSON: %s", gameid, e)
    return None


class LobbyClient:
    def __init__(self, user: User, send: Optional[Sender] = None,
                 play_sound: Optional[Callable[[str], None]] = None,
                 launch_game: Optional[Callable[[Any], None]] = None,
                 preferences: Optional[LobbyPreferences] = None,
                 dispatcher: Optional[Dispatcher] = None):
        self.user = user
        self.preferences = preferences or LobbyPreferences(
            blocked_users=list(user.options.blocked_users))
        self.dispatcher = dispatcher or Dispatcher()
        self.mirror = GameMirror(viewer=user)
        self.gameid: Optional[str] = None
        self.password_gameid: Optional[str] = None
        self.messages: List[dict] = []
        self.banners: List[dict] = []
        self.transport: Optional[WebSocketTransport] = None
        self._send = send
        self._play_sound = play_sound
        self._launch_game = launch_game
        self.notifications = NotificationTrigger(self._sound)
        self._register_handlers()

    def _register_handlers(self):
        self.dispatcher.register("games/list", self._on_games_message("games/list"))
        self.dispatcher.register("games/diff", self._on_games_message("games/diff"))
        self.dispatcher.register("games/differ", self._on_games_message("games/differ"))
        self.dispatcher.register("lobby/select", self._on_select)
        self.dispatcher.register("lobby/notification", self._on_notification)
        self.dispatcher.register("lobby/timeout", self._on_timeout)
        self.dispatcher.register("lobby/replay", self._on_replay)
        self.dispatcher.register("lobby/error", self._on_error)
        self.dispatcher.register("decks/import-success", self._on_import_result("success"))
        self.dispatcher.register("decks/import-failure", self._on_import_result("error"))

    # --- outbound ---

    def send(self, msg_type: str, payload: Any = None):
        if self._send is None:
            logger.warning("No connection, dropping %s", msg_type)
            return
        self._send(msg_type, payload)

    def _sound(self, name: str):
        if not self.preferences.lobby_sounds:
            return
        if self._play_sound:
            self._play_sound(name)
        else:
            logger.info("Playing sound '%s'", name)

    def banner(self, message: str, level: str = "error"):
        self.banners.append({"message": message, "level": level, "dismissible": True})

    def dismiss_banner(self, index: int = 0):
        if 0 <= index < len(self.banners):
            self.banners.pop(index)

    # --- inbound handlers ---

    def _on_games_message(self, msg_type: str):
        def handler(payload):
            try:
                message = parse_sync_message(msg_type, payload)
            except ValidationError as e:
                logger.warning("Malformed %s message dropped: %s", msg_type, e)
                return
            self.mirror.apply(message)
            if self.mirror.needs_resync:
                self.mirror.needs_resync = False
                logger.warning("Game list out of step with server, requesting snapshot")
                self.refresh()
            notification = getattr(message, "notification", None)
            self.notifications.on_games_update(notification, self.gameid)
        return handler

    def _on_select(self, payload):
        select = LobbySelect.model_validate(payload or {})
        self.gameid = select.gameid
        if select.started:
            self.launch_game(parse_state(select.state))

    def _on_notification(self, payload):
        self.notifications.on_lobby_notification(payload)

    def _on_timeout(self, payload):
        timeout = LobbyTimeout.model_validate(payload or {})
        if timeout.gameid is not None and timeout.gameid == self.gameid:
            self.banner("Game lobby closed due to inactivity", "error")
            self.gameid = None

    def _on_replay(self, payload):
        result = ReplayResult.model_validate(payload)
        if result.error or not result.history:
            self.banner("Replay link invalid.", "error")
            return
        init_state = dict(result.history[0])
        init_state["gameid"] = result.gameid
        init_state["options"] = {**init_state.get("options", {}), "spectatorhands": True}
        init_state["replay-diffs"] = result.history[1:]
        self.launch_game(init_state)

    def _on_error(self, payload):
        message = (payload or {}).get("message", "Request failed")
        self.banner(message, "error")

    def _on_import_result(self, level: str):
        def handler(payload):
            self.banner(str(payload), level)
        return handler

    def launch_game(self, state: Any):
        if self._launch_game:
            self._launch_game(state)
        else:
            logger.info("Game %s started", self.gameid)

    # --- derived views ---

    @property
    def games(self) -> List[Game]:
        return self.mirror.view(self.user)

    def visible_games(self, room: Optional[str] = None) -> List[Game]:
        return self.mirror.visible(self.user, room)

    def room_counts(self, room: str):
        return room_counts(self.user, self.games, room)

    def room_tabs(self) -> Dict[str, str]:
        games = self.games
        return {room: room_tab_label(self.user, games, room) for room in config.ROOMS}

    def current_game(self) -> Optional[Game]:
        return find_game(self.games, self.gameid)

    def can_create(self, room: str = config.DEFAULT_ROOM, editing: bool = False) -> bool:
        return can_create_game(self.user, self.games, self.gameid, editing, room)

    def is_host(self) -> bool:
        game = self.current_game()
        return game is not None and is_host(game.players, self.user)

    # --- commands ---

    def refresh(self):
        self.send("lobby/list")

    def create_game(self, title: str, side: str = config.SIDES[0],
                    format: str = config.DEFAULT_FORMAT, room: str = config.DEFAULT_ROOM,
                    protected: bool = False, password: str = "",
                    allow_spectator: bool = True, spectatorhands: bool = False,
                    save_replay: Optional[bool] = None) -> Optional[str]:
        """Send lobby/create; returns a flash message instead when the form is incomplete."""
        if not title.strip():
            return "Please fill a game title."
        if protected and not password:
            return "Please fill a password."
        if save_replay is None:
            save_replay = room != "casual"
        self.send("lobby/create", {
            "title": title,
            "password": password if protected else "",
            "allow-spectator": allow_spectator,
            "save-replay": save_replay,
            "spectatorhands": spectatorhands and allow_spectator,
            "side": side,
            "format": format,
            "room": room,
        })
        return None

    def _enter(self, msg_type: str, gameid: str, password: Optional[str]) -> bool:
        game = self.mirror.get(gameid)
        if game is not None and game.is_protected() and not password:
            self.password_gameid = gameid
            return False
        payload = {"gameid": gameid}
        if password:
            payload["password"] = password
        self.send(msg_type, payload)
        self.password_gameid = None
        return True

    def join_game(self, gameid: str, password: Optional[str] = None) -> bool:
        return self._enter("lobby/join", gameid, password)

    def watch_game(self, gameid: str, password: Optional[str] = None) -> bool:
        return self._enter("lobby/watch", gameid, password)

    def leave_lobby(self):
        self.send("lobby/leave")
        self.gameid = None
        self.messages = []
        self.password_gameid = None

    def leave_game(self):
        gameid = self.gameid
        self.gameid = None
        self.password_gameid = None
        self.send("netrunner/leave", {"gameid-str": gameid})

    def select_deck(self, deck_id: str):
        self.send("lobby/deck", deck_id)

    def swap_sides(self) -> bool:
        if not self.is_host():
            return False
        self.send("lobby/swap", self.gameid)
        return True

    def say(self, text: str) -> bool:
        if not text or not text.strip():
            return False
        self.send("lobby/say", {"gameid": self.gameid, "msg": text})
        return True

    def start_game(self) -> bool:
        if not can_start_game(self.current_game(), self.user):
            return False
        self.send("netrunner/start", self.gameid)
        return True

    def import_deck(self, decklist: str):
        self.send("decks/import", {"input": decklist})

    def block_user(self, name: str):
        self.set_blocked_users(add_blocked_user(self.user.username,
                                                self.preferences.blocked_users, name))

    def unblock_user(self, name: str):
        self.set_blocked_users(remove_blocked_user(self.preferences.blocked_users, name))

    def set_blocked_users(self, names: List[str]):
        self.preferences.blocked_users = list(names)
        self.user.options.blocked_users = list(names)

    def start_shared_replay(self, gameid: str) -> asyncio.Task:
        """Fetch a replay off the event loop and post the result back as lobby/replay."""
        return asyncio.create_task(self._fetch_replay(gameid))

    async def _fetch_replay(self, gameid: str):
        replay = await asyncio.to_thread(fetch_replay_history, gameid)
        if replay is None:
            self.dispatcher.post("lobby/replay", {"gameid": gameid, "error": "not found"})
        else:
            self.dispatcher.post("lobby/replay", {"gameid": gameid,
                                                  "history": replay.get("history", [])})

    # --- connection ---

    def connect(self, url: Optional[str] = None) -> WebSocketTransport:
        url = url or f"{config.LOBBY_URL}/{self.user.id}?username={self.user.username}"
        self.transport = WebSocketTransport(url, self.dispatcher, on_connect=self.refresh)
        self._send = self.transport.send
        return self.transport

    async def run(self, url: Optional[str] = None):
        transport = self.connect(url)
        await asyncio.gather(transport.run(), self.dispatcher.run())
