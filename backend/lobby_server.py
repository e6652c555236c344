"""WebSocket lobby server: the authoritative game list and its broadcasts."""

from fastapi import WebSocket, WebSocketDisconnect
from typing import Any, Dict, List, Optional
import asyncio
import copy
import json
import logging
import secrets
import time
import uuid

import jsonpatch
from pydantic import ValidationError

import config
import decks
from models import CreateGameRequest, JoinGameRequest, SayRequest

logger = logging.getLogger(__name__)


def _first_error(e: ValidationError) -> str:
    msg = e.errors()[0].get("msg", "Invalid request")
    return msg.removeprefix("Value error, ")


class LobbyGame:
    def __init__(self, gameid: str, title: str, room: str, host: str, side: str,
                 format: str = config.DEFAULT_FORMAT, password: str = "",
                 allow_spectator: bool = True, spectatorhands: bool = False,
                 save_replay: bool = False):
        self.gameid = gameid
        self.title = title
        self.room = room
        self.format = format
        self.password = password
        self.allow_spectator = allow_spectator
        self.spectatorhands = spectatorhands
        self.save_replay = save_replay
        self.players: List[dict] = [{"username": host, "side": side}]  # join order, host first
        self.spectators: List[str] = []
        self.messages: List[dict] = []
        self.started = False
        self.date = time.time()
        self.last_activity = time.time()
        self.version = 1

    def touch(self):
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return (not self.started
                and time.time() - self.last_activity > config.LOBBY_TTL_SECONDS)

    @property
    def host(self) -> Optional[str]:
        return self.players[0]["username"] if self.players else None

    def player(self, username: str) -> Optional[dict]:
        return next((p for p in self.players if p["username"] == username), None)

    def members(self) -> List[str]:
        return [p["username"] for p in self.players] + list(self.spectators)

    def check_password(self, password: Optional[str]) -> bool:
        if not self.password:
            return True
        return secrets.compare_digest(self.password, password or "")

    def remove(self, username: str) -> bool:
        before = len(self.players) + len(self.spectators)
        self.players = [p for p in self.players if p["username"] != username]
        self.spectators = [s for s in self.spectators if s != username]
        return len(self.players) + len(self.spectators) != before

    def initial_state(self) -> str:
        return json.dumps({
            "gameid": self.gameid,
            "room": self.room,
            "format": self.format,
            "players": [{"username": p["username"], "side": p["side"],
                         "deck": p.get("deck", {}).get("_id")} for p in self.players],
            "options": {"spectatorhands": self.spectatorhands},
        })

    def public_view(self, users: Dict[str, dict]) -> dict:
        """The record broadcast to lobby clients; never contains the password."""
        players = []
        for p in self.players:
            entry = {"user": users.get(p["username"], {"username": p["username"]}),
                     "side": p["side"]}
            if p.get("deck"):
                entry["deck"] = p["deck"]
            players.append(entry)
        view = {
            "gameid": self.gameid,
            "title": self.title,
            "room": self.room,
            "format": self.format,
            "started": self.started,
            "date": self.date,
            "players": players,
            "spectators": [{"user": users.get(s, {"username": s})} for s in self.spectators],
            "spectator-count": len(self.spectators),
            "messages": list(self.messages),
            "allow-spectator": self.allow_spectator,
            "spectatorhands": self.spectatorhands,
            "save-replay": self.save_replay,
            "version": self.version,
        }
        if self.password:
            view["password"] = True
        # detached from the live user and deck dicts so the next broadcast can diff against it
        return copy.deepcopy(view)


class LobbyServer:
    def __init__(self):
        self.games: Dict[str, LobbyGame] = {}
        self.users: Dict[str, dict] = {}  # username -> public user record
        self.connections: Dict[str, WebSocket] = {}  # client_id -> socket
        self.client_users: Dict[str, str] = {}  # client_id -> username
        self.msg_timestamps: Dict[str, list] = {}
        self._broadcast_state: Dict[str, dict] = {}  # gameid -> last record sent
        self._cleanup_task: Optional[asyncio.Task] = None

    def reset(self):
        self.games.clear()
        self.users.clear()
        self.connections.clear()
        self.client_users.clear()
        self.msg_timestamps.clear()
        self._broadcast_state.clear()

    def start_cleanup_loop(self):
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_games())

    async def _cleanup_expired_games(self):
        while True:
            try:
                await asyncio.sleep(config.CLEANUP_INTERVAL_SECONDS)
                await self.close_expired_games()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in lobby cleanup loop")

    async def close_expired_games(self) -> List[str]:
        expired = [g for g in self.games.values() if g.is_expired()]
        for game in expired:
            self.games.pop(game.gameid, None)
            logger.info("Closed idle game %s", game.gameid)
        if expired:
            await self.broadcast_games()
        for game in expired:
            for username in game.members():
                await self.send_to_user(username, "lobby/timeout", {"gameid": game.gameid})
        return [g.gameid for g in expired]

    # --- users ---

    def get_user(self, username: str) -> dict:
        user = self.users.get(username)
        if user is None:
            user = {
                "_id": uuid.uuid4().hex,
                "username": username,
                "options": {"blocked-users": []},
                "isadmin": username in config.SUPERUSERS,
            }
            self.users[username] = user
        return user

    def update_options(self, username: str, options: dict) -> dict:
        user = self.get_user(username)
        user["options"] = {**user["options"], **options}
        return user["options"]

    def is_superuser(self, username: str) -> bool:
        user = self.get_user(username)
        return bool(user.get("isadmin") or user.get("ismoderator")
                    or user.get("tournament-organizer"))

    def game_for(self, username: str) -> Optional[LobbyGame]:
        return next((g for g in self.games.values() if username in g.members()), None)

    # --- sending ---

    async def _send(self, client_id: str, msg_type: str, data: Any = None):
        ws = self.connections.get(client_id)
        if ws is None:
            return
        try:
            await ws.send_json({"type": msg_type, "data": data})
        except Exception:
            self._remove_connection(client_id)

    async def send_to_user(self, username: str, msg_type: str, data: Any = None):
        for client_id, name in list(self.client_users.items()):
            if name == username:
                await self._send(client_id, msg_type, data)

    async def broadcast(self, msg_type: str, data: Any = None):
        for client_id in list(self.connections):
            await self._send(client_id, msg_type, data)

    async def _error(self, client_id: str, message: str):
        await self._send(client_id, "lobby/error", {"message": message})

    def games_snapshot(self) -> List[dict]:
        return list(self._broadcast_state.values())

    async def broadcast_games(self, notification: Optional[str] = None):
        """Send every client what changed since the last broadcast.

        New and removed games go out as games/diff, changes to known games
        as games/differ patches against the record each client already has.
        """
        current: Dict[str, dict] = {}
        created: Dict[str, dict] = {}
        patches: Dict[str, list] = {}
        for gameid, game in self.games.items():
            view = game.public_view(self.users)
            prev = self._broadcast_state.get(gameid)
            if prev is None:
                created[gameid] = view
            elif view != prev:
                game.version += 1
                view["version"] = game.version
                patches[gameid] = jsonpatch.make_patch(prev, view).patch
            current[gameid] = view
        deleted = [gameid for gameid in self._broadcast_state if gameid not in current]
        self._broadcast_state = current

        if created or deleted:
            payload: dict = {"diff": {"update": created, "delete": deleted}}
            if created and notification:
                payload["notification"] = notification
            await self.broadcast("games/diff", payload)
        if patches:
            await self.broadcast("games/differ", {"diff": {"update": patches}})

    # --- connection ---

    def _remove_connection(self, client_id: str):
        self.connections.pop(client_id, None)
        self.msg_timestamps.pop(client_id, None)
        return self.client_users.pop(client_id, None)

    async def connect(self, websocket: WebSocket, client_id: str, username: str = ""):
        await websocket.accept()
        username = username.strip()
        if not username:
            await websocket.send_json({"type": "lobby/error", "data": {"message": "Username required"}})
            await websocket.close()
            return

        self.get_user(username)
        snapshot = self.games_snapshot()
        self.connections[client_id] = websocket
        self.client_users[client_id] = username
        logger.info("Client %s connected as '%s'", client_id, username)
        await self._send(client_id, "games/list", snapshot)

        try:
            while True:
                data = await websocket.receive_text()

                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await self._error(client_id, "Message too large")
                    continue

                now = time.time()
                timestamps = self.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await self._error(client_id, "Too many messages")
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await self._error(client_id, "Invalid message format")
                    continue
                if not isinstance(message, dict):
                    await self._error(client_id, "Invalid message format")
                    continue

                await self.handle_message(client_id, username, message)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            self._remove_connection(client_id)
            if username not in self.client_users.values():
                await self.leave(username)

    async def handle_message(self, client_id: str, username: str, message: dict):
        msg_type = message.get("type")
        data = message.get("data")

        if msg_type == "lobby/list":
            await self._send(client_id, "games/list", self.games_snapshot())

        elif msg_type == "lobby/create":
            await self._handle_create(client_id, username, data)

        elif msg_type == "lobby/join":
            await self._handle_join(client_id, username, data, spectator=False)

        elif msg_type == "lobby/watch":
            await self._handle_join(client_id, username, data, spectator=True)

        elif msg_type in ("lobby/leave", "netrunner/leave"):
            await self.leave(username)

        elif msg_type == "lobby/deck":
            await self._handle_deck(client_id, username, data)

        elif msg_type == "lobby/swap":
            await self._handle_swap(client_id, username, data)

        elif msg_type == "lobby/say":
            await self._handle_say(client_id, username, data)

        elif msg_type == "netrunner/start":
            await self._handle_start(client_id, username, data)

        elif msg_type == "decks/import":
            await self._handle_import(client_id, username, data)

        else:
            logger.warning("Unknown message type %r from %s", msg_type, client_id)
            await self._error(client_id, "Unknown message type")

    async def _handle_create(self, client_id: str, username: str, data):
        try:
            request = CreateGameRequest.model_validate(data or {})
        except ValidationError as e:
            await self._error(client_id, _first_error(e))
            return

        if request.password == "" and isinstance(data, dict) and data.get("protected"):
            await self._error(client_id, "Please fill a password")
            return
        if self.game_for(username):
            await self._error(client_id, "You are already in a game")
            return
        if request.room == config.TOURNAMENT_ROOM and not self.is_superuser(username):
            await self._error(client_id, "Games cannot be created in the tournament room")
            return

        save_replay = request.save_replay
        if save_replay is None:
            save_replay = request.room != "casual"
        game = LobbyGame(
            uuid.uuid4().hex, request.title, request.room, username, request.side,
            format=request.format, password=request.password,
            allow_spectator=request.allow_spectator,
            spectatorhands=request.spectatorhands and request.allow_spectator,
            save_replay=save_replay,
        )
        self.games[game.gameid] = game
        logger.info("Game created: %s ('%s') by %s in %s", game.gameid, game.title,
                    username, game.room)
        await self.broadcast_games(notification=config.NOTIFICATION_SOUND)
        await self.send_to_user(username, "lobby/select",
                                {"gameid": game.gameid, "started": False})

    async def _handle_join(self, client_id: str, username: str, data, spectator: bool):
        try:
            request = JoinGameRequest.model_validate(data or {})
        except ValidationError as e:
            await self._error(client_id, _first_error(e))
            return

        game = self.games.get(request.gameid)
        if game is None:
            await self._error(client_id, "Game not found")
            return
        current = self.game_for(username)
        if current is game:
            return
        if current is not None:
            await self._error(client_id, "You are already in a game")
            return
        if not game.check_password(request.password):
            await self._error(client_id, "Invalid password")
            return

        if spectator:
            if not game.allow_spectator:
                await self._error(client_id, "Spectators are not allowed in this game")
                return
            game.spectators.append(username)
            logger.info("'%s' is watching game %s", username, game.gameid)
        else:
            if game.started:
                await self._error(client_id, "Game already started")
                return
            if len(game.players) >= config.MAX_PLAYERS:
                await self._error(client_id, "Game is full")
                return
            host_side = game.players[0]["side"] if game.players else config.SIDES[1]
            side = config.SIDES[1] if host_side == config.SIDES[0] else config.SIDES[0]
            game.players.append({"username": username, "side": side})
            logger.info("'%s' joined game %s as %s", username, game.gameid, side)

        game.touch()
        await self.broadcast_games()
        select = {"gameid": game.gameid, "started": game.started}
        if game.started:
            select["state"] = game.initial_state()
        await self.send_to_user(username, "lobby/select", select)
        if not spectator and game.host != username:
            await self.send_to_user(game.host, "lobby/notification", config.NOTIFICATION_SOUND)

    async def leave(self, username: str):
        game = self.game_for(username)
        if game is None:
            return
        game.remove(username)
        game.touch()
        if not game.players:
            self.games.pop(game.gameid, None)
            logger.info("Game %s closed, no players left", game.gameid)
            for spectator in game.spectators:
                await self.send_to_user(spectator, "lobby/select", {"gameid": None})
        else:
            logger.info("'%s' left game %s", username, game.gameid)
        await self.broadcast_games()

    async def _handle_deck(self, client_id: str, username: str, deck_id):
        game = self.game_for(username)
        player = game.player(username) if game else None
        if player is None or game.started:
            await self._error(client_id, "You are not seated in an open game")
            return
        deck = decks.get_owned_deck(str(deck_id), username)
        if deck is None:
            await self._error(client_id, "Deck not found")
            return
        player["deck"] = decks.deck_summary(deck)
        game.touch()
        await self.broadcast_games()

    async def _handle_swap(self, client_id: str, username: str, gameid):
        game = self.games.get(str(gameid))
        if game is None or game.host != username or game.started:
            await self._error(client_id, "Only the host can swap sides before the game starts")
            return
        for p in game.players:
            p["side"] = config.SIDES[1] if p["side"] == config.SIDES[0] else config.SIDES[0]
            p.pop("deck", None)
        game.touch()
        await self.broadcast_games()

    async def _handle_say(self, client_id: str, username: str, data):
        try:
            request = SayRequest.model_validate(data or {})
        except ValidationError as e:
            await self._error(client_id, _first_error(e))
            return
        game = self.game_for(username)
        if game is None or (request.gameid and request.gameid != game.gameid):
            await self._error(client_id, "You are not in that game")
            return
        game.messages.append({"user": self.get_user(username), "text": request.msg})
        game.touch()
        await self.broadcast_games()

    async def _handle_start(self, client_id: str, username: str, gameid):
        game = self.games.get(str(gameid))
        if game is None or game.host != username or game.started:
            await self._error(client_id, "Only the host can start the game")
            return
        if not all(p.get("deck") for p in game.players):
            await self._error(client_id, "Waiting for players to select decks")
            return
        game.started = True
        game.touch()
        logger.info("Game %s started", game.gameid)
        await self.broadcast_games()
        state = game.initial_state()
        for member in game.members():
            await self.send_to_user(member, "lobby/select",
                                    {"gameid": game.gameid, "started": True, "state": state})

    async def _handle_import(self, client_id: str, username: str, data):
        text = (data or {}).get("input", "") if isinstance(data, dict) else ""
        deck = await asyncio.to_thread(decks.import_decklist, username, text)
        if deck is None:
            await self._send(client_id, "decks/import-failure", "Failed to import deck.")
        else:
            await self._send(client_id, "decks/import-success", "Imported")


lobby_server = LobbyServer()
