"""
Unit tests for the lobby client.
Tests: message handlers, notification gating, session identity, commands, dispatcher.
"""
import sys
import os
import asyncio
import json

import pytest
from unittest.mock import patch, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import requests
import websockets

import config
from account import LobbyPreferences, add_blocked_user, remove_blocked_user
from lobby_client import LobbyClient, parse_state, fetch_replay_history
from models import User
from notifications import NotificationTrigger
from transport import Dispatcher, WebSocketTransport, encode_frame, decode_frame


# --- Factory helpers ---

def make_user(username="alice", blocked=None):
    return User.model_validate({"_id": username, "username": username,
                                "options": {"blocked-users": blocked or []}})


def player(username, side="Corp", deck=None):
    record = {"user": {"_id": username, "username": username}, "side": side}
    if deck:
        record["deck"] = deck
    return record


def game_record(gameid, room="casual", players=(), started=False, date=1, **extra):
    record = {"gameid": gameid, "room": room, "players": list(players),
              "started": started, "date": date}
    record.update(extra)
    return record


class Recorder:
    """Collects outbound messages, sounds and launched games."""

    def __init__(self):
        self.sent = []
        self.sounds = []
        self.launched = []

    def send(self, msg_type, payload=None):
        self.sent.append((msg_type, payload))

    def sent_types(self):
        return [t for t, _ in self.sent]


def make_client(user=None, lobby_sounds=True):
    rec = Recorder()
    client = LobbyClient(
        user or make_user(),
        send=rec.send,
        play_sound=rec.sounds.append,
        launch_game=rec.launched.append,
        preferences=LobbyPreferences(lobby_sounds=lobby_sounds),
    )
    return client, rec


def deliver(client, msg_type, payload):
    client.dispatcher.post(msg_type, payload)
    client.dispatcher.drain()


# =====================================================================
# Game list messages
# =====================================================================

class TestGameListHandlers:
    def test_games_list_populates_mirror(self):
        client, _ = make_client()
        deliver(client, "games/list", [game_record("g1"), game_record("g2", date=0)])
        assert [g.gameid for g in client.games] == ["g2", "g1"]

    def test_games_diff_updates_and_deletes(self):
        client, _ = make_client()
        deliver(client, "games/list", [game_record("g1"), game_record("g2")])
        deliver(client, "games/diff", {"diff": {"update": {"g1": {"title": "New"}},
                                                "delete": ["g2"]}})
        assert [g.gameid for g in client.games] == ["g1"]
        assert client.games[0].title == "New"

    def test_games_differ_applies_patch(self):
        client, _ = make_client()
        deliver(client, "games/list", [game_record("g1", version=1)])
        deliver(client, "games/differ", {"diff": {"update": {"g1": [
            {"op": "replace", "path": "/started", "value": True},
            {"op": "replace", "path": "/version", "value": 2},
        ]}}})
        assert client.games[0].started is True

    def test_desync_requests_snapshot(self):
        client, rec = make_client()
        deliver(client, "games/list", [game_record("g1", version=1)])
        deliver(client, "games/differ", {"diff": {"update": {"g1": [
            {"op": "replace", "path": "/version", "value": 7},
        ]}}})
        assert client.games == []
        assert rec.sent_types() == ["lobby/list"]
        assert client.mirror.needs_resync is False

    def test_malformed_message_leaves_mirror_untouched(self):
        client, _ = make_client()
        deliver(client, "games/list", [game_record("g1")])
        deliver(client, "games/diff", {"diff": {"update": "garbage"}})
        assert [g.gameid for g in client.games] == ["g1"]

    def test_bad_snapshot_entry_does_not_block_the_rest(self):
        client, _ = make_client()
        deliver(client, "games/list", [game_record("g1")])
        deliver(client, "games/list", [game_record("g2"), {"gameid": 7}])
        assert [g.gameid for g in client.games] == ["g2"]


# =====================================================================
# Notifications
# =====================================================================

class TestNotifications:
    def test_diff_notification_plays_in_lobby(self):
        client, rec = make_client()
        deliver(client, "games/diff", {"diff": {"update": {"g1": game_record("g1")}},
                                       "notification": "ting"})
        assert rec.sounds == ["ting"]

    def test_diff_notification_suppressed_in_game(self):
        client, rec = make_client()
        client.gameid = "g7"
        deliver(client, "games/diff", {"diff": {"update": {"g1": game_record("g1")}},
                                       "notification": "ting"})
        assert rec.sounds == []

    def test_lobby_notification_always_plays(self):
        client, rec = make_client()
        client.gameid = "g7"
        deliver(client, "lobby/notification", "ting")
        assert rec.sounds == ["ting"]

    def test_lobby_sounds_preference_mutes(self):
        client, rec = make_client(lobby_sounds=False)
        deliver(client, "lobby/notification", "ting")
        assert rec.sounds == []

    def test_trigger_without_notification(self):
        played = []
        trigger = NotificationTrigger(played.append)
        assert trigger.on_games_update(None, None) is False
        assert trigger.on_lobby_notification("") is False
        assert played == []


# =====================================================================
# Session identity
# =====================================================================

class TestSession:
    def test_select_sets_gameid(self):
        client, rec = make_client()
        deliver(client, "lobby/select", {"gameid": "g1", "started": False})
        assert client.gameid == "g1"
        assert rec.launched == []

    def test_select_started_launches_game(self):
        client, rec = make_client()
        state = json.dumps({"gameid": "g1", "players": []})
        deliver(client, "lobby/select", {"gameid": "g1", "started": True, "state": state})
        assert rec.launched == [{"gameid": "g1", "players": []}]

    def test_timeout_for_current_game_clears_session(self):
        client, _ = make_client()
        client.gameid = "g1"
        deliver(client, "lobby/timeout", {"gameid": "g1"})
        assert client.gameid is None
        assert client.banners[0]["message"] == "Game lobby closed due to inactivity"
        assert client.banners[0]["dismissible"] is True

    def test_timeout_for_other_game_is_noop(self):
        client, _ = make_client()
        client.gameid = "g2"
        deliver(client, "lobby/timeout", {"gameid": "g1"})
        assert client.gameid == "g2"
        assert client.banners == []

    def test_dismiss_banner(self):
        client, _ = make_client()
        client.banner("Oops")
        client.dismiss_banner()
        assert client.banners == []

    def test_leave_lobby_clears_state_and_notifies(self):
        client, rec = make_client()
        client.gameid = "g1"
        client.password_gameid = "g1"
        client.messages = [{"text": "hi"}]
        client.leave_lobby()
        assert client.gameid is None
        assert client.password_gameid is None
        assert client.messages == []
        assert rec.sent == [("lobby/leave", None)]

    def test_leave_game_sends_gameid(self):
        client, rec = make_client()
        client.gameid = "g1"
        client.leave_game()
        assert client.gameid is None
        assert rec.sent == [("netrunner/leave", {"gameid-str": "g1"})]

    def test_server_error_becomes_banner(self):
        client, _ = make_client()
        deliver(client, "lobby/error", {"message": "Game is full"})
        assert client.banners[0]["message"] == "Game is full"

    def test_parse_state_accepts_dict(self):
        assert parse_state({"a": 1}) == {"a": 1}
        assert parse_state('{"a": 1}') == {"a": 1}


# =====================================================================
# Commands
# =====================================================================

class TestCommands:
    def test_create_game_requires_title(self):
        client, rec = make_client()
        assert client.create_game("  ") == "Please fill a game title."
        assert rec.sent == []

    def test_create_protected_game_requires_password(self):
        client, rec = make_client()
        assert client.create_game("My game", protected=True) == "Please fill a password."
        assert rec.sent == []

    def test_create_game_payload(self):
        client, rec = make_client()
        assert client.create_game("My game", room="competitive", side="Runner") is None
        msg_type, payload = rec.sent[0]
        assert msg_type == "lobby/create"
        assert payload["title"] == "My game"
        assert payload["side"] == "Runner"
        assert payload["save-replay"] is True
        assert payload["password"] == ""

    def test_casual_games_default_to_no_replay(self):
        client, rec = make_client()
        client.create_game("My game", room="casual")
        assert rec.sent[0][1]["save-replay"] is False

    def test_join_protected_game_asks_for_password(self):
        client, rec = make_client()
        deliver(client, "games/list", [game_record("g1", password=True)])
        assert client.join_game("g1") is False
        assert client.password_gameid == "g1"
        assert rec.sent_types() == []

        assert client.join_game("g1", password="secret") is True
        assert rec.sent[-1] == ("lobby/join", {"gameid": "g1", "password": "secret"})
        assert client.password_gameid is None

    def test_watch_open_game(self):
        client, rec = make_client()
        deliver(client, "games/list", [game_record("g1")])
        assert client.watch_game("g1") is True
        assert rec.sent[-1] == ("lobby/watch", {"gameid": "g1"})

    def test_say_ignores_blank_text(self):
        client, rec = make_client()
        client.gameid = "g1"
        assert client.say("   ") is False
        assert client.say("gl hf") is True
        assert rec.sent == [("lobby/say", {"gameid": "g1", "msg": "gl hf"})]

    def test_start_game_only_for_ready_host(self):
        client, rec = make_client()
        deliver(client, "games/list", [game_record("g1", players=[
            player("alice", deck={"_id": "d1"}), player("bob", side="Runner")])])
        client.gameid = "g1"
        assert client.start_game() is False

        deliver(client, "games/diff", {"diff": {"update": {"g1": {"players": [
            player("alice", deck={"_id": "d1"}),
            player("bob", side="Runner", deck={"_id": "d2"})]}}}})
        assert client.start_game() is True
        assert rec.sent[-1] == ("netrunner/start", "g1")

    def test_swap_sides_host_only(self):
        client, rec = make_client(make_user("bob"))
        deliver(client, "games/list", [game_record("g1", players=[
            player("alice"), player("bob", side="Runner")])])
        client.gameid = "g1"
        assert client.swap_sides() is False
        assert rec.sent == []

    def test_room_tabs_and_can_create(self):
        client, _ = make_client()
        deliver(client, "games/list", [
            game_record("g1", room="casual"),
            game_record("g2", room="tournament", started=True),
        ])
        tabs = client.room_tabs()
        assert tabs["casual"] == "Casual (1○ 0●)"
        assert tabs["tournament"] == "Tournament (0○ 1●)"
        assert client.can_create("casual")
        assert not client.can_create("tournament")

    def test_block_user_updates_visible_games(self):
        client, _ = make_client()
        deliver(client, "games/list", [game_record("g1", players=[player("bob")])])
        assert len(client.visible_games("casual")) == 1
        client.block_user("bob")
        assert client.visible_games("casual") == []
        client.unblock_user("bob")
        assert len(client.visible_games("casual")) == 1

    def test_no_transport_drops_message(self):
        client = LobbyClient(make_user())
        client.refresh()  # logs and returns


# =====================================================================
# Block list editing
# =====================================================================

class TestBlockList:
    def test_add_blocked_user(self):
        assert add_blocked_user("alice", [], "bob") == ["bob"]

    def test_add_ignores_blank_self_and_duplicates(self):
        assert add_blocked_user("alice", ["bob"], "  ") == ["bob"]
        assert add_blocked_user("alice", ["bob"], "alice") == ["bob"]
        assert add_blocked_user("alice", ["bob"], "bob") == ["bob"]

    def test_remove_blocked_user(self):
        assert remove_blocked_user(["bob", "carol"], "bob") == ["carol"]

    def test_preferences_clean_block_list(self):
        prefs = LobbyPreferences.model_validate({"blocked-users": [" bob ", "bob", ""]})
        assert prefs.blocked_users == ["bob"]


# =====================================================================
# Shared replay fetch
# =====================================================================

class TestSharedReplay:
    @patch("lobby_client.requests.get")
    def test_fetch_replay_not_found(self, mock_get):
        mock_get.return_value = MagicMock(status_code=404)
        assert fetch_replay_history("abc") is None

    @patch("lobby_client.requests.get")
    def test_fetch_replay_network_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("down")
        assert fetch_replay_history("abc") is None

    @patch("lobby_client.fetch_replay_history")
    def test_replay_result_posted_back_and_launched(self, mock_fetch):
        mock_fetch.return_value = {"history": [{"turn": 0, "options": {}}, {"diff": 1}]}
        client, rec = make_client()

        async def run():
            await client.start_shared_replay("abc")

        asyncio.run(run())
        assert rec.launched == []  # nothing happens until the queue is processed
        client.dispatcher.drain()
        state = rec.launched[0]
        assert state["gameid"] == "abc"
        assert state["options"]["spectatorhands"] is True
        assert state["replay-diffs"] == [{"diff": 1}]

    @patch("lobby_client.fetch_replay_history")
    def test_invalid_replay_link_shows_banner(self, mock_fetch):
        mock_fetch.return_value = None
        client, rec = make_client()

        async def run():
            await client.start_shared_replay("abc")

        asyncio.run(run())
        client.dispatcher.drain()
        assert rec.launched == []
        assert client.banners[0]["message"] == "Replay link invalid."


# =====================================================================
# Dispatcher and frames
# =====================================================================

class TestDispatcher:
    def test_messages_handled_in_receipt_order(self):
        dispatcher = Dispatcher()
        seen = []
        dispatcher.register("a", lambda p: seen.append(("a", p)))
        dispatcher.register("b", lambda p: seen.append(("b", p)))
        for i, t in enumerate(["a", "b", "a", "b"]):
            dispatcher.post(t, i)
        assert dispatcher.drain() == 4
        assert seen == [("a", 0), ("b", 1), ("a", 2), ("b", 3)]

    def test_register_replaces_handler(self):
        dispatcher = Dispatcher()
        seen = []
        dispatcher.register("a", lambda p: seen.append("first"))
        dispatcher.register("a", lambda p: seen.append("second"))
        dispatcher.dispatch("a")
        assert seen == ["second"]

    def test_unknown_type_ignored(self):
        assert Dispatcher().dispatch("nope", {}) is False

    def test_failing_handler_does_not_stop_queue(self):
        dispatcher = Dispatcher()
        seen = []

        def boom(payload):
            raise RuntimeError("bad")

        dispatcher.register("boom", boom)
        dispatcher.register("ok", seen.append)
        dispatcher.post("boom", 1)
        dispatcher.post("ok", 2)
        dispatcher.drain()
        assert seen == [2]

    def test_run_loop_processes_queue(self):
        dispatcher = Dispatcher()
        seen = []
        dispatcher.register("a", seen.append)

        async def run():
            task = asyncio.create_task(dispatcher.run())
            dispatcher.post("a", 1)
            dispatcher.post("a", 2)
            await dispatcher.queue.join()
            task.cancel()

        asyncio.run(run())
        assert seen == [1, 2]

    def test_frame_round_trip(self):
        frame = decode_frame(encode_frame("games/list", [{"gameid": "g1"}]))
        assert frame.type == "games/list"
        assert frame.data == [{"gameid": "g1"}]

    def test_transport_posts_received_frames(self):
        dispatcher = Dispatcher()
        transport = WebSocketTransport("ws://unused", dispatcher)
        transport.receive(encode_frame("lobby/notification", "ting"))
        transport.receive("not json")
        assert dispatcher.queue.qsize() == 1

    def test_transport_send_while_disconnected_is_dropped(self):
        transport = WebSocketTransport("ws://unused", Dispatcher())
        transport.send("lobby/list")
        assert transport._outbox.qsize() == 0


# =====================================================================
# Transport connection loop
# =====================================================================

class TestTransportRun:
    @pytest.fixture(autouse=True)
    def fast_backoff(self, monkeypatch):
        monkeypatch.setattr(config, "RECONNECT_MIN_DELAY", 0.01)
        monkeypatch.setattr(config, "RECONNECT_MAX_DELAY", 0.05)

    def test_snapshot_requested_on_every_reconnect(self):
        first_frames = []

        async def handler(ws):
            # one request, one reply, then the server hangs up
            first_frames.append(decode_frame(await ws.recv()).type)
            await ws.send(encode_frame("lobby/notification", "ting"))

        async def scenario():
            async with websockets.serve(handler, "127.0.0.1", 0) as server:
                port = server.sockets[0].getsockname()[1]
                dispatcher = Dispatcher()
                transport = WebSocketTransport(f"ws://127.0.0.1:{port}", dispatcher)
                transport.on_connect = lambda: transport.send("lobby/list")
                # left over from an earlier connection; must not reach the server
                transport._outbox.put_nowait(encode_frame("lobby/say", {"msg": "stale"}))
                task = asyncio.create_task(transport.run())

                async def settle():
                    while len(first_frames) < 3 or dispatcher.queue.qsize() < 3:
                        await asyncio.sleep(0.01)

                await asyncio.wait_for(settle(), timeout=5)
                await transport.close()
                await asyncio.wait_for(task, timeout=5)
                return dispatcher

        dispatcher = asyncio.run(scenario())
        assert set(first_frames) == {"lobby/list"}
        assert dispatcher.drain() >= 3

    def test_handshake_timeout_keeps_retrying(self):
        async def scenario():
            transport = WebSocketTransport("ws://unused", Dispatcher())
            with patch("transport.websockets.connect",
                       side_effect=asyncio.TimeoutError()) as mock_connect:
                task = asyncio.create_task(transport.run())

                async def retried():
                    while mock_connect.call_count < 3:
                        await asyncio.sleep(0.01)

                await asyncio.wait_for(retried(), timeout=5)
                assert not task.done()
                await transport.close()
                await asyncio.wait_for(task, timeout=5)
            return transport

        transport = asyncio.run(scenario())
        assert transport.connected is False

    def test_failed_writer_is_collected(self, caplog):
        async def scenario():
            transport = WebSocketTransport("ws://unused", Dispatcher())

            async def failing():
                raise RuntimeError("connection closed")

            writer = asyncio.create_task(failing())
            await asyncio.sleep(0)
            await transport._stop_writer(writer)

        with caplog.at_level("WARNING", logger="transport"):
            asyncio.run(scenario())
        assert "connection closed" in caplog.text

    def test_outbox_dropped_on_disconnect(self):
        transport = WebSocketTransport("ws://unused", Dispatcher())
        transport.connected = True
        transport.send("lobby/say", {"msg": "hi"})
        transport.send("lobby/leave")
        assert transport._drop_outbox() == 2
        assert transport._outbox.qsize() == 0
