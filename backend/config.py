"""Centralized configuration — all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "")

# --- Client connection ---
LOBBY_URL = os.getenv("LOBBY_URL", "ws://localhost:8000/ws")
RECONNECT_MIN_DELAY = float(os.getenv("RECONNECT_MIN_DELAY", "1"))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", "30"))

# --- Rate Limiting ---
RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX_REQUESTS = 30  # deck writes per window per user

# --- WebSocket Security ---
WS_RATE_LIMIT_PER_SEC = 10
MAX_WS_MESSAGE_SIZE = 8192  # bytes

# --- Lobby ---
ROOMS = ("tournament", "competitive", "casual")
ROOM_NAMES = {"tournament": "Tournament", "competitive": "Competitive", "casual": "Casual"}
DEFAULT_ROOM = "casual"
TOURNAMENT_ROOM = "tournament"
SIDES = ("Corp", "Runner")
DEFAULT_FORMAT = "standard"
MAX_PLAYERS = 2
MAX_TITLE_LENGTH = 100
MAX_PASSWORD_LENGTH = 30
MAX_CHAT_LENGTH = 1000
LOBBY_TTL_SECONDS = int(os.getenv("LOBBY_TTL_SECONDS", "1800"))
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "60"))
NOTIFICATION_SOUND = "ting"
OPEN_GAMES_SYMBOL = "○"
CLOSED_GAMES_SYMBOL = "●"

# --- Users ---
SUPERUSERS = {u.strip() for u in os.getenv("SUPERUSERS", "").split(",") if u.strip()}
DEMO_USERNAME = "__demo__"

# --- Decks ---
DECK_HASH_ITERATIONS = 100000
DECK_HASH_DEFAULT_SALT = "default-salt"
NRDB_URL = os.getenv("NRDB_URL", "https://netrunnerdb.com/api/2.0/public")
NRDB_TIMEOUT = int(os.getenv("NRDB_TIMEOUT", "15"))
NRDB_MAX_RETRIES = 3

# --- Replays ---
HISTORY_URL = os.getenv("HISTORY_URL", "http://localhost:8000/profile/history/full")
HISTORY_TIMEOUT = int(os.getenv("HISTORY_TIMEOUT", "30"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
