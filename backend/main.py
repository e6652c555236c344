"""Card lobby: game list server and deck storage API"""

from fastapi import FastAPI, WebSocket, HTTPException, Header
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional
from collections import defaultdict
import time
from contextlib import asynccontextmanager
import uvicorn
import logging

import config
config.setup_logging()

import decks
from account import LobbyPreferences
from lobby_server import lobby_server

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting card lobby backend")
    lobby_server.start_cleanup_loop()
    yield
    logger.info("Shutting down card lobby backend")


app = FastAPI(title="Card Lobby API", lifespan=lifespan)


# Rate limiter
_rate_limit_store: Dict[str, list] = defaultdict(list)


def _check_rate_limit(key: str) -> bool:
    now = time.time()
    window = config.RATE_LIMIT_WINDOW
    _rate_limit_store[key] = [
        t for t in _rate_limit_store[key] if now - t < window
    ]
    if len(_rate_limit_store[key]) >= config.RATE_LIMIT_MAX_REQUESTS:
        return False
    _rate_limit_store[key].append(now)
    return True


def _require_user(username: str) -> str:
    username = username.strip()
    if not username:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return username


# --- Request Models ---

class DeckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: Optional[str] = Field(None, alias="_id")
    name: str = ""
    identity: Optional[dict] = None
    cards: list = Field(default_factory=list)
    format: str = config.DEFAULT_FORMAT

    def to_deck(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"id"})


# --- Decks ---

@app.get("/data/decks")
async def list_decks(x_username: str = Header("")):
    username = x_username.strip() or config.DEMO_USERNAME
    return decks.owned_decks(username)


@app.post("/data/decks")
async def create_deck(request: DeckRequest, x_username: str = Header("")):
    username = _require_user(x_username)
    if not _check_rate_limit(username):
        raise HTTPException(status_code=429, detail="Too many requests. Please wait.")
    return decks.create_deck(username, request.to_deck())


@app.put("/data/decks")
async def save_deck(request: DeckRequest, x_username: str = Header("")):
    username = _require_user(x_username)
    if not request.id:
        raise HTTPException(status_code=409, detail="Deck is missing _id")
    if not request.identity:
        raise HTTPException(status_code=409, detail="Deck is missing identity")
    existing = decks.get_owned_deck(request.id, username)
    if existing is None:
        raise HTTPException(status_code=404, detail="Deck not found")
    deck = decks.prepare_deck_for_db(request.to_deck(), username)
    existing.update(deck)
    logger.info("Deck saved: %s ('%s')", request.id, existing.get("name", ""))
    return {"message": "OK", "_id": request.id}


@app.delete("/data/decks/{deck_id}")
async def delete_deck(deck_id: str, x_username: str = Header("")):
    username = _require_user(x_username)
    deck = decks.decks.get(deck_id)
    if deck is None:
        raise HTTPException(status_code=409, detail="Unknown deck id")
    if deck.get("username") != username:
        raise HTTPException(status_code=403, detail="Forbidden")
    del decks.decks[deck_id]
    logger.info("Deck deleted: %s", deck_id)
    return {"message": "Deleted"}


# --- Profile ---

@app.get("/profile/options")
async def get_options(x_username: str = Header("")):
    username = _require_user(x_username)
    return lobby_server.get_user(username)["options"]


@app.put("/profile/options")
async def update_options(request: LobbyPreferences, x_username: str = Header("")):
    username = _require_user(x_username)
    options = lobby_server.update_options(username, request.model_dump(by_alias=True))
    # players carry their block lists, so every game they sit in changes
    await lobby_server.broadcast_games()
    logger.info("Options updated for '%s'", username)
    return {"message": "OK", "options": options}


# --- Lobby socket ---

@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str, username: str = ""):
    await lobby_server.connect(websocket, client_id, username)


# --- CORS ---

if config.ALLOWED_ORIGINS.strip():
    origins = [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
else:
    origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "X-Username"],
)


@app.get("/")
async def root():
    return {"message": "Card lobby API is running"}


@app.get("/health")
async def health():
    return {"status": "ok", "games": len(lobby_server.games)}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
