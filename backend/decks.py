"""Deck storage helpers: dedup hashing, ownership and public decklist import."""

import base64
import hashlib
import logging
import re
import time
import uuid
from typing import Dict, List, Optional

import requests

import config

logger = logging.getLogger(__name__)

# In-memory storage
decks: Dict[str, dict] = {}  # _id -> deck
_card_cache: Dict[str, dict] = {}  # code -> card


def slugify(text: str) -> str:
    text = re.sub(r'[^\w\s-]', '', text.lower())
    return re.sub(r'[\s_-]+', '-', text).strip('-')


def make_salt(deck_name: str) -> bytes:
    salt = slugify(deck_name or "").encode()
    return salt or config.DECK_HASH_DEFAULT_SALT.encode()


def _card_code(entry: dict) -> str:
    card = entry.get("card")
    if isinstance(card, dict):
        return str(card.get("code", ""))
    return str(card or entry.get("code", ""))


def hash_deck(deck: dict) -> str:
    """Content hash used to spot the same list saved twice.

    Covers the identity and the sorted quantity/code pairs; the deck name
    only seeds the salt.
    """
    identity = (deck.get("identity") or {}).get("title", "")
    entries = sorted(deck.get("cards", []), key=_card_code)
    decklist = "".join(f"{entry.get('qty', 0)}{_card_code(entry)}" for entry in entries)
    digest = hashlib.pbkdf2_hmac("sha1", f"{identity}{decklist}".encode(),
                                 make_salt(deck.get("name", "")),
                                 config.DECK_HASH_ITERATIONS)
    return base64.b64encode(digest).decode()


def deck_status(deck: dict) -> dict:
    return {
        "format": deck.get("format", config.DEFAULT_FORMAT),
        "card-count": sum(int(entry.get("qty", 0)) for entry in deck.get("cards", [])),
    }


def prepare_deck_for_db(deck: dict, username: str) -> dict:
    prepared = dict(deck)
    prepared["cards"] = [{k: entry[k] for k in ("qty", "card", "id", "art") if k in entry}
                         for entry in deck.get("cards", [])]
    prepared["username"] = username
    prepared["status"] = deck_status(deck)
    prepared["hash"] = hash_deck(deck)
    return prepared


def owned_decks(username: str) -> List[dict]:
    return [d for d in decks.values() if d.get("username") == username]


def get_owned_deck(deck_id: str, username: str) -> Optional[dict]:
    deck = decks.get(deck_id)
    if deck is None or deck.get("username") != username:
        return None
    return deck


def create_deck(username: str, deck: dict) -> dict:
    deck = prepare_deck_for_db(deck, username)
    deck["_id"] = uuid.uuid4().hex
    deck.setdefault("date", time.time())
    deck.setdefault("format", config.DEFAULT_FORMAT)
    decks[deck["_id"]] = deck
    logger.info("Deck created: %s ('%s') for %s", deck["_id"], deck.get("name", ""), username)
    return deck


def deck_summary(deck: dict) -> dict:
    """What other lobby members see about a selected deck."""
    return {
        "_id": deck["_id"],
        "name": deck.get("name", ""),
        "identity": deck.get("identity"),
        "status": deck.get("status", {}),
        "date": deck.get("date"),
    }


# --- Public decklist import ---

def _fetch_json(url: str) -> Optional[dict]:
    for attempt in range(1, config.NRDB_MAX_RETRIES + 1):
        try:
            logger.info("NetrunnerDB attempt %d/%d: %s", attempt, config.NRDB_MAX_RETRIES, url)
            response = requests.get(url, timeout=config.NRDB_TIMEOUT)
            if response.status_code == 404:
                logger.warning("NetrunnerDB has nothing at %s", url)
                return None
            response.raise_for_status()
            return response.json()
        except requests.Timeout:
            logger.warning("Attempt %d: NetrunnerDB timed out after %ds", attempt, config.NRDB_TIMEOUT)
        except ValueError as e:
            logger.warning("Attempt %d: Failed to parse NetrunnerDB response as JSON: %s", attempt, e)
        except requests.RequestException as e:
            logger.error("Attempt %d: HTTP error calling NetrunnerDB: %s", attempt, e)
        if attempt < config.NRDB_MAX_RETRIES:
            time.sleep(2 ** attempt)
    return None


def _load_cards() -> Dict[str, dict]:
    if not _card_cache:
        result = _fetch_json(f"{config.NRDB_URL}/cards")
        for card in (result or {}).get("data", []):
            _card_cache[card["code"]] = card
    return _card_cache


def parse_decklist_id(text: str) -> Optional[str]:
    text = (text or "").strip()
    match = re.search(r'/decklist/(?:view/)?([0-9a-f-]+)', text)
    if match:
        return match.group(1)
    if re.fullmatch(r'[0-9a-f-]+', text):
        return text
    return None


def import_decklist(username: str, text: str) -> Optional[dict]:
    """Download a public decklist and store it for ``username``."""
    decklist_id = parse_decklist_id(text)
    if not decklist_id:
        logger.warning("Not a decklist reference: %r", text)
        return None

    result = _fetch_json(f"{config.NRDB_URL}/decklist/{decklist_id}")
    try:
        decklist = result["data"][0]
    except (TypeError, KeyError, IndexError):
        logger.warning("Unexpected NetrunnerDB decklist structure for %s", decklist_id)
        return None

    cards = _load_cards()
    identity = None
    entries = []
    for code, qty in decklist.get("cards", {}).items():
        card = cards.get(code, {"code": code})
        if card.get("type_code") == "identity":
            identity = {"title": card.get("title", ""), "code": code,
                        "side": card.get("side_code", "").capitalize()}
        else:
            entries.append({"qty": qty, "card": {"code": code, "title": card.get("title", "")}})

    deck = {"name": decklist.get("name", ""), "identity": identity, "cards": entries,
            "format": config.DEFAULT_FORMAT, "date": time.time()}
    if not deck["name"] or not deck["identity"] or not deck["cards"]:
        logger.warning("Decklist %s is missing name, identity or cards", decklist_id)
        return None
    return create_deck(username, deck)
