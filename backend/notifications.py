"""Decides which incoming lobby messages should produce an audible alert."""

from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)


def _log_sound(name: str):
    logger.info("Playing sound '%s'", name)


class NotificationTrigger:
    def __init__(self, play_sound: Optional[Callable[[str], None]] = None):
        self.play_sound = play_sound or _log_sound

    def on_games_update(self, notification: Optional[str], session_gameid: Optional[str]) -> bool:
        """Alert carried by a game list diff; only heard from the lobby."""
        if not notification:
            return False
        if session_gameid:
            logger.debug("Suppressing '%s' while in game %s", notification, session_gameid)
            return False
        self.play_sound(notification)
        return True

    def on_lobby_notification(self, notification: Optional[str]) -> bool:
        """lobby/notification is always played, in a game or not."""
        if not notification:
            return False
        self.play_sound(notification)
        return True
