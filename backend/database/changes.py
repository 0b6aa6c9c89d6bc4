"""
Change notifications for ledger rows, keyed by game id.

Observers refresh their view when a game's rows change. This is a read-side
convenience only: nothing in the buy-in or settlement flow depends on delivery.
"""
import logging
from collections import defaultdict
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict], None]


class Subscription:
    """A single observer of one game's changes.

    Pausing suppresses delivery while the owner is mid-mutation, so it does not
    re-read its own half-written state. Resuming delivers one ``resync`` event
    if anything was missed in between.
    """

    def __init__(self, feed: "ChangeFeed", game_id: str, callback: ChangeCallback):
        self.feed = feed
        self.game_id = game_id
        self.callback = callback
        self._paused = False
        self._missed = 0
        self.active = True

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self):
        self._paused = True

    def resume(self):
        self._paused = False
        if self._missed and self.active:
            missed = self._missed
            self._missed = 0
            self._deliver({"type": "resync", "game_id": self.game_id, "missed": missed})

    def unsubscribe(self):
        self.feed._remove(self)
        self.active = False

    def notify(self, event: dict):
        if not self.active:
            return
        if self._paused:
            self._missed += 1
            return
        self._deliver(event)

    def _deliver(self, event: dict):
        try:
            self.callback(event)
        except Exception as e:
            # A broken observer must not affect the writer
            logger.error(f"[FEED] Subscriber for game {self.game_id} failed: {e}", exc_info=True)


class ChangeFeed:
    """In-process publish/subscribe of ledger changes."""

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, game_id: str, callback: ChangeCallback) -> Subscription:
        sub = Subscription(self, game_id, callback)
        self._subscribers[game_id].append(sub)
        return sub

    def publish(self, game_id: str, table: str, action: str, record_id: str):
        event = {
            "type": "change",
            "game_id": game_id,
            "table": table,
            "action": action,
            "record_id": record_id,
        }
        for sub in list(self._subscribers.get(game_id, [])):
            sub.notify(event)

    def subscriber_count(self, game_id: str) -> int:
        return len(self._subscribers.get(game_id, []))

    def _remove(self, sub: Subscription):
        subs = self._subscribers.get(sub.game_id)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.game_id]
