"""
Agent directory: the merged view of every agent seen on the relays.

Relays deliver service cards and heartbeats in no particular order,
often more than once, and from several connections at the same time.
The directory folds all of that into one record per public key:

- A card replaces the held card only if it is strictly newer, so
  duplicates and stale deliveries are no-ops and the merge is idempotent.
- Heartbeats follow the same rule. A heartbeat for a key with no card
  yet is parked in a pending buffer (newest wins) and attached the
  moment the card shows up.
- Cards and heartbeats dated more than MAX_CLOCK_SKEW past our clock
  are dropped before the merge.
- Online status is never stored; it is recomputed from the heartbeat
  age on every snapshot, so it decays without any new event.

All mutation happens in plain (non-async) methods on the event loop,
so each event is applied atomically.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from ..auth.identity import npub_encode
from .codec import (
    KIND_HEARTBEAT,
    KIND_METADATA,
    KIND_SERVICE_CARD,
    LABEL_NAMESPACE,
    Heartbeat,
    ServiceCard,
    Status,
    parse_heartbeat,
    parse_profile_picture,
    parse_service_card,
)
from .events import Event, EventParseError, Filter

logger = logging.getLogger(__name__)

LIVENESS_WINDOW = 900  # seconds
HEARTBEAT_LOOKBACK = 3600  # seconds
CARD_QUERY_LIMIT = 100
HEARTBEAT_QUERY_LIMIT = 500
MAX_CLOCK_SKEW = 300  # seconds an event may be ahead of our clock

Listener = Callable[[List["Agent"]], None]


def is_online(heartbeat: Optional[Heartbeat], now: float) -> bool:
    """True iff the heartbeat exists, is younger than the liveness window and not maintenance."""
    if heartbeat is None:
        return False
    if heartbeat.status == Status.MAINTENANCE:
        return False
    return now - heartbeat.created_at < LIVENESS_WINDOW


@dataclass
class Agent:
    """A service card plus its latest heartbeat, as of one snapshot."""
    card: ServiceCard
    heartbeat: Optional[Heartbeat] = None
    is_online: bool = False

    @property
    def pubkey(self) -> str:
        return self.card.pubkey

    @property
    def name(self) -> str:
        return self.card.name

    @property
    def last_seen(self) -> Optional[int]:
        return self.heartbeat.created_at if self.heartbeat else None

    def to_dict(self) -> dict:
        return {
            "pubkey": self.pubkey,
            "npub": npub_encode(self.pubkey),
            "name": self.card.name,
            "about": self.card.about,
            "card": self.card.to_dict(),
            "heartbeat": self.heartbeat.to_dict() if self.heartbeat else None,
            "status": self.heartbeat.status.value if self.heartbeat else None,
            "online": self.is_online,
            "last_seen": self.last_seen,
        }


class AgentDirectory:
    """
    Reconciles card and heartbeat streams into Agent records.

    Snapshots are suppressed (listeners are not called) until the
    initial catch-up has completed, so consumers never see a half
    loaded directory.
    """

    def __init__(self, pool=None, clock: Callable[[], float] = time.time):
        self.pool = pool
        self.clock = clock
        self.ready = False

        self._cards: Dict[str, ServiceCard] = {}
        self._heartbeats: Dict[str, Heartbeat] = {}
        self._pending: Dict[str, Heartbeat] = {}
        self._pictures: Dict[str, tuple] = {}  # pubkey -> (created_at, url)
        self._listeners: List[Listener] = []
        self._subscriptions = []

        self._events_applied = 0
        self._events_ignored = 0

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def apply_service_card(self, event: Event) -> bool:
        """Merge a service card event. Returns True if state changed."""
        card = parse_service_card(event)
        if self._from_future(card.created_at, card.name):
            return False
        held = self._cards.get(card.pubkey)
        if held is not None and card.created_at <= held.created_at:
            self._events_ignored += 1
            return False

        self._cards[card.pubkey] = card
        pending = self._pending.pop(card.pubkey, None)
        if pending is not None:
            self._merge_heartbeat(pending)
            logger.debug(f"Attached pending heartbeat to {card.name}")

        self._events_applied += 1
        self._notify()
        return True

    def apply_heartbeat(self, event: Event) -> bool:
        """Merge a heartbeat event. Returns True if state changed."""
        heartbeat = parse_heartbeat(event)
        if self._from_future(heartbeat.created_at, heartbeat.pubkey[:8]):
            return False

        if heartbeat.pubkey not in self._cards:
            pending = self._pending.get(heartbeat.pubkey)
            if pending is None or heartbeat.created_at > pending.created_at:
                self._pending[heartbeat.pubkey] = heartbeat
            self._prune_pending()
            return False

        changed = self._merge_heartbeat(heartbeat)
        if changed:
            self._events_applied += 1
            self._notify()
        else:
            self._events_ignored += 1
        return changed

    def apply_metadata(self, event: Event) -> bool:
        """Remember a profile picture as the avatar fallback."""
        picture = parse_profile_picture(event)
        held = self._pictures.get(event.pubkey)
        if picture is None or (held is not None and event.created_at <= held[0]):
            return False
        self._pictures[event.pubkey] = (event.created_at, picture)
        if event.pubkey in self._cards:
            self._notify()
        return True

    def handle_event(self, event: Event) -> None:
        """Route an incoming event; malformed events are skipped."""
        try:
            if event.kind == KIND_SERVICE_CARD:
                self.apply_service_card(event)
            elif event.kind == KIND_HEARTBEAT:
                self.apply_heartbeat(event)
            elif event.kind == KIND_METADATA:
                self.apply_metadata(event)
            else:
                logger.debug(f"Ignoring event of kind {event.kind}")
        except EventParseError as e:
            logger.warning(f"Skipping malformed event {event.id[:8]}: {e}")

    def _from_future(self, created_at: int, who: str) -> bool:
        ahead = created_at - self.clock()
        if ahead <= MAX_CLOCK_SKEW:
            return False
        logger.warning(f"Ignoring event from {who} dated {int(ahead)}s in the future")
        self._events_ignored += 1
        return True

    def _merge_heartbeat(self, heartbeat: Heartbeat) -> bool:
        held = self._heartbeats.get(heartbeat.pubkey)
        if held is not None and heartbeat.created_at <= held.created_at:
            return False
        self._heartbeats[heartbeat.pubkey] = heartbeat
        return True

    def _prune_pending(self) -> None:
        cutoff = self.clock() - HEARTBEAT_LOOKBACK
        for pubkey in [k for k, hb in self._pending.items() if hb.created_at < cutoff]:
            del self._pending[pubkey]

    def drain_pending(self) -> int:
        """Attach pending heartbeats whose card has arrived; drop expired ones."""
        matched = 0
        for pubkey in list(self._pending):
            if pubkey in self._cards:
                self._merge_heartbeat(self._pending.pop(pubkey))
                matched += 1
        self._prune_pending()
        if matched:
            logger.debug(f"Matched {matched} pending heartbeats")
        return matched

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _build_agent(self, card: ServiceCard, now: float) -> Agent:
        if not card.avatar and card.pubkey in self._pictures:
            card = replace(card, avatar=self._pictures[card.pubkey][1])
        heartbeat = self._heartbeats.get(card.pubkey)
        return Agent(card=card, heartbeat=heartbeat, is_online=is_online(heartbeat, now))

    def snapshot(self, now: Optional[float] = None) -> List[Agent]:
        """All known agents, in first-seen order, with liveness computed at ``now``."""
        now = self.clock() if now is None else now
        return [self._build_agent(card, now) for card in self._cards.values()]

    def get(self, pubkey: str, now: Optional[float] = None) -> Optional[Agent]:
        """One agent by hex public key."""
        card = self._cards.get(pubkey.lower())
        if card is None:
            return None
        return self._build_agent(card, self.clock() if now is None else now)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        if not self.ready or not self._listeners:
            return
        agents = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(agents)
            except Exception as e:
                logger.error(f"Directory listener failed: {e}")

    # ------------------------------------------------------------------
    # Relay plumbing
    # ------------------------------------------------------------------

    def card_filter(self, **kwargs) -> Filter:
        return Filter(kinds=[KIND_SERVICE_CARD], tags={"L": [LABEL_NAMESPACE]}, **kwargs)

    def heartbeat_filter(self, **kwargs) -> Filter:
        return Filter(kinds=[KIND_HEARTBEAT], tags={"L": [LABEL_NAMESPACE]}, **kwargs)

    async def load(self) -> int:
        """
        One-shot catch-up: query cards and recent heartbeats, merge them
        and mark the directory ready. Returns the catch-up timestamp.
        """
        started_at = int(self.clock())

        cards, heartbeats = await asyncio.gather(
            self.pool.query([self.card_filter(limit=CARD_QUERY_LIMIT)]),
            self.pool.query([self.heartbeat_filter(
                since=started_at - HEARTBEAT_LOOKBACK, limit=HEARTBEAT_QUERY_LIMIT
            )]),
        )
        for event in cards:
            self.handle_event(event)
        for event in heartbeats:
            self.handle_event(event)

        self.drain_pending()
        self.ready = True
        logger.info(f"Directory loaded: {len(self._cards)} agents, {len(self._heartbeats)} heartbeats")
        self._notify()

        await self._fetch_profile_pictures()
        return started_at

    async def start(self) -> None:
        """Catch up from the relays, then follow live updates."""
        started_at = await self.load()
        self._subscriptions.append(
            await self.pool.subscribe([self.card_filter(since=started_at)], self.handle_event)
        )
        self._subscriptions.append(
            await self.pool.subscribe([self.heartbeat_filter(since=started_at)], self.handle_event)
        )

    async def _fetch_profile_pictures(self) -> None:
        missing = [pk for pk, card in self._cards.items() if not card.avatar]
        if not missing:
            return
        events = await self.pool.query([Filter(kinds=[KIND_METADATA], authors=missing)])
        for event in events:
            self.handle_event(event)

    async def stop(self) -> None:
        """Close live subscriptions."""
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()

    def stats(self) -> dict:
        now = self.clock()
        agents = self.snapshot(now)
        return {
            "ready": self.ready,
            "agents": len(agents),
            "online": sum(1 for a in agents if a.is_online),
            "pending_heartbeats": len(self._pending),
            "events_applied": self._events_applied,
            "events_ignored": self._events_ignored,
        }
