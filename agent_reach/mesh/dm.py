"""
Inbound direct messages.

The gateway subscribes for NIP-04 messages addressed to us from the
allow-listed senders, decrypts them and hands the plaintext to the host
runtime. Relays are asked to filter by author and recipient, and every
event is checked again here since a relay may ignore the filter.

Per event, in order:

1. Older than the cursor window? skip.
2. Already processed (dedup ledger)? skip.
3. Sent by us, or not addressed to us? skip.
4. Sender not allow-listed? drop silently (debug log only).
5. Decrypt; on failure log a warning and skip.
6. Advance the cursor, schedule a state save, inject, wake the host.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Iterable, List, Optional

from ..auth.identity import Identity, InvalidPeerIdError, normalize_peer_id, npub_encode
from ..auth.nip04 import DecryptionError, decrypt
from ..host import HostRuntime
from ..state import SEEN_IDS_MAX, DmStateStore
from .codec import KIND_DIRECT_MESSAGE, direct_message_recipients
from .events import Event, Filter

logger = logging.getLogger(__name__)

CURSOR_LOOKBACK = 60  # seconds re-read before the persisted cursor
SAVE_DEBOUNCE = 5.0  # seconds


class DedupLedger:
    """Bounded, insertion-ordered set of processed event ids."""

    def __init__(self, capacity: int = SEEN_IDS_MAX, ids: Iterable[str] = ()):
        self.capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        for event_id in ids:
            self.add(event_id)

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, event_id: str) -> bool:
        """Record an id. Returns False if it was already present."""
        if event_id in self._ids:
            return False
        self._ids[event_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True

    def ids(self) -> List[str]:
        """Ids, oldest first."""
        return list(self._ids)


def format_injected_message(sender: str, plaintext: str) -> str:
    """Text handed to the agent session for one DM."""
    return f"[Nostr DM from {npub_encode(sender)}]\n{plaintext}"


class DmGateway:
    """Allow-listed, de-duplicated inbound DM delivery."""

    def __init__(
        self,
        identity: Identity,
        pool,
        allow_from: Iterable[str],
        store: DmStateStore,
        host: Optional[HostRuntime] = None,
        session_key: str = "agent:main:main",
        save_delay: float = SAVE_DEBOUNCE,
        sleep=asyncio.sleep,
    ):
        self.identity = identity
        self.pool = pool
        self.store = store
        self.host = host
        self.session_key = session_key
        self.save_delay = save_delay
        self._sleep = sleep

        self.allow_list = set()
        for entry in allow_from:
            try:
                self.allow_list.add(normalize_peer_id(entry))
            except InvalidPeerIdError as e:
                logger.warning(f"Ignoring allow-list entry {entry!r}: {e}")

        self.state = store.load()
        self.ledger = DedupLedger(ids=self.state.seen_ids)

        self._subscription = None
        self._save_task: Optional[asyncio.Task] = None

        self.injected = 0
        self.rejected = 0
        self.failed = 0

    @property
    def public_key(self) -> str:
        return self.identity.public_key_hex

    @property
    def active(self) -> bool:
        return self._subscription is not None

    @property
    def window_start(self) -> int:
        """Oldest created_at still accepted: the cursor minus the re-read lookback."""
        return max(0, self.state.last_seen_at - CURSOR_LOOKBACK)

    def subscription_filter(self) -> Filter:
        return Filter(
            kinds=[KIND_DIRECT_MESSAGE],
            authors=sorted(self.allow_list),
            tags={"p": [self.public_key]},
            since=self.window_start,
        )

    def _subscription_filters(self) -> List[Filter]:
        return [self.subscription_filter()]

    async def start(self) -> None:
        """Subscribe for DMs; stays idle if the allow-list is empty."""
        if not self.allow_list:
            logger.warning("DM allow-list is empty; inbound direct messages are disabled")
            return
        # rebuilt on every reconnect so the REQ starts from the current cursor
        self._subscription = await self.pool.subscribe(
            self._subscription_filters, self.handle_event
        )
        logger.info(f"Listening for DMs from {len(self.allow_list)} allowed senders")

    async def stop(self) -> None:
        """Close the subscription and flush state to disk."""
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        if self._save_task is not None:
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
            self._save_task = None
        self.save()

    def handle_event(self, event: Event) -> bool:
        """Process one DM event. Returns True if it was delivered."""
        if event.kind != KIND_DIRECT_MESSAGE:
            return False
        if event.created_at < self.window_start:
            return False
        if not self.ledger.add(event.id):
            return False

        if event.pubkey == self.public_key:
            return False
        if self.public_key not in direct_message_recipients(event):
            return False

        if event.pubkey not in self.allow_list:
            self.rejected += 1
            logger.debug(f"Dropping DM from non-allowed sender {event.pubkey[:12]}")
            return False

        try:
            plaintext = decrypt(self.identity.secret_key, event.pubkey, event.content)
        except DecryptionError as e:
            self.failed += 1
            logger.warning(f"Decrypt failed from {event.pubkey[:12]}: {e}")
            return False

        self.state.last_seen_at = max(self.state.last_seen_at, event.created_at)
        self._schedule_save()

        logger.info(f"DM from {event.pubkey[:12]}...: {plaintext[:80]}")
        self._inject(format_injected_message(event.pubkey, plaintext))
        self.injected += 1
        return True

    def _inject(self, text: str) -> None:
        if self.host is None:
            logger.info(f"No host runtime to deliver DM:\n{text}")
            return
        try:
            self.host.enqueue_system_event(text, self.session_key)
            self.host.request_wake("nostr-dm")
        except Exception as e:
            logger.error(f"Failed to inject DM into session: {e}")

    def _schedule_save(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.save()
            return
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = asyncio.create_task(self._save_later())

    async def _save_later(self) -> None:
        await self._sleep(self.save_delay)
        self.save()

    def save(self) -> None:
        """Persist cursor and seen ids; I/O errors are logged."""
        self.state.seen_ids = self.ledger.ids()
        try:
            self.store.save(self.state)
        except OSError as e:
            logger.error(f"Failed to save DM state: {e}")

    def stats(self) -> dict:
        return {
            "active": self.active,
            "allowed_senders": len(self.allow_list),
            "last_seen_at": self.state.last_seen_at,
            "seen_ids": len(self.ledger),
            "injected": self.injected,
            "rejected": self.rejected,
            "decrypt_failed": self.failed,
        }
