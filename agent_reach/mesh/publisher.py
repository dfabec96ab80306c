"""
Outbound path: service card, heartbeats and direct messages.

Every publish fans out to the whole relay set and completes when all
attempts have settled. Relay failures are logged, never raised; the
only hard failure is a direct message that cannot be encrypted or
addressed.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from ..auth.identity import Identity, InvalidPeerIdError
from ..auth.nip04 import EncryptionError
from ..network.relay import PublishReport
from ..state import DEFAULT_HEARTBEAT_INTERVAL, LocalCardState
from .codec import (
    KIND_HEARTBEAT,
    KIND_SERVICE_CARD,
    Protocol,
    ServiceCard,
    Status,
    build_direct_message_event,
    build_heartbeat_event,
    build_service_card_event,
    card_id_for,
)

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_NAME = "Agent"

Sleep = Callable[[float], Awaitable[None]]


class SendError(Exception):
    """Raised when a direct message cannot be sent."""


class PeriodicTask:
    """
    A single cancellable periodic task.

    The callback runs every ``interval`` seconds, starting one interval
    after ``start()``. ``restart()`` stops the running loop (and waits
    for it) before starting a new one, so two loops never overlap.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "periodic",
        sleep: Sleep = asyncio.sleep,
    ):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop (no-op if already running)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def restart(self, interval: Optional[float] = None) -> None:
        """Stop, optionally change the interval, and start again."""
        await self.stop()
        if interval is not None:
            self.interval = interval
        self.start()

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                await self.callback()
            except Exception as e:
                logger.warning(f"{self.name} tick failed: {e}")


class Publisher:
    """
    Publishes our own card and heartbeats, and sends direct messages.

    ``card_state`` is shared with the service; updates to it are picked
    up the next time the card is built.
    """

    def __init__(
        self,
        identity: Identity,
        pool,
        card_state: LocalCardState,
        profile_name: Optional[str] = None,
        profile_about: Optional[str] = None,
        dm_enabled: bool = True,
        sleep: Sleep = asyncio.sleep,
    ):
        self.identity = identity
        self.pool = pool
        self.card_state = card_state
        self.profile_name = profile_name
        self.profile_about = profile_about
        self.dm_enabled = dm_enabled
        self.card_id = card_id_for(identity.public_key_hex)
        self._last_created: Dict[int, int] = {}
        self.heartbeat_timer = PeriodicTask(
            card_state.heartbeat_interval or DEFAULT_HEARTBEAT_INTERVAL,
            self._heartbeat_tick,
            name="heartbeat",
            sleep=sleep,
        )

    def _timestamp(self, kind: int) -> int:
        """Strictly increasing created_at per replaceable kind; relays keep only the newest."""
        created_at = max(int(time.time()), self._last_created.get(kind, 0) + 1)
        self._last_created[kind] = created_at
        return created_at

    def build_service_card(self) -> ServiceCard:
        """Build our card from local state and configured profile defaults."""
        state = self.card_state

        protocols = []
        if self.dm_enabled:
            protocols.append(Protocol(type="dm", endpoint=",".join(self.pool.relays)))
        protocols.extend(p for p in state.protocols if p.type != "dm" or not self.dm_enabled)

        name = state.name if state.name is not None else self.profile_name
        about = state.about if state.about is not None else self.profile_about

        return ServiceCard(
            card_id=self.card_id,
            pubkey=self.identity.public_key_hex,
            name=name or DEFAULT_PROFILE_NAME,
            about=about or "",
            capabilities=list(state.capabilities),
            protocols=protocols,
            color=state.color,
            avatar=state.avatar,
            banner=state.banner,
        )

    async def publish_service_card(self) -> PublishReport:
        """Sign and publish our current card."""
        event = build_service_card_event(
            self.identity, self.build_service_card(), created_at=self._timestamp(KIND_SERVICE_CARD)
        )
        report = await self.pool.publish(event)
        logger.info(
            f"Published service card {self.card_id} "
            f"({len(report.accepted)}/{len(report.results)} relays)"
        )
        return report

    async def send_heartbeat(self, status: Status = Status.AVAILABLE) -> PublishReport:
        """Sign and publish a heartbeat."""
        event = build_heartbeat_event(
            self.identity, self.card_id, status, created_at=self._timestamp(KIND_HEARTBEAT)
        )
        report = await self.pool.publish(event)
        logger.debug(f"Sent {status.value} heartbeat to {len(report.accepted)} relays")
        return report

    async def send_direct_message(self, recipient: str, plaintext: str) -> str:
        """
        Encrypt and publish a direct message.

        Returns:
            The event id of the published message

        Raises:
            SendError: If the recipient is invalid or encryption fails
        """
        try:
            event = build_direct_message_event(self.identity, recipient, plaintext)
        except InvalidPeerIdError as e:
            raise SendError(f"Invalid recipient: {e}") from e
        except EncryptionError as e:
            raise SendError(f"Encryption failed: {e}") from e

        report = await self.pool.publish(event)
        if not report.any_accepted:
            logger.warning(f"DM {event.id[:8]} was not accepted by any relay")
        return event.id

    async def _heartbeat_tick(self) -> None:
        await self.send_heartbeat(Status.AVAILABLE)

    async def start_heartbeats(self) -> None:
        """Send an immediate available heartbeat, then start the timer."""
        await self.send_heartbeat(Status.AVAILABLE)
        await self.heartbeat_timer.restart(self.card_state.heartbeat_interval)
        logger.info(f"Heartbeat every {self.card_state.heartbeat_interval}s")

    async def stop_heartbeats(self) -> None:
        await self.heartbeat_timer.stop()

    async def go_offline(self) -> None:
        """Stop the timer and announce maintenance."""
        await self.heartbeat_timer.stop()
        await self.send_heartbeat(Status.MAINTENANCE)
        logger.info("Going offline - heartbeats paused")

    async def go_online(self) -> None:
        """Announce availability and resume the timer."""
        await self.start_heartbeats()
        logger.info("Coming online - heartbeats resumed")
