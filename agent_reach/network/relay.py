"""
Nostr relay client and relay pool.

Speaks NIP-01 over WebSockets (aiohttp). The pool fans every operation
out to all configured relays with one task per relay, so a slow or
unreachable relay never holds up the others:

- publish: settle-all, per-relay results are logged, never raised
- query: collect until EOSE or timeout, merge and de-duplicate by id
- subscribe: long-lived, each relay reconnects on its own with backoff
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Union

import aiohttp

from ..mesh.events import Event, EventParseError, Filter

logger = logging.getLogger(__name__)

# Well-known public relays
DEFAULT_RELAYS = [
    "wss://relay.damus.io",
    "wss://nos.lol",
    "wss://relay.nostr.band",
]

# Reconnect backoff in seconds, the last value repeats
RECONNECT_DELAYS = [2, 4, 8, 16, 30]

CONNECT_TIMEOUT = 10.0
PUBLISH_TIMEOUT = 10.0
QUERY_TIMEOUT = 10.0

EventCallback = Callable[[Event], None]

# Fixed filters, or a factory called again on every (re)subscribe
FilterSource = Union[Sequence[Filter], Callable[[], Sequence[Filter]]]


def resolve_filters(filters: FilterSource) -> List[Filter]:
    return list(filters() if callable(filters) else filters)


@dataclass
class PublishResult:
    """Outcome of publishing one event to one relay."""
    relay: str
    accepted: bool
    message: str = ""

    def to_dict(self) -> dict:
        return {"relay": self.relay, "accepted": self.accepted, "message": self.message}


@dataclass
class PublishReport:
    """Settled results of publishing one event to the whole pool."""
    event_id: str
    results: List[PublishResult] = field(default_factory=list)

    @property
    def accepted(self) -> List[str]:
        return [r.relay for r in self.results if r.accepted]

    @property
    def failed(self) -> List[str]:
        return [r.relay for r in self.results if not r.accepted]

    @property
    def any_accepted(self) -> bool:
        return bool(self.accepted)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "accepted": self.accepted,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class RelayError(Exception):
    """Raised for relay connection and protocol failures."""


class _RelaySubscription:
    """Book-keeping for one REQ on one connection."""

    def __init__(self, sub_id: str, filters: Sequence[Filter], on_event: EventCallback):
        self.sub_id = sub_id
        self.filters = list(filters)
        self.on_event = on_event
        self.eose = asyncio.Event()
        self.closed = asyncio.Event()
        self.close_reason: Optional[str] = None


class RelayConnection:
    """
    A single NIP-01 relay connection.

    Usage:
        conn = RelayConnection("wss://relay.example.com")
        if await conn.connect():
            result = await conn.publish(event)
    """

    def __init__(self, url: str, verify_signatures: bool = True):
        self.url = url
        self.verify_signatures = verify_signatures
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.connected_at: Optional[float] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._reader: Optional[asyncio.Task] = None
        self._ok_waiters: Dict[str, asyncio.Future] = {}
        self._subscriptions: Dict[str, _RelaySubscription] = {}

    @property
    def connected(self) -> bool:
        return self.ws is not None and not self.ws.closed

    async def connect(self, timeout: float = CONNECT_TIMEOUT) -> bool:
        """
        Open the WebSocket and start the reader.

        Returns:
            True if connected, False otherwise
        """
        try:
            self._session = aiohttp.ClientSession()
            self.ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=30),
                timeout=timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Failed to connect to relay {self.url}: {e}")
            if self._session:
                await self._session.close()
                self._session = None
            self.ws = None
            return False

        self.connected_at = time.time()
        self._reader = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to relay: {self.url}")
        return True

    async def close(self) -> None:
        """Close the connection and release its resources."""
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self.ws and not self.ws.closed:
            await self.ws.close()
        if self._session:
            await self._session.close()
            self._session = None

        self._fail_pending("connection closed")

    async def _send(self, message: list) -> None:
        if not self.connected:
            raise RelayError(f"Not connected to {self.url}")
        try:
            await self.ws.send_str(json.dumps(message))
        except (ConnectionResetError, aiohttp.ClientError) as e:
            raise RelayError(f"Send to {self.url} failed: {e}") from e

    async def _read_loop(self) -> None:
        try:
            async for msg in self.ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"WebSocket error on {self.url}: {self.ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, ConnectionResetError) as e:
            logger.warning(f"Relay {self.url} dropped: {e}")
        finally:
            logger.info(f"Relay connection closed: {self.url}")
            self._fail_pending("connection lost")

    def _fail_pending(self, reason: str) -> None:
        for waiter in self._ok_waiters.values():
            if not waiter.done():
                waiter.set_result((False, reason))
        self._ok_waiters.clear()
        for sub in self._subscriptions.values():
            sub.close_reason = sub.close_reason or reason
            sub.closed.set()
        self._subscriptions.clear()

    def handle_message(self, raw: str) -> None:
        """Dispatch one relay-to-client message."""
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug(f"Non-JSON message from {self.url}")
            return
        if not isinstance(message, list) or not message or not isinstance(message[0], str):
            logger.debug(f"Unexpected message shape from {self.url}")
            return

        msg_type = message[0]

        if msg_type == "EVENT" and len(message) >= 3:
            sub = self._subscriptions.get(message[1])
            if sub is None:
                return
            try:
                event = Event.from_dict(message[2])
            except EventParseError as e:
                logger.debug(f"Dropping malformed event from {self.url}: {e}")
                return
            if self.verify_signatures and not event.verify():
                logger.warning(f"Dropping event {event.id[:8]} with bad id/signature from {self.url}")
                return
            if sub.filters and not any(f.matches(event) for f in sub.filters):
                logger.debug(f"Dropping event {event.id[:8]} outside filter from {self.url}")
                return
            try:
                sub.on_event(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.id[:8]}: {e}", exc_info=True)

        elif msg_type == "OK" and len(message) >= 3:
            waiter = self._ok_waiters.pop(message[1], None)
            if waiter and not waiter.done():
                text = message[3] if len(message) > 3 and isinstance(message[3], str) else ""
                waiter.set_result((message[2] is True, text))

        elif msg_type == "EOSE" and len(message) >= 2:
            sub = self._subscriptions.get(message[1])
            if sub:
                sub.eose.set()

        elif msg_type == "CLOSED" and len(message) >= 2:
            sub = self._subscriptions.pop(message[1], None)
            reason = message[2] if len(message) > 2 else ""
            logger.info(f"Relay {self.url} closed subscription {message[1]}: {reason}")
            if sub:
                sub.close_reason = str(reason)
                sub.eose.set()
                sub.closed.set()

        elif msg_type == "NOTICE" and len(message) >= 2:
            logger.info(f"Notice from {self.url}: {message[1]}")

        else:
            logger.debug(f"Ignoring {msg_type} message from {self.url}")

    async def publish(self, event: Event, timeout: float = PUBLISH_TIMEOUT) -> PublishResult:
        """Send an event and wait for the relay's OK."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._ok_waiters[event.id] = waiter
        try:
            await self._send(["EVENT", event.to_dict()])
            accepted, message = await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return PublishResult(self.url, False, "timed out waiting for OK")
        except RelayError as e:
            return PublishResult(self.url, False, str(e))
        finally:
            self._ok_waiters.pop(event.id, None)
        return PublishResult(self.url, accepted, message)

    async def subscribe(
        self,
        filters: Sequence[Filter],
        on_event: EventCallback,
        sub_id: Optional[str] = None,
    ) -> _RelaySubscription:
        """Open a REQ; events are delivered through on_event."""
        sub = _RelaySubscription(sub_id or f"ar-{secrets.token_hex(6)}", filters, on_event)
        self._subscriptions[sub.sub_id] = sub
        try:
            await self._send(["REQ", sub.sub_id] + [f.to_dict() for f in filters])
        except RelayError:
            self._subscriptions.pop(sub.sub_id, None)
            raise
        return sub

    async def unsubscribe(self, sub_id: str) -> None:
        """Send CLOSE for a subscription (best effort)."""
        sub = self._subscriptions.pop(sub_id, None)
        if sub:
            sub.closed.set()
        if self.connected:
            try:
                await self._send(["CLOSE", sub_id])
            except RelayError as e:
                logger.debug(f"CLOSE {sub_id} on {self.url} failed: {e}")


class PoolSubscription:
    """A live subscription spanning every relay in the pool."""

    def __init__(self, filters: FilterSource):
        self.source = filters
        self.tasks: List[asyncio.Task] = []
        self.active: Dict[str, str] = {}  # relay url -> sub id

    @property
    def filters(self) -> List[Filter]:
        """The filters the next (re)subscribe will send."""
        return resolve_filters(self.source)

    async def close(self) -> None:
        for task in self.tasks:
            task.cancel()
        for task in self.tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.tasks.clear()


class RelayPool:
    """
    Fan-out over a set of relays.

    Connections are opened lazily and reused. A relay that fails to
    connect is skipped for the current operation and tried again on
    the next one.
    """

    def __init__(
        self,
        relays: Sequence[str],
        verify_signatures: bool = True,
        publish_timeout: float = PUBLISH_TIMEOUT,
        query_timeout: float = QUERY_TIMEOUT,
        connect_timeout: float = CONNECT_TIMEOUT,
        sleep=asyncio.sleep,
    ):
        self.relays = list(dict.fromkeys(relays))
        self.verify_signatures = verify_signatures
        self.publish_timeout = publish_timeout
        self.query_timeout = query_timeout
        self.connect_timeout = connect_timeout
        self._sleep = sleep
        self._connections: Dict[str, RelayConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._subscriptions: List[PoolSubscription] = []

    async def _connection(self, url: str) -> Optional[RelayConnection]:
        lock = self._locks.setdefault(url, asyncio.Lock())
        async with lock:
            conn = self._connections.get(url)
            if conn and conn.connected:
                return conn
            if conn:
                await conn.close()
            conn = RelayConnection(url, verify_signatures=self.verify_signatures)
            if not await conn.connect(timeout=self.connect_timeout):
                self._connections.pop(url, None)
                return None
            self._connections[url] = conn
            return conn

    async def _publish_one(self, url: str, event: Event) -> PublishResult:
        conn = await self._connection(url)
        if conn is None:
            return PublishResult(url, False, "unreachable")
        return await conn.publish(event, timeout=self.publish_timeout)

    async def publish(self, event: Event) -> PublishReport:
        """Publish to every relay and wait for all attempts to settle."""
        outcomes = await asyncio.gather(
            *(self._publish_one(url, event) for url in self.relays),
            return_exceptions=True,
        )
        report = PublishReport(event_id=event.id)
        for url, outcome in zip(self.relays, outcomes):
            if isinstance(outcome, BaseException):
                report.results.append(PublishResult(url, False, str(outcome)))
            else:
                report.results.append(outcome)

        for result in report.results:
            if not result.accepted:
                logger.warning(f"Publish of {event.id[:8]} to {result.relay} failed: {result.message}")
        logger.debug(
            f"Published kind {event.kind} {event.id[:8]} to "
            f"{len(report.accepted)}/{len(self.relays)} relays"
        )
        return report

    async def _query_one(self, url: str, filters: Sequence[Filter], timeout: float) -> List[Event]:
        conn = await self._connection(url)
        if conn is None:
            return []
        events: List[Event] = []
        sub = await conn.subscribe(filters, events.append)
        try:
            await asyncio.wait_for(sub.eose.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Query on {url} timed out with {len(events)} events")
        finally:
            await conn.unsubscribe(sub.sub_id)
        return events

    async def query(self, filters: Sequence[Filter], timeout: Optional[float] = None) -> List[Event]:
        """Run a one-shot query on all relays, merged and de-duplicated by id."""
        timeout = self.query_timeout if timeout is None else timeout
        outcomes = await asyncio.gather(
            *(self._query_one(url, filters, timeout) for url in self.relays),
            return_exceptions=True,
        )
        merged: Dict[str, Event] = {}
        for url, outcome in zip(self.relays, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Query on {url} failed: {outcome}")
                continue
            for event in outcome:
                merged.setdefault(event.id, event)
        return list(merged.values())

    async def _subscription_loop(
        self,
        url: str,
        on_event: EventCallback,
        handle: PoolSubscription,
    ) -> None:
        attempt = 0
        while True:
            conn = await self._connection(url)
            sub = None
            if conn is not None:
                try:
                    sub = await conn.subscribe(handle.filters, on_event)
                except RelayError as e:
                    logger.warning(f"Subscribe on {url} failed: {e}")

            if sub is not None:
                attempt = 0
                handle.active[url] = sub.sub_id
                try:
                    await sub.closed.wait()
                except asyncio.CancelledError:
                    await conn.unsubscribe(sub.sub_id)
                    raise
                finally:
                    handle.active.pop(url, None)
                logger.info(f"Subscription on {url} ended ({sub.close_reason}), reconnecting")

            delay = RECONNECT_DELAYS[min(attempt, len(RECONNECT_DELAYS) - 1)]
            attempt += 1
            logger.debug(f"Resubscribing on {url} in {delay}s")
            await self._sleep(delay)

    async def subscribe(self, filters: FilterSource, on_event: EventCallback) -> PoolSubscription:
        """
        Open a live subscription on every relay.

        ``filters`` may be a callable; it is called again each time a relay
        is (re)subscribed, so a REQ after a reconnect can start from a
        cursor that moved since the first one.
        """
        handle = PoolSubscription(filters)
        for url in self.relays:
            handle.tasks.append(
                asyncio.create_task(self._subscription_loop(url, on_event, handle))
            )
        self._subscriptions.append(handle)
        return handle

    def status(self) -> List[dict]:
        """Connection state of every relay."""
        result = []
        for url in self.relays:
            conn = self._connections.get(url)
            result.append({
                "url": url,
                "connected": bool(conn and conn.connected),
                "connected_at": conn.connected_at if conn else None,
            })
        return result

    async def close(self) -> None:
        """Cancel subscriptions and close every connection."""
        for handle in self._subscriptions:
            await handle.close()
        self._subscriptions.clear()

        for conn in list(self._connections.values()):
            await conn.close()
        self._connections.clear()
        logger.debug("Relay pool closed")
