"""
Shared fixtures: an in-memory relay pool and a manually driven sleep.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from agent_reach.auth.identity import Identity
from agent_reach.config import Config
from agent_reach.mesh.events import Event, Filter
from agent_reach.network.relay import PublishReport, PublishResult, resolve_filters

NOW = 1_700_000_000

RELAYS = ["wss://relay.one", "wss://relay.two"]


class FakeSubscription:
    def __init__(self, pool: "FakeRelayPool", filters, on_event):
        self.pool = pool
        self.source = filters
        self.on_event = on_event
        self.closed = False

    @property
    def filters(self) -> List[Filter]:
        return resolve_filters(self.source)

    def matches(self, event: Event) -> bool:
        return any(f.matches(event) for f in self.filters)

    async def close(self) -> None:
        self.closed = True
        if self in self.pool.subscriptions:
            self.pool.subscriptions.remove(self)


class FakeRelayPool:
    """
    Stands in for RelayPool.

    Every relay shares one event store. Published events are stored and
    delivered to matching live subscriptions, like a relay echoing them.
    """

    def __init__(self, relays: Optional[List[str]] = None):
        self.relays = list(relays or RELAYS)
        self.stored: Dict[str, Event] = {}
        self.published: List[Event] = []
        self.received: Dict[str, List[Event]] = {url: [] for url in self.relays}
        self.rejecting = set()
        self.subscriptions: List[FakeSubscription] = []
        self.queries: List[List[Filter]] = []
        self.closed = False

    async def publish(self, event: Event) -> PublishReport:
        self.published.append(event)
        report = PublishReport(event_id=event.id)
        for url in self.relays:
            accepted = url not in self.rejecting
            if accepted:
                self.received[url].append(event)
            report.results.append(PublishResult(url, accepted, "" if accepted else "blocked"))
        if report.any_accepted:
            self.inject(event)
        return report

    async def query(self, filters, timeout=None) -> List[Event]:
        self.queries.append(list(filters))
        return [e for e in self.stored.values() if any(f.matches(e) for f in filters)]

    async def subscribe(self, filters, on_event) -> FakeSubscription:
        sub = FakeSubscription(self, filters, on_event)
        self.subscriptions.append(sub)
        return sub

    def add(self, *events: Event) -> None:
        """Store events without delivering them to live subscriptions."""
        for event in events:
            self.stored[event.id] = event

    def inject(self, event: Event) -> None:
        """Store an event and deliver it to matching live subscriptions."""
        self.stored[event.id] = event
        for sub in list(self.subscriptions):
            if sub.matches(event):
                sub.on_event(event)

    def reconnect(self) -> None:
        """Re-issue every live REQ, as after a dropped connection.

        Filters are resolved again and every stored match is delivered,
        oldest first, the way a relay answers a fresh REQ.
        """
        for sub in list(self.subscriptions):
            for event in sorted(self.stored.values(), key=lambda e: e.created_at):
                if sub.matches(event):
                    sub.on_event(event)

    def published_kind(self, kind: int) -> List[Event]:
        return [e for e in self.published if e.kind == kind]

    def status(self) -> List[dict]:
        return [{"url": url, "connected": True, "connected_at": None} for url in self.relays]

    async def close(self) -> None:
        for sub in list(self.subscriptions):
            await sub.close()
        self.closed = True


class ManualSleep:
    """
    An asyncio.sleep replacement that only returns when fired.

    ``await sleep(600)`` parks the caller until ``fire(600)`` (or
    ``fire()``) is called.
    """

    def __init__(self):
        self._waiters = []

    async def __call__(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        entry = (delay, future)
        self._waiters.append(entry)
        try:
            await future
        finally:
            self._waiters.remove(entry)

    @property
    def pending(self) -> List[float]:
        return [delay for delay, future in self._waiters if not future.done()]

    async def fire(self, delay: Optional[float] = None) -> int:
        fired = 0
        for d, future in list(self._waiters):
            if (delay is None or d == delay) and not future.done():
                future.set_result(None)
                fired += 1
        await settle()
        return fired


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def alice():
    return Identity.generate()


@pytest.fixture
def bob():
    return Identity.generate()


@pytest.fixture
def carol():
    return Identity.generate()


@pytest.fixture
def pool():
    return FakeRelayPool()


@pytest.fixture
def manual_sleep():
    return ManualSleep()


@pytest.fixture
def make_config(tmp_path):
    def _make(identity: Identity, **overrides) -> Config:
        config = Config(
            data_dir=tmp_path / "agent",
            private_key=identity.secret_key_hex,
            relays=list(RELAYS),
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config
    return _make
