"""
Tests for the inbound DM gateway.
"""

import pytest

from agent_reach.host import LoggingHost
from agent_reach.mesh.codec import KIND_DIRECT_MESSAGE, build_direct_message_event
from agent_reach.mesh.dm import CURSOR_LOOKBACK, DedupLedger, DmGateway, format_injected_message
from agent_reach.mesh.events import sign_event
from agent_reach.state import SEEN_IDS_MAX, DmListenerState, DmStateStore

from conftest import NOW, FakeRelayPool, settle


@pytest.fixture
def host():
    return LoggingHost()


@pytest.fixture
def store(tmp_path):
    """DM state with the cursor a little before NOW."""
    store = DmStateStore(tmp_path)
    store.save(DmListenerState(last_seen_at=NOW - 120))
    return store


@pytest.fixture
def gateway(alice, bob, store, host):
    """Alice's gateway, accepting DMs from Bob only."""
    return DmGateway(alice, FakeRelayPool(), [bob.npub], store, host=host, session_key="s1")


class TestDedupLedger:
    """Tests for the bounded dedup set."""

    def test_add(self):
        """Test that ids are only added once."""
        ledger = DedupLedger()

        assert ledger.add("a")
        assert not ledger.add("a")
        assert "a" in ledger
        assert len(ledger) == 1

    def test_evicts_oldest(self):
        """Test that the oldest id is dropped at capacity."""
        ledger = DedupLedger(capacity=3, ids=["a", "b", "c"])
        ledger.add("d")

        assert "a" not in ledger
        assert ledger.ids() == ["b", "c", "d"]


class TestDelivery:
    """Tests for processing inbound DM events."""

    def test_allowed_sender(self, gateway, alice, bob, host):
        """Test that an allow-listed DM reaches the host session."""
        event = build_direct_message_event(bob, alice.public_key_hex, "can you help?", created_at=NOW)

        assert gateway.handle_event(event)

        session_key, text = host.events[-1]
        assert session_key == "s1"
        assert text == format_injected_message(bob.public_key_hex, "can you help?")
        assert text.startswith(f"[Nostr DM from {bob.npub}]")
        assert text.endswith("can you help?")
        assert host.wakes == 1

    def test_sender_not_allowed(self, gateway, alice, carol, host):
        """Test that strangers are dropped silently."""
        event = build_direct_message_event(carol, alice.public_key_hex, "spam", created_at=NOW)

        assert not gateway.handle_event(event)
        assert list(host.events) == []
        assert gateway.rejected == 1

    def test_duplicate_delivered_once(self, gateway, alice, bob, host):
        """Test that the same event from two relays is injected once."""
        event = build_direct_message_event(bob, alice.public_key_hex, "hi", created_at=NOW)

        assert gateway.handle_event(event)
        assert not gateway.handle_event(event)
        assert len(host.events) == 1

    def test_undecryptable(self, gateway, alice, bob, host):
        """Test that a payload that fails to decrypt is skipped."""
        event = sign_event(
            bob, KIND_DIRECT_MESSAGE,
            content="garbage?iv=AAAA",
            tags=[["p", alice.public_key_hex]],
            created_at=NOW,
        )

        assert not gateway.handle_event(event)
        assert gateway.failed == 1
        assert list(host.events) == []

    def test_own_message_skipped(self, alice, bob, store, host):
        """Test that our own outbound DMs are ignored even if allow-listed."""
        gateway = DmGateway(alice, FakeRelayPool(), [alice.npub, bob.npub], store, host=host)
        event = build_direct_message_event(alice, bob.public_key_hex, "hi", created_at=NOW)

        assert not gateway.handle_event(event)

    def test_not_addressed_to_us(self, gateway, bob, carol):
        """Test that a DM for someone else is ignored."""
        event = build_direct_message_event(bob, carol.public_key_hex, "hi", created_at=NOW)

        assert not gateway.handle_event(event)

    def test_other_kinds_ignored(self, gateway, bob):
        """Test that non-DM events are ignored."""
        assert not gateway.handle_event(sign_event(bob, 1, created_at=NOW))

    def test_without_host(self, alice, bob, store):
        """Test that DMs are logged when no host is attached."""
        gateway = DmGateway(alice, FakeRelayPool(), [bob.npub], store)
        event = build_direct_message_event(bob, alice.public_key_hex, "hi", created_at=NOW)

        assert gateway.handle_event(event)
        assert gateway.injected == 1

    def test_invalid_allow_list_entries(self, alice, bob, store):
        """Test that bad allow-list entries are skipped."""
        gateway = DmGateway(alice, FakeRelayPool(), ["nonsense", bob.public_key_hex.upper()], store)

        assert gateway.allow_list == {bob.public_key_hex}


class TestCursor:
    """Tests for the persisted cursor and dedup ids."""

    def test_cursor_advances(self, gateway, alice, bob, store):
        """Test that delivery moves the cursor and persists it."""
        gateway.state.last_seen_at = NOW - 1000
        event = build_direct_message_event(bob, alice.public_key_hex, "hi", created_at=NOW)

        gateway.handle_event(event)

        saved = store.load()
        assert saved.last_seen_at == NOW
        assert event.id in saved.seen_ids

    def test_cursor_never_moves_back(self, gateway, alice, bob):
        """Test that an older message does not rewind the cursor."""
        gateway.state.last_seen_at = NOW
        gateway.handle_event(build_direct_message_event(bob, alice.public_key_hex, "old", created_at=NOW - 50))

        assert gateway.state.last_seen_at == NOW

    def test_dedup_survives_restart(self, alice, bob, store, host):
        """Test that seen ids are reloaded after a restart."""
        event = build_direct_message_event(bob, alice.public_key_hex, "once", created_at=NOW)
        first = DmGateway(alice, FakeRelayPool(), [bob.npub], store, host=host)
        first.handle_event(event)
        first.save()

        second = DmGateway(alice, FakeRelayPool(), [bob.npub], store, host=host)

        assert not second.handle_event(event)
        assert len(host.events) == 1

    def test_subscription_filter(self, alice, bob, store):
        """Test that the subscription re-reads a short window before the cursor."""
        store.save(DmListenerState(last_seen_at=NOW))
        gateway = DmGateway(alice, FakeRelayPool(), [bob.npub], store)

        f = gateway.subscription_filter()

        assert f.kinds == [KIND_DIRECT_MESSAGE]
        assert f.authors == [bob.public_key_hex]
        assert f.tags == {"p": [alice.public_key_hex]}
        assert f.since == NOW - CURSOR_LOOKBACK


class TestReconnect:
    """Tests for replays after a relay connection is re-established."""

    def test_stale_event_skipped(self, gateway, alice, bob, host):
        """Test that events older than the cursor window never reach the ledger."""
        gateway.state.last_seen_at = NOW
        event = build_direct_message_event(bob, alice.public_key_hex, "old", created_at=NOW - CURSOR_LOOKBACK - 1)

        assert not gateway.handle_event(event)
        assert event.id not in gateway.ledger
        assert list(host.events) == []

    @pytest.mark.asyncio
    async def test_resubscribe_uses_current_cursor(self, alice, bob, store, manual_sleep):
        """Test that a re-issued REQ starts from the moved cursor."""
        pool = FakeRelayPool()
        gateway = DmGateway(alice, pool, [bob.npub], store, sleep=manual_sleep)
        await gateway.start()
        (sub,) = pool.subscriptions

        pool.inject(build_direct_message_event(bob, alice.npub, "hi", created_at=NOW + 500))

        assert sub.filters[0].since == NOW + 500 - CURSOR_LOOKBACK
        await gateway.stop()

    @pytest.mark.asyncio
    async def test_reconnect_after_ledger_wraps(self, alice, bob, store, host, manual_sleep):
        """Test that a reconnect does not re-deliver messages evicted from the ledger."""
        pool = FakeRelayPool()
        gateway = DmGateway(alice, pool, [bob.npub], store, host=host, sleep=manual_sleep)
        await gateway.start()

        count = SEEN_IDS_MAX + 1
        for i in range(count):
            pool.inject(build_direct_message_event(bob, alice.npub, f"m{i}", created_at=NOW + i))
        assert gateway.injected == count

        pool.reconnect()

        assert gateway.injected == count
        await gateway.stop()


class TestLifecycle:
    """Tests for starting and stopping the gateway."""

    @pytest.mark.asyncio
    async def test_receives_from_pool(self, alice, bob, store, host, manual_sleep):
        """Test end-to-end delivery through a subscription."""
        pool = FakeRelayPool()
        gateway = DmGateway(alice, pool, [bob.npub], store, host=host, sleep=manual_sleep)
        await gateway.start()

        pool.inject(build_direct_message_event(bob, alice.npub, "via relay"))

        assert gateway.active
        assert host.events[-1][1].endswith("via relay")

        await gateway.stop()
        assert not gateway.active
        assert pool.subscriptions == []

    @pytest.mark.asyncio
    async def test_save_is_debounced(self, alice, bob, tmp_path, host, manual_sleep):
        """Test that state is written after the debounce delay, once."""
        store = DmStateStore(tmp_path / "fresh")
        pool = FakeRelayPool()
        gateway = DmGateway(alice, pool, [bob.npub], store, host=host, sleep=manual_sleep)
        await gateway.start()

        for text in ("one", "two", "three"):
            pool.inject(build_direct_message_event(bob, alice.npub, text))
        await settle()

        assert not store.path.exists()
        assert manual_sleep.pending == [gateway.save_delay]

        await manual_sleep.fire(gateway.save_delay)

        assert len(store.load().seen_ids) == 3
        await gateway.stop()

    @pytest.mark.asyncio
    async def test_empty_allow_list(self, alice, store):
        """Test that an empty allow-list leaves the gateway idle."""
        pool = FakeRelayPool()
        gateway = DmGateway(alice, pool, [], store)

        await gateway.start()

        assert not gateway.active
        assert pool.subscriptions == []

    @pytest.mark.asyncio
    async def test_stop_flushes_state(self, alice, bob, store, host, manual_sleep):
        """Test that stop writes pending state immediately."""
        pool = FakeRelayPool()
        gateway = DmGateway(alice, pool, [bob.npub], store, host=host, sleep=manual_sleep)
        await gateway.start()
        pool.inject(build_direct_message_event(bob, alice.npub, "hi"))

        await gateway.stop()

        assert len(store.load().seen_ids) == 1
        assert manual_sleep.pending == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
