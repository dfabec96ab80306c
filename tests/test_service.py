"""
Tests for the publisher, heartbeat timer and the service handle.
"""

import asyncio
import json

import pytest

from agent_reach.auth.identity import InvalidKeyError
from agent_reach.auth.nip04 import decrypt
from agent_reach.host import LoggingHost
from agent_reach.mesh.codec import (
    KIND_DIRECT_MESSAGE,
    KIND_HEARTBEAT,
    KIND_SERVICE_CARD,
    Status,
    build_direct_message_event,
    parse_heartbeat,
    parse_service_card,
)
from agent_reach.mesh.publisher import PeriodicTask, Publisher, SendError
from agent_reach import service as service_module
from agent_reach.service import AgentReachService, ServiceState, parse_capability
from agent_reach.state import CardStateStore, LocalCardState

from conftest import FakeRelayPool, settle


def heartbeats(pool):
    return [parse_heartbeat(e).status for e in pool.published_kind(KIND_HEARTBEAT)]


class StalledRelayPool(FakeRelayPool):
    """A pool whose publishes hang once ``stalled`` is set."""

    stalled = False

    async def publish(self, event):
        if self.stalled:
            await asyncio.Event().wait()
        return await super().publish(event)


class TestPeriodicTask:
    """Tests for the single heartbeat timer."""

    @pytest.mark.asyncio
    async def test_ticks_after_interval(self, manual_sleep):
        """Test that the callback runs once per interval, not immediately."""
        ticks = []

        async def tick():
            ticks.append(1)

        task = PeriodicTask(600, tick, sleep=manual_sleep)
        task.start()
        await settle()

        assert ticks == []
        assert manual_sleep.pending == [600]

        await manual_sleep.fire(600)
        await manual_sleep.fire(600)

        assert len(ticks) == 2
        await task.stop()
        assert not task.running

    @pytest.mark.asyncio
    async def test_restart_never_overlaps(self, manual_sleep):
        """Test that restart replaces the loop instead of adding one."""
        async def tick():
            pass

        task = PeriodicTask(600, tick, sleep=manual_sleep)
        task.start()
        await settle()
        await task.restart(30)
        await settle()

        assert manual_sleep.pending == [30]
        await task.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manual_sleep):
        """Test that starting twice keeps one loop."""
        async def tick():
            pass

        task = PeriodicTask(600, tick, sleep=manual_sleep)
        task.start()
        task.start()
        await settle()

        assert manual_sleep.pending == [600]
        await task.stop()

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_running(self, manual_sleep):
        """Test that a failing callback does not kill the loop."""
        async def tick():
            raise RuntimeError("relay down")

        task = PeriodicTask(10, tick, sleep=manual_sleep)
        task.start()
        await settle()
        await manual_sleep.fire()

        assert task.running
        assert manual_sleep.pending == [10]
        await task.stop()


class TestPublisher:
    """Tests for building and publishing our own events."""

    def test_build_card(self, alice):
        """Test that the card merges local state and profile defaults."""
        pool = FakeRelayPool()
        state = LocalCardState(capabilities=[parse_capability("coding:Writes code")])
        publisher = Publisher(alice, pool, state, profile_name="Profile Name", profile_about="About")

        card = publisher.build_service_card()

        assert card.card_id == alice.public_key_hex[:8] + "-v1"
        assert card.name == "Profile Name"
        assert card.capabilities[0].id == "coding"
        assert card.protocols[0].type == "dm"
        assert card.protocols[0].endpoint == ",".join(pool.relays)

    def test_local_name_wins(self, alice):
        """Test that a name set on the card overrides the profile."""
        state = LocalCardState(name="Card Name")
        publisher = Publisher(alice, FakeRelayPool(), state, profile_name="Profile Name")

        assert publisher.build_service_card().name == "Card Name"

    def test_no_dm_protocol_when_disabled(self, alice):
        """Test that dm is only advertised when enabled."""
        publisher = Publisher(alice, FakeRelayPool(), LocalCardState(), dm_enabled=False)

        assert publisher.build_service_card().protocols == []

    @pytest.mark.asyncio
    async def test_publish_reaches_every_relay(self, alice):
        """Test fan-out to the whole relay set."""
        pool = FakeRelayPool()
        publisher = Publisher(alice, pool, LocalCardState())

        report = await publisher.publish_service_card()

        assert report.accepted == pool.relays
        for url in pool.relays:
            assert [e.kind for e in pool.received[url]] == [KIND_SERVICE_CARD]

    @pytest.mark.asyncio
    async def test_partial_failure_is_reported(self, alice):
        """Test that one rejecting relay does not fail the publish."""
        pool = FakeRelayPool()
        pool.rejecting.add(pool.relays[1])
        publisher = Publisher(alice, pool, LocalCardState())

        report = await publisher.send_heartbeat()

        assert report.accepted == [pool.relays[0]]
        assert report.failed == [pool.relays[1]]

    @pytest.mark.asyncio
    async def test_send_direct_message(self, alice, bob):
        """Test encrypting and publishing a DM."""
        pool = FakeRelayPool()
        publisher = Publisher(alice, pool, LocalCardState())

        event_id = await publisher.send_direct_message(bob.npub, "hello")

        event = pool.published_kind(KIND_DIRECT_MESSAGE)[0]
        assert event.id == event_id
        assert decrypt(bob.secret_key, alice.public_key_hex, event.content) == "hello"

    @pytest.mark.asyncio
    async def test_send_to_invalid_recipient(self, alice):
        """Test that a bad recipient raises SendError."""
        publisher = Publisher(alice, FakeRelayPool(), LocalCardState())

        with pytest.raises(SendError):
            await publisher.send_direct_message("bob", "hello")


class TestServiceLifecycle:
    """Tests for starting and stopping the service."""

    @pytest.mark.asyncio
    async def test_start(self, alice, make_config, manual_sleep):
        """Test that start publishes the card and an available heartbeat."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)

        await service.start()

        assert service.state == ServiceState.RUNNING
        assert len(pool.published_kind(KIND_SERVICE_CARD)) == 1
        assert heartbeats(pool) == [Status.AVAILABLE]
        assert service.publisher.heartbeat_timer.running
        await service.stop()

    @pytest.mark.asyncio
    async def test_own_agent_is_discoverable(self, alice, make_config, manual_sleep):
        """Test that our own card shows up in the directory."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        result = service.get_agent(alice.npub)

        assert result.success
        assert result.data.is_online
        await service.stop()

    @pytest.mark.asyncio
    async def test_invalid_key_is_fatal(self, alice, make_config):
        """Test that a bad key stops start() with InvalidKeyError."""
        service = AgentReachService(make_config(alice, private_key="nope"), pool=FakeRelayPool())

        with pytest.raises(InvalidKeyError):
            await service.start()
        assert service.state == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_announces_maintenance(self, alice, make_config, manual_sleep):
        """Test that shutdown sends maintenance last and closes the pool."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        await service.stop()

        assert heartbeats(pool)[-1] == Status.MAINTENANCE
        assert pool.closed
        assert not service.publisher.heartbeat_timer.running
        assert service.state == ServiceState.STOPPED
        assert manual_sleep.pending == []

    @pytest.mark.asyncio
    async def test_stop_with_stalled_relays(self, alice, make_config, manual_sleep, monkeypatch):
        """Test that a maintenance heartbeat no relay answers cannot block shutdown."""
        monkeypatch.setattr(service_module, "SHUTDOWN_HEARTBEAT_TIMEOUT", 0.05)
        pool = StalledRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()
        pool.stalled = True

        await service.stop()

        assert pool.closed
        assert service.state == ServiceState.STOPPED
        assert heartbeats(pool)[-1] == Status.AVAILABLE

    @pytest.mark.asyncio
    async def test_start_offline(self, alice, make_config, manual_sleep):
        """Test that a persisted offline state skips heartbeats."""
        config = make_config(alice)
        CardStateStore(config.state_dir).save(LocalCardState(online=False))
        pool = FakeRelayPool()
        service = AgentReachService(config, pool=pool, sleep=manual_sleep)

        await service.start()

        assert heartbeats(pool) == []
        assert not service.publisher.heartbeat_timer.running
        await service.stop()

    @pytest.mark.asyncio
    async def test_dm_gateway_started(self, alice, bob, make_config, manual_sleep):
        """Test that inbound DMs reach the host while running."""
        host = LoggingHost()
        pool = FakeRelayPool()
        service = AgentReachService(
            make_config(alice, allow_from=[bob.npub]), host=host, pool=pool, sleep=manual_sleep
        )
        await service.start()

        pool.inject(build_direct_message_event(bob, alice.npub, "hello alice"))

        assert host.events[-1][1].endswith("hello alice")
        assert service.status()["dm"]["injected"] == 1
        await service.stop()


class TestHeartbeatSchedule:
    """Tests for heartbeats over time and on/offline transitions."""

    @pytest.mark.asyncio
    async def test_heartbeat_every_interval(self, alice, make_config, manual_sleep):
        """Test one heartbeat per relay each interval."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        await manual_sleep.fire(600)

        assert heartbeats(pool) == [Status.AVAILABLE, Status.AVAILABLE]
        for url in pool.relays:
            assert len([e for e in pool.received[url] if e.kind == KIND_HEARTBEAT]) == 2
        await service.stop()

    @pytest.mark.asyncio
    async def test_go_offline_and_back(self, alice, make_config, manual_sleep):
        """Test the offline then online transitions."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        result = await service.update_service_card(online=False)

        assert result.success
        assert heartbeats(pool) == [Status.AVAILABLE, Status.MAINTENANCE]
        assert not service.publisher.heartbeat_timer.running
        assert await manual_sleep.fire(600) == 0
        assert heartbeats(pool) == [Status.AVAILABLE, Status.MAINTENANCE]

        await service.update_service_card(online=True)

        assert heartbeats(pool) == [Status.AVAILABLE, Status.MAINTENANCE, Status.AVAILABLE]
        assert service.publisher.heartbeat_timer.running
        await service.stop()

    @pytest.mark.asyncio
    async def test_offline_twice_is_quiet(self, alice, make_config, manual_sleep):
        """Test that repeating online=False sends no extra heartbeat."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        await service.update_service_card(online=False)
        await service.update_service_card(online=False)

        assert heartbeats(pool).count(Status.MAINTENANCE) == 1
        await service.stop()

    @pytest.mark.asyncio
    async def test_interval_change_restarts_timer(self, alice, make_config, manual_sleep):
        """Test that a new interval takes effect immediately."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        await service.update_service_card(heartbeat_interval=60)
        await settle()

        assert manual_sleep.pending == [60]
        await manual_sleep.fire(60)
        assert heartbeats(pool) == [Status.AVAILABLE, Status.AVAILABLE]
        await service.stop()


class TestServiceOperations:
    """Tests for the user-facing operations."""

    @pytest.mark.asyncio
    async def test_update_capabilities(self, alice, make_config, manual_sleep):
        """Test replacing capabilities, persisting and republishing."""
        config = make_config(alice)
        pool = FakeRelayPool()
        service = AgentReachService(config, pool=pool, sleep=manual_sleep)
        await service.start()

        result = await service.update_service_card(
            capabilities=["research:Web research", "summarize"], name="Researcher"
        )

        assert result.success
        assert "research, summarize" in result.message
        assert result.data["relays"] == pool.relays

        latest = parse_service_card(pool.published_kind(KIND_SERVICE_CARD)[-1])
        assert [c.id for c in latest.capabilities] == ["research", "summarize"]
        assert latest.capabilities[0].description == "Web research"
        assert latest.name == "Researcher"

        saved = CardStateStore(config.state_dir).load()
        assert [c.id for c in saved.capabilities] == ["research", "summarize"]
        await service.stop()

    @pytest.mark.asyncio
    async def test_update_requires_running(self, alice, make_config):
        """Test that updates fail cleanly before start."""
        service = AgentReachService(make_config(alice), pool=FakeRelayPool())

        result = await service.update_service_card(name="x")

        assert not result.success
        assert "not running" in result.message

    @pytest.mark.asyncio
    async def test_update_rejects_bad_interval(self, alice, make_config, manual_sleep):
        """Test that non-positive intervals are refused."""
        service = AgentReachService(make_config(alice), pool=FakeRelayPool(), sleep=manual_sleep)
        await service.start()

        result = await service.update_service_card(heartbeat_interval=0)

        assert not result.success
        await service.stop()

    @pytest.mark.asyncio
    async def test_contact_agent(self, alice, bob, make_config, manual_sleep):
        """Test sending a DM through the service."""
        pool = FakeRelayPool()
        service = AgentReachService(make_config(alice), pool=pool, sleep=manual_sleep)
        await service.start()

        result = await service.contact_agent(bob.npub, "hello")
        bad = await service.contact_agent("bob", "hello")
        empty = await service.contact_agent(bob.npub, "")

        assert result.success
        assert result.data["event_id"] == pool.published_kind(KIND_DIRECT_MESSAGE)[0].id
        assert not bad.success
        assert not empty.success
        await service.stop()

    @pytest.mark.asyncio
    async def test_discover(self, alice, make_config, manual_sleep):
        """Test discovery through the service."""
        service = AgentReachService(make_config(alice), pool=FakeRelayPool(), sleep=manual_sleep)
        await service.start()
        await service.update_service_card(capabilities=["research"])

        found = service.discover_agents("research")
        missing = service.discover_agents("cooking")

        assert [a.pubkey for a in found.data] == [alice.public_key_hex]
        assert missing.data == []
        await service.stop()

    def test_discover_disabled(self, alice, make_config):
        """Test discovery when the feature is off."""
        service = AgentReachService(make_config(alice, discovery_enabled=False), pool=FakeRelayPool())

        assert not service.discover_agents().success

    def test_get_agent_invalid(self, alice, make_config):
        """Test lookup with a malformed key."""
        service = AgentReachService(make_config(alice), pool=FakeRelayPool())

        result = service.get_agent("nope")

        assert not result.success
        assert "Invalid" in result.message

    @pytest.mark.asyncio
    async def test_status(self, alice, make_config, manual_sleep):
        """Test the status summary."""
        service = AgentReachService(make_config(alice), pool=FakeRelayPool(), sleep=manual_sleep)
        await service.start()

        status = service.status()

        assert status["state"] == "running"
        assert status["npub"] == alice.npub
        assert status["heartbeat_interval"] == 600
        assert status["directory"]["ready"]
        json.dumps(status)
        await service.stop()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
