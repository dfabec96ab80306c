"""
Agent Reach service.

AgentReachService is the single handle the rest of the program (CLI,
API server, host tools) works through. It owns the identity, relay
pool, publisher, directory and DM gateway for one agent, and moves
through STOPPED -> STARTING -> RUNNING -> STOPPED.

Operations meant for users (update the card, discover, contact) return
a ServiceResult instead of raising, so callers can show the message as is.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Union

from .auth.identity import Identity, InvalidKeyError, InvalidPeerIdError
from .config import Config
from .host import HostRuntime
from .mesh.codec import Capability, Status
from .mesh.directory import AgentDirectory
from .mesh.dm import DmGateway
from .mesh.publisher import Publisher, SendError
from .mesh import query
from .mesh.query import DEFAULT_DISCOVER_LIMIT
from .network.relay import RelayPool
from .state import CardStateStore, DmStateStore, LocalCardState

logger = logging.getLogger(__name__)

SHUTDOWN_HEARTBEAT_TIMEOUT = 5.0  # seconds

CapabilityInput = Union[str, dict, Capability]


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass
class ServiceResult:
    """Outcome of a user-facing operation."""
    success: bool
    message: str = ""
    data: Any = None

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, "data": self.data}

    @classmethod
    def ok(cls, message: str = "", data: Any = None) -> "ServiceResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str) -> "ServiceResult":
        return cls(success=False, message=message)


def parse_capability(value: CapabilityInput) -> Capability:
    """Accept "id", "id:description", a dict or a Capability."""
    if isinstance(value, Capability):
        return value
    if isinstance(value, dict):
        return Capability.from_dict(value)
    cap_id, _, description = str(value).partition(":")
    return Capability(id=cap_id.strip(), description=description.strip())


class AgentReachService:
    """
    One running agent on the relay network.

    Args:
        config: Loaded configuration
        host: Host runtime for DM delivery (None logs messages instead)
        pool: Relay pool to use; built from the config when omitted
    """

    def __init__(
        self,
        config: Config,
        host: Optional[HostRuntime] = None,
        pool=None,
        clock=time.time,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.host = host
        self.clock = clock
        self._sleep = sleep

        self.pool = pool if pool is not None else RelayPool(
            config.relays,
            verify_signatures=config.verify_signatures,
            publish_timeout=config.publish_timeout,
            query_timeout=config.query_timeout,
        )
        self.directory = AgentDirectory(self.pool, clock=clock)
        self.card_store = CardStateStore(config.state_dir)

        self.state = ServiceState.STOPPED
        self.identity: Optional[Identity] = None
        self.card_state: Optional[LocalCardState] = None
        self.publisher: Optional[Publisher] = None
        self.dm_gateway: Optional[DmGateway] = None
        self.started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self.state == ServiceState.RUNNING

    async def start(self) -> None:
        """
        Start the service.

        Raises:
            InvalidKeyError: If no usable private key is configured
        """
        if self.state != ServiceState.STOPPED:
            logger.debug(f"start() ignored in state {self.state.value}")
            return

        self.state = ServiceState.STARTING
        try:
            self.identity = Identity.from_secret(self.config.private_key or "")
        except InvalidKeyError as e:
            self.state = ServiceState.STOPPED
            logger.error(f"Cannot start: {e}")
            raise

        self.card_state = self.card_store.load()
        self.publisher = Publisher(
            self.identity,
            self.pool,
            self.card_state,
            profile_name=self.config.profile_name,
            profile_about=self.config.profile_about,
            dm_enabled=self.config.dm_enabled,
            sleep=self._sleep,
        )

        await self.publisher.publish_service_card()
        if self.card_state.online:
            await self.publisher.start_heartbeats()
        else:
            logger.info("Starting offline - heartbeats paused")

        if self.config.discovery_enabled:
            await self.directory.start()

        if self.config.dm_enabled:
            self.dm_gateway = DmGateway(
                self.identity,
                self.pool,
                self.config.allow_from,
                DmStateStore(self.config.state_dir),
                host=self.host,
                session_key=self.config.session_key,
                sleep=self._sleep,
            )
            await self.dm_gateway.start()

        self.started_at = self.clock()
        self.state = ServiceState.RUNNING
        logger.info(f"Agent Reach running as {self.identity.npub}")

    async def stop(self) -> None:
        """Stop timers and subscriptions, announce maintenance, close relays."""
        if self.state == ServiceState.STOPPED:
            return

        if self.publisher:
            await self.publisher.stop_heartbeats()

        await self.directory.stop()
        if self.dm_gateway:
            await self.dm_gateway.stop()
            self.dm_gateway = None

        if self.publisher:
            try:
                await asyncio.wait_for(
                    self.publisher.send_heartbeat(Status.MAINTENANCE),
                    timeout=SHUTDOWN_HEARTBEAT_TIMEOUT,
                )
            except asyncio.TimeoutError:
                logger.warning("Maintenance heartbeat timed out during shutdown")

        await self.pool.close()
        self.state = ServiceState.STOPPED
        logger.info("Agent Reach stopped")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def update_service_card(
        self,
        capabilities: Optional[Iterable[CapabilityInput]] = None,
        name: Optional[str] = None,
        about: Optional[str] = None,
        heartbeat_interval: Optional[int] = None,
        online: Optional[bool] = None,
    ) -> ServiceResult:
        """Update local card state, persist it, and republish."""
        if not self.running:
            return ServiceResult.fail("agent-reach service not running")
        if heartbeat_interval is not None and heartbeat_interval <= 0:
            return ServiceResult.fail("heartbeat_interval must be a positive number of seconds")

        state = self.card_state
        was_online = state.online
        old_interval = state.heartbeat_interval

        if capabilities is not None:
            state.capabilities = [parse_capability(c) for c in capabilities]
        if name is not None:
            state.name = name
        if about is not None:
            state.about = about
        if heartbeat_interval is not None:
            state.heartbeat_interval = int(heartbeat_interval)
        if online is not None:
            state.online = online

        try:
            self.card_store.save(state)
        except OSError as e:
            logger.error(f"Failed to save card state: {e}")

        if was_online and not state.online:
            await self.publisher.go_offline()
        elif not was_online and state.online:
            await self.publisher.go_online()
        elif state.online and state.heartbeat_interval != old_interval:
            await self.publisher.heartbeat_timer.restart(state.heartbeat_interval)
            logger.info(f"Heartbeat interval changed to {state.heartbeat_interval}s")

        report = await self.publisher.publish_service_card()
        capability_ids = ", ".join(c.id for c in state.capabilities) or "none"
        return ServiceResult.ok(
            f"Service card updated. Capabilities: {capability_ids}",
            data={
                "card": self.publisher.build_service_card().to_dict(),
                "online": state.online,
                "heartbeat_interval": state.heartbeat_interval,
                "relays": report.accepted,
            },
        )

    async def send_heartbeat(self, status: Union[str, Status] = Status.AVAILABLE) -> ServiceResult:
        """Publish one heartbeat outside the timer."""
        if not self.running:
            return ServiceResult.fail("agent-reach service not running")
        status = status if isinstance(status, Status) else Status.parse(status)
        report = await self.publisher.send_heartbeat(status)
        return ServiceResult.ok(f"Heartbeat sent ({status.value})", data=report.to_dict())

    def discover_agents(
        self,
        capability: Optional[str] = None,
        limit: Optional[int] = DEFAULT_DISCOVER_LIMIT,
        online_only: bool = False,
    ) -> ServiceResult:
        """Agents from the current directory snapshot."""
        if not self.config.discovery_enabled:
            return ServiceResult.fail("Discovery is disabled")
        agents = query.discover_agents(self.directory, capability, limit, online_only=online_only)
        what = f" with capability '{capability}'" if capability else ""
        return ServiceResult.ok(f"Found {len(agents)} agents{what}", data=agents)

    def get_agent(self, pubkey: str) -> ServiceResult:
        """One agent by hex public key or npub."""
        try:
            agent = query.get_agent(self.directory, pubkey)
        except InvalidPeerIdError as e:
            return ServiceResult.fail(f"Invalid public key: {e}")
        if agent is None:
            return ServiceResult.fail("Agent not found")
        return ServiceResult.ok(agent.name, data=agent)

    async def contact_agent(self, recipient: str, message: str) -> ServiceResult:
        """Send an encrypted direct message to another agent."""
        if not self.running:
            return ServiceResult.fail("agent-reach service not running")
        if not message:
            return ServiceResult.fail("Message is empty")
        try:
            event_id = await self.publisher.send_direct_message(recipient, message)
        except SendError as e:
            return ServiceResult.fail(str(e))
        return ServiceResult.ok("Message sent", data={"event_id": event_id})

    def status(self) -> dict:
        """Current service status."""
        result = {
            "state": self.state.value,
            "relays": self.pool.relays,
            "started_at": self.started_at,
            "directory": self.directory.stats(),
        }
        if self.identity:
            result.update({
                "pubkey": self.identity.public_key_hex,
                "npub": self.identity.npub,
            })
        if self.publisher:
            result.update({
                "card_id": self.publisher.card_id,
                "online": self.card_state.online,
                "heartbeat_interval": self.card_state.heartbeat_interval,
                "heartbeat_running": self.publisher.heartbeat_timer.running,
            })
        if self.dm_gateway:
            result["dm"] = self.dm_gateway.stats()
        return result
