"""
Agent Reach CLI - Command line interface for agent presence and discovery.
"""

import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .auth.identity import Identity, InvalidKeyError, InvalidPeerIdError, npub_encode
from .config import DEFAULT_DATA_DIR, Config, ConfigError, migrate_legacy_config
from .host import LoggingHost
from .mesh.codec import Protocol, Status
from .mesh.directory import Agent, AgentDirectory
from .mesh.publisher import Publisher, SendError
from .mesh import query
from .network.relay import PublishReport, RelayPool
from .service import AgentReachService, parse_capability
from .state import CardStateStore
from .tools import register_tools

console = Console()


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler()]
    )


def run_async(coro):
    """Run an async function."""
    return asyncio.run(coro)


def _load_config(ctx) -> Config:
    try:
        return Config.load(ctx.obj['data_dir'])
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


def _load_identity(config: Config) -> Identity:
    if not config.private_key:
        console.print("[red]No private key configured. Run 'agent-reach init' first.[/red]")
        sys.exit(1)
    try:
        return Identity.from_secret(config.private_key)
    except InvalidKeyError as e:
        console.print(f"[red]Invalid private key: {e}[/red]")
        sys.exit(1)


def _make_pool(config: Config) -> RelayPool:
    return RelayPool(
        config.relays,
        verify_signatures=config.verify_signatures,
        publish_timeout=config.publish_timeout,
        query_timeout=config.query_timeout,
    )


def _ago(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "never"
    seconds = int(time.time() - timestamp)
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def _print_report(report: PublishReport, what: str):
    total = len(report.results)
    if report.any_accepted:
        console.print(f"[green]✓ {what} accepted by {len(report.accepted)}/{total} relays[/green]")
    else:
        console.print(f"[red]✗ {what} was not accepted by any relay[/red]")
    for result in report.results:
        if not result.accepted:
            console.print(f"  [dim]{result.relay}: {result.message or 'failed'}[/dim]")


async def _load_directory(config: Config) -> AgentDirectory:
    pool = _make_pool(config)
    directory = AgentDirectory(pool)
    try:
        await directory.load()
    finally:
        await pool.close()
    return directory


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--data-dir', type=click.Path(path_type=Path), default=None,
              help=f'Data directory (default {DEFAULT_DATA_DIR})')
@click.pass_context
def main(ctx, verbose, data_dir):
    """📡 Agent Reach - presence and discovery for agents over Nostr"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['data_dir'] = data_dir or DEFAULT_DATA_DIR
    setup_logging(verbose)


@main.command()
@click.option('--name', '-n', help='Agent display name')
@click.option('--about', '-a', help='Agent description')
@click.option('--relay', '-r', 'relays', multiple=True, help='Relay URL (repeatable)')
@click.option('--allow', 'allow_from', multiple=True, help='npub or hex key allowed to DM us (repeatable)')
@click.option('--key', help='Import an existing key (hex or nsec) instead of generating one')
@click.pass_context
def init(ctx, name, about, relays, allow_from, key):
    """Generate an identity and write the configuration."""
    data_dir = ctx.obj['data_dir']

    console.print("\n[bold blue]📡 Agent Reach Initialization[/bold blue]\n")

    if Config.exists(data_dir):
        console.print("[yellow]⚠️  Agent Reach is already initialized.[/yellow]")
        console.print(f"   Data directory: {data_dir}")
        if not click.confirm("\nReinitialize? This will replace your identity."):
            return

    try:
        identity = Identity.from_secret(key) if key else Identity.generate()
    except InvalidKeyError as e:
        console.print(f"[red]Invalid key: {e}[/red]")
        sys.exit(1)

    config = Config(data_dir=data_dir, private_key=identity.secret_key_hex)
    config.profile_name = name
    config.profile_about = about
    if relays:
        config.relays = list(relays)
    config.allow_from = list(allow_from)
    config.save()

    console.print("[bold green]✓ Initialized[/bold green]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("npub", f"[cyan]{identity.npub}[/cyan]")
    table.add_row("Public key", identity.public_key_hex)
    table.add_row("Relays", ", ".join(config.relays))
    table.add_row("Config", str(config.config_path))
    console.print(table)

    if not config.allow_from:
        console.print("\n[yellow]No allowed DM senders; inbound DMs stay disabled until you add some.[/yellow]")
    console.print("\nNext: [cyan]agent-reach run[/cyan]\n")


@main.command()
@click.pass_context
def whoami(ctx):
    """Show this agent's identity."""
    config = _load_config(ctx)
    identity = _load_identity(config)
    card_state = CardStateStore(config.state_dir).load()

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("npub", f"[cyan]{identity.npub}[/cyan]")
    table.add_row("Public key", identity.public_key_hex)
    table.add_row("Name", card_state.name or config.profile_name or "[dim]not set[/dim]")
    table.add_row("Capabilities", ", ".join(c.id for c in card_state.capabilities) or "[dim]none[/dim]")
    table.add_row("Online", "yes" if card_state.online else "no (heartbeats paused)")
    table.add_row("Heartbeat", f"every {card_state.heartbeat_interval}s")
    table.add_row("Relays", ", ".join(config.relays))
    console.print(table)


async def _run_foreground(service: AgentReachService):
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


@main.command()
@click.option('--api', is_flag=True, help='Also serve the HTTP API')
@click.option('--host', '-h', default=None, help='API host to bind to')
@click.option('--port', '-p', default=None, type=int, help='API port to bind to')
@click.pass_context
def run(ctx, api, host, port):
    """Run the agent in the foreground until interrupted."""
    config = _load_config(ctx)
    identity = _load_identity(config)
    service = AgentReachService(config, host=LoggingHost())

    console.print(f"\n[bold blue]📡 Agent Reach[/bold blue] as [cyan]{identity.npub}[/cyan]")
    console.print(f"   Relays: {', '.join(config.relays)}\n")

    if api:
        from .api.server import run_server
        run_server(service, host=host, port=port)
        return

    register_tools(service.host, service)
    try:
        run_async(_run_foreground(service))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@main.command()
@click.option('--capability', '-c', 'capabilities', multiple=True,
              help='Capability as id or id:description (repeatable, replaces existing)')
@click.option('--protocol', 'protocols', multiple=True,
              help='Protocol as type:endpoint (repeatable, replaces existing)')
@click.option('--name', '-n', help='Display name')
@click.option('--about', '-a', help='Description')
@click.pass_context
def publish(ctx, capabilities, protocols, name, about):
    """Update and publish the service card once."""
    config = _load_config(ctx)
    identity = _load_identity(config)

    store = CardStateStore(config.state_dir)
    card_state = store.load()
    if capabilities:
        card_state.capabilities = [parse_capability(c) for c in capabilities]
    if protocols:
        parsed = []
        for value in protocols:
            kind, sep, endpoint = value.partition(":")
            if not sep or not kind:
                console.print(f"[red]Invalid protocol '{value}', expected type:endpoint[/red]")
                sys.exit(1)
            parsed.append(Protocol(type=kind, endpoint=endpoint))
        card_state.protocols = parsed
    if name is not None:
        card_state.name = name
    if about is not None:
        card_state.about = about
    store.save(card_state)

    async def do_publish():
        pool = _make_pool(config)
        publisher = Publisher(
            identity, pool, card_state,
            profile_name=config.profile_name,
            profile_about=config.profile_about,
            dm_enabled=config.dm_enabled,
        )
        try:
            return publisher.build_service_card(), await publisher.publish_service_card()
        finally:
            await pool.close()

    card, report = run_async(do_publish())
    console.print(f"\n[bold]{card.name}[/bold] ({card.card_id})")
    console.print(f"   Capabilities: {', '.join(c.id for c in card.capabilities) or 'none'}")
    _print_report(report, "Service card")
    if not report.any_accepted:
        sys.exit(1)


@main.command()
@click.option('--status', '-s', 'status_value', default=Status.AVAILABLE.value,
              type=click.Choice([s.value for s in Status]), help='Status to announce')
@click.pass_context
def heartbeat(ctx, status_value):
    """Send a single heartbeat."""
    config = _load_config(ctx)
    identity = _load_identity(config)
    card_state = CardStateStore(config.state_dir).load()

    async def do_heartbeat():
        pool = _make_pool(config)
        publisher = Publisher(identity, pool, card_state)
        try:
            return await publisher.send_heartbeat(Status(status_value))
        finally:
            await pool.close()

    report = run_async(do_heartbeat())
    _print_report(report, f"Heartbeat ({status_value})")
    if not report.any_accepted:
        sys.exit(1)


def _agent_row(agent: Agent):
    status = "[green]● online[/green]" if agent.is_online else "[dim]○ offline[/dim]"
    caps = ", ".join(c.id for c in agent.card.capabilities) or "-"
    return (status, agent.name, caps, _ago(agent.last_seen), npub_encode(agent.pubkey))


@main.command()
@click.option('--capability', '-c', help='Capability id to search for')
@click.option('--limit', '-l', default=query.DEFAULT_DISCOVER_LIMIT, type=int, help='Maximum results')
@click.option('--online', is_flag=True, help='Only show online agents')
@click.option('--json', 'as_json', is_flag=True, help='Output JSON')
@click.pass_context
def discover(ctx, capability, limit, online, as_json):
    """Find agents on the relays."""
    config = _load_config(ctx)
    directory = run_async(_load_directory(config))
    agents = query.sort_for_display(
        query.discover_agents(directory, capability, None, online_only=online), limit
    )

    if as_json:
        click.echo(json.dumps([a.to_dict() for a in agents], indent=2))
        return

    if not agents:
        what = f" with capability '{capability}'" if capability else ""
        console.print(f"[yellow]No agents found{what}[/yellow]")
        return

    table = Table(title=f"Agents ({len(agents)})")
    table.add_column("Status")
    table.add_column("Name", style="bold")
    table.add_column("Capabilities")
    table.add_column("Last seen", style="dim")
    table.add_column("npub", style="cyan", overflow="fold")
    for agent in agents:
        table.add_row(*_agent_row(agent))
    console.print(table)


def _lookup(ctx, pubkey: str) -> Agent:
    config = _load_config(ctx)
    directory = run_async(_load_directory(config))
    try:
        agent = query.get_agent(directory, pubkey)
    except InvalidPeerIdError as e:
        console.print(f"[red]Invalid public key: {e}[/red]")
        sys.exit(1)
    if agent is None:
        console.print("[yellow]Agent not found[/yellow]")
        sys.exit(1)
    return agent


@main.command()
@click.argument('pubkey')
@click.pass_context
def lookup(ctx, pubkey):
    """Show an agent's service card."""
    agent = _lookup(ctx, pubkey)
    card = agent.card

    lines = [card.about or "[dim]no description[/dim]", ""]
    lines.append(f"[dim]npub[/dim]      {npub_encode(card.pubkey)}")
    lines.append(f"[dim]card[/dim]      {card.card_id}")
    lines.append(f"[dim]status[/dim]    {_agent_row(agent)[0]} ({_ago(agent.last_seen)})")
    if card.capabilities:
        lines.append("")
        lines.append("[bold]Capabilities[/bold]")
        for cap in card.capabilities:
            lines.append(f"  • {cap.id}" + (f": {cap.description}" if cap.description else ""))
    if card.protocols:
        lines.append("")
        lines.append("[bold]Protocols[/bold]")
        for proto in card.protocols:
            lines.append(f"  • {proto.type}: {proto.endpoint}")

    console.print(Panel("\n".join(lines), title=card.name, expand=False))


@main.command()
@click.argument('pubkey')
@click.pass_context
def status(ctx, pubkey):
    """Show whether an agent is online."""
    agent = _lookup(ctx, pubkey)
    if agent.is_online:
        console.print(f"[green]●[/green] {agent.name} is online (last heartbeat {_ago(agent.last_seen)})")
    elif agent.heartbeat and agent.heartbeat.status == Status.MAINTENANCE:
        console.print(f"[yellow]○[/yellow] {agent.name} is in maintenance ({_ago(agent.last_seen)})")
    else:
        console.print(f"[dim]○[/dim] {agent.name} is offline (last heartbeat {_ago(agent.last_seen)})")


@main.command()
@click.argument('recipient')
@click.argument('message')
@click.pass_context
def dm(ctx, recipient, message):
    """Send an encrypted direct message."""
    config = _load_config(ctx)
    identity = _load_identity(config)
    card_state = CardStateStore(config.state_dir).load()

    async def do_send():
        pool = _make_pool(config)
        publisher = Publisher(identity, pool, card_state)
        try:
            return await publisher.send_direct_message(recipient, message)
        finally:
            await pool.close()

    try:
        event_id = run_async(do_send())
    except SendError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Sent[/green] [dim]{event_id}[/dim]")


@main.group('config')
def config_group():
    """Configuration commands."""
    pass


@config_group.command('migrate')
@click.argument('path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--output', '-o', type=click.Path(dir_okay=False, path_type=Path),
              help='Write here instead of the data directory config')
@click.pass_context
def config_migrate(ctx, path, output):
    """Convert a legacy plugin config file to the current format."""
    try:
        with open(path, 'r') as f:
            legacy = json.load(f)
        migrated = migrate_legacy_config(legacy)
    except json.JSONDecodeError as e:
        console.print(f"[red]Cannot parse {path}: {e}[/red]")
        sys.exit(1)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if output is None:
        config = Config.from_dict(migrated, data_dir=ctx.obj['data_dir'])
        if Config.exists(config.data_dir) and not click.confirm(
            f"Overwrite {config.config_path}?"
        ):
            return
        config.save()
        output = config.config_path
    else:
        with open(output, 'w') as f:
            json.dump(migrated, f, indent=2)

    console.print(f"[green]✓ Migrated configuration written to {output}[/green]")


if __name__ == '__main__':
    main()
