"""Command-line interface for meshstream."""

import asyncio
import json
import logging
import sys
import time
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from meshstream import __version__
from meshstream.activity import STATUS_TEXT, format_last_seen, get_activity_level
from meshstream.aggregator import Aggregator, AggregatorState
from meshstream.config import DEFAULT_STREAM_URL, ReconnectPolicy, StreamConfig
from meshstream.connection import ConnectionTracker
from meshstream.models import (
    BadDataEvent,
    ConnectionInfoEvent,
    InfoEvent,
    MessageEvent,
    Packet,
    hex_node_id,
)
from meshstream.packet_log import PacketLog, push_to_log
from meshstream.stream import ReconnectExhaustedError, StreamClient, decode_message

console = Console()

ACTIVITY_STYLES = {
    "recent": "green",
    "active": "yellow",
    "inactive": "dim",
}


def run_async(coro):
    """Run an async coroutine from sync context.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    if sys.version_info >= (3, 11):
        with asyncio.Runner() as runner:
            return runner.run(coro)
    else:
        return asyncio.run(coro)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _is_router(role: str | None) -> bool:
    return bool(role) and "ROUTER" in role.upper()


def _activity_cell(last_heard: int | None, now: float, is_gateway: bool = False, is_router: bool = False) -> str:
    level = get_activity_level(last_heard, is_gateway=is_gateway, is_router=is_router, now=now)
    style = ACTIVITY_STYLES[level.value]
    return f"[{style}]{STATUS_TEXT[level]}[/{style}]"


def _age_cell(timestamp: int | None, now: float) -> str:
    if not timestamp:
        return "never"
    return format_last_seen(max(0, int(now) - timestamp))


def _packet_line(packet: Packet, state: AggregatorState) -> str:
    """One-line description of a packet for the live feed."""
    data = packet.data
    if data.from_node is None:
        return f"[dim]? {data.port_num or 'UNKNOWN'} (no sender)[/dim]"

    node = state.nodes.get(data.from_node)
    sender = node.display_name if node else hex_node_id(data.from_node)
    line = f"[cyan]{sender}[/cyan] [magenta]{data.port_num or 'UNKNOWN'}[/magenta]"
    if data.channel_id:
        line += f" on [green]{data.channel_id}[/green]"
    if data.gateway_id:
        line += f" via {data.gateway_id}"
    if data.text_message:
        line += f': "{data.text_message}"'
    if data.decode_error:
        line += f" [red]({data.decode_error})[/red]"
    return line


def _print_nodes(state: AggregatorState, now: float) -> None:
    table = Table(title="Nodes")
    table.add_column("Node ID", style="magenta", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("Hardware", style="green")
    table.add_column("Last Heard")
    table.add_column("Status")
    table.add_column("Msgs", justify="right")
    table.add_column("Battery", justify="right")

    for node in sorted(state.nodes.values(), key=lambda n: n.last_heard, reverse=True):
        battery = f"{node.battery_level}%" if node.battery_level is not None else "?"
        table.add_row(
            hex_node_id(node.node_id),
            node.long_name or node.short_name or "Unknown",
            node.hw_model or "Unknown",
            _age_cell(node.last_heard, now),
            _activity_cell(node.last_heard, now, is_gateway=node.is_gateway, is_router=_is_router(node.role)),
            f"{node.message_count} ({node.text_message_count} text)",
            battery,
        )

    console.print(table)


def _print_gateways(state: AggregatorState, now: float) -> None:
    table = Table(title="Gateways")
    table.add_column("Gateway", style="magenta", no_wrap=True)
    table.add_column("Channels", style="green")
    table.add_column("Nodes", justify="right")
    table.add_column("Msgs", justify="right")
    table.add_column("Last Heard")
    table.add_column("Status")

    for gateway in sorted(state.gateways.values(), key=lambda g: g.last_heard, reverse=True):
        table.add_row(
            gateway.gateway_id,
            ", ".join(gateway.channel_ids) or "-",
            str(len(gateway.observed_nodes)),
            str(gateway.message_count),
            _age_cell(gateway.last_heard, now),
            _activity_cell(gateway.last_heard, now, is_gateway=True),
        )

    console.print(table)


def _print_channels(state: AggregatorState, now: float) -> None:
    table = Table(title="Channels")
    table.add_column("Channel", style="green", no_wrap=True)
    table.add_column("Msgs", justify="right")
    table.add_column("Texts", justify="right")
    table.add_column("Nodes", justify="right")
    table.add_column("Gateways", justify="right")
    table.add_column("Last Message")

    for channel in sorted(state.channels.values(), key=lambda c: c.message_count, reverse=True):
        table.add_row(
            channel.channel_id,
            str(channel.message_count),
            str(channel.text_message_count),
            str(len(channel.nodes)),
            str(len(channel.gateways)),
            _age_cell(channel.last_message, now),
        )

    console.print(table)


def _print_messages(state: AggregatorState, channel_id: str | None) -> None:
    channel_ids = [channel_id] if channel_id else list(state.messages)
    for cid in channel_ids:
        messages = state.messages_for(cid)
        console.print(f"\n[bold green]#{cid}[/bold green] ({len(messages)} message(s))")
        if not messages:
            console.print("  [dim]No messages[/dim]")
            continue
        # Oldest first reads like a chat log
        for message in reversed(messages):
            stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(message.timestamp))
            sender = message.from_name or hex_node_id(message.from_node)
            console.print(f"  [dim]{stamp}[/dim] [cyan]{sender}[/cyan]: {message.text}")


def _print_feed(feed: PacketLog, state: AggregatorState) -> None:
    if not feed.items:
        return
    console.print(f"\n[bold]Recent packets[/bold] (newest first, {len(feed.items)} shown)")
    for packet in feed.items:
        console.print(f"  {_packet_line(packet, state)}")


def _print_totals(state: AggregatorState, bad_data: int = 0) -> None:
    console.print(
        f"\nTotal: {len(state.nodes)} node(s), {len(state.gateways)} gateway(s), "
        f"{len(state.channels)} channel(s), {len(state.seen)} unique packet(s)"
    )
    if bad_data:
        console.print(f"[yellow]Skipped {bad_data} malformed payload(s)[/yellow]")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Meshstream - Watch and aggregate a live Meshtastic packet stream."""
    _configure_logging(verbose)


@cli.command()
@click.option(
    "--url",
    default=DEFAULT_STREAM_URL,
    envvar="MESHSTREAM_URL",
    show_default=True,
    help="Server-sent events stream endpoint",
)
@click.option(
    "--initial-delay",
    default=1000,
    envvar="MESHSTREAM_INITIAL_DELAY",
    type=click.IntRange(min=1),
    help="First reconnect delay in milliseconds",
)
@click.option(
    "--max-delay",
    default=30000,
    envvar="MESHSTREAM_MAX_DELAY",
    type=click.IntRange(min=1),
    help="Maximum reconnect delay in milliseconds",
)
@click.option(
    "--max-attempts",
    default=30,
    envvar="MESHSTREAM_MAX_ATTEMPTS",
    type=click.IntRange(min=1),
    help="Consecutive failures before giving up",
)
@click.option(
    "--read-timeout",
    default=90.0,
    envvar="MESHSTREAM_READ_TIMEOUT",
    type=click.FloatRange(min=0, min_open=True),
    help="Seconds without data before reconnecting",
)
@click.option(
    "--log-size",
    default=100,
    envvar="MESHSTREAM_LOG_SIZE",
    type=click.IntRange(min=1),
    help="Number of recent packets to keep",
)
@click.option(
    "--duration",
    type=click.FloatRange(min=0, min_open=True),
    help="Stop after this many seconds (default: run until interrupted)",
)
@click.option("--quiet", "-q", is_flag=True, help="Don't print a line per packet")
def watch(
    url: str,
    initial_delay: int,
    max_delay: int,
    max_attempts: int,
    read_timeout: float,
    log_size: int,
    duration: float | None,
    quiet: bool,
):
    """Watch the live packet stream and summarize the mesh."""
    try:
        policy = ReconnectPolicy(
            initial_delay_ms=initial_delay,
            max_delay_ms=max_delay,
            max_attempts=max_attempts,
        )
        config = StreamConfig(url=url, policy=policy, read_timeout=read_timeout, log_size=log_size)
    except ValidationError as e:
        raise click.UsageError(str(e)) from e

    async def _watch():
        aggregator = Aggregator.create()
        tracker = ConnectionTracker()
        feed = PacketLog(capacity=config.log_size)
        bad_data = 0
        finished = asyncio.Event()

        def on_event(event):
            nonlocal feed, bad_data
            tracker.handle_event(event)

            if isinstance(event, MessageEvent):
                aggregator.handle_event(event)
                feed = push_to_log(feed, event.data)
                if not quiet:
                    console.print(_packet_line(event.data, aggregator.state))
            elif isinstance(event, BadDataEvent):
                bad_data += 1
                console.print(f"[yellow]Bad data: {event.error}[/yellow]")
            elif isinstance(event, ConnectionInfoEvent):
                info = event.data
                console.print(
                    f"[green]✓[/green] {tracker.status} "
                    f"[dim](MQTT {info.mqtt_server or '?'} topic {info.mqtt_topic or '?'})[/dim]"
                )
            elif isinstance(event, InfoEvent):
                console.print(f"[dim]{event.data}[/dim]")

        def on_error(error):
            tracker.handle_error(error)
            console.print(f"[red]✗ {tracker.status}[/red] [dim]({error})[/dim]")
            if isinstance(error, ReconnectExhaustedError):
                finished.set()

        client = StreamClient.from_config(config)
        console.print(f"[bold blue]Connecting to {config.url}...[/bold blue]")
        stop = client.start(on_event, on_error, on_state=tracker.handle_state)

        try:
            if duration is None:
                await finished.wait()
            else:
                try:
                    await asyncio.wait_for(finished.wait(), timeout=duration)
                except asyncio.TimeoutError:
                    pass
        finally:
            stop()
            await client.wait_closed()

            state = aggregator.state
            now = time.time()
            if state.nodes:
                _print_nodes(state, now)
            if state.gateways:
                _print_gateways(state, now)
            if state.channels:
                _print_channels(state, now)
            _print_feed(feed, state)
            _print_totals(state, bad_data)
            aggregator.dispose()

    run_async(_watch())


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--show",
    multiple=True,
    type=click.Choice(["nodes", "gateways", "channels", "messages"]),
    help="Tables to print (can be specified multiple times; default: all)",
)
@click.option("--channel", help="Only show messages for this channel")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option(
    "--output",
    "-o",
    help="Write JSON output to a file instead of stdout",
    type=click.Path(),
)
def replay(path: str, show: tuple[str, ...], channel: str | None, output_format: str, output: str | None):
    """Replay newline-delimited packet JSON through the aggregator.

    Lines may be bare JSON packets or captured ``data:`` lines from the
    stream; blank lines are ignored.
    """
    aggregator = Aggregator.create()
    packets = 0
    bad_data = 0

    with Path(path).open(encoding="utf-8") as f:
        for raw in f:
            line = raw.strip()
            if line.startswith("data:"):
                line = line[len("data:"):].strip()
            if not line:
                continue

            event = decode_message(line)
            if isinstance(event, BadDataEvent):
                bad_data += 1
                continue

            packets += 1
            aggregator.process(event.data)

    state = aggregator.state

    if output_format == "json":
        output_str = json.dumps(state.to_dict(), indent=2)
        if output:
            Path(output).write_text(output_str)
            console.print(f"[green]Wrote aggregated state for {packets} packet(s) to {output}[/green]")
        else:
            click.echo(output_str)
        return

    console.print(f"[bold blue]Replayed {packets} packet(s) from {path}[/bold blue]")
    sections = show or ("nodes", "gateways", "channels", "messages")
    now = time.time()

    if "nodes" in sections and state.nodes:
        _print_nodes(state, now)
    if "gateways" in sections and state.gateways:
        _print_gateways(state, now)
    if "channels" in sections and state.channels:
        _print_channels(state, now)
    if "messages" in sections:
        if channel and channel not in state.channels:
            console.print(f"[red]Channel {channel} not found.[/red]")
        else:
            _print_messages(state, channel)

    _print_totals(state, bad_data)


if __name__ == "__main__":
    cli()
