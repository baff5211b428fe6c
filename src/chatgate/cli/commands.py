"""
CLI commands for chatgate.

Uses Typer for command-line interface.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

import typer

from chatgate.channels import ChannelManager
from chatgate.config import Config, load_config
from chatgate.gateway import Gateway, build_gateway, build_session_store
from chatgate.protocol.identifiers import derive_session_id, new_id
from chatgate.protocol.types import IncomingRequest, Platform, Source
from chatgate.server import GatewayServer

app = typer.Typer(
    name="chatgate",
    help="chatgate — multi-transport conversational gateway",
)

DEFAULT_CLI_USER = "cli-user-local"
EXIT_WORDS = {"exit", "quit", ":q"}


def _setup_logging(verbose: bool, default_level: int = logging.WARNING) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else default_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load(config_path: Optional[Path], engine: Optional[str] = None) -> Config:
    config = load_config(config_path)
    if engine:
        if engine not in ("claude", "echo"):
            raise typer.BadParameter("engine must be 'claude' or 'echo'", param_hint="--engine")
        config.engine.kind = engine
    return config


@app.command()
def chat(
    message: Optional[str] = typer.Option(
        None, "-m", "--message", help="Single message to process"
    ),
    user: str = typer.Option(DEFAULT_CLI_USER, "--user", "-u", help="CLI user id"),
    engine: Optional[str] = typer.Option(None, "--engine", help="Engine to use (claude/echo)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Chat through the gateway from the terminal.

    Without -m: Interactive REPL (/reset starts over, exit to quit)
    With -m: Process single message and exit
    """
    _setup_logging(verbose)
    config = _load(config_path, engine)
    ok = asyncio.run(_chat(config, user, message))
    if not ok:
        raise typer.Exit(code=1)


async def _send(gateway: Gateway, user: str, text: str) -> bool:
    request = IncomingRequest(
        id=new_id("cli"),
        source=Source.CLI,
        user_id=user,
        content=text,
        metadata={"terminal": "typer"},
    )
    outcome = await gateway.handle(request)
    if outcome.reply is not None:
        typer.echo(f"\n{outcome.reply.render()}\n")
    elif outcome.error is not None:
        typer.echo(f"✗ {outcome.error.code}: {outcome.error.message}", err=True)
    return outcome.success


async def _chat(config: Config, user: str, message: Optional[str]) -> bool:
    gateway = build_gateway(config)
    await gateway.start()
    try:
        if message is not None:
            return await _send(gateway, user, message)

        typer.echo(f"chatgate ({config.engine.kind} engine) — type 'exit' to quit")
        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                typer.echo("")
                break
            text = line.strip()
            if not text:
                continue
            if text.lower() in EXIT_WORDS:
                break
            if text == "/reset":
                await gateway.reset_session(derive_session_id(Platform.CLI, user))
                typer.echo("🔄 Conversation reset!")
                continue
            await _send(gateway, user, text)
        return True
    finally:
        await gateway.stop()


@app.command()
def status(config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path")):
    """Show configuration and status."""
    config = _load(config_path)

    typer.echo("\n=== chatgate Status ===")
    typer.echo(f"Workspace: {config.workspace}")
    typer.echo(f"Model: {config.model}")
    typer.echo(f"Engine: {config.engine.kind}")
    typer.echo(
        f"HTTP API: {'✓' if config.server.enabled else '✗'} "
        f"{config.server.host}:{config.server.port}"
    )
    typer.echo(f"Sessions: {config.sessions.storage} storage, "
               f"{config.sessions.default_expiration_minutes} min lifetime")
    typer.echo(
        f"Router: {config.router.retry.max_attempts} attempts, "
        f"breaker per {config.router.breaker_scope}"
    )

    typer.echo("\nRate limits:")
    for source, limit in config.admission.rate_limits.items():
        state = "✓" if limit.enabled else "✗"
        typer.echo(f"  {source}: {state} {limit.max_requests}/{limit.window_ms}ms")

    typer.echo("\nChannels:")
    for channel_name, channel_config in config.channels.model_dump().items():
        enabled = channel_config.get("enabled", False)
        state = "✓ enabled" if enabled else "✗ disabled"
        typer.echo(f"  {channel_name}: {state}")

    if config.env:
        typer.echo("\nEnvironment Variables:")
        for k in config.env:
            typer.echo(f"  {k}=***")

    typer.echo("")


@app.command()
def capabilities(
    engine: Optional[str] = typer.Option(None, "--engine", help="Engine to use (claude/echo)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """List what the processing engine can do."""
    config = _load(config_path, engine)
    gateway = build_gateway(config)
    found = asyncio.run(gateway.list_capabilities())
    if not found:
        typer.echo("No capabilities reported.")
        return
    for capability in found:
        typer.echo(f"  {capability.name}: {capability.description}")


@app.command()
def sessions(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this user's sessions"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """List stored sessions (JSON storage only)."""
    config = _load(config_path)
    if config.sessions.storage != "json":
        typer.echo("Sessions are kept in memory; only a running gateway has them.")
        return
    asyncio.run(_list_sessions(config, user))


async def _list_sessions(config: Config, user: Optional[str]) -> None:
    store = build_session_store(config)
    if user:
        found = await store.list_by_user(user)
    else:
        found = sorted(await store.backend.all(), key=lambda s: s.created_at)

    for session in found:
        typer.echo(
            f"  {session.id}  {session.platform:<9} {session.user_id}  "
            f"{session.context.message_count} msgs  expires {session.expires_at or 'never'}"
        )
    stats = await store.stats()
    typer.echo(f"\n{stats['total']} live sessions ({stats['active']} active)")


@app.command()
def gateway(
    engine: Optional[str] = typer.Option(None, "--engine", help="Engine to use (claude/echo)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Start full gateway server.

    This runs:
    - Admission pipeline and resilience router
    - HTTP API (health, messages, sessions, tools, stats)
    - All enabled channels (Telegram, etc.)
    - Session sweeper
    """
    config = _load(config_path, engine)
    _setup_logging(verbose, default_level=logging.INFO)
    logging.getLogger("chatgate").info("Starting chatgate gateway")

    typer.echo("\n=== chatgate Gateway ===")
    typer.echo(f"Workspace: {config.workspace}")
    typer.echo(f"Engine: {config.engine.kind} ({config.model})")

    asyncio.run(_run_gateway(config))


async def _run_gateway(config: Config) -> None:
    """Main gateway loop coordinating all services."""
    # Delayed import: python-telegram-bot is only needed for the gateway
    from chatgate.channels.telegram import TelegramChannel

    gw = build_gateway(config)
    channels = ChannelManager(gw)
    channels.init_channel("telegram", TelegramChannel, config.channels.telegram.model_dump())
    gw.channels = channels

    server = GatewayServer(gw, host=config.server.host, port=config.server.port)
    shutdown_event = asyncio.Event()

    await gw.start()
    tasks = [asyncio.create_task(channels.start_all())]
    if config.server.enabled:
        tasks.append(asyncio.create_task(server.start()))

    loop = asyncio.get_running_loop()

    def _handle_signal():
        typer.echo("\nShutdown signal received, stopping...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal)

    try:
        await shutdown_event.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        typer.echo("Stopping services...")
        await server.stop()
        await channels.stop_all()
        await gw.stop()
        typer.echo("Goodbye!")


def main() -> None:
    """Entry point for CLI."""
    app()
