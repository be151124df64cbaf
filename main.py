#!/usr/bin/env python3
"""
RCE Bot - Main entry point
"""
import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

from core.config_loader import ConfigLoader
from utils.constants import DEFAULT_HEALTH_PORT, DEFAULT_RELOAD_SIGNAL, RELOAD_SIGNALS
from utils.helpers import format_duration

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def parse_cli_args(argv=None):
    """Parse runtime CLI arguments."""
    parser = argparse.ArgumentParser(description="Telegram bot executing authorized commands")
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate the config file and print a summary, then exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override logging.level from the config file",
    )
    parser.add_argument(
        "--reload-signal",
        choices=RELOAD_SIGNALS,
        default=DEFAULT_RELOAD_SIGNAL,
        help=f"Signal that reloads the config file, or 'none' (default: {DEFAULT_RELOAD_SIGNAL})",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def print_config_summary(config: dict, table, args) -> None:
    telegram = config.get("telegram", {})
    webhook = telegram.get("webhook") or {}
    print("✅ Config validation passed")
    print(f"config: {args.config}")
    print(f"transport: {'webhook' if webhook.get('enabled') else 'polling'}")
    print(f"authorized users: {len(table)}")
    for uid in table.user_ids:
        for index, command in enumerate(table.commands_for(uid)):
            print(
                f"  {uid} [{index}] {command.display()} "
                f"(exec {format_duration(command.exec_timeout)}, exit {format_duration(command.exit_timeout)})"
            )
    print(f"logging.level: {config.get('logging', {}).get('level', 'INFO')}")
    print(f"logging.file: {config.get('logging', {}).get('file')}")
    print(f"health.enabled: {config.get('health', {}).get('enabled', False)}")


# Configure logging
def setup_logging(config: dict, level_override: str = None):
    """Setup logging based on configuration"""
    log_config = config.get('logging', {}) or {}
    level_name = str(level_override or log_config.get('level', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_config.get('file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))

    # Configure root logger
    logging.basicConfig(
        level=level,
        format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
        handlers=handlers,
        force=True,
    )

    # Reduce noise from libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('telegram').setLevel(logging.WARNING)


async def start_health_server(config: dict, router, start_time: float):
    """Start the optional health-check HTTP endpoint. Returns the runner or None."""
    health_conf = config.get('health', {}) or {}
    if not health_conf.get('enabled', False):
        return None

    from aiohttp import web

    async def health_handler(request):
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(time.time() - start_time, 1),
            "authorized_users": len(router.table),
            "running_executions": router.coordinator.running_count,
        })

    health_app = web.Application()
    health_app.router.add_get("/health", health_handler)
    health_runner = web.AppRunner(health_app)
    await health_runner.setup()
    health_host = health_conf.get('host', '127.0.0.1')
    health_port = int(health_conf.get('port', DEFAULT_HEALTH_PORT))
    health_site = web.TCPSite(health_runner, health_host, health_port)
    await health_site.start()
    logger.info("✅ Health endpoint listening on %s:%d/health", health_host, health_port)
    return health_runner


def install_reload_handler(loop, loader: ConfigLoader, signal_name: str) -> bool:
    """Reload the config file whenever *signal_name* is received."""
    if not signal_name or signal_name == "none":
        return False
    sig = getattr(signal, signal_name, None)
    if sig is None:
        logger.warning("Reload signal %s is not available on this platform", signal_name)
        return False

    def _request_reload():
        logger.info("Received %s, reloading config...", signal_name)
        loader.reload()

    try:
        loop.add_signal_handler(sig, _request_reload)
    except NotImplementedError:
        signal.signal(sig, lambda _s, _f: loop.call_soon_threadsafe(_request_reload))
    logger.info("Config reload enabled on %s", signal_name)
    return True


async def shutdown(router, channel, health_runner=None) -> None:
    """Stop taking updates, interrupt running commands and wait for them."""
    logger.info("Shutting down...")
    if health_runner is not None:
        await health_runner.cleanup()
    await channel.stop_updates()

    router.coordinator.interrupt_all()
    # Each execution is bounded by its own exit timeout.
    await router.coordinator.wait()

    await channel.stop()
    logger.info("✅ Shutdown complete")


async def main(argv=None):
    """Main application entry point"""
    args = parse_cli_args(argv)

    # Load configuration
    loader = ConfigLoader(args.config)
    try:
        config, table = loader.load()
    except Exception as e:
        print(f"❌ Failed to load configuration: {e}")
        sys.exit(1)

    if args.validate_only:
        print_config_summary(config, table, args)
        return

    # Setup logging
    setup_logging(config, args.log_level)
    logger.info("Starting RCE Bot v%s config=%s", __version__, args.config)

    # Delay heavy imports so --validate-only works without full runtime deps.
    from channels.telegram import TelegramChannel
    from core.command_registry import registry
    from core.executor import ExecutionCoordinator
    from core.router import Router

    coordinator = ExecutionCoordinator()
    channel = TelegramChannel(config['telegram'], bot_commands=registry.menu())
    router = Router(channel, table=table, coordinator=coordinator, config=config)
    loader.publish = router.replace_table
    channel.set_message_handler(router.handle_message)
    logger.info(
        "✅ Authorization table loaded: %d user(s), %d command(s)",
        len(table),
        table.command_count,
    )

    try:
        await channel.start()
    except Exception as e:
        logger.error("Failed to start Telegram channel: %s", e, exc_info=True)
        try:
            await channel.stop()
        except Exception as stop_error:
            logger.warning("Failed to clean up Telegram channel: %s", stop_error)
        sys.exit(1)

    health_runner = None
    try:
        health_runner = await start_health_server(config, router, time.time())
    except OSError as e:
        logger.error("Failed to start health endpoint: %s", e)
        await shutdown(router, channel)
        sys.exit(1)

    loop = asyncio.get_running_loop()
    install_reload_handler(loop, loader, args.reload_signal)

    logger.info("🚀 RCE Bot is running")

    # Wait for shutdown signal
    shutdown_event = asyncio.Event()

    def _request_shutdown(sig_num: int):
        logger.info(f"Received signal {sig_num}, shutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, int(sig))
        except NotImplementedError:
            signal.signal(sig, lambda s, _f: loop.call_soon_threadsafe(_request_shutdown, int(s)))

    # Keep running
    await shutdown_event.wait()
    await shutdown(router, channel, health_runner)


def cli():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Interrupted by user")
    except Exception as e:
        print(f"❌ Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
