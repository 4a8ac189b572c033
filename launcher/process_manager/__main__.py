"""Run the launcher as a persistent MCP daemon over HTTP.

Usage:
    python -m launcher.process_manager [--host HOST] [--port PORT]
                                       [--database-url URL]

Settings not given on the command line come from the environment / .env
(see launcher.config).  Runs survive individual MCP client sessions; on
SIGINT/SIGTERM every live run is stopped before the daemon exits.
"""

import argparse
import asyncio
import dataclasses
import logging
import signal

import uvicorn

from launcher.actions import Launcher
from launcher.config import Config
from launcher.process_manager.server import create_server

log = logging.getLogger(__name__)


async def _run(config: Config) -> None:
    launcher = Launcher.from_config(config)
    server = create_server(launcher, host=config.host, port=config.port)

    # Run uvicorn in the same event loop so the supervisor's async
    # tasks (stream readers, exit waiters) stay alive.
    app = server.streamable_http_app()
    uvi_config = uvicorn.Config(
        app, host=config.host, port=config.port, log_level=config.log_level.lower(),
    )
    uvi = uvicorn.Server(uvi_config)

    # Use _serve() instead of serve() to bypass uvicorn's
    # capture_signals() context manager, which would replace our
    # loop signal handlers.
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    serve_task = asyncio.create_task(uvi._serve())

    await shutdown.wait()
    log.info("Signal received — shutting down")

    uvi.should_exit = True
    await serve_task
    log.info("Stopping all live runs")
    await launcher.shutdown()


def main() -> None:
    config = Config.from_env()

    parser = argparse.ArgumentParser(description="Command launcher daemon")
    parser.add_argument(
        "--host", default=config.host,
        help=f"Interface to bind (default: {config.host})",
    )
    parser.add_argument(
        "--port", type=int, default=config.port,
        help=f"Port to listen on (default: {config.port})",
    )
    parser.add_argument(
        "--database-url", default=config.database_url,
        help=f"SQLAlchemy database URL (default: {config.database_url})",
    )
    args = parser.parse_args()
    config = dataclasses.replace(
        config, host=args.host, port=args.port, database_url=args.database_url,
    )

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [launcher] %(levelname)s %(name)s: %(message)s",
    )

    # The MCP SDK logs a noisy full traceback when the HTTP client
    # disconnects before the response is sent (ClosedResourceError).
    # Downgrade it from ERROR to DEBUG.
    class _SuppressDisconnect(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info and record.exc_info[1] is not None:
                if "ClosedResourceError" in repr(record.exc_info[1]):
                    record.levelno = logging.DEBUG
                    record.levelname = "DEBUG"
                    record.msg = "Client disconnected before response completed"
                    record.args = None
                    record.exc_info = None
                    record.exc_text = None
            return True

    logging.getLogger("mcp.server.streamable_http_manager").addFilter(
        _SuppressDisconnect()
    )

    log.info("Starting launcher on http://%s:%d/mcp", config.host, config.port)
    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
