"""
Main entry point for the MQTT connection supervisor.

This module is responsible for:
- Configuring process-wide logging.
- Loading and validating the configuration (YAML file).
- Starting the supervised broker connection.
- Running a consumer that logs drained events.
- Managing the overall application lifecycle (start, graceful stop on SIGINT/SIGTERM).
"""

import asyncio
import logging
import signal
import sys

from typing import Dict, Any

from mqtt_supervisor.config import load_config
from mqtt_supervisor.supervisor import Connection
from mqtt_supervisor.drain import EventStream
from mqtt_supervisor.errors import SupervisorError


def setup_logging():
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

async def consume_events(events: EventStream):
    """Background task that logs every event drained from the connection."""
    logger.info("Event consumer started.")
    try:
        async for event in events:
            logger.info(f"Consumed event: {event.to_json()}")
            events.task_done()
    except asyncio.CancelledError:
        logger.info("Event consumer stopped.")
        raise

async def shutdown(signal_name: str, loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event, connection: Connection):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    # Stop the supervisor first so a disconnect is not mistaken for a lost connection
    stop_event.set()
    await connection.stop()
    await connection.wait_closed()

    # Cancel all running tasks (like the event consumer)
    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()

    # Await cancellation to finish safely
    await asyncio.gather(*tasks, return_exceptions=True)

    # Stop the loop
    loop.stop()

async def main_application_runner(config_path: str = "config.yaml"):
    setup_logging()
    logger.info("Starting MQTT supervisor...")

    # Load config
    config: Dict[str, Any] = load_config(config_path)
    connection = Connection.from_config(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    # Blocks until the first handshake succeeds, fails or times out
    try:
        await connection.start(stop_event)
    except SupervisorError as e:
        logger.error(f"Could not start MQTT supervisor: {e}")
        stop_event.set()
        await connection.stop()
        await connection.wait_closed()
        raise

    consumer_task = asyncio.create_task(consume_events(connection.drain_events()))

    # Setup Signal Handlers for OS interrupts
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, loop, stop_event, connection))
        )

    logger.info(f"Supervisor for (worker: {connection.name}) is fully operational. Press Ctrl+C to exit.")

    # The Infinite Wait
    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        pass

def run():
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    try:
        asyncio.run(main_application_runner(config_path))
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass
    except RuntimeError as e:
        # loop.stop() from the shutdown handler ends asyncio.run before the main coroutine completes
        if "Event loop stopped before Future completed" not in str(e):
            raise

if __name__ == "__main__":
    run()
