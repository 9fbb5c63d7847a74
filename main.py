#!/usr/bin/env python3
"""Unified entry point for the Reminder Scheduling Engine.

Starts the REST API, the MCP server (SSE transport) and, when enabled, the
background worker as child processes of the current interpreter, and stops
all of them as soon as one exits or a shutdown signal arrives.
"""

import os
import signal
import subprocess
import sys
import time
from typing import Dict, List, Optional, Tuple

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'main.log')

ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
STARTUP_DELAY_SECONDS = 2
MONITOR_INTERVAL_SECONDS = 5

# (name, process) for every started service
services: List[Tuple[str, subprocess.Popen]] = []
shutdown_requested = False


def signal_handler(signum, frame):
    """Second signal forces exit; first one stops the services."""
    global shutdown_requested
    if shutdown_requested:
        logger.warning("Force shutdown requested")
        sys.exit(1)

    shutdown_requested = True
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    stop_services()


def stop_services(exit_code: int = 0):
    """Terminate every child, killing the ones that ignore SIGTERM for 5 seconds."""
    logger.info("Stopping all services...")
    for name, process in services:
        if process.poll() is None:
            logger.info(f"Terminating {name} (PID: {process.pid})")
            process.terminate()

    for name, process in services:
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing {name} (PID: {process.pid})")
            process.kill()
            process.wait()

    logger.info("All services stopped")
    sys.exit(exit_code)


def service_table() -> List[Tuple[str, str, Optional[Dict[str, str]]]]:
    """(name, script, environment) of the services to start."""
    mcp_env = os.environ.copy()
    mcp_env['MCP_TRANSPORT'] = 'sse'

    table = [
        ("API server", "api_server.py", None),
        ("MCP server", "mcp_server.py", mcp_env),
    ]
    if settings.WORKER_ENABLED:
        table.append(("background worker", "background_worker.py", None))
    else:
        logger.info("Background worker disabled, not starting it")
    return table


def start_service(name: str, script: str, env: Optional[Dict[str, str]] = None) -> subprocess.Popen:
    logger.info(f"Starting {name}...")
    process = subprocess.Popen(
        [sys.executable, script],
        cwd=ROOT_DIR,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT
    )
    services.append((name, process))
    time.sleep(STARTUP_DELAY_SECONDS)
    return process


def main():
    """Start all services and watch them."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Scheduling Engine - Unified Startup")
    logger.info("=" * 60)

    try:
        for name, script, env in service_table():
            start_service(name, script, env)
    except OSError as e:
        logger.error(f"Error starting services: {e}")
        stop_services(exit_code=1)

    logger.info("=" * 60)
    logger.info(f"Started {len(services)} service(s):")
    logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT} (docs at /docs)")
    logger.info(f"  - MCP Server: http://{settings.MCP_HOST}:{settings.MCP_PORT}/sse")
    logger.info(f"  - Database: {settings.DATABASE_URL.split('://')[0]}")
    logger.info("=" * 60)

    while not shutdown_requested:
        for name, process in services:
            if process.poll() is not None:
                logger.error(f"{name} (PID: {process.pid}) exited with code {process.returncode}")
                stop_services(exit_code=1)
        time.sleep(MONITOR_INTERVAL_SECONDS)


if __name__ == "__main__":
    main()
