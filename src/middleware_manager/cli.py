#!/usr/bin/env python3
"""middleware-manager - Reverse Proxy Configuration Synthesis

Keeps a relational model of routable hosts ("resources"), reusable middlewares
and services in line with an upstream source of truth, and continuously emits
the dynamic configuration file the reverse proxy loads through its file
provider.

Supported data sources:
    - gateway:    gateway management API (GET {url}/traefik-config)
    - proxy-api:  the proxy's own runtime API (GET {url}/api/http/routers, ...)

Environment variables:

    Storage:
        DATABASE_URL              SQLAlchemy database URL
                                  (default: sqlite:///data/middleware.db)
        DATA_SOURCES_PATH         JSON file holding the data sources and which one
                                  is active (default: /data/config.json)
        TEMPLATES_PATH            YAML middleware/service templates seeded at startup
                                  (default: config/templates.yaml)

    Data sources:
        GATEWAY_URL               Default gateway API URL (default: http://gateway:3001/api/v1)
        PROXY_API_URL             Default proxy API URL (default: http://host.docker.internal:8080)
        ACTIVE_DATA_SOURCE        Data source made active when the JSON file is first
                                  created: "gateway" or "proxy-api" (default: gateway)

    Output:
        CONFIG_DIR                Directory receiving resource-overrides.yml (default: /conf)

    Runtime:
        RUN_MODE                  "once" or "watch" (default: watch)
        CHECK_INTERVAL_SECONDS    Resource/service reconciliation interval (default: 30)
        GENERATE_INTERVAL_SECONDS Configuration generation interval (default: 10)
        FETCH_TIMEOUT_SECONDS     Upper bound on one upstream fetch (default: 30)
        CLEANUP_ON_START          Merge duplicate services and resources on start (default: true)
        LOG_LEVEL                 DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from typing import List

from middleware_manager.datasources import (
    DEFAULT_GATEWAY_URL,
    DEFAULT_PROXY_NAME,
    DEFAULT_PROXY_URL,
    DataSourceManager,
)
from middleware_manager.fetchers import FALLBACK_PROXY_URLS
from middleware_manager.generator import ConfigGenerator
from middleware_manager.loop import PollingLoop
from middleware_manager.models import DataSourceType
from middleware_manager.store import Store
from middleware_manager.templates import seed_templates
from middleware_manager.watchers import ResourceWatcher, ServiceWatcher

# =============================================================================
# Configuration
# =============================================================================

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/middleware.db").strip()
DATA_SOURCES_PATH = os.getenv("DATA_SOURCES_PATH", "/data/config.json")
TEMPLATES_PATH = os.getenv("TEMPLATES_PATH", "config/templates.yaml")

# Data sources
GATEWAY_URL = os.getenv("GATEWAY_URL", DEFAULT_GATEWAY_URL)
PROXY_API_URL = os.getenv("PROXY_API_URL", DEFAULT_PROXY_URL)
ACTIVE_DATA_SOURCE = os.getenv("ACTIVE_DATA_SOURCE", "gateway").lower().strip()

# Output
CONFIG_DIR = os.getenv("CONFIG_DIR", "/conf")

# Runtime configuration
RUN_MODE = os.getenv("RUN_MODE", "watch").lower().strip()
CHECK_INTERVAL_SECONDS = int(os.getenv("CHECK_INTERVAL_SECONDS", "30"))
GENERATE_INTERVAL_SECONDS = int(os.getenv("GENERATE_INTERVAL_SECONDS", "10"))
FETCH_TIMEOUT_SECONDS = int(os.getenv("FETCH_TIMEOUT_SECONDS", "30"))
CLEANUP_ON_START = os.getenv("CLEANUP_ON_START", "true").lower().strip() in ("1", "true", "yes", "on")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Main
# =============================================================================


class _Shutdown(Exception):
    """Raised from the SIGTERM handler to leave the main loop."""


def _handle_sigterm(signum, frame):
    raise _Shutdown()


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL must not be empty")
    if RUN_MODE not in ("once", "watch"):
        errors.append(f"Invalid RUN_MODE: {RUN_MODE}. Use 'once' or 'watch'")
    if ACTIVE_DATA_SOURCE not in ("gateway", DEFAULT_PROXY_NAME):
        logger.warning(
            f"ACTIVE_DATA_SOURCE '{ACTIVE_DATA_SOURCE}' is not a default source; "
            f"it must exist in {DATA_SOURCES_PATH}"
        )

    for name, value in (
        ("CHECK_INTERVAL_SECONDS", CHECK_INTERVAL_SECONDS),
        ("GENERATE_INTERVAL_SECONDS", GENERATE_INTERVAL_SECONDS),
        ("FETCH_TIMEOUT_SECONDS", FETCH_TIMEOUT_SECONDS),
    ):
        if value <= 0:
            errors.append(f"{name} must be positive, got {value}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def check_active_source(datasources: DataSourceManager) -> None:
    """Log whether the active data source answers, hinting at a working proxy URL."""
    active = datasources.get_active_or_fallback()
    if datasources.test_connection(active):
        return
    if active.type == DataSourceType.PROXY_API:
        url = datasources.discover_proxy_url(FALLBACK_PROXY_URLS)
        if url is None:
            logger.warning("No proxy API URL answered; watchers will keep retrying")
        return
    logger.warning(f"Active data source at {active.url} is not reachable; watchers will keep retrying")


def build_loops(store: Store, datasources: DataSourceManager) -> List[PollingLoop]:
    return [
        ResourceWatcher(
            store, datasources, interval=CHECK_INTERVAL_SECONDS, fetch_timeout=FETCH_TIMEOUT_SECONDS
        ),
        ServiceWatcher(
            store, datasources, interval=CHECK_INTERVAL_SECONDS, fetch_timeout=FETCH_TIMEOUT_SECONDS
        ),
        ConfigGenerator(store, datasources, CONFIG_DIR, interval=GENERATE_INTERVAL_SECONDS),
    ]


def main():
    """Main entry point."""
    logger.info("middleware-manager starting")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    store = Store(DATABASE_URL)
    datasources = DataSourceManager(
        DATA_SOURCES_PATH,
        gateway_url=GATEWAY_URL,
        proxy_url=PROXY_API_URL,
        active_name=ACTIVE_DATA_SOURCE,
    )
    datasources.ensure_defaults()
    active = datasources.get_active_or_fallback()

    logger.info(f"Database: {store.engine.url.render_as_string(hide_password=True)}")
    logger.info(f"Active data source: {datasources.get_active_name()} ({active.type.value} at {active.url})")
    logger.info(f"Output directory: {CONFIG_DIR}")
    logger.info(f"Run mode: {RUN_MODE}")
    if RUN_MODE == "watch":
        logger.info(
            f"Check interval: {CHECK_INTERVAL_SECONDS}s, generate interval: {GENERATE_INTERVAL_SECONDS}s"
        )

    seed_templates(store, TEMPLATES_PATH)
    if CLEANUP_ON_START:
        store.cleanup_duplicate_services()
        store.cleanup_duplicate_resources()
    check_active_source(datasources)

    loops = build_loops(store, datasources)

    try:
        if RUN_MODE == "once":
            failed = [loop.name for loop in loops if not loop.run_once()]
            if failed:
                logger.error(f"Failed: {', '.join(failed)}")
                sys.exit(1)
            return

        signal.signal(signal.SIGTERM, _handle_sigterm)
        for loop in loops:
            loop.start()
        while True:
            time.sleep(1)

    except (KeyboardInterrupt, _Shutdown):
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        for loop in loops:
            loop.stop(join=True, timeout=FETCH_TIMEOUT_SECONDS)
        store.close()


if __name__ == "__main__":
    main()
