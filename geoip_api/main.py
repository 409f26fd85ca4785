"""GeoIP service entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional, Sequence

from pydantic import ValidationError

from .config import GeoIPSettings, load_config
from .errors import ConfigError, InvalidAddressError
from .manager import DatabaseManager
from .scheduler import RefreshScheduler

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2


def _resolve_log_level(value: str) -> int:
    name = value.strip().upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value!r}")
    return level


class GeoIPService:
    def __init__(self, config: GeoIPSettings) -> None:
        self.config = config
        self.manager = DatabaseManager(config)
        self.scheduler = RefreshScheduler.from_settings(self.manager)

    async def start(self) -> None:
        LOGGER.info(
            "Starting GeoIP service",
            extra={
                "database_path": self.config.geoip_database_path,
                "schedule": self.config.geoip_update_schedule,
            },
        )
        await self.scheduler.run()
        # The scheduler returns when no schedule is configured; keep serving.
        await asyncio.Event().wait()

    def close(self) -> None:
        self.manager.close()


async def _run(config: GeoIPSettings) -> None:
    service = GeoIPService(config)
    try:
        await service.start()
    finally:
        service.close()


def _lookup(config: GeoIPSettings, address: str) -> int:
    manager = DatabaseManager(config)
    try:
        result = manager.query(address)
    except InvalidAddressError as exc:
        print(json.dumps({"error": str(exc)}))
        return EXIT_INVALID
    finally:
        manager.close()
    if result is None:
        print(json.dumps({"ip_address": address.strip(), "error": "not found"}))
        return EXIT_FAILURE
    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK


def _refresh_once(config: GeoIPSettings) -> int:
    manager = DatabaseManager(config)
    try:
        outcome = manager.refresh()
    finally:
        manager.close()
    print(
        json.dumps(
            {
                "status": outcome.status.value,
                "error": outcome.error.value if outcome.error else None,
                "message": outcome.message,
            }
        )
    )
    return EXIT_OK if outcome.ok else EXIT_FAILURE


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="GeoIP lookup service")
    parser.add_argument("--healthcheck", action="store_true", help="Validate configuration and exit")
    parser.add_argument("--lookup", metavar="ADDRESS", help="Look up one IP address and exit")
    parser.add_argument("--refresh", action="store_true", help="Update the database once and exit")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = load_config()
    except ValidationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_INVALID
    try:
        logging.getLogger().setLevel(_resolve_log_level(config.geoip_log_level))
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_INVALID

    try:
        if args.healthcheck:
            LOGGER.info("Configuration loaded for %s", config.geoip_database_path)
            return EXIT_OK
        if args.lookup is not None:
            return _lookup(config, args.lookup)
        if args.refresh:
            return _refresh_once(config)
        asyncio.run(_run(config))
    except ConfigError as exc:
        LOGGER.error("Refusing to start: %s", exc)
        return EXIT_INVALID
    except KeyboardInterrupt:
        LOGGER.info("GeoIP service stopped")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
