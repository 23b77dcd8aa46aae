"""Command-line entrypoint for running the mirror cache."""

from __future__ import annotations

import argparse
from typing import Any, Optional, Sequence

import structlog
import uvicorn

from ..common.observability import configure_logging
from ..common.settings import MirrorCacheSettings
from .app import create_app


LOGGER = structlog.get_logger("odsync.main")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pull-through cache for remote file mirrors")
    parser.add_argument("--port", type=int, help="Server port (default: 8080)")
    parser.add_argument("--host", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--storage", help="Storage directory (default: ./storage)")
    parser.add_argument("--upstream", help="Upstream mirror URL")
    parser.add_argument("--cache-size", type=int, help="Advisory cache size in MB (not enforced)")
    parser.add_argument("--log-level", help="Log level (default: INFO)")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> MirrorCacheSettings:
    """Environment and .env values, overridden by any flags given."""
    overrides: dict[str, Any] = {
        "port": args.port,
        "bind_host": args.host,
        "storage_path": args.storage,
        "upstream_url": args.upstream,
        "cache_size_mb": args.cache_size,
        "log_level": args.log_level,
    }
    return MirrorCacheSettings(**{key: value for key, value in overrides.items() if value is not None})


def main(argv: Optional[Sequence[str]] = None) -> None:
    settings = load_settings(parse_args(argv))
    configure_logging("odsync.mirror_cache", settings.log_level)
    try:
        settings.storage_path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.error("storage_init_failed", storage=str(settings.storage_path), error=str(exc))
        raise SystemExit(1) from exc

    LOGGER.info("odsync_starting", host=settings.bind_host, port=settings.port)
    LOGGER.info("odsync_config", storage=str(settings.storage_path), upstream=settings.upstream_url)
    uvicorn.run(
        create_app(settings),
        host=settings.bind_host,
        port=settings.port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
