"""CLI entry point for community-rewards."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .config import load_config
from .main import RewardsApp

CONFIG_SEARCH_PATH = (
    "/etc/community-rewards/config.yaml",
    "./config.yaml",
)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Community Rewards: reward and redemption engine")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    for candidate in CONFIG_SEARCH_PATH:
        if Path(candidate).exists():
            return candidate
    return None


async def main_async(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("rewards")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        return 1

    if args.validate_config:
        try:
            config = load_config(config_path)
        except Exception as e:
            logger.error("Config validation failed: %s", e)
            return 1
        logger.info(
            "Config is valid: %d achievement(s), %d shop item(s).",
            len(config.achievements), len(config.shop.items),
        )
        return 0

    app = RewardsApp(config_path)

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))
        loop.add_signal_handler(signal.SIGHUP, app.reload_config)

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()
    return 0


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
