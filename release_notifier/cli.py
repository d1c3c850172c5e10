"""Command-line interface for the release notifier."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .config import NotifierSettings
from .context import build_context
from .errors import ConfigError, ReleaseNotifierError
from .observability import setup_logging
from .preferences import NOTIFICATION_LEVELS
from .transport import DiscordDMTransport

logger = logging.getLogger(__name__)


async def run_check(settings: NotifierSettings) -> int:
    if not settings.discord_bot_token:
        raise ConfigError("DISCORD_BOT_TOKEN is required to deliver notifications")

    transport = DiscordDMTransport(
        settings.discord_bot_token,
        api_url=settings.discord_api_url,
        timeout=settings.http_timeout_seconds,
    )
    ctx = build_context(settings, transport=transport)
    try:
        await ctx.orchestrator.initialize()
        with ctx.metrics.timer():
            result = await ctx.orchestrator.check_and_notify()
        print(json.dumps(result.to_dict(), indent=2))
        return 0
    finally:
        try:
            await ctx.orchestrator.shutdown()
        finally:
            await transport.close()
            ctx.metrics.push()


async def run_preferences_command(settings: NotifierSettings, args: argparse.Namespace) -> int:
    ctx = build_context(settings)
    await ctx.preferences.load()

    if args.command == "stats":
        print(json.dumps(ctx.preferences.get_statistics(), indent=2))
        return 0

    if args.command == "opt-out":
        prefs = await ctx.preferences.set_opt_out(args.user_id, True)
    elif args.command == "opt-in":
        prefs = await ctx.preferences.set_opt_out(args.user_id, False)
    else:
        prefs = await ctx.preferences.set_notification_level(args.user_id, args.level)

    await ctx.preferences.force_save()
    print(json.dumps({args.user_id: prefs.to_dict()}, indent=2))
    return 0


async def async_main(args: argparse.Namespace) -> int:
    """Main async function for CLI execution"""
    try:
        settings = NotifierSettings()
        setup_logging(settings.log_level, settings.log_format)

        if args.command == "check":
            return await run_check(settings)
        if args.command == "clear-version":
            ctx = build_context(settings)
            await ctx.version_tracker.clear_saved_version()
            return 0
        return await run_preferences_command(settings, args)

    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except ReleaseNotifierError as e:
        logger.error(f"Release notifier error: {e}", exc_info=True)
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Release Notifier - announce new releases to subscribed users',
        prog='python -m release_notifier',
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="Run one notification cycle")
    sub.add_parser("stats", help="Show preference statistics")
    sub.add_parser("clear-version", help="Forget the last notified version")

    for name, help_text in (("opt-out", "Stop notifications for a user"), ("opt-in", "Resume notifications for a user")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("user_id")

    p = sub.add_parser("set-level", help="Set a user's notification level")
    p.add_argument("user_id")
    p.add_argument("level", choices=NOTIFICATION_LEVELS)
    return parser


def main(argv: Optional[list] = None):
    """CLI entry point"""
    args = build_parser().parse_args(argv)
    exit_code = asyncio.run(async_main(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
