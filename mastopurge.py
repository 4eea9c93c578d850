#!/usr/bin/env python3
"""Delete your old Mastodon posts (and optionally favourites).

Statuses older than ``--maxage`` are deleted, pinned statuses are kept.

References:
- GET /api/v1/accounts/verify_credentials
- GET /api/v1/accounts/{id}/statuses
- DELETE /api/v1/statuses/{id}
- GET /api/v1/favourites
- POST /api/v1/statuses/{id}/unfavourite
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import timedelta

from mastopurge_api import ApiClient, TransportError, __version__
from mastopurge_pages import PageError
from mastopurge_purge import DEFAULT_PAGE_DELAY, Purger, PurgeOptions, RunState, cutoff_for, format_dt
from mastopurge_setup import (
    DEFAULT_SETTINGS_FILE,
    Settings,
    SettingsError,
    SetupError,
    load_settings,
    onboard,
    parse_max_age,
    verify_credentials,
)

LOG_FORMAT = "[%(levelname)s] %(message)s"

logger = logging.getLogger("mastopurge")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Delete your old posts on a Mastodon server.")
    p.add_argument(
        "--noninteractive",
        action="store_true",
        help=(
            "Run in non-interactive mode, suitable for cron jobs. "
            "(When run with a missing settings file, setup still runs interactively.)"
        ),
    )
    p.add_argument(
        "--maxage",
        default="",
        help=(
            "Max age of posts you want to keep. Required in non-interactive mode. "
            'Allowed units: hours, days, weeks, months, years. Example: "6 months".'
        ),
    )
    p.add_argument(
        "--config",
        default=DEFAULT_SETTINGS_FILE,
        help=f"Path of the settings file (default: {DEFAULT_SETTINGS_FILE}).",
    )
    p.add_argument("--version", action="store_true", help="Print version, and exit.")
    p.add_argument("--quiet", action="store_true", help="Reduce output to the most important messages only.")
    p.add_argument("--dryrun", action="store_true", help="Preview results without deleting anything.")
    p.add_argument("--favs", action="store_true", help="Purge favourites in addition to posts.")
    p.add_argument("--timeout", type=float, default=20.0, help="HTTP timeout seconds (default: 20).")
    p.add_argument(
        "--page-delay",
        type=float,
        default=DEFAULT_PAGE_DELAY,
        help=f"Seconds to wait after a page with deletions (default: {DEFAULT_PAGE_DELAY}).",
    )
    return p.parse_args(argv)


def configure_logging(quiet: bool) -> None:
    logging.basicConfig(
        level=logging.WARNING if quiet else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def resolve_max_age(args: argparse.Namespace) -> timedelta:
    raw = args.maxage
    while True:
        if not raw:
            if args.noninteractive:
                raise ValueError("missing required argument --maxage")
            print(
                '\nEnter the maximum age of the posts you want to KEEP, e.g. "30 days". '
                "Older posts will be deleted. Allowed units: hours, days, weeks, months, years."
            )
            try:
                raw = input("[Maximum post age]: ")
            except EOFError as exc:
                raise ValueError("no maximum age given; pass --maxage") from exc
        try:
            return parse_max_age(raw)
        except ValueError:
            if args.noninteractive:
                raise
            print("Error: Invalid age format.")
            raw = ""


def resolve_settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config)
    if settings is None:
        logger.info("Settings file %s does not exist or is not accessible.", args.config)
        settings = onboard(args.config, lambda server: ApiClient(server, timeout=args.timeout))
    else:
        logger.info("Settings found! Reading %s", args.config)

    env_token = os.getenv("MASTOPURGE_ACCESS_TOKEN", "").strip()
    if env_token:
        settings.access_token = env_token
    if not settings.access_token:
        raise SettingsError(f"Missing access token. Delete '{args.config}' to set up again.")
    return settings


def print_summary(title: str, state: RunState, dry_run: bool) -> None:
    print("")
    print(f"========== {title} ==========")
    print(f"pages      : {state.pages}")
    print(f"requests   : {state.requests}")
    print(f"considered : {state.considered}")
    print(f"kept       : {state.kept}")
    if state.protected:
        print(f"pinned     : {state.protected}")
    if dry_run:
        print(f"would purge: {state.would_delete}")
    print(f"purged     : {state.deleted}")
    print(f"failed     : {state.failed}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if args.version:
        print(f"mastopurge version {__version__}")
        return 0

    configure_logging(args.quiet)

    try:
        max_age = resolve_max_age(args)
    except ValueError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    try:
        settings = resolve_settings(args)
    except (SettingsError, SetupError, TransportError) as exc:
        print(f"[ERROR] Failed to load settings: {exc}", file=sys.stderr)
        return 2

    client = ApiClient(settings.server_url, settings.access_token, timeout=args.timeout)
    try:
        account = verify_credentials(client)
    except (SetupError, TransportError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        print(f"[ERROR] Consider deleting '{args.config}' and starting mastopurge again.", file=sys.stderr)
        return 2

    logger.info("Access GRANTED: @%s (%s)", account.username or "-", account.id)

    options = PurgeOptions(cutoff=cutoff_for(max_age), dry_run=args.dryrun, page_delay=args.page_delay)
    logger.warning("Posts older than %s will be deleted!", format_dt(options.cutoff))
    logger.info("Mode: %s", "DRY-RUN" if options.dry_run else "DELETE")

    purger = Purger(client, account.id, options)
    failed = 0
    try:
        statuses = purger.purge_statuses()
        print_summary("STATUSES", statuses, options.dry_run)
        failed += statuses.failed

        if args.favs:
            favourites = purger.purge_favourites()
            print_summary("FAVOURITES", favourites, options.dry_run)
            failed += favourites.failed
    except PageError as exc:
        print(f"[ERROR] Unexpected server response: {exc}", file=sys.stderr)
        print(exc.raw, file=sys.stderr)
        return 2
    except TransportError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    return 0 if failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
