#!/usr/bin/env python3
from __future__ import annotations

"""
Main entry point for the Anime Tracker CLI.

Load the config, open the database, and either keep polling until told to
stop, run a single cycle, or poke at the tracked shows and their history.
"""

import argparse
import asyncio
import logging
import signal
from typing import Any, Optional

from anime_tracker.config import AppConfig, ConfigError, ConfigLoader, ShowConfig, parse_resolution
from anime_tracker.dispatcher import DownloadDispatcher
from anime_tracker.feeds import FeedClient
from anime_tracker.store import SqliteStore, StoreError
from anime_tracker.tracker import TrackerLoop
from anime_tracker.transmission import TransmissionController, TransmissionError


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """
    Build and parse the CLI arguments.

    Returns
    -------
    argparse.Namespace
        The parsed arguments, subcommand included.
    """

    parser = argparse.ArgumentParser(description="Track airing anime and send new episodes to Transmission.")
    parser.add_argument("--config", default="config.json", help="Path to the JSON configuration file.")
    parser.add_argument("--db", help="Override the SQLite database path.")
    parser.add_argument("--host", help="Override Transmission host.")
    parser.add_argument("--port", type=int, help="Override Transmission port.")
    parser.add_argument("--download-dir", help="Override the download root.")
    parser.add_argument("--polls-per-day", type=int, help="Override how often the feeds are polled.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging regardless of config.")

    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("run", help="Poll on schedule until interrupted.")
    subcommands.add_parser("once", help="Run a single poll cycle and print the result.")

    track = subcommands.add_parser("track", help="Add or update a tracked show.")
    track.add_argument("title", help="Canonical show title.")
    track.add_argument("--alias", action="append", default=[], help="Alternative title; repeatable.")
    track.add_argument("--season", type=int, help="Season number releases must match.")
    track.add_argument("--group", dest="preferred_group", help="Preferred release group.")
    track.add_argument("--min-resolution", help="Minimum resolution, e.g. 720p.")
    track.add_argument("--search-group", default="subsplease", help="Group name used in feed searches.")
    track.add_argument("--download-dir", dest="show_download_dir", help="Download directory for this show.")
    track.add_argument("--watermark", type=int, help="Treat episodes up to this one as already downloaded.")
    track.add_argument("--disable", action="store_true", help="Keep the show but stop tracking it.")

    history = subcommands.add_parser("history", help="List download history.")
    history.add_argument("--show", help="Only this show.")
    history.add_argument("--limit", type=int, default=20, help="How many records to list.")

    return parser.parse_args(argv)


def configure_logging(config: AppConfig, debug: bool) -> None:
    """
    Funnel the logging level into place.

    Parameters
    ----------
    config : AppConfig
        Loaded configuration with its chosen verbosity.
    debug : bool
        When ``True`` we skip straight to DEBUG.
    """

    level_name = "DEBUG" if debug else config.logging.level.upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def collect_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "db": args.db,
        "host": args.host,
        "port": args.port,
        "download_dir": args.download_dir,
        "polls_per_day": args.polls_per_day,
    }


def load_config(args: argparse.Namespace) -> AppConfig:
    config = ConfigLoader(args.config).load()
    return ConfigLoader.apply_overrides(config, collect_overrides(args))


def build_tracker(config: AppConfig, store: SqliteStore) -> TrackerLoop:
    transmission = TransmissionController(config.transmission)
    dispatcher = DownloadDispatcher(store, transmission, download_root=config.transmission.download_dir)
    return TrackerLoop(config, store, FeedClient(), dispatcher)


async def reload_config(args: argparse.Namespace, tracker: TrackerLoop) -> bool:
    """Re-read the config file into a running tracker; a failed reload is logged and the loop carries on."""

    try:
        fresh = load_config(args)
    except ConfigError as exc:
        logging.error("Reload failed, keeping the current configuration: %s", exc)
        return False
    try:
        await tracker.reload(fresh)
    except Exception:
        logging.exception("Reload failed while applying the new configuration")
        return False
    return True


async def run_loop(args: argparse.Namespace, config: AppConfig, store: SqliteStore) -> None:
    """Run the tracker until SIGINT/SIGTERM; SIGHUP reloads the configuration."""

    tracker = build_tracker(config, store)
    try:
        tracker.dispatcher.transmission.ensure_available()
    except TransmissionError as exc:
        logging.warning("Transmission not reachable yet, will retry on first download: %s", exc)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    reloads: set[asyncio.Task] = set()

    def schedule_reload() -> None:
        task = loop.create_task(reload_config(args, tracker))
        reloads.add(task)
        task.add_done_callback(reloads.discard)

    handlers = {
        signal.SIGINT: stop_event.set,
        signal.SIGTERM: stop_event.set,
        signal.SIGHUP: schedule_reload,
    }
    for signum, handler in handlers.items():
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError):
            logging.debug("Signal %s cannot be handled on this platform", signum)

    logging.info("Anime Tracker running; Ctrl+C to stop.")
    await tracker.run_forever(stop_event)


def run_once(config: AppConfig, store: SqliteStore) -> None:
    tracker = build_tracker(config, store)
    tracker.load_shows()
    result = asyncio.run(tracker.run_cycle())

    print(result.summary())
    for record in result.downloaded:
        show = store.get_show(record.show_id)
        print(f"  downloaded {show.title if show else record.show_id} episode {record.episode}")
    for show_id, episode in result.pending_confirmation:
        show = store.get_show(show_id)
        print(f"  needs confirmation: {show.title if show else show_id} episode {episode}")
    for error in result.errors:
        print(f"  error: {error}")


def track_show(args: argparse.Namespace, store: SqliteStore) -> None:
    try:
        min_resolution = parse_resolution(args.min_resolution)
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc

    show = store.upsert_show(
        ShowConfig(
            title=args.title,
            aliases=args.alias,
            season=args.season,
            preferred_group=args.preferred_group,
            min_resolution=min_resolution,
            enabled=not args.disable,
            search_group=args.search_group,
            download_dir=args.show_download_dir,
        )
    )
    if args.watermark is not None:
        store.set_watermark(show.show_id, args.watermark)
        show.last_downloaded_episode = args.watermark
    state = "disabled" if not show.enabled else f"watermark {show.last_downloaded_episode}"
    print(f"Tracking {show.title} (id {show.show_id}, {state})")


def print_history(args: argparse.Namespace, store: SqliteStore) -> None:
    show_id = None
    if args.show:
        show = store.find_show(args.show)
        if show is None:
            raise SystemExit(f"Unknown show: {args.show}")
        show_id = show.show_id

    titles = {show.show_id: show.title for show in store.list_shows()}
    for record in store.history(show_id=show_id, limit=args.limit):
        stamp = record.created_at.strftime("%Y-%m-%d %H:%M") if record.created_at else "?"
        line = f"{stamp}  {titles.get(record.show_id, record.show_id)} #{record.episode}  {record.outcome.value}"
        if record.error:
            line += f"  ({record.error})"
        print(line)


def main(argv: Optional[list[str]] = None) -> None:
    """
    Run the CLI workflow.

    Steps
    -----
    1. Parse CLI arguments and load config.
    2. Open the database; if that fails there is nothing sensible left to do.
    3. Hand over to the chosen subcommand.
    """

    args = parse_args(argv)
    try:
        config = load_config(args)
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc
    configure_logging(config, args.debug)

    try:
        store = SqliteStore(config.database.path)
    except StoreError as exc:
        raise SystemExit(str(exc)) from exc

    try:
        if args.command == "run":
            asyncio.run(run_loop(args, config, store))
        elif args.command == "once":
            run_once(config, store)
        elif args.command == "track":
            track_show(args, store)
        elif args.command == "history":
            print_history(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    main()
