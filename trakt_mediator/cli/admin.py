"""Administrative CLI for the Trakt mediator."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from trakt_mediator.backend.common.errors import MediatorError
from trakt_mediator.backend.common.logging import init_logging
from trakt_mediator.config import settings
from trakt_mediator.startup import MediatorServices, build_services

from ._utils import (
    build_subparser,
    exit_with_error,
    print_json,
    require_subcommand,
    to_serializable,
)


def _services() -> MediatorServices:
    return build_services(settings.get_settings())


def _handle_settings_show(args: argparse.Namespace) -> None:
    print_json(to_serializable(settings.get_settings(reload=args.reload)))


def _handle_providers_show(args: argparse.Namespace) -> None:
    config = settings.get_service_config(args.service)
    if config is None:
        exit_with_error(f"Service '{args.service}' is not defined in information provider settings")
        return
    print_json(to_serializable(config))


def _handle_auth_exchange(args: argparse.Namespace) -> None:
    with _services() as services:
        pair = services.tokens.authorize(args.code)
    print_json({"username": pair.username, "stored": True})


def _handle_history_sync(args: argparse.Namespace) -> None:
    with _services() as services:
        status = services.history.sync(args.username)
    print_json({"username": args.username, "status": status.value})


def _handle_history_annotate(args: argparse.Namespace) -> None:
    path = Path(args.file)
    if not path.exists():
        exit_with_error(f"Items file '{path}' does not exist")
    try:
        items = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        exit_with_error(f"Failed to parse items file: {exc}")
        return
    if not isinstance(items, list):
        exit_with_error("Items file must contain a JSON array")

    with _services() as services:
        if args.sync:
            annotated = services.history.sync_and_annotate(args.username, args.media_type, items)
        else:
            annotated = services.history.annotate(args.username, args.media_type, items)
    print_json(annotated)


def _handle_genres_seed(_: argparse.Namespace) -> None:
    with _services() as services:
        print_json(services.trakt.fetch_and_store_genres())


def _handle_cache_prune(_: argparse.Namespace) -> None:
    with _services() as services:
        print_json({"removed": services.store.prune()})


def _handle_cache_clear(_: argparse.Namespace) -> None:
    with _services() as services:
        services.store.clear_memory()
        services.store.clear_disk()
    print_json({"cleared": True})


def _handle_logo(args: argparse.Namespace) -> None:
    with _services() as services:
        url = services.fanart.get_logo(args.media_id, args.lang, args.media_type)
    print_json({"media_id": args.media_id, "logo": url})


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trakt-mediator",
        description="Administer the Trakt mediator: credentials, history sync and caches.",
    )
    subparsers = parser.add_subparsers(dest="command")
    require_subcommand(subparsers)

    # Settings -----------------------------------------------------------
    settings_parser = build_subparser(subparsers, "settings", help="Inspect effective runtime settings.")
    settings_sub = settings_parser.add_subparsers(dest="settings_command")
    require_subcommand(settings_sub)

    show_settings = build_subparser(settings_sub, "show", help="Display the effective runtime settings.")
    show_settings.add_argument("--reload", action="store_true", help="Re-read the environment before displaying.")
    show_settings.set_defaults(func=_handle_settings_show)

    show_provider = build_subparser(settings_sub, "provider", help="Display a provider block with variables expanded.")
    show_provider.add_argument("service", help="Provider service key (trakt, fanart).")
    show_provider.set_defaults(func=_handle_providers_show)

    # Auth ---------------------------------------------------------------
    auth_parser = build_subparser(subparsers, "auth", help="Manage Trakt credentials.")
    auth_sub = auth_parser.add_subparsers(dest="auth_command")
    require_subcommand(auth_sub)

    exchange = build_subparser(auth_sub, "exchange", help="Exchange an OAuth authorization code and store the tokens.")
    exchange.add_argument("code", help="Authorization code returned to the redirect URI.")
    exchange.set_defaults(func=_handle_auth_exchange)

    # History ------------------------------------------------------------
    history_parser = build_subparser(subparsers, "history", help="Synchronize and query watch history.")
    history_sub = history_parser.add_subparsers(dest="history_command")
    require_subcommand(history_sub)

    sync = build_subparser(history_sub, "sync", help="Pull the watched feed for a user if the interval elapsed.")
    sync.add_argument("username", help="Trakt username.")
    sync.set_defaults(func=_handle_history_sync)

    annotate = build_subparser(history_sub, "annotate", help="Mark watched titles in a JSON list of items.")
    annotate.add_argument("username", help="Trakt username.")
    annotate.add_argument("media_type", help="movie, series, show, tv ...")
    annotate.add_argument("file", help="Path to a JSON array of items with 'id' and 'name'.")
    annotate.add_argument("--sync", action="store_true", help="Sync history first when it is due.")
    annotate.set_defaults(func=_handle_history_annotate)

    # Genres -------------------------------------------------------------
    genres_parser = build_subparser(subparsers, "genres", help="Genre reference data.")
    genres_sub = genres_parser.add_subparsers(dest="genres_command")
    require_subcommand(genres_sub)

    seed = build_subparser(genres_sub, "seed", help="Fetch movie and show genres and store new ones.")
    seed.set_defaults(func=_handle_genres_seed)

    # Cache --------------------------------------------------------------
    cache_parser = build_subparser(subparsers, "cache", help="Maintain the response cache.")
    cache_sub = cache_parser.add_subparsers(dest="cache_command")
    require_subcommand(cache_sub)

    prune = build_subparser(cache_sub, "prune", help="Delete expired cache files.")
    prune.set_defaults(func=_handle_cache_prune)

    clear = build_subparser(cache_sub, "clear", help="Drop every cached response.")
    clear.set_defaults(func=_handle_cache_clear)

    # Logo ---------------------------------------------------------------
    logo = build_subparser(subparsers, "logo", help="Pick a fanart.tv logo for a title.")
    logo.add_argument("media_id", help="TMDb id for movies, TheTVDB id for series.")
    logo.add_argument("--lang", default="en", help="Preferred logo language.")
    logo.add_argument("--type", dest="media_type", default="movie", help="movie, tv or series.")
    logo.set_defaults(func=_handle_logo)

    return parser


def main(argv: Optional[Any] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return

    # stdout carries the JSON result
    init_logging(settings.get_settings().log_level, stream=sys.stderr)
    try:
        handler(args)
    except MediatorError as exc:
        exit_with_error(str(exc))


if __name__ == "__main__":  # pragma: no cover
    main()
