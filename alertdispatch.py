#!/usr/bin/env python3
"""alertdispatch — deliver grouped alert notifications through pluggable notifiers.

Usage:
    alertdispatch send <receiver> [-f FILE]
    alertdispatch send --all [-f FILE] [--parallel N]
    alertdispatch check
    alertdispatch receivers
"""

from __future__ import annotations

import argparse
import concurrent.futures
import json
import logging
import sys
import time

import config
from config import ConfigError
from models import AlertBatch, PayloadError, parse_batches
from notifiers import Notifier, NotifierRegistry, default_registry

log = logging.getLogger("alertdispatch")


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_notifiers(
    raw_config: dict, names: list[str], registry: NotifierRegistry
) -> tuple[dict[str, Notifier], list[str]]:
    """Construct a notifier per receiver name.

    Returns (notifiers by name, names that could not be constructed).
    Registration is closed before the first notifier is built. A receiver
    with a malformed section only fails itself, unless it is the only one.
    """
    registry.seal()
    options = config.get_options(raw_config)

    notifiers: dict[str, Notifier] = {}
    failed: list[str] = []
    for name in names:
        try:
            receiver_cfg = config.get_receiver_config(raw_config, name)
        except ConfigError as exc:
            if len(names) == 1:
                raise
            log.error("Receiver '%s': %s", name, exc)
            failed.append(name)
            continue
        kind = receiver_cfg["type"]
        factory = registry.lookup(kind)
        if factory is None:
            log.error(
                "Receiver '%s': unknown notifier type '%s'. Available: %s",
                name, kind, ", ".join(registry.kinds()),
            )
            failed.append(name)
            continue
        notifier = factory(logging.getLogger(f"alertdispatch.{name}"), receiver_cfg, options)
        if notifier is None:
            log.error("Receiver '%s' could not be constructed, skipping", name)
            failed.append(name)
            continue
        notifiers[name] = notifier
    return notifiers, failed


def read_batches(path: str | None) -> list[AlertBatch]:
    """Read a webhook payload (object or list) from *path*, or stdin when None / '-'."""
    try:
        if path is None or path == "-":
            payload = json.load(sys.stdin)
        else:
            with open(path) as f:
                payload = json.load(f)
    except OSError as exc:
        raise PayloadError(f"Error: cannot read alert payload: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PayloadError(f"Error: alert payload is not valid JSON: {exc}") from exc
    return parse_batches(payload)


def route_batches(batches: list[AlertBatch], names: list[str]) -> dict[str, list[AlertBatch]]:
    """Group batches by their receiver field. Unknown receivers are logged and dropped."""
    routed: dict[str, list[AlertBatch]] = {name: [] for name in names}
    for batch in batches:
        if batch.receiver not in routed:
            log.warning("No receiver named '%s' is configured, dropping batch", batch.receiver)
            continue
        routed[batch.receiver].append(batch)
    return routed


def _notify(name: str, notifier: Notifier, batches: list[AlertBatch]) -> int:
    start = time.monotonic()
    errors = notifier.notify(batches)
    log.info(
        "Receiver '%s': %d batch(es), %d delivery error(s) in %.1fs",
        name, len(batches), len(errors), time.monotonic() - start,
    )
    return len(errors)


def cmd_send(args: argparse.Namespace, raw_config: dict, registry: NotifierRegistry) -> None:
    if args.all:
        names = config.get_all_receiver_names(raw_config)
        if not names:
            log.error("No receivers defined in config.")
            sys.exit(1)
    else:
        names = [args.receiver]

    batches = read_batches(args.file)
    notifiers, failed = build_notifiers(raw_config, names, registry)

    if args.all:
        routed = route_batches(batches, names)
    else:
        routed = {args.receiver: batches}

    work = [(name, notifier, routed[name]) for name, notifier in notifiers.items() if routed[name]]
    errors_by_name: dict[str, int] = {}
    parallel = getattr(args, "parallel", 1)

    if parallel <= 1:
        for name, notifier, receiver_batches in work:
            errors_by_name[name] = _notify(name, notifier, receiver_batches)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=parallel) as executor:
            future_to_name = {
                executor.submit(_notify, name, notifier, receiver_batches): name
                for name, notifier, receiver_batches in work
            }
            for future in concurrent.futures.as_completed(future_to_name):
                errors_by_name[future_to_name[future]] = future.result()

    total_errors = sum(errors_by_name.values())
    if len(work) > 1:
        log.info(
            "=== Summary: %d receiver(s), %d delivery error(s), %d not constructed ===",
            len(work), total_errors, len(failed),
        )

    if failed:
        log.error("Receivers not constructed: %s", ", ".join(failed))
    if total_errors or failed:
        sys.exit(1)


def cmd_check(args: argparse.Namespace, raw_config: dict, registry: NotifierRegistry) -> None:
    names = config.get_all_receiver_names(raw_config)
    notifiers, failed = build_notifiers(raw_config, names, registry)
    for name in notifiers:
        log.info("  OK   %s", name)
    for name in failed:
        log.info("  FAIL %s", name)
    if failed:
        sys.exit(1)


def cmd_receivers(args: argparse.Namespace, raw_config: dict, registry: NotifierRegistry) -> None:
    for name in config.get_all_receiver_names(raw_config):
        kind = config.get_receiver_section(raw_config, name).get("type", "-")
        print(f"{name}\t{kind}")


def main(registry: NotifierRegistry | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="alertdispatch",
        description="Deliver grouped alert notifications through pluggable notifiers.",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help=f"Config file path (default: $ALERTDISPATCH_CONFIG or {config.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # send
    p_send = subparsers.add_parser("send", help="Deliver alert batches to receivers")
    p_send.add_argument("receiver", nargs="?", help="Receiver name from config")
    p_send.add_argument("--all", action="store_true",
        help="Route each batch to the receiver named in its payload")
    p_send.add_argument("-f", "--file", default=None,
        help="Alertmanager webhook payload (JSON object or list); default: stdin")
    p_send.add_argument("--parallel", type=int, default=1, metavar="N",
        help="Notify up to N receivers in parallel (default: 1, sequential)")

    # check
    subparsers.add_parser("check", help="Construct every receiver and report failures")

    # receivers
    subparsers.add_parser("receivers", help="List configured receivers")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if args.command == "send" and not args.all and not args.receiver:
        parser.error("send requires a receiver name or --all")

    try:
        raw_config = config.load(args.config)
        if registry is None:
            registry = default_registry()

        commands = {
            "send": cmd_send,
            "check": cmd_check,
            "receivers": cmd_receivers,
        }
        commands[args.command](args, raw_config, registry)
    except (ConfigError, PayloadError) as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
