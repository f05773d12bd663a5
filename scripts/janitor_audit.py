"""Forward registry audit entries and cleanup operations to monitoring-friendly output."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from process_janitor.config import ConfigError, JanitorSettings, load_settings
from process_janitor.storage.files import read_jsonl

SOURCES = ("registry", "cleanup")


def source_path(settings: JanitorSettings, source: str) -> Path:
    if source == "registry":
        return settings.registry_log
    return settings.cleanup_log


def load_entries(path: Path) -> list[dict[str, object]]:
    """Read JSON lines from ``path``; malformed lines are dropped."""

    return read_jsonl(path)


def _event_name(entry: dict[str, object]) -> object:
    return entry.get("event") or entry.get("action")


def _normalize_entries(
    entries: list[dict[str, object]],
    *,
    session_id: str | None = None,
    event: str | None = None,
) -> list[dict[str, object]]:
    filtered: list[dict[str, object]] = []
    for entry in entries:
        if session_id and entry.get("session_id") != session_id:
            continue
        if event and _event_name(entry) != event:
            continue
        filtered.append(entry)
    filtered.sort(key=lambda item: str(item.get("timestamp", "")))
    return filtered


def _default_entry_formatter(item: dict[str, object]) -> str:
    fields = [
        f"event={_event_name(item)}",
        f"session={item.get('session_id')}",
    ]
    if "outcome" in item:
        fields.append(f"outcome={item['outcome']}")
    if "status" in item:
        fields.append(f"status={item['status']}")
    if item.get("reason"):
        fields.append(f"reason={item['reason']}")
    fields.append(f"timestamp={item.get('timestamp')}")
    return " | ".join(fields)


def forward_entries(args: argparse.Namespace, *, formatter=_default_entry_formatter) -> int:
    try:
        settings = load_settings()
    except (ConfigError, ValidationError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    path = source_path(settings, args.source)
    try:
        entries = load_entries(path)
    except OSError as exc:
        print(f"Cannot read {path}: {exc}", file=sys.stderr)
        return 1

    payload = _normalize_entries(entries, session_id=args.session_id, event=args.event)
    if args.limit is not None and args.limit > 0:
        payload = payload[-args.limit :]
    if args.format == "json":
        output_text = json.dumps(payload, indent=2)
    else:
        output_text = "\n".join(formatter(item) for item in payload)

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(output_text, encoding="utf-8")
    else:
        print(output_text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Forward janitor audit entries to stdout or a file for monitoring integrations."
    )
    parser.add_argument(
        "--source",
        choices=SOURCES,
        default="registry",
        help="registry lifecycle log or cleanup operation log (default: registry)",
    )
    parser.add_argument("--session-id", help="Filter entries by session id", default=None)
    parser.add_argument("--event", help="Filter by event (registry) or action (cleanup)", default=None)
    parser.add_argument(
        "--format",
        choices={"json", "text"},
        default="json",
        help="Output format (default: json)",
    )
    parser.add_argument("--output", help="Optional path to write the payload to")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, emit only the latest N entries after filtering",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    exit_code = forward_entries(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
