from __future__ import annotations

import argparse
import json
from pathlib import Path

import sys

# Ensure the backend directory is on sys.path when executed directly.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from civicrm_attendance.config import get_settings  # noqa: E402
from civicrm_attendance.exceptions import AttendanceError  # noqa: E402
from civicrm_attendance.services.civicrm import get_civicrm_client  # noqa: E402
from civicrm_attendance.services.peers import build_peer_query, extract_patterns, find_peers  # noqa: E402


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("anchor_id", type=int, help="CiviCRM contact ID to find peers for")
    parser.add_argument(
        "-r",
        "--relationship-type",
        dest="relationship_type_ids",
        type=int,
        action="append",
        default=[],
        help="Relationship type ID (repeatable)",
    )
    parser.add_argument(
        "-s",
        "--subtype",
        dest="target_subtypes",
        action="append",
        default=[],
        help="Counterpart contact subtype (repeatable)",
    )
    parser.add_argument("--include-inactive", action="store_true", help="Consider inactive relationships")


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Peer contact lookup helpers")
    subparsers = parser.add_subparsers(dest="command", required=True)

    patterns_parser = subparsers.add_parser("patterns", help="Show the anchor's relationship patterns")
    _add_filter_arguments(patterns_parser)

    peers_parser = subparsers.add_parser("peers", help="Find contacts sharing the anchor's patterns")
    _add_filter_arguments(peers_parser)
    peers_parser.add_argument(
        "-t",
        "--contact-type",
        dest="contact_types",
        action="append",
        default=[],
        help="Candidate contact type (repeatable, defaults to PEER_DEFAULT_CONTACT_TYPES)",
    )
    peers_parser.add_argument("--require-all", action="store_true", help="Require every anchor pattern to match")
    peers_parser.add_argument("--ignore-roles", action="store_true", help="Match patterns regardless of A/B role")
    peers_parser.add_argument("--page", type=int, default=1)
    peers_parser.add_argument("--page-size", type=int, default=settings.peer_default_items_per_page)
    peers_parser.add_argument("--no-pagination", action="store_true", help="Scan every candidate in one pass")

    args = parser.parse_args(argv)
    client = get_civicrm_client()

    try:
        if args.command == "patterns":
            patterns = extract_patterns(
                client,
                args.anchor_id,
                args.relationship_type_ids,
                args.target_subtypes,
                args.include_inactive,
            )
            output = [pattern.model_dump(mode="json") for pattern in patterns.values()]
        elif args.command == "peers":
            query = build_peer_query(
                anchor_id=args.anchor_id,
                relationship_type_ids=args.relationship_type_ids,
                target_subtypes=args.target_subtypes,
                contact_types=args.contact_types or list(settings.peer_default_contact_types),
                include_inactive=args.include_inactive,
                require_all_patterns=args.require_all,
                match_roles=not args.ignore_roles,
                pagination=None if args.no_pagination else {"page": args.page, "page_size": args.page_size},
            )
            output = find_peers(query, directory=client, settings=settings).model_dump(mode="json")
        else:  # pragma: no cover - argparse guards command set
            parser.error("Unknown command")
    except AttendanceError as exc:
        print(exc.to_log_string(), file=sys.stderr)
        return 1
    finally:
        client.close()

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
