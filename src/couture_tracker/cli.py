"""
Command-line entry point for Couture Tracker.

Commands:
  init-db                   Create the database and tables
  packet <order_item_id>    Show the packet and pick list of an order item
  timeline <order_item_id>  Show the merged timeline of an order item
  round-robin               Show the production head rotation

Examples:
  couture-tracker init-db
  couture-tracker packet 12
  COUTURE_TRACKER_ENV=development couture-tracker timeline 12
"""

import argparse
import sys

from .services.database import initialize_app_database
from .services.exceptions import ServiceError
from .services.order_item_service import get_order_item_timeline
from .services.packet_service import get_packet
from .services.round_robin_service import get_cursor_state
from .utils.config import configure_logging, get_config


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="couture-tracker",
        description="Workflow engine for made-to-order garments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (defaults to COUTURE_TRACKER_LOG_LEVEL or INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database and tables")

    packet_parser = subparsers.add_parser("packet", help="Show an order item's packet")
    packet_parser.add_argument("order_item_id", type=int)

    timeline_parser = subparsers.add_parser("timeline", help="Show an order item's timeline")
    timeline_parser.add_argument("order_item_id", type=int)

    subparsers.add_parser("round-robin", help="Show the production head rotation")
    return parser.parse_args(argv)


def _print_packet(order_item_id: int) -> None:
    packet = get_packet(order_item_id)
    print(f"Packet {packet.id} for order item {packet.order_item_id}")
    print(f"  Status:   {packet.status.value}{' (partial)' if packet.is_partial else ''}")
    print(f"  Round:    {packet.packet_round}")
    print(f"  Assignee: {packet.assigned_to or '-'}")
    print(f"  Picked:   {packet.picked_items}/{packet.total_items} "
          f"(this round {packet.round_picked_items}/{packet.round_total_items})")
    print(f"  Sections: {', '.join(packet.sections_included or []) or '-'}")
    if packet.sections_pending:
        print(f"  Pending:  {', '.join(packet.sections_pending)}")
    print()
    print(f"  {'':2} {'Piece':<12} {'Item':<28} {'Qty':>10} {'Unit':<8} {'Rack':<10} Round")
    for row in packet.pick_list:
        mark = "x" if row.is_picked else " "
        print(
            f"  [{mark}] {row.piece:<12} {row.inventory_item_name[:28]:<28} "
            f"{row.required_qty:>10} {row.unit:<8} {row.rack_location:<10} {row.added_in_round}"
        )


def _print_timeline(order_item_id: int) -> None:
    for entry in get_order_item_timeline(order_item_id):
        details = ", ".join(f"{key}={value}" for key, value in entry["details"].items())
        print(
            f"{entry['timestamp'] or '':<27} {entry['source']:<10} "
            f"{entry['action']:<28} {entry['user'] or '-':<12} {details}"
        )


def _print_round_robin() -> None:
    state = get_cursor_state()
    roster = state["roster"]
    print(f"Roster ({len(roster)}): {', '.join(roster) or '(empty)'}")
    print(f"Last assigned: {state['last_assigned_user_id'] or '-'}")
    print(f"Next:          {state['next'] or '-'}")


def main(argv=None):
    """Run the command-line interface."""
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        if args.command == "init-db":
            initialize_app_database()
            print(f"Database ready at {get_config().database_url}")
        else:
            initialize_app_database()
            if args.command == "packet":
                _print_packet(args.order_item_id)
            elif args.command == "timeline":
                _print_timeline(args.order_item_id)
            elif args.command == "round-robin":
                _print_round_robin()
    except ServiceError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
