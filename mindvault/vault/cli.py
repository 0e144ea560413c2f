"""
MindVault CLI Interface

Command-line interface for sealing, listing, opening and deleting
time-locked items.
"""

import argparse
import json
import logging
import re
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from ..utils.paths import get_default_config_path
from ..utils.timefmt import ensure_utc, utcnow
from .config import KEY_STORE_TYPES, VaultConfig, load_config
from .exceptions import VaultError
from .models import ItemQuery, ItemSort, MediaType, UnlockStatus, VaultItem
from .vault import TimeVault

logger = logging.getLogger(__name__)


_DURATION_PART = re.compile(r"(\d+)([dhm])")
_DURATION_UNITS = {"d": "days", "h": "hours", "m": "minutes"}


def parse_duration(text: str) -> timedelta:
    """
    Parse a relative duration such as "3d", "12h", "30m" or "1d6h".

    Raises:
        ValueError: Text is not a duration
    """
    text = text.strip().lower()
    if not text or _DURATION_PART.sub("", text):
        raise ValueError(f"Invalid duration: {text!r} (use e.g. 3d, 12h, 30m)")

    delta = timedelta()
    for amount, unit in _DURATION_PART.findall(text):
        delta += timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    return delta


def parse_unlock_at(text: str) -> datetime:
    """Parse an ISO-8601 time; naive values are local time."""
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as e:
        raise ValueError(f"Invalid ISO-8601 time: {text!r}") from e


def _resolve_unlock_date(args: argparse.Namespace) -> Optional[datetime]:
    if args.unlock_at:
        return parse_unlock_at(args.unlock_at)
    if getattr(args, "unlock_in", None):
        return utcnow() + parse_duration(args.unlock_in)
    return None


def _format_item(vault: TimeVault, item: VaultItem) -> str:
    remaining = vault.time_remaining(item)
    return (
        f"{item.item_id}  {item.media_type.display_name:<10} "
        f"{item.status.value:<9} {item.unlock_date.isoformat()}  {remaining}"
    )


# =============================================================================
# Commands
# =============================================================================


def cmd_seal(vault: TimeVault, args: argparse.Namespace) -> int:
    if args.text is not None:
        content = args.text.encode("utf-8")
    else:
        content = Path(args.file).read_bytes()

    thumbnail = Path(args.thumbnail).read_bytes() if args.thumbnail else None

    result = vault.create_item(
        content,
        MediaType(args.type),
        _resolve_unlock_date(args),
        custom_message=args.message,
        thumbnail=thumbnail,
    )
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    print(result.item_id)
    return 0


def cmd_list(vault: TimeVault, args: argparse.Namespace) -> int:
    status = UnlockStatus(args.status) if args.status else None
    query = ItemQuery(
        status=status,
        media_type=MediaType(args.type) if args.type else None,
        search_text=args.search,
    )
    sort = ItemSort.UNLOCK_DESC if status == UnlockStatus.UNLOCKED else ItemSort.UNLOCK_ASC

    for item in vault.query(query, sort):
        print(_format_item(vault, item))
    return 0


def cmd_show(vault: TimeVault, args: argparse.Namespace) -> int:
    item = vault.get_item(args.item_id)
    data = item.to_dict()
    data["time_remaining"] = vault.time_remaining(item)
    print(json.dumps(data, indent=2))
    return 0


def cmd_open(vault: TimeVault, args: argparse.Namespace) -> int:
    result = vault.open_item(args.item_id)
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    if args.output:
        Path(args.output).write_bytes(result.data)
        print(f"Wrote {len(result.data)} bytes to {args.output}")
    elif result.text is not None:
        print(result.text)
    else:
        sys.stdout.buffer.write(result.data)
        sys.stdout.buffer.flush()
    return 0


def cmd_edit(vault: TimeVault, args: argparse.Namespace) -> int:
    unlock_date = _resolve_unlock_date(args)
    if unlock_date is None and args.message is None:
        print("Error: nothing to change (use --unlock-at, --in or --message)", file=sys.stderr)
        return 1

    if unlock_date is not None:
        vault.edit_unlock_date(args.item_id, unlock_date)
    if args.message is not None:
        vault.edit_custom_message(args.item_id, args.message)

    print(_format_item(vault, vault.get_item(args.item_id)))
    return 0


def cmd_archive(vault: TimeVault, args: argparse.Namespace) -> int:
    item = vault.archive_item(args.item_id)
    print(_format_item(vault, item))
    return 0


def cmd_delete(vault: TimeVault, args: argparse.Namespace) -> int:
    result = vault.delete_item(args.item_id)
    if not result.success:
        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    print(f"Deleted {args.item_id}")
    return 0


def cmd_unlock(vault: TimeVault, args: argparse.Namespace) -> int:
    result = vault.process_unlocks()
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    print(f"Unlocked {result.count} item(s)")
    for item_id in result.unlocked_ids:
        print(f"  {item_id}")
    return 0


def cmd_stats(vault: TimeVault, args: argparse.Namespace) -> int:
    print(json.dumps(vault.get_statistics(), indent=2))
    return 0


COMMANDS = {
    "seal": cmd_seal,
    "list": cmd_list,
    "show": cmd_show,
    "open": cmd_open,
    "edit": cmd_edit,
    "archive": cmd_archive,
    "delete": cmd_delete,
    "unlock": cmd_unlock,
    "stats": cmd_stats,
}


# =============================================================================
# Argument parsing
# =============================================================================


def _add_unlock_options(parser: argparse.ArgumentParser, required: bool) -> None:
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument("--unlock-at", help="Unlock time (ISO-8601)")
    group.add_argument(
        "--in",
        dest="unlock_in",
        metavar="DURATION",
        help="Unlock after a duration, e.g. 3d, 12h, 30m",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mindvault",
        description="MindVault time-locked secure vault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s seal --text "Open me next year" --in 365d
  %(prog)s seal --type image --file photo.jpg --unlock-at 2030-01-01T09:00
  %(prog)s list --status locked
  %(prog)s open ITEM_ID --output photo.jpg
        """,
    )

    parser.add_argument("--vault-path", type=Path, help="Vault directory")
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML or JSON config file (default: config.yaml in the config directory)",
    )
    parser.add_argument(
        "--key-store",
        choices=KEY_STORE_TYPES,
        help="Where per-item keys are kept",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    seal = subparsers.add_parser("seal", help="Seal new content")
    seal.add_argument(
        "--type",
        choices=[m.value for m in MediaType],
        default=MediaType.TEXT.value,
        help="Media type (default: text)",
    )
    source = seal.add_mutually_exclusive_group(required=True)
    source.add_argument("--text", help="Text content")
    source.add_argument("--file", help="Read content from a file")
    _add_unlock_options(seal, required=True)
    seal.add_argument("--message", help="Custom unlock message")
    seal.add_argument("--thumbnail", help="Preview image (image and video only)")

    lst = subparsers.add_parser("list", help="List items")
    lst.add_argument("--status", choices=[s.value for s in UnlockStatus])
    lst.add_argument("--type", choices=[m.value for m in MediaType])
    lst.add_argument("--search", help="Match media type labels")

    show = subparsers.add_parser("show", help="Show item details")
    show.add_argument("item_id")

    open_ = subparsers.add_parser("open", help="Decrypt an unlocked item")
    open_.add_argument("item_id")
    open_.add_argument("--output", "-o", help="Write content to a file")

    edit = subparsers.add_parser("edit", help="Change unlock date or message")
    edit.add_argument("item_id")
    _add_unlock_options(edit, required=False)
    edit.add_argument("--message", help="New custom message (empty to clear)")

    archive = subparsers.add_parser("archive", help="Archive an unlocked item")
    archive.add_argument("item_id")

    delete = subparsers.add_parser("delete", help="Delete an item and its key")
    delete.add_argument("item_id")

    subparsers.add_parser("unlock", help="Unlock all due items now")
    subparsers.add_parser("stats", help="Show vault statistics")

    return parser


def _build_config(args: argparse.Namespace) -> VaultConfig:
    config_path = args.config
    if config_path is None:
        default_path = get_default_config_path()
        if default_path.is_file():
            config_path = default_path

    config = load_config(config_path)
    if args.vault_path is not None:
        config.vault_path = args.vault_path.expanduser()
    if args.key_store is not None:
        config.key_store = args.key_store
    config.enable_background_unlock = False
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = _build_config(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    vault = TimeVault(config)
    if not vault.initialize():
        print(f"Error: could not open vault at {config.vault_path}", file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](vault, args)
    except (VaultError, OSError, ValueError) as e:
        logger.debug(f"Command {args.command} failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        vault.shutdown()


if __name__ == "__main__":
    sys.exit(main())
