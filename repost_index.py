#!/usr/bin/env python3
"""
Maintenance commands for the per-community repost indices.
"""
import argparse
import sys
from typing import List, Optional

import config
from fingerprint_store import IndexOpenError, IndexRegistry, RetentionPolicy


def cmd_stats(registry: IndexRegistry, args) -> int:
    """Show index statistics."""
    communities = [args.community] if args.community else registry.communities()
    communities = [c for c in communities if registry.path_for(c).exists()]
    if not communities:
        print(f"No indices found in {registry.index_dir}")
        return 0

    print("\n" + "="*60)
    print("REPOST INDEX STATISTICS")
    print("="*60)

    for community in communities:
        stats = registry.get(community).stats()
        print(f"\nCommunity {community}")
        print(f"  Indexed images:   {stats['total_records']}")
        print(f"  Ignored images:   {stats['ignored_records']}")
        print(f"  Reposts caught:   {stats['reposts_caught']}")
        print(f"  Fingerprint bits: {stats['hash_bits']} ({stats['band_count']} bands)")
        if stats['oldest_post']:
            print(f"  Oldest post:      {stats['oldest_post'].isoformat()}")
            print(f"  Newest post:      {stats['newest_post'].isoformat()}")

    print("="*60)
    return 0


def cmd_ignore(registry: IndexRegistry, args) -> int:
    """Stop (or resume) repost replies for an indexed image."""
    ignored = args.command == 'ignore'
    if not registry.path_for(args.community).exists():
        print(f"No index for community {args.community}")
        return 1
    if not registry.get(args.community).set_ignored(args.message_id, ignored):
        print(f"Message {args.message_id} is not indexed in {args.community}")
        return 1
    state = "ignored" if ignored else "watched"
    print(f"✓ Message {args.message_id} in {args.community} is now {state}")
    return 0


def cmd_evict(registry: IndexRegistry, args) -> int:
    """Apply the retention policy."""
    policy = RetentionPolicy.from_config()
    if not policy.active:
        print("No retention horizon configured "
              "(set REPOST_RETENTION_MAX_RECORDS or REPOST_RETENTION_MAX_AGE_DAYS)")
        return 0

    communities = [args.community] if args.community else registry.communities()
    for community in communities:
        removed = registry.get(community).evict(policy)
        print(f"  {community}: evicted {removed} records")
    return 0


def cmd_check(registry: IndexRegistry, args) -> int:
    """Open every index and report the ones that fail."""
    try:
        stores = registry.open_all()
    except IndexOpenError as e:
        print(f"✗ {e}")
        return 1
    print(f"✓ {len(stores)} indices opened cleanly")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for index maintenance."""
    parser = argparse.ArgumentParser(description="Repost index maintenance")
    parser.add_argument(
        '--index-dir', default=str(config.INDEX_DIR),
        help=f'Directory holding the community indices (default: {config.INDEX_DIR})'
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    stats_parser = subparsers.add_parser('stats', help='Show index statistics')
    stats_parser.add_argument('--community', help='Only this community')

    for name, help_text in (('ignore', 'Stop repost replies for an image'),
                            ('unignore', 'Resume repost replies for an image')):
        ignore_parser = subparsers.add_parser(name, help=help_text)
        ignore_parser.add_argument('community')
        ignore_parser.add_argument('message_id', type=int)

    evict_parser = subparsers.add_parser('evict', help='Apply the retention policy')
    evict_parser.add_argument('--community', help='Only this community')

    subparsers.add_parser('check', help='Verify every index opens')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    config.setup_logging()
    commands = {
        'stats': cmd_stats,
        'ignore': cmd_ignore,
        'unignore': cmd_ignore,
        'evict': cmd_evict,
        'check': cmd_check,
    }

    registry = IndexRegistry(args.index_dir)
    return commands[args.command](registry, args)


if __name__ == "__main__":
    sys.exit(main())
