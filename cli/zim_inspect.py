"""
ZIM Cache Inspector CLI
Diagnostic tool for single ZIM archives and for the server's storage folder

This is a CLI wrapper around archive_tools.zim_utils and archive_tools.storage
"""

import sys
import json
import argparse
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from archive_tools import zim_utils
from archive_tools.hashing import hash_file, is_content_hash
from archive_tools.storage import CacheIndex
from archive_tools.zim_utils import ArchiveError, ArchiveSummary


def print_archive_report(summary: ArchiveSummary) -> None:
    """Print a formatted archive summary to console"""

    print(f"\n{'='*60}")
    print(f"ZIM ARCHIVE: {Path(summary.file_path).name}")
    print(f"{'='*60}\n")

    if summary.error:
        print(f"ERROR: {summary.error}")
        return

    print(f"  File size: {summary.file_size_mb} MB")
    print(f"  Articles: {summary.article_count}")
    print(f"  Entries: {summary.entry_count}")
    print(f"  Full-text index: {'yes' if summary.has_fulltext_index else 'no'}")
    if summary.title:
        print(f"  Title: {summary.title}")
    if summary.language:
        print(f"  Language: {summary.language}")
    print()


def inspect_storage(storage_path: str, verify: bool = False) -> dict:
    """
    Rebuild the cache index the way the server does at startup.

    With verify, every file is re-hashed and compared with its name.
    """
    index = CacheIndex.load(storage_path)
    report = {"storage_folder": storage_path, "entries": [], "mismatched": []}

    for content_hash, path in sorted(index.snapshot().items()):
        entry = {
            "hash": content_hash,
            "path": path,
            "size_mb": round(Path(path).stat().st_size / (1024 * 1024), 2),
            "valid_name": is_content_hash(content_hash),
        }
        if verify:
            actual = hash_file(path)
            entry["verified"] = actual == content_hash
            if actual != content_hash:
                report["mismatched"].append(path)
        report["entries"].append(entry)

    return report


def cmd_archive(args) -> int:
    if args.search or args.browse:
        try:
            if args.search:
                result = zim_utils.search_archive(args.zim_path, args.search, limit=args.limit)
                lookups = result.entries
                if result.retried_lowercase:
                    print(f"(no results for '{result.query}', used '{result.effective_query}')")
            else:
                lookups = zim_utils.list_articles(args.zim_path)[:args.limit]
        except ArchiveError as e:
            print(f"ERROR: {e}")
            return 1

        if args.json:
            print(json.dumps([{"status": l.status.value, "key": l.key, "title": l.title, "error": l.error}
                              for l in lookups], indent=2))
        else:
            for l in lookups:
                marker = "[OK]" if l.ok else f"[{l.status.value.upper()}]"
                print(f"  {marker} {l.title or l.key}")
        return 0

    summary = zim_utils.summarize_archive(args.zim_path)
    if args.json:
        print(json.dumps(summary.to_dict(), indent=2))
    else:
        print_archive_report(summary)
    return 1 if summary.error else 0


def cmd_storage(args) -> int:
    if not Path(args.storage_path).is_dir():
        print(f"ERROR: Not a directory: {args.storage_path}")
        return 1

    report = inspect_storage(args.storage_path, verify=args.verify)
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        print(f"\nCACHE INDEX: {args.storage_path}")
        print("-" * 40)
        for entry in report["entries"]:
            flag = ""
            if not entry["valid_name"]:
                flag = "  (name is not a content hash)"
            elif entry.get("verified") is False:
                flag = "  (CONTENT MISMATCH)"
            print(f"  {entry['hash'][:16]}...  {entry['size_mb']} MB{flag}")
        print(f"\n  {len(report['entries'])} archive(s)")

    return 1 if report["mismatched"] else 0


def main():
    parser = argparse.ArgumentParser(
        description="Inspect ZIM archives and the cache storage folder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m cli.zim_inspect archive /path/to/file.zim
  python -m cli.zim_inspect archive /path/to/file.zim --search "water filter"
  python -m cli.zim_inspect storage ./uploads --verify
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    archive_parser = subparsers.add_parser("archive", help="Inspect one ZIM file")
    archive_parser.add_argument("zim_path", help="Path to ZIM file")
    archive_parser.add_argument("-s", "--search", help="Run a full-text query")
    archive_parser.add_argument("-b", "--browse", action="store_true", help="List HTML articles")
    archive_parser.add_argument(
        "-l", "--limit",
        type=int,
        default=zim_utils.SEARCH_RESULT_LIMIT,
        help=f"Maximum entries to show (default: {zim_utils.SEARCH_RESULT_LIMIT})"
    )
    archive_parser.add_argument("--json", action="store_true", help="Output as JSON")
    archive_parser.set_defaults(func=cmd_archive)

    storage_parser = subparsers.add_parser("storage", help="Show the cache index for a storage folder")
    storage_parser.add_argument("storage_path", help="Server storage folder")
    storage_parser.add_argument("--verify", action="store_true", help="Re-hash files and compare with their names")
    storage_parser.add_argument("--json", action="store_true", help="Output as JSON")
    storage_parser.set_defaults(func=cmd_storage)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
