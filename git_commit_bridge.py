#!/usr/bin/env python3
"""
Git Commit Bridge

Moves committed changes between two repositories that cannot reach each
other, using a third "carrier" repository as the transport. Export writes
the last N commits as patch and metadata files onto a disposable branch of
the carrier; import replays them, with their original authorship, on the
current branch of the destination.

Usage:
    git-commit-bridge export <SOURCE> <CARRIER> [N|auto]
    git-commit-bridge import <CARRIER> <DEST> [BRANCH]
    git-commit-bridge cleanup <CARRIER> <BRANCH>
    git-commit-bridge <REPO1> <REPO2> [N]
    git-commit-bridge --help

Examples:
    git-commit-bridge export ~/work/project ~/carrier 3
    git-commit-bridge import ~/carrier ~/home/project --stash
    git-commit-bridge cleanup ~/carrier bridge/main-01WqaAvCxRr6eWW2Wu33e8xP
"""

import sys
import argparse
import signal

from bridge_git import BridgeError, check_dependencies, resolve_path, get_current_commit
from bridge_branches import (
    DEFAULT_REMOTE_NAME,
    BRIDGE_BRANCH_PREFIX,
    BRIDGE_BRANCH_SUFFIX,
    find_bridge_branches,
    cleanup_bridge_branch,
)
from bridge_guard import StashGuard
from bridge_export import export_commits
from bridge_import import import_commits

MODES = ('export', 'import', 'cleanup')


def handle_sigint(signum, frame):
    """
    Handle Control-C (SIGINT) by cleanly exiting.

    Args:
        signum: Signal number
        frame: Current stack frame
    """
    sys.stderr.write("^C\n")
    sys.exit(1)


def print_usage():
    """
    Print brief usage information to stderr.
    """
    sys.stderr.write("Usage: git-commit-bridge export <SOURCE> <CARRIER> [N|auto]\n")
    sys.stderr.write("       git-commit-bridge import <CARRIER> <DEST> [BRANCH]\n")
    sys.stderr.write("       git-commit-bridge cleanup <CARRIER> <BRANCH>\n")
    sys.stderr.write("       git-commit-bridge <REPO1> <REPO2> [N]\n")
    sys.stderr.write("       git-commit-bridge --help\n")


def print_help():
    """
    Print detailed help information to stderr.
    """
    help_text = f"""
Git Commit Bridge

Transfers commits between two repositories that cannot reach each other,
through a carrier repository that both sides can push to and fetch from.

Modes:
  export <SOURCE> <CARRIER> [N|auto]
                        Write the last N commits of SOURCE to a new bridge
                        branch in CARRIER. Without N (or with 'auto'), export
                        the commits not yet on the upstream branch.
  import <CARRIER> <DEST> [BRANCH]
                        Replay a bridge branch of CARRIER onto the current
                        branch of DEST. Without BRANCH, the single bridge
                        branch on the carrier's remote is used.
  cleanup <CARRIER> <BRANCH>
                        Delete a bridge branch from the carrier's remote and
                        from the carrier itself.
  <REPO1> <REPO2> [N]   Auto mode: import if REPO1 has bridge branches on
                        its remote, otherwise export from REPO1 to REPO2.

Optional Arguments:
  --stash               Stash uncommitted changes before the operation and
                        restore them afterward (instead of refusing to run)
  --remote <name>       Carrier remote name (default: {DEFAULT_REMOTE_NAME})
  --dry-run             Show what would be done without doing it
  --quiet               Suppress non-error output
  --help                Show this help message

Bridge branches are named {BRIDGE_BRANCH_PREFIX}/<source-branch>-{BRIDGE_BRANCH_SUFFIX}.
Neither mode pushes: push the bridge branch after export, and push the
destination after import, yourself.

Examples:
  git-commit-bridge export ~/work/project ~/carrier 3
  git-commit-bridge import ~/carrier ~/home/project --stash
  git-commit-bridge cleanup ~/carrier {BRIDGE_BRANCH_PREFIX}/main-{BRIDGE_BRANCH_SUFFIX}

Exit Codes:
  0 - Success
  1 - Error or user abort
"""
    sys.stderr.write(help_text)


def parse_arguments(argv=None):
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments, or None if invalid
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument('positionals', nargs='*')
    parser.add_argument('--stash', action='store_true', help='Auto-stash uncommitted changes')
    parser.add_argument('--remote', type=str, default=DEFAULT_REMOTE_NAME, help='Carrier remote name')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be done')
    parser.add_argument('--quiet', action='store_true', help='Suppress non-error output')
    parser.add_argument('--help', action='store_true', help='Show help message')

    try:
        args = parser.parse_intermixed_args(argv)
    except SystemExit:
        print_usage()
        return None

    if args.help:
        print_help()
        sys.exit(0)

    positionals = args.positionals
    if positionals and positionals[0] in MODES:
        args.mode = positionals[0]
        operands = positionals[1:]
        limits = {'export': (2, 3), 'import': (2, 3), 'cleanup': (2, 2)}[args.mode]
    else:
        args.mode = 'auto'
        operands = positionals
        limits = (2, 3)

    if not limits[0] <= len(operands) <= limits[1]:
        sys.stderr.write(f"Error: Wrong number of arguments for {args.mode} mode\n")
        print_usage()
        return None

    args.operands = operands
    return args


def run_auto(repo1, repo2, count, args, guard):
    """
    Decide between import and export from the state of REPO1.
    """
    if find_bridge_branches(repo1, args.remote, fetch=True, quiet=args.quiet):
        if not args.quiet:
            print(f"→ Auto mode: {repo1} has bridge branches, importing into {repo2}")
        if count is not None:
            sys.stderr.write("Warning: Commit count is ignored when importing\n")
        import_commits(repo1, repo2, None, args.remote, guard, args.quiet, args.dry_run)
        return

    if get_current_commit(repo1) is not None:
        if not args.quiet:
            print(f"→ Auto mode: exporting from {repo1} to {repo2}")
        export_commits(repo1, repo2, count, args.remote, guard, args.quiet, args.dry_run)
        return

    raise BridgeError(f"Cannot decide what to do with {repo1}: it has no commits and no bridge branches. "
                      "Use an explicit export or import mode.")


def run(args, guard):
    """
    Dispatch the parsed command.
    """
    operands = args.operands

    if args.mode == 'export':
        count = operands[2] if len(operands) > 2 else None
        export_commits(resolve_path(operands[0]), resolve_path(operands[1]), count,
                       args.remote, guard, args.quiet, args.dry_run)

    elif args.mode == 'import':
        branch = operands[2] if len(operands) > 2 else None
        import_commits(resolve_path(operands[0]), resolve_path(operands[1]), branch,
                       args.remote, guard, args.quiet, args.dry_run)

    elif args.mode == 'cleanup':
        carrier_path = resolve_path(operands[0])
        if args.dry_run:
            print(f"Would delete {operands[1]} from {args.remote} and from {carrier_path}")
            print("\nNo changes made (dry run).")
            return
        cleanup_bridge_branch(carrier_path, operands[1], args.remote, args.quiet)

    else:
        count = operands[2] if len(operands) > 2 else None
        run_auto(resolve_path(operands[0]), resolve_path(operands[1]), count, args, guard)


def main(argv=None):
    """
    Main entry point for the bridge.
    """
    # Set up signal handler for Control-C
    signal.signal(signal.SIGINT, handle_sigint)

    args = parse_arguments(argv)
    if args is None:
        sys.exit(1)

    if not check_dependencies():
        sys.exit(1)

    if args.dry_run and not args.quiet:
        print("=== DRY RUN MODE - No changes will be made ===\n")

    guard = StashGuard(auto_stash=args.stash, quiet=args.quiet)

    try:
        run(args, guard)
    except BridgeError as e:
        sys.stderr.write(f"\nError: {e}\n")
        guard.report_pending()
        sys.exit(1)

    sys.exit(0)


if __name__ == '__main__':
    main()
