"""
Bridge-State Guard

Keeps the bridge from touching a working tree that holds uncommitted work.

By default a dirty tree is a hard stop with three remediation options.
With auto-stash enabled, the dirty state is stashed under a label carrying a
unique ID, and restored by locating that ID again (never by assuming the
stash sits at stash@{0}). Stashes left behind by interrupted runs are
reported, never removed.
"""

import os
import sys
import time
import random
import hashlib
from pathlib import Path
from datetime import datetime

from bridge_git import (
    BridgeError,
    run_git_command,
    get_current_branch,
    get_working_tree_status,
    list_stashes,
)

# Every auto-stash message starts with this, followed by [<operation>]
STASH_LABEL_PREFIX = "git_commit_bridge"

RULE = '=' * 55


def generate_stash_id():
    """
    Generate a short ID that is unique per stash.

    Returns:
        str: 8 hex characters derived from pid, time and a random number
    """
    seed = f"{os.getpid()}-{time.time_ns()}-{random.randint(0, 1 << 30)}"
    return hashlib.md5(seed.encode('utf-8')).hexdigest()[:8]


def build_stash_message(operation, repo_name, branch, unique_id, now=None):
    """
    Build the human-readable label of an auto-stash.

    Format: git_commit_bridge[operation]: repo@branch (timestamp) [ID:xxxxxxxx]
    """
    now = now or datetime.now()
    timestamp = now.strftime('%Y_%m_%d_%H_%M_%S')
    return (f"{STASH_LABEL_PREFIX}[{operation}]: {repo_name}@{branch or 'HEAD'} "
            f"({timestamp}) [ID:{unique_id}]")


def find_stash_slot(repo_path, unique_id):
    """
    Locate a stash entry by its unique ID.

    Args:
        repo_path: Repository path
        unique_id: ID embedded in the stash message

    Returns:
        int: Stash slot N (as in stash@{N}), or None if not present
    """
    marker = f"[ID:{unique_id}]"
    for slot, entry in enumerate(list_stashes(repo_path)):
        if marker in entry:
            return slot
    return None


class StashCheckpoint:
    """Record of one auto-stash made by the guard."""

    def __init__(self, repo_path, operation, unique_id, message):
        self.repo_path = Path(repo_path)
        self.operation = operation
        self.unique_id = unique_id
        self.message = message
        self.consumed = False


class StashGuard:
    """
    Clean-tree precondition with optional reversible auto-stash.

    Usage:
        guard = StashGuard(auto_stash=args.stash)
        guard.ensure_clean(dest_path, 'import-destination')
        ...mutate dest_path...
        guard.restore(dest_path)

    On failure, report_pending() prints what still has to be restored or
    inspected by hand.
    """

    def __init__(self, auto_stash=False, quiet=False):
        self.auto_stash = auto_stash
        self.quiet = quiet
        self.checkpoints = {}
        self.preserved = []

    @staticmethod
    def _key(repo_path):
        return Path(repo_path).resolve()

    def warn_orphaned(self, repo_path):
        """
        Report auto-stashes left behind by earlier runs.

        Stashes recorded by this guard instance are not orphans. Nothing is
        modified.

        Args:
            repo_path: Repository path

        Returns:
            list: Orphaned stash list lines
        """
        own_ids = {f"[ID:{c.unique_id}]" for c in self.checkpoints.values()}
        orphans = [
            entry for entry in list_stashes(repo_path)
            if f"{STASH_LABEL_PREFIX}[" in entry and not any(i in entry for i in own_ids)
        ]

        if orphans:
            sys.stderr.write(f"\n{RULE}\n")
            sys.stderr.write(f"NOTICE: Found {len(orphans)} orphaned auto-stash(es) from previous runs\n")
            sys.stderr.write(f"{RULE}\n")
            for entry in orphans:
                sys.stderr.write(f"{entry}\n")
            sys.stderr.write("\nThese are likely from previous runs that were interrupted.\n")
            sys.stderr.write("They will not interfere with this run (each stash has a unique ID).\n")
            sys.stderr.write("\nTo clean up manually:\n")
            sys.stderr.write(f"  cd {repo_path}\n")
            sys.stderr.write("  git stash list                    # View all stashes\n")
            sys.stderr.write("  git stash pop stash@{N}           # Restore a specific stash\n")
            sys.stderr.write("  git stash drop stash@{N}          # Drop a specific stash\n")
            sys.stderr.write(f"{RULE}\n\n")

        return orphans

    def ensure_clean(self, repo_path, operation):
        """
        Require a clean working tree, or auto-stash it when enabled.

        Args:
            repo_path: Repository path
            operation: Label for the stash message (e.g. 'export-source')

        Returns:
            StashCheckpoint: The checkpoint created, or None if already clean

        Raises:
            BridgeError: If the tree is dirty and cannot be made clean
        """
        repo_path = self._key(repo_path)
        repo_name = repo_path.name

        self.warn_orphaned(repo_path)

        status = get_working_tree_status(repo_path)
        if status is None:
            raise BridgeError(f"Could not determine working tree status of '{repo_name}'.")

        if not status.strip():
            if not self.quiet:
                print(f"✓ Working tree clean: {repo_path}")
            return None

        if not self.auto_stash:
            self._print_dirty_remediation(repo_path, status)
            raise BridgeError("Clean working directory required. Use one of the options above.")

        sys.stderr.write(f"\n{RULE}\n")
        sys.stderr.write(f"AUTO-STASH ENABLED: Repository '{repo_name}' has uncommitted or untracked files\n")
        sys.stderr.write(f"{RULE}\n")
        sys.stderr.write(status)
        sys.stderr.write("\nThese changes will be stashed and restored after the operation.\n")
        sys.stderr.write(f"{RULE}\n\n")

        unique_id = generate_stash_id()
        message = build_stash_message(operation, repo_name, get_current_branch(repo_path), unique_id)

        count_before = len(list_stashes(repo_path))

        result = run_git_command(
            ['git', 'stash', 'push', '--include-untracked', '-m', message],
            cwd=repo_path,
            operation_description=f"Failed to stash uncommitted changes in '{repo_name}'"
        )
        if result is None:
            raise BridgeError(f"Failed to stash uncommitted changes in '{repo_name}'. "
                              "Please commit or stash them manually.")

        if len(list_stashes(repo_path)) <= count_before:
            raise BridgeError("Stash creation appeared to succeed but the stash count did not increase. "
                              "Manual intervention needed.")

        slot = find_stash_slot(repo_path, unique_id)
        if slot is None:
            raise BridgeError("Created a stash but could not locate it in the stash list. "
                              "Manual intervention needed.")

        checkpoint = StashCheckpoint(repo_path, operation, unique_id, message)
        self.checkpoints[repo_path] = checkpoint

        sys.stderr.write(f"✓ Changes stashed at stash@{{{slot}}}\n")
        sys.stderr.write(f"  Stash: {message}\n\n")

        return checkpoint

    def _print_dirty_remediation(self, repo_path, status):
        sys.stderr.write(f"\n{RULE}\n")
        sys.stderr.write(f"ERROR: Repository '{repo_path.name}' has uncommitted or untracked files\n")
        sys.stderr.write(f"{RULE}\n")
        sys.stderr.write(status)
        sys.stderr.write("\nThe bridge requires a clean working directory to operate safely.\n")
        sys.stderr.write("\nYou have 3 options:\n\n")
        sys.stderr.write("1. [RECOMMENDED] Review and commit your changes:\n")
        sys.stderr.write(f"   cd {repo_path}\n")
        sys.stderr.write("   git status                    # Review what changed\n")
        sys.stderr.write("   git add <specific-files>      # Add only the files you intend to commit\n")
        sys.stderr.write("   git commit -m \"message\"       # Commit with a descriptive message\n\n")
        sys.stderr.write("2. Manually stash your changes:\n")
        sys.stderr.write(f"   cd {repo_path}\n")
        sys.stderr.write("   git stash push --include-untracked -m \"Description of changes\"\n")
        sys.stderr.write("   # Run the bridge, then restore with: git stash pop\n\n")
        sys.stderr.write("3. Re-run with automatic stashing (USE WITH CAUTION):\n")
        sys.stderr.write("   Add the --stash flag to your command.\n")
        sys.stderr.write("   All uncommitted and untracked changes will be stashed before the\n")
        sys.stderr.write("   operation and restored afterward, without your review.\n")
        sys.stderr.write(f"{RULE}\n\n")

    def restore(self, repo_path):
        """
        Pop the auto-stash recorded for a repository.

        Safe to call repeatedly: once restored, further calls do nothing.

        Args:
            repo_path: Repository path

        Returns:
            bool: True if nothing was pending or the stash was restored,
                  False if the stash is still waiting in the stash list
        """
        key = self._key(repo_path)
        checkpoint = self.checkpoints.get(key)

        if checkpoint is None or checkpoint.consumed:
            return True

        if not key.is_dir():
            sys.stderr.write(f"Warning: Could not access {key} to restore stash\n")
            sys.stderr.write(f"Your changes are saved in the stash with ID: {checkpoint.unique_id}\n")
            return False

        sys.stderr.write(f"\n{RULE}\n")
        sys.stderr.write(f"Restoring stashed changes in '{key.name}'...\n")
        sys.stderr.write(f"  Looking for stash ID: {checkpoint.unique_id}\n")
        sys.stderr.write(f"{RULE}\n")

        slot = find_stash_slot(key, checkpoint.unique_id)
        if slot is None:
            sys.stderr.write("Stash not found (it may have been restored or dropped manually already)\n")
            sys.stderr.write(f"{RULE}\n\n")
            checkpoint.consumed = True
            return True

        sys.stderr.write(f"  Found at: stash@{{{slot}}}\n\n")

        result = run_git_command(
            ['git', 'stash', 'pop', '--index', f'stash@{{{slot}}}'],
            cwd=key,
            check_returncode=False
        )

        if result is not None and result.returncode == 0:
            sys.stderr.write("✓ Stashed changes restored successfully\n")
            sys.stderr.write(f"{RULE}\n\n")
            checkpoint.consumed = True
            return True

        output = ''
        if result is not None:
            output = (result.stdout or '') + (result.stderr or '')

        if 'conflict' in output.lower():
            sys.stderr.write("WARNING: Stash restore encountered conflicts\n\n")
            sys.stderr.write(output.rstrip() + "\n\n")
            sys.stderr.write(f"Your changes are still saved in stash@{{{slot}}}\n")
            sys.stderr.write("The stash remains in the list because conflicts prevented an automatic merge.\n\n")
            sys.stderr.write("To restore manually:\n")
            sys.stderr.write("  Option A - Resolve conflicts:\n")
            sys.stderr.write(f"    cd {key}\n")
            sys.stderr.write("    1. Resolve the conflicts shown above in your editor\n")
            sys.stderr.write("    2. git add <resolved-files>\n")
            sys.stderr.write(f"    3. git stash drop stash@{{{slot}}}\n\n")
            sys.stderr.write("  Option B - Start over (discards the conflict resolution):\n")
            sys.stderr.write(f"    cd {key}\n")
            sys.stderr.write("    1. git checkout -- .\n")
            sys.stderr.write(f"    2. git stash apply stash@{{{slot}}}\n")
            sys.stderr.write("    3. Resolve conflicts if they occur again\n")
        else:
            sys.stderr.write("WARNING: Could not restore stash automatically\n\n")
            if output:
                sys.stderr.write(output.rstrip() + "\n\n")
            sys.stderr.write(f"Your changes are still saved in stash@{{{slot}}}\n")
            sys.stderr.write(f"Run 'git stash pop stash@{{{slot}}}' in {key} to restore them.\n")
        sys.stderr.write(f"{RULE}\n\n")

        return False

    def preserve(self, description, path):
        """
        Register a scratch path to list in the recovery transcript.

        Args:
            description: What the path holds
            path: Directory kept for inspection
        """
        self.preserved.append((description, Path(path)))

    def release(self, path):
        """Forget a scratch path after it was removed."""
        path = Path(path)
        self.preserved = [(d, p) for d, p in self.preserved if p != path]

    def pending_checkpoints(self):
        return [c for c in self.checkpoints.values() if not c.consumed]

    def report_pending(self):
        """
        Print the recovery transcript for a failed operation.

        Lists every stash that still has to be restored by hand and every
        scratch directory kept for inspection.
        """
        pending = self.pending_checkpoints()
        preserved = [(d, p) for d, p in self.preserved if p.exists()]

        if not pending and not preserved:
            return

        sys.stderr.write(f"\n{RULE}\n")
        sys.stderr.write("CLEANUP NEEDED BEFORE RETRY\n")
        sys.stderr.write(f"{RULE}\n")

        for checkpoint in pending:
            sys.stderr.write(f"\nStashed changes in: {checkpoint.repo_path}\n")
            sys.stderr.write(f"  Stash: {checkpoint.message}\n\n")
            sys.stderr.write("To restore:\n")
            sys.stderr.write(f"  cd {checkpoint.repo_path}\n")
            sys.stderr.write(f"  git stash list | grep 'ID:{checkpoint.unique_id}'   # Find your stash\n")
            sys.stderr.write("  git stash pop --index stash@{N}                   # Restore (N = stash index)\n")

        for description, path in preserved:
            sys.stderr.write(f"\n{description} preserved for inspection at:\n")
            sys.stderr.write(f"  {path}\n\n")
            sys.stderr.write("To inspect or remove:\n")
            sys.stderr.write(f"  ls -lR {path}\n")
            sys.stderr.write(f"  rm -rf {path}\n")

        if pending:
            sys.stderr.write("\nIMPORTANT: Restore your stashes before re-running the bridge.\n")
        sys.stderr.write(f"{RULE}\n\n")
