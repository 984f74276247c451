"""
Bridge Exporter

Turns the most recent commits of a source repository into a transfer batch
and commits it to a disposable branch of the carrier repository.

The batch is first staged in a temporary directory outside both
repositories, then copied into the carrier branch as a single commit. The
carrier is switched back to where it was afterwards. Nothing is pushed.
"""

import sys
import shutil
import tempfile
from pathlib import Path

from bridge_git import (
    BridgeError,
    run_git_command,
    validate_repository,
    same_repository,
    get_current_branch,
    get_current_commit,
    get_upstream_branch,
    count_unpushed_commits,
    list_recent_commits,
    get_parent_commits,
    get_empty_tree,
    get_commit_diff,
    get_commit_info,
    get_working_tree_status,
    ref_exists,
)
from bridge_records import (
    TRANSFER_DIR,
    CommitAttribution,
    TransferRecord,
    split_message,
    write_record,
)
from bridge_branches import (
    DEFAULT_REMOTE_NAME,
    bridge_branch_name,
    require_remote,
)
from bridge_guard import StashGuard


def resolve_commit_count(repo_path, count=None, quiet=False):
    """
    Work out how many commits to export.

    Without an explicit count (or with 'auto'), export the commits that are
    not on the upstream yet. With no upstream or nothing unpushed, export
    the last commit only.

    Args:
        repo_path: Source repository path
        count: int, numeric string, 'auto' or None
        quiet: Whether to suppress output

    Returns:
        int: Number of commits to export

    Raises:
        BridgeError: If count is not a positive integer
    """
    if count is None or count == 'auto':
        unpushed = count_unpushed_commits(repo_path)
        if unpushed is None:
            sys.stderr.write("Warning: Current branch has no upstream; exporting the last commit only.\n")
            sys.stderr.write("         Pass an explicit count to export more.\n")
            return 1
        if unpushed == 0:
            sys.stderr.write(f"Warning: No commits ahead of {get_upstream_branch(repo_path)}; "
                             "exporting the last commit only.\n")
            return 1
        if not quiet:
            print(f"✓ Auto-detected {unpushed} unpushed commit(s)")
        return unpushed

    try:
        value = int(count)
    except (TypeError, ValueError):
        raise BridgeError(f"Commit count must be a positive integer or 'auto', got '{count}'")

    if value < 1:
        raise BridgeError(f"Commit count must be a positive integer, got {value}")

    return value


def build_record(repo_path, index, commit_hash, empty_tree):
    """
    Package one source commit as a transfer record.

    Args:
        repo_path: Source repository path
        index: 1-based position in the batch
        commit_hash: Commit to package
        empty_tree: Empty tree hash used as the base of a root commit

    Returns:
        TransferRecord: The record, patch included

    Raises:
        BridgeError: If the commit cannot be read
    """
    parents = get_parent_commits(repo_path, commit_hash)
    if parents is None:
        raise BridgeError(f"Could not read parents of {commit_hash}")

    if len(parents) > 1:
        sys.stderr.write(f"Warning: {commit_hash[:8]} is a merge commit; "
                         f"exporting it as a diff against its first parent {parents[0][:8]}\n")

    parent_hash = parents[0] if parents else ''
    patch = get_commit_diff(repo_path, parent_hash or empty_tree, commit_hash)
    if patch is None:
        raise BridgeError(f"Could not generate patch for {commit_hash}")

    info = get_commit_info(repo_path, commit_hash)
    if info is None:
        raise BridgeError(f"Could not read metadata of {commit_hash}")

    subject, body = split_message(info['message'])
    attribution = CommitAttribution(
        info['author'],
        info['author_email'],
        info['author_date'],
        info['committer'],
        info['committer_email'],
        info['committer_date'],
    )

    return TransferRecord(index, commit_hash, parent_hash, attribution, subject, body, patch,
                          raw_message=info['message'], encoding=info['encoding'])


def stage_commits(repo_path, commits, staging_path, quiet=False):
    """
    Write transfer records for a list of commits.

    Args:
        repo_path: Source repository path
        commits: Commit hashes, oldest first
        staging_path: Directory that receives the transfer directory
        quiet: Whether to suppress output

    Returns:
        list: TransferRecord objects written
    """
    transfer_path = Path(staging_path) / TRANSFER_DIR
    empty_tree = get_empty_tree(repo_path)

    records = []
    for index, commit_hash in enumerate(commits, 1):
        record = build_record(repo_path, index, commit_hash, empty_tree)
        write_record(transfer_path, record)
        records.append(record)
        if not quiet:
            print(f"  ✓ {record.basename}: {record.subject[:60]}")

    return records


class CarrierBranch:
    """
    Context manager for the disposable bridge branch in the carrier.

    Creates the branch on entry. On exit it switches back to the branch or
    commit the carrier was on. Unless mark_success() was called, the
    uncommitted transfer files are discarded and the branch is deleted, so
    a failed export leaves nothing behind in the carrier.

    Usage:
        with CarrierBranch(carrier_path, branch_name, base_ref, quiet) as carrier:
            commit_transfer(...)
            carrier.mark_success()
    """

    def __init__(self, repo_path, branch_name, base_ref, quiet=False):
        self.repo_path = Path(repo_path)
        self.branch_name = branch_name
        self.base_ref = base_ref
        self.quiet = quiet
        self.original_branch = None
        self.original_commit = None
        self.success = False
        self.entered = False

    def __enter__(self):
        self.original_branch = get_current_branch(self.repo_path)
        self.original_commit = get_current_commit(self.repo_path)

        result = run_git_command(
            ['git', 'checkout', '-q', '--no-track', '-b', self.branch_name, self.base_ref],
            cwd=self.repo_path,
            operation_description=f"Failed to create bridge branch: {self.branch_name}"
        )

        if result is None:
            raise BridgeError(f"Could not create bridge branch: {self.branch_name}")

        self.entered = True

        if not self.quiet:
            print(f"✓ Created bridge branch: {self.branch_name} (from {self.base_ref})")

        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if not self.entered:
            return False

        if not (self.success and exc_type is None):
            self._discard_changes()

        self._switch_back()

        if not (self.success and exc_type is None):
            self._delete_branch()

        # Don't suppress exceptions
        return False

    def mark_success(self):
        self.success = True

    @property
    def original_label(self):
        return self.original_branch or self.original_commit

    def _discard_changes(self):
        run_git_command(
            ['git', 'reset', '--hard', '-q'],
            cwd=self.repo_path,
            check_returncode=False
        )
        run_git_command(
            ['git', 'clean', '-fdq', '--', TRANSFER_DIR],
            cwd=self.repo_path,
            check_returncode=False
        )

    def _switch_back(self):
        if self.original_branch:
            args = ['git', 'checkout', '-q', self.original_branch]
        else:
            args = ['git', 'checkout', '-q', '--detach', self.original_commit]

        result = run_git_command(
            args,
            cwd=self.repo_path,
            operation_description=f"Failed to switch back to {self.original_label}"
        )

        if result is None:
            sys.stderr.write(f"You are still on bridge branch: {self.branch_name}\n")
            sys.stderr.write("Please switch back manually with:\n")
            sys.stderr.write(f"  cd {self.repo_path}\n")
            sys.stderr.write(f"  git checkout {self.original_label}\n")
            return False

        if not self.quiet:
            print(f"✓ Switched back to: {self.original_label}")
        return True

    def _delete_branch(self):
        result = run_git_command(
            ['git', 'branch', '-D', self.branch_name],
            cwd=self.repo_path,
            check_returncode=False
        )

        if result and result.returncode == 0:
            if not self.quiet:
                print(f"✓ Deleted incomplete bridge branch: {self.branch_name}")
        else:
            sys.stderr.write(f"Warning: Could not delete incomplete bridge branch: {self.branch_name}\n")
            sys.stderr.write("You can delete it manually with:\n")
            sys.stderr.write(f"  cd {self.repo_path}\n")
            sys.stderr.write(f"  git branch -D {self.branch_name}\n")


def commit_transfer(repo_path, staged_transfer_path, message, quiet=False):
    """
    Replace the carrier's transfer directory with the staged one and commit.

    Args:
        repo_path: Carrier repository path (on the bridge branch)
        staged_transfer_path: Staged transfer directory
        message: Commit message
        quiet: Whether to suppress output

    Raises:
        BridgeError: If staging or committing fails
    """
    target = Path(repo_path) / TRANSFER_DIR

    if target.exists():
        run_git_command(
            ['git', 'rm', '-rq', '--ignore-unmatch', '--', TRANSFER_DIR],
            cwd=repo_path,
            check_returncode=False
        )
        shutil.rmtree(target, ignore_errors=True)

    shutil.copytree(staged_transfer_path, target)

    result = run_git_command(
        ['git', 'add', '-f', '--', TRANSFER_DIR],
        cwd=repo_path,
        operation_description="Failed to stage transfer files in carrier"
    )
    if result is None:
        raise BridgeError("Could not stage transfer files in the carrier repository")

    result = run_git_command(
        ['git', 'commit', '-q', '--no-verify', '-m', message],
        cwd=repo_path,
        operation_description="Failed to commit transfer files in carrier"
    )
    if result is None:
        raise BridgeError("Could not commit transfer files in the carrier repository")

    if not quiet:
        print(f"✓ Committed: {message}")


def _print_dry_run(source_path, carrier_path, commits, branch_name, base_ref, source_branch):
    print(f"\n{'='*60}")
    print("EXPORT PLAN")
    print(f"{'='*60}")
    print(f"Source: {source_path}")
    print(f"Carrier: {carrier_path}")
    print(f"Source branch: {source_branch or '(detached HEAD)'}")
    print(f"Bridge branch: {branch_name} (from {base_ref})")
    print(f"Commits to export: {len(commits)}")
    for i, commit_hash in enumerate(commits, 1):
        info = get_commit_info(source_path, commit_hash)
        subject = split_message(info['message'])[0] if info else ''
        if len(subject) > 60:
            subject = subject[:57] + '...'
        print(f"  {i}. {commit_hash[:8]} - {subject}")
    print(f"{'='*60}")
    print("\nNo changes made (dry run).")


def _print_next_steps(carrier_path, branch_name, remote):
    print(f"\n{'='*60}")
    print("✓ Export complete!")
    print(f"{'='*60}")
    print(f"Bridge branch: {branch_name}")
    print("\nNext steps:")
    print("  1. Push the bridge branch:")
    print(f"     cd {carrier_path}")
    print(f"     git push {remote} {branch_name}")
    print("  2. On the other machine, import it:")
    print(f"     git-commit-bridge import <CARRIER> <DEST> {branch_name}")
    print("  3. Once imported, remove it:")
    print(f"     git-commit-bridge cleanup <CARRIER> {branch_name}")


def export_commits(source_path, carrier_path, count=None, remote=DEFAULT_REMOTE_NAME,
                   guard=None, quiet=False, dry_run=False):
    """
    Export recent source commits to a new bridge branch in the carrier.

    Args:
        source_path: Source repository path
        carrier_path: Carrier repository path
        count: Number of commits, 'auto' or None
        remote: Carrier remote whose branch the bridge branch starts from
        guard: StashGuard protecting both working trees
        quiet: Whether to suppress output
        dry_run: List what would be exported and change nothing

    Returns:
        str: Name of the bridge branch (created, or planned in a dry run)

    Raises:
        BridgeError: If any step fails
    """
    source_path = Path(source_path)
    carrier_path = Path(carrier_path)

    if not validate_repository(source_path, "Source repository", quiet):
        raise BridgeError(f"Invalid source repository: {source_path}")
    if not validate_repository(carrier_path, "Carrier repository", quiet):
        raise BridgeError(f"Invalid carrier repository: {carrier_path}")
    if same_repository(source_path, carrier_path):
        raise BridgeError("Source and carrier must be different repositories")

    if get_current_commit(source_path) is None:
        raise BridgeError(f"Source repository has no commits: {source_path}")

    require_remote(carrier_path, remote)

    source_branch = get_current_branch(source_path)
    branch_name = bridge_branch_name(source_branch)

    if ref_exists(carrier_path, f"refs/heads/{branch_name}"):
        sys.stderr.write(f"Error: Bridge branch already exists in carrier: {branch_name}\n")
        sys.stderr.write("Remove it first with:\n")
        sys.stderr.write(f"  git-commit-bridge cleanup {carrier_path} {branch_name}\n")
        raise BridgeError(f"Bridge branch {branch_name} already exists")

    carrier_branch = get_current_branch(carrier_path)
    base_ref = 'HEAD'
    if carrier_branch and ref_exists(carrier_path, f"refs/remotes/{remote}/{carrier_branch}"):
        base_ref = f"{remote}/{carrier_branch}"
    elif get_current_commit(carrier_path) is None:
        raise BridgeError(f"Carrier repository has no commits to branch from: {carrier_path}")

    requested = resolve_commit_count(source_path, count, quiet)
    commits = list_recent_commits(source_path, requested)
    if not commits:
        raise BridgeError("No commits found to export")
    if len(commits) < requested:
        sys.stderr.write(f"Warning: Requested {requested} commit(s) but history only has "
                         f"{len(commits)}; exporting {len(commits)}.\n")

    if dry_run:
        for path in (source_path, carrier_path):
            if get_working_tree_status(path):
                sys.stderr.write(f"Warning: {path} has uncommitted changes; "
                                 "a real run needs a clean tree or --stash\n")
        _print_dry_run(source_path, carrier_path, commits, branch_name, base_ref, source_branch)
        return branch_name

    if guard is None:
        guard = StashGuard(quiet=quiet)

    guard.ensure_clean(source_path, 'export-source')
    try:
        guard.ensure_clean(carrier_path, 'export-carrier')

        staging_path = Path(tempfile.mkdtemp(prefix='bridge-export-'))
        guard.preserve("Staging directory", staging_path)

        if not quiet:
            print(f"\nStaging {len(commits)} commit(s) in {staging_path}...")

        records = stage_commits(source_path, commits, staging_path, quiet)

        message = f"Bridge: Transfer of {len(records)} commit(s) from {source_branch or 'detached HEAD'}"

        with CarrierBranch(carrier_path, branch_name, base_ref, quiet) as carrier:
            commit_transfer(carrier_path, staging_path / TRANSFER_DIR, message, quiet)
            carrier.mark_success()
    finally:
        # The carrier is back where it started either way
        guard.restore(carrier_path)
        guard.restore(source_path)

    shutil.rmtree(staging_path, ignore_errors=True)
    guard.release(staging_path)

    if not quiet:
        _print_next_steps(carrier_path, branch_name, remote)

    return branch_name
