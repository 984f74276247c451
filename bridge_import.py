"""
Bridge Importer

Replays a transfer batch from a carrier branch as new commits on the
destination repository's current branch.

The carrier branch is fetched into a disposable local branch of the
destination, and the record files are read straight out of its tree into
a scratch directory. The fetched tree holds nothing but the transfer
directory, so it is never checked out. The destination's own branch stays
checked out for the whole replay.
"""

import os
import re
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
    object_exists,
    is_ancestor,
    ref_exists,
)
from bridge_records import TRANSFER_DIR, load_batch
from bridge_branches import (
    DEFAULT_REMOTE_NAME,
    find_bridge_branches,
    resolve_carrier_ref,
)
from bridge_guard import StashGuard

# Disposable branch in the destination holding the fetched batch
IMPORT_BRANCH_PREFIX = "bridge-import"

DIFF_HEADER = re.compile(rb'^diff --git a/(.+?) b/(.+)$', re.MULTILINE)


def resolve_import_branch(carrier_path, branch=None, remote=DEFAULT_REMOTE_NAME, quiet=False):
    """
    Pick the bridge branch to import.

    An explicit branch is used as given. Otherwise the carrier's remote is
    searched: exactly one bridge branch is used, several abort with one
    import command per candidate.

    Returns:
        str: Branch name

    Raises:
        BridgeError: If no single branch can be chosen
    """
    if branch:
        return branch

    branches = find_bridge_branches(carrier_path, remote, fetch=True, quiet=quiet)

    if not branches:
        raise BridgeError(f"No bridge branches found on remote '{remote}' of {carrier_path}")

    if len(branches) > 1:
        sys.stderr.write(f"\nMultiple bridge branches found on '{remote}':\n")
        for name in branches:
            sys.stderr.write(f"  {name}\n")
        sys.stderr.write("\nImport one of them explicitly:\n")
        for name in branches:
            sys.stderr.write(f"  git-commit-bridge import {carrier_path} <DEST> {name}\n")
        raise BridgeError("Ambiguous bridge branch; specify which one to import")

    if not quiet:
        print(f"✓ Auto-discovered bridge branch: {branches[0]}")
    return branches[0]


def extract_transfer_files(repo_path, ref, target_path):
    """
    Copy the transfer directory of a ref into a plain directory.

    Reads blobs directly from the object store, so no working tree is
    touched. Only files directly inside the transfer directory are taken.

    Args:
        repo_path: Repository holding the ref
        ref: Commit-ish whose tree carries the batch
        target_path: Directory to write the files into

    Returns:
        int: Number of files extracted

    Raises:
        BridgeError: If the tree cannot be read or holds no transfer files
    """
    result = run_git_command(
        ['git', 'ls-tree', '-r', '-z', '--full-tree', ref, '--', TRANSFER_DIR],
        cwd=repo_path,
        operation_description=f"Failed to read tree of {ref}"
    )
    if result is None:
        raise BridgeError(f"Could not list transfer files on {ref}")

    target_path = Path(target_path)
    target_path.mkdir(parents=True, exist_ok=True)

    extracted = 0
    for entry in result.stdout.split('\0'):
        if not entry:
            continue
        header, _, path = entry.partition('\t')
        _, object_type, object_hash = header.split()
        path = Path(path)
        if object_type != 'blob' or path.parent != Path(TRANSFER_DIR):
            continue

        blob = run_git_command(
            ['git', 'cat-file', 'blob', object_hash],
            cwd=repo_path,
            operation_description=f"Failed to read {path}",
            text=False
        )
        if blob is None:
            raise BridgeError(f"Could not read {path} from {ref}")

        (target_path / path.name).write_bytes(blob.stdout)
        extracted += 1

    if extracted == 0:
        raise BridgeError(f"No {TRANSFER_DIR}/ directory found on {ref}")

    return extracted


def check_first_parent(repo_path, records, quiet=False):
    """
    Make sure the batch starts on top of something the destination has.

    Raises:
        BridgeError: If the first record's parent is missing
    """
    first = records[0]

    if first.is_root:
        if not quiet:
            print("✓ First record is a root commit; no parent to check")
        return

    if not object_exists(repo_path, first.parent_sha):
        head = get_current_commit(repo_path)
        sys.stderr.write(f"\n{'='*60}\n")
        sys.stderr.write("ERROR: Parent commit of the first record not found\n")
        sys.stderr.write(f"{'='*60}\n")
        sys.stderr.write(f"First record:     {first.basename} ({first.subject})\n")
        sys.stderr.write(f"Expected parent:  {first.parent_sha}\n")
        sys.stderr.write(f"Destination HEAD: {head or '(no commits)'}\n")
        sys.stderr.write(f"Current branch:   {get_current_branch(repo_path) or '(detached HEAD)'}\n\n")
        sys.stderr.write("The destination does not contain the commit these changes were made on.\n")
        sys.stderr.write("Most likely the wrong branch is checked out, or the destination is behind.\n\n")
        sys.stderr.write("To investigate:\n")
        sys.stderr.write(f"  cd {repo_path}\n")
        sys.stderr.write("  git fetch                              # Bring the destination up to date\n")
        sys.stderr.write(f"  git branch -a --contains {first.parent_sha[:12]}\n")
        sys.stderr.write(f"{'='*60}\n\n")
        raise BridgeError(f"Parent commit {first.parent_sha[:12]} not found in destination")

    if not is_ancestor(repo_path, first.parent_sha):
        sys.stderr.write(f"Warning: Parent {first.parent_sha[:12]} exists but is not an ancestor of HEAD; "
                         "commit IDs will not match the source\n")
    elif not quiet:
        print(f"✓ Parent commit present: {first.parent_sha[:12]}")


def patch_paths(patch):
    """List the paths a patch touches, from its diff headers."""
    paths = []
    for match in DIFF_HEADER.finditer(patch):
        for raw in match.groups():
            path = raw.decode('utf-8', errors='replace')
            if path not in paths:
                paths.append(path)
    return paths


def create_commit(repo_path, message, attribution, allow_empty=False, encoding=None):
    """
    Commit the staged changes with explicit attribution.

    The attribution travels in the environment of this one subprocess; the
    process environment is left alone. Hooks and signing are skipped and
    the message is used byte for byte.

    Args:
        repo_path: Repository path
        message: Full commit message
        attribution: CommitAttribution for author and committer
        allow_empty: Whether to record a commit with no changes
        encoding: Message encoding to record, or None for UTF-8

    Returns:
        subprocess.CompletedProcess: Result, or None on failure
    """
    args = ['git']
    if encoding:
        # Recorded as the commit's encoding header; the message bytes are not re-encoded
        args.extend(['-c', f'i18n.commitEncoding={encoding}'])
    args.extend(['commit', '-q', '--no-verify', '--no-gpg-sign', '--cleanup=verbatim'])
    if allow_empty:
        args.append('--allow-empty')
    args.extend(['-F', '-'])

    try:
        message_bytes = message.encode(encoding or 'utf-8')
    except (LookupError, UnicodeEncodeError) as e:
        sys.stderr.write(f"Error: Cannot encode commit message as {encoding}: {e}\n")
        return None

    return run_git_command(
        args,
        cwd=repo_path,
        operation_description="Failed to create commit",
        input_data=message_bytes,
        env=attribution.as_environment(),
        text=False
    )


class ReplayError(BridgeError):
    """A record failed partway through the replay."""

    def __init__(self, message, record, command, tree_modified):
        super().__init__(message)
        self.record = record
        self.command = command
        self.tree_modified = tree_modified


def apply_record(repo_path, record, quiet=False):
    """
    Replay one record on the destination's current branch.

    Args:
        repo_path: Destination repository path
        record: TransferRecord to replay
        quiet: Whether to suppress output

    Returns:
        str: 'skipped', 'verified' or 'mismatch'

    Raises:
        ReplayError: If the patch does not apply or the commit fails
    """
    if object_exists(repo_path, record.sha):
        if not is_ancestor(repo_path, record.sha):
            sys.stderr.write(f"  Warning: {record.short_sha} already exists but is not on the current branch\n")
        if not quiet:
            print(f"  → Skipped {record.basename} (already present): {record.subject[:60]}")
        return 'skipped'

    has_changes = bool(record.patch.strip())

    if has_changes:
        check_args = ['git', 'apply', '--check', '--index', '--whitespace=nowarn', str(record.patch_path)]
        result = run_git_command(
            check_args,
            cwd=repo_path,
            operation_description=f"Patch {record.patch_path.name} does not apply"
        )
        if result is None:
            sys.stderr.write("\nFiles the patch expects:\n")
            for path in patch_paths(record.patch):
                state = "present" if (Path(repo_path) / path).exists() else "missing"
                sys.stderr.write(f"  {path} ({state})\n")
            raise ReplayError(f"Patch for record {record.index} ({record.short_sha}) does not apply",
                              record, ' '.join(check_args), tree_modified=False)

        apply_args = ['git', 'apply', '--index', '--whitespace=nowarn', str(record.patch_path)]
        result = run_git_command(
            apply_args,
            cwd=repo_path,
            operation_description=f"Failed to apply {record.patch_path.name}"
        )
        if result is None:
            raise ReplayError(f"Applying record {record.index} ({record.short_sha}) failed",
                              record, ' '.join(apply_args), tree_modified=True)

    result = create_commit(repo_path, record.message(), record.attribution,
                           allow_empty=not has_changes, encoding=record.encoding)
    if result is None:
        raise ReplayError(f"Committing record {record.index} ({record.short_sha}) failed",
                          record, 'git commit --cleanup=verbatim -F -', tree_modified=True)

    new_head = get_current_commit(repo_path)
    if new_head == record.sha:
        if not quiet:
            print(f"  ✓ Applied {record.basename}: {record.subject[:60]} (ID verified)")
        return 'verified'

    if not quiet:
        print(f"  ✓ Applied {record.basename}: {record.subject[:60]}")
    sys.stderr.write(f"  Warning: New commit {new_head[:12]} differs from source {record.short_sha}\n")
    return 'mismatch'


def replay_records(repo_path, records, quiet=False):
    """
    Replay a validated batch in order.

    Returns:
        dict: Counts keyed by 'applied', 'skipped', 'verified', 'mismatch'
    """
    counts = {'applied': 0, 'skipped': 0, 'verified': 0, 'mismatch': 0}

    if not quiet:
        print(f"\nReplaying {len(records)} commit(s)...")

    for record in records:
        outcome = apply_record(repo_path, record, quiet)
        counts[outcome] += 1
        if outcome != 'skipped':
            counts['applied'] += 1

    return counts


class FetchedBatch:
    """
    Context manager for the fetched carrier branch and its extracted files.

    On entry the carrier ref is fetched into a disposable branch of the
    destination and the transfer files are extracted into a scratch
    directory. On exit both are removed, unless keep() was called to leave
    them in place for manual recovery.

    Usage:
        with FetchedBatch(dest_path, carrier_path, carrier_ref, quiet) as batch:
            records = load_batch(batch.scratch_path)
    """

    def __init__(self, repo_path, carrier_path, carrier_ref, quiet=False):
        self.repo_path = Path(repo_path)
        self.carrier_path = Path(carrier_path)
        self.carrier_ref = carrier_ref
        self.quiet = quiet
        self.branch_name = f"{IMPORT_BRANCH_PREFIX}-{os.getpid()}"
        self.scratch_path = None
        self.kept = False

    def __enter__(self):
        result = run_git_command(
            ['git', 'fetch', '--no-tags', '-q', str(self.carrier_path),
             f'+{self.carrier_ref}:refs/heads/{self.branch_name}'],
            cwd=self.repo_path,
            operation_description=f"Failed to fetch {self.carrier_ref} from {self.carrier_path}"
        )
        if result is None:
            raise BridgeError(f"Could not fetch {self.carrier_ref} from the carrier repository")

        if not self.quiet:
            print(f"✓ Fetched {self.carrier_ref} into {self.branch_name}")

        try:
            self.scratch_path = Path(tempfile.mkdtemp(prefix='bridge-import-'))
            count = extract_transfer_files(self.repo_path, f"refs/heads/{self.branch_name}", self.scratch_path)
        except BaseException:
            self._remove()
            raise

        if not self.quiet:
            print(f"✓ Extracted {count} transfer file(s) to {self.scratch_path}")

        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if not self.kept:
            self._remove()
        return False

    def keep(self):
        self.kept = True

    def _remove(self):
        if self.scratch_path is not None:
            shutil.rmtree(self.scratch_path, ignore_errors=True)

        if ref_exists(self.repo_path, f"refs/heads/{self.branch_name}"):
            result = run_git_command(
                ['git', 'branch', '-D', self.branch_name],
                cwd=self.repo_path,
                check_returncode=False
            )
            if result and result.returncode == 0:
                if not self.quiet:
                    print(f"✓ Deleted temporary branch: {self.branch_name}")
            else:
                sys.stderr.write(f"Warning: Could not delete temporary branch: {self.branch_name}\n")
                sys.stderr.write(f"  cd {self.repo_path} && git branch -D {self.branch_name}\n")


def _print_replay_failure(error, repo_path, batch, start_head, total):
    record = error.record
    sys.stderr.write(f"\n{'='*60}\n")
    sys.stderr.write(f"IMPORT STOPPED AT RECORD {record.index} OF {total}\n")
    sys.stderr.write(f"{'='*60}\n")
    sys.stderr.write(f"Record:   {record.basename} ({record.subject})\n")
    sys.stderr.write(f"Source:   {record.sha}\n")
    sys.stderr.write(f"Command:  {error.command}\n")
    sys.stderr.write(f"Records:  {batch.scratch_path}\n")
    sys.stderr.write(f"Fetched:  {batch.branch_name} (in {repo_path})\n\n")

    if error.tree_modified:
        sys.stderr.write("The working tree was left as it is so you can inspect it.\n")
    else:
        sys.stderr.write("The working tree was not modified by this record.\n")
    sys.stderr.write(f"Records before {record.index} that were committed remain on the current branch.\n\n")

    sys.stderr.write("To inspect:\n")
    sys.stderr.write(f"  cd {repo_path}\n")
    sys.stderr.write("  git status\n")
    sys.stderr.write(f"  less {record.patch_path}\n\n")
    sys.stderr.write("To resume after fixing the problem by hand:\n")
    sys.stderr.write(f"  git commit                                # Commit record {record.index} yourself\n")
    sys.stderr.write("  # then re-run the import; records already present are skipped\n\n")
    if start_head:
        sys.stderr.write("To undo the whole import:\n")
        sys.stderr.write(f"  git reset --hard {start_head}\n\n")
    sys.stderr.write("When done:\n")
    sys.stderr.write(f"  git branch -D {batch.branch_name}\n")
    sys.stderr.write(f"  rm -rf {batch.scratch_path}\n")
    sys.stderr.write(f"{'='*60}\n\n")


def _print_dry_run(carrier_path, dest_path, branch, carrier_ref, records):
    print(f"\n{'='*60}")
    print("IMPORT PLAN")
    print(f"{'='*60}")
    print(f"Carrier: {carrier_path} ({carrier_ref})")
    print(f"Destination: {dest_path}")
    print(f"Target branch: {get_current_branch(dest_path) or '(detached HEAD)'}")
    print(f"Bridge branch: {branch}")
    print(f"Records: {len(records)}")
    for record in records:
        state = "already present" if object_exists(dest_path, record.sha) else "would apply"
        subject = record.subject if len(record.subject) <= 60 else record.subject[:57] + '...'
        print(f"  {record.index}. {record.short_sha} - {subject} ({state})")
    print(f"{'='*60}")
    print("\nNo changes made (dry run).")


def _print_summary(dest_path, branch, counts, remote):
    print(f"\n{'='*60}")
    print("✓ Import complete!")
    print(f"{'='*60}")
    print(f"Applied: {counts['applied']}")
    print(f"Skipped (already present): {counts['skipped']}")
    print(f"IDs verified: {counts['verified']} of {counts['applied']}")
    print("\nNext steps:")
    print("  1. Review the imported commits:")
    print(f"     cd {dest_path}")
    print(f"     git log --oneline -{max(counts['applied'], 1)}")
    print("  2. Push them when ready:")
    print("     git push")
    print("  3. Remove the bridge branch from the carrier:")
    print(f"     git-commit-bridge cleanup <CARRIER> {branch} --remote {remote}")


def import_commits(carrier_path, dest_path, branch=None, remote=DEFAULT_REMOTE_NAME,
                   guard=None, quiet=False, dry_run=False):
    """
    Import a transfer batch from a carrier branch into the destination.

    Args:
        carrier_path: Carrier repository path
        dest_path: Destination repository path
        branch: Bridge branch name, or None to auto-discover
        remote: Carrier remote searched by discovery
        guard: StashGuard protecting the destination
        quiet: Whether to suppress output
        dry_run: Validate and print the plan without touching the destination

    Returns:
        dict: Counts keyed by 'applied', 'skipped', 'verified', 'mismatch'

    Raises:
        BridgeError: If any step fails
    """
    carrier_path = Path(carrier_path)
    dest_path = Path(dest_path)

    if not validate_repository(carrier_path, "Carrier repository", quiet):
        raise BridgeError(f"Invalid carrier repository: {carrier_path}")
    if not validate_repository(dest_path, "Destination repository", quiet):
        raise BridgeError(f"Invalid destination repository: {dest_path}")
    if same_repository(carrier_path, dest_path):
        raise BridgeError("Carrier and destination must be different repositories")

    branch = resolve_import_branch(carrier_path, branch, remote, quiet)

    carrier_ref = resolve_carrier_ref(carrier_path, branch, remote)
    if carrier_ref is None:
        sys.stderr.write(f"Error: Branch '{branch}' not found in carrier, locally or as {remote}/{branch}\n")
        sys.stderr.write("Fetch it first with:\n")
        sys.stderr.write(f"  cd {carrier_path}\n")
        sys.stderr.write(f"  git fetch {remote}\n")
        raise BridgeError(f"Bridge branch {branch} not found")

    if dry_run:
        scratch_path = Path(tempfile.mkdtemp(prefix='bridge-import-'))
        try:
            extract_transfer_files(carrier_path, carrier_ref, scratch_path)
            records = load_batch(scratch_path)
            check_first_parent(dest_path, records, quiet)
            _print_dry_run(carrier_path, dest_path, branch, carrier_ref, records)
        finally:
            shutil.rmtree(scratch_path, ignore_errors=True)
        return {'applied': 0, 'skipped': 0, 'verified': 0, 'mismatch': 0}

    if guard is None:
        guard = StashGuard(quiet=quiet)

    guard.ensure_clean(dest_path, 'import-destination')

    original_branch = get_current_branch(dest_path)
    start_head = get_current_commit(dest_path)

    try:
        with FetchedBatch(dest_path, carrier_path, carrier_ref, quiet) as batch:
            records = load_batch(batch.scratch_path)
            if not quiet:
                print(f"✓ Validated {len(records)} transfer record(s)")

            check_first_parent(dest_path, records, quiet)

            try:
                counts = replay_records(dest_path, records, quiet)
            except ReplayError as e:
                batch.keep()
                guard.preserve("Transfer records", batch.scratch_path)
                _print_replay_failure(e, dest_path, batch, start_head, len(records))
                raise
    except ReplayError as e:
        if get_current_commit(dest_path) == start_head and not e.tree_modified:
            guard.restore(dest_path)
        raise
    except BridgeError:
        # Nothing was applied yet, so the stash can go back
        if get_current_commit(dest_path) == start_head:
            guard.restore(dest_path)
        raise

    if get_current_branch(dest_path) != original_branch:
        sys.stderr.write(f"Warning: Expected to still be on {original_branch or '(detached HEAD)'}, "
                         f"now on {get_current_branch(dest_path) or '(detached HEAD)'}\n")
    elif not quiet:
        print(f"✓ Still on branch: {original_branch or '(detached HEAD)'}")

    guard.restore(dest_path)

    if not quiet:
        _print_summary(dest_path, branch, counts, remote)

    return counts
