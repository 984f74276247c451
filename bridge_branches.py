"""
Bridge Branches

Naming, discovery and cleanup of the disposable carrier branches that hold
a transfer batch.
"""

import sys

from bridge_git import (
    BridgeError,
    run_git_command,
    get_current_branch,
    list_remotes,
    list_local_branches,
    ref_exists,
)

BRIDGE_BRANCH_PREFIX = "bridge"

# Marks a branch as created by the bridge, so discovery never picks up
# unrelated branches that happen to live under bridge/
BRIDGE_BRANCH_SUFFIX = "01WqaAvCxRr6eWW2Wu33e8xP"

DEFAULT_REMOTE_NAME = "origin"

# Tried in order when the branch being cleaned up is checked out
FALLBACK_BRANCHES = ['main', 'master', 'develop']


def bridge_branch_name(source_branch):
    """
    Build the carrier branch name for a source branch.

    Args:
        source_branch: Source branch name, or None for a detached HEAD

    Returns:
        str: e.g. bridge/main-01WqaAvCxRr6eWW2Wu33e8xP
    """
    return f"{BRIDGE_BRANCH_PREFIX}/{source_branch or 'detached'}-{BRIDGE_BRANCH_SUFFIX}"


def is_bridge_branch(branch_name):
    return (branch_name.startswith(f"{BRIDGE_BRANCH_PREFIX}/") and
            branch_name.endswith(f"-{BRIDGE_BRANCH_SUFFIX}"))


def require_remote(repo_path, remote):
    """
    Check that a remote is configured, listing the available ones if not.

    Raises:
        BridgeError: If the remote does not exist
    """
    remotes = list_remotes(repo_path)
    if remote in remotes:
        return

    sys.stderr.write(f"Error: Remote '{remote}' does not exist in {repo_path}\n")
    if remotes:
        sys.stderr.write("Available remotes:\n")
        for name in remotes:
            sys.stderr.write(f"  {name}\n")
    else:
        sys.stderr.write("No remotes are configured.\n")
    sys.stderr.write("Use --remote <name> to pick another remote.\n")
    raise BridgeError(f"Remote '{remote}' not found in carrier repository")


def fetch_remote(repo_path, remote, quiet=False):
    """
    Best-effort fetch of a remote so remote-tracking branches are current.

    Returns:
        bool: True if the fetch succeeded
    """
    result = run_git_command(
        ['git', 'fetch', '--prune', remote],
        cwd=repo_path,
        check_returncode=False
    )

    if result is not None and result.returncode == 0:
        if not quiet:
            print(f"✓ Fetched remote: {remote}")
        return True

    if not quiet:
        sys.stderr.write(f"Warning: Could not fetch '{remote}'; using the remote-tracking branches already present\n")
    return False


def find_bridge_branches(repo_path, remote=DEFAULT_REMOTE_NAME, fetch=True, quiet=False):
    """
    List bridge branches available on a remote of the carrier repository.

    Args:
        repo_path: Carrier repository path
        remote: Remote name
        fetch: Whether to fetch the remote first (failures are not fatal)
        quiet: Whether to suppress output

    Returns:
        list: Branch names without the remote prefix, sorted
    """
    if fetch and remote in list_remotes(repo_path):
        fetch_remote(repo_path, remote, quiet)

    result = run_git_command(
        ['git', 'for-each-ref', '--format=%(refname)',
         f'refs/remotes/{remote}/{BRIDGE_BRANCH_PREFIX}/'],
        cwd=repo_path,
        check_returncode=False
    )

    if result is None or result.returncode != 0:
        return []

    prefix = f"refs/remotes/{remote}/"
    branches = []
    for ref in result.stdout.split():
        name = ref[len(prefix):]
        if is_bridge_branch(name):
            branches.append(name)

    return sorted(branches)


def resolve_carrier_ref(repo_path, branch, remote=DEFAULT_REMOTE_NAME):
    """
    Resolve a bridge branch inside the carrier to a fully qualified ref.

    A local branch wins over the remote-tracking branch of the same name.

    Returns:
        str: Full ref name, or None if neither exists
    """
    for ref in (f"refs/heads/{branch}", f"refs/remotes/{remote}/{branch}"):
        if ref_exists(repo_path, ref):
            return ref
    return None


def remote_branch_exists(repo_path, remote, branch):
    """
    Ask the remote whether a branch exists.

    Returns:
        bool: True if `git ls-remote` reports the branch
    """
    result = run_git_command(
        ['git', 'ls-remote', '--exit-code', '--heads', remote, f'refs/heads/{branch}'],
        cwd=repo_path,
        check_returncode=False
    )

    return result is not None and result.returncode == 0


def _switch_away(repo_path, branch, quiet=False):
    """Check out some other local branch so `branch` can be deleted."""
    candidates = [b for b in list_local_branches(repo_path) if b != branch]
    preferred = [b for b in FALLBACK_BRANCHES if b in candidates]
    target = (preferred or candidates or [None])[0]

    if target is None:
        raise BridgeError(f"Branch '{branch}' is checked out and there is no other branch to switch to.")

    result = run_git_command(
        ['git', 'checkout', target],
        cwd=repo_path,
        operation_description=f"Failed to switch from {branch} to {target}"
    )
    if result is None:
        raise BridgeError(f"Could not switch away from '{branch}' before deleting it.")

    if not quiet:
        print(f"✓ Switched to branch: {target}")


def cleanup_bridge_branch(repo_path, branch, remote=DEFAULT_REMOTE_NAME, quiet=False):
    """
    Delete a bridge branch from the carrier's remote and locally.

    Args:
        repo_path: Carrier repository path
        branch: Bridge branch name
        remote: Remote name
        quiet: Whether to suppress output

    Raises:
        BridgeError: If the remote is missing or a deletion fails
    """
    require_remote(repo_path, remote)

    if get_current_branch(repo_path) == branch:
        _switch_away(repo_path, branch, quiet)

    if remote_branch_exists(repo_path, remote, branch):
        result = run_git_command(
            ['git', 'push', remote, '--delete', branch],
            cwd=repo_path,
            operation_description=f"Failed to delete {branch} from {remote}"
        )
        if result is None:
            raise BridgeError(f"Could not delete remote branch {remote}/{branch}")
        if not quiet:
            print(f"✓ Deleted remote branch: {remote}/{branch}")
    elif not quiet:
        print(f"→ Remote branch {remote}/{branch} already gone")

    if ref_exists(repo_path, f"refs/heads/{branch}"):
        result = run_git_command(
            ['git', 'branch', '-D', branch],
            cwd=repo_path,
            operation_description=f"Failed to delete local branch {branch}"
        )
        if result is None:
            raise BridgeError(f"Could not delete local branch {branch}")
        if not quiet:
            print(f"✓ Deleted local branch: {branch}")
    elif not quiet:
        print(f"→ No local branch {branch}")

    # A stale remote-tracking ref would keep the branch discoverable
    if ref_exists(repo_path, f"refs/remotes/{remote}/{branch}"):
        run_git_command(
            ['git', 'update-ref', '-d', f'refs/remotes/{remote}/{branch}'],
            cwd=repo_path,
            check_returncode=False
        )
