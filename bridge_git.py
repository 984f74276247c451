"""
Git Plumbing Helpers

Thin wrappers around the git command line used by the export, import,
guard and cleanup stages of the commit bridge. Every call goes through
run_git_command() so failures are reported the same way everywhere.
"""

import os
import sys
import shutil
import subprocess
from pathlib import Path

# Hash of the empty tree object in SHA-1 repositories
EMPTY_TREE_SHA = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

# Field separator for multi-field git log formats
FIELD_SEPARATOR = "\x00"


class BridgeError(RuntimeError):
    """Raised when a bridge operation cannot continue."""


def check_dependencies():
    """
    Check that the external tools the bridge relies on are on PATH.

    Returns:
        bool: True if all dependencies are available, False otherwise
    """
    if shutil.which('git') is None:
        sys.stderr.write("Error: Required dependency 'git' not found on PATH.\n")
        sys.stderr.write("Please install git before running the bridge.\n")
        return False

    return True


def resolve_path(path):
    """
    Resolve a path relative to current directory to absolute path.

    Args:
        path: Path string (relative or absolute)

    Returns:
        Path: Absolute Path object
    """
    return Path(path).expanduser().resolve()


def run_git_command(args, cwd, operation_description=None, check_returncode=True,
                    input_data=None, env=None, text=True):
    """
    Execute a git command with consistent error handling.

    Args:
        args: List of command arguments (e.g., ['git', 'rev-parse', 'HEAD'])
        cwd: Working directory for the command
        operation_description: Human-readable description for error messages
        check_returncode: Whether to treat non-zero return code as error
        input_data: Optional input to pass to command via stdin
        env: Optional mapping of extra environment variables for this call only
        text: Whether stdin/stdout are text (False for patches and blobs)

    Returns:
        subprocess.CompletedProcess: Result object with returncode, stdout, stderr
        None: If command failed and check_returncode is True
    """
    call_env = None
    if env:
        call_env = dict(os.environ)
        call_env.update(env)

    try:
        result = subprocess.run(
            args,
            cwd=cwd,
            capture_output=True,
            text=text,
            encoding='utf-8' if text else None,
            input=input_data,
            env=call_env,
            check=False  # We'll handle return code ourselves
        )

        if check_returncode and result.returncode != 0:
            if operation_description:
                sys.stderr.write(f"Error: {operation_description}\n")
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode('utf-8', errors='replace')
            if stderr:
                sys.stderr.write(f"{stderr.rstrip()}\n")
            return None

        return result

    except UnicodeDecodeError as e:
        if operation_description:
            sys.stderr.write(f"Error: {operation_description}: output is not valid UTF-8 ({e})\n")
        else:
            sys.stderr.write(f"Error: git output is not valid UTF-8: {e}\n")
        return None

    except OSError as e:
        if operation_description:
            sys.stderr.write(f"Error: {operation_description}: {e}\n")
        else:
            sys.stderr.write(f"Error executing git command: {e}\n")
        return None


def validate_repository(repo_path, repo_name, quiet=False):
    """
    Validate that a path is the top level of a git working tree.

    Args:
        repo_path: Path to validate
        repo_name: Human-readable name for error messages
        quiet: Whether to suppress output

    Returns:
        bool: True if valid, False otherwise
    """
    repo_path = Path(repo_path)

    if not repo_path.exists():
        sys.stderr.write(f"Error: {repo_name} does not exist: {repo_path}\n")
        return False

    if not repo_path.is_dir():
        sys.stderr.write(f"Error: {repo_name} is not a directory: {repo_path}\n")
        return False

    result = run_git_command(
        ['git', 'rev-parse', '--is-inside-work-tree'],
        cwd=repo_path,
        check_returncode=False
    )

    if result is None or result.returncode != 0 or result.stdout.strip() != 'true':
        sys.stderr.write(f"Error: {repo_name} is not a git repository: {repo_path}\n")
        return False

    if not quiet:
        print(f"✓ Validated {repo_name.lower()}: {repo_path}")

    return True


def same_repository(first_path, second_path):
    """
    Check whether two paths point at the same working tree.

    Args:
        first_path: First repository path
        second_path: Second repository path

    Returns:
        bool: True if both resolve to the same top-level directory
    """
    tops = []
    for path in (first_path, second_path):
        result = run_git_command(
            ['git', 'rev-parse', '--show-toplevel'],
            cwd=path,
            check_returncode=False
        )
        if result is None or result.returncode != 0:
            return False
        tops.append(Path(result.stdout.strip()).resolve())

    return tops[0] == tops[1]


def get_current_branch(repo_path):
    """
    Get the current branch name of a repository.

    Works on an unborn branch (a repository with no commits yet).

    Args:
        repo_path: Repository path

    Returns:
        str: Branch name, or None if detached HEAD or error
    """
    result = run_git_command(
        ['git', 'symbolic-ref', '--short', '-q', 'HEAD'],
        cwd=repo_path,
        check_returncode=False
    )

    if result and result.returncode == 0:
        branch = result.stdout.strip()
        return branch if branch else None

    return None


def get_current_commit(repo_path):
    """
    Get the current HEAD commit hash of a repository.

    Args:
        repo_path: Repository path

    Returns:
        str: Commit hash, or None if HEAD does not point at a commit yet
    """
    result = run_git_command(
        ['git', 'rev-parse', '--verify', '-q', 'HEAD^{commit}'],
        cwd=repo_path,
        check_returncode=False
    )

    if result and result.returncode == 0:
        return result.stdout.strip()

    return None


def get_upstream_branch(repo_path):
    """
    Get the configured upstream of the current branch.

    Args:
        repo_path: Repository path

    Returns:
        str: Upstream ref in short form (e.g. origin/main), or None
    """
    result = run_git_command(
        ['git', 'rev-parse', '--abbrev-ref', '--symbolic-full-name', '@{u}'],
        cwd=repo_path,
        check_returncode=False
    )

    if result and result.returncode == 0:
        upstream = result.stdout.strip()
        return upstream if upstream else None

    return None


def count_unpushed_commits(repo_path):
    """
    Count commits on the current branch that are not on its upstream.

    Args:
        repo_path: Repository path

    Returns:
        int: Number of unpushed commits, or None if there is no upstream
    """
    upstream = get_upstream_branch(repo_path)
    if upstream is None:
        return None

    result = run_git_command(
        ['git', 'rev-list', '--count', '--first-parent', f'{upstream}..HEAD'],
        cwd=repo_path,
        operation_description=f"Failed to count commits ahead of {upstream}"
    )

    if result is None:
        return None

    try:
        return int(result.stdout.strip())
    except ValueError:
        return None


def list_recent_commits(repo_path, count):
    """
    List up to `count` commits ending at HEAD, oldest first.

    Follows first parents only, so a merge stands for the side branch it
    brought in.

    Args:
        repo_path: Repository path
        count: Maximum number of commits

    Returns:
        list: Full commit hashes (oldest to newest), or None on error
    """
    result = run_git_command(
        ['git', 'rev-list', '--first-parent', f'--max-count={count}', '--reverse', 'HEAD'],
        cwd=repo_path,
        operation_description="Failed to list commits to export"
    )

    if result is None:
        return None

    return result.stdout.split()


def get_parent_commits(repo_path, commit_hash):
    """
    Get the parents of a commit.

    Args:
        repo_path: Repository path
        commit_hash: Commit hash

    Returns:
        list: Parent hashes in order (empty for a root commit), or None on error
    """
    result = run_git_command(
        ['git', 'rev-list', '--parents', '-n', '1', commit_hash],
        cwd=repo_path,
        operation_description=f"Failed to read parents of {commit_hash}"
    )

    if result is None:
        return None

    hashes = result.stdout.split()
    return hashes[1:]


def get_empty_tree(repo_path):
    """
    Get the hash of the empty tree for this repository's object format.

    Args:
        repo_path: Repository path

    Returns:
        str: Empty tree hash
    """
    result = run_git_command(
        ['git', 'hash-object', '-t', 'tree', '--stdin'],
        cwd=repo_path,
        check_returncode=False,
        input_data=''
    )

    if result and result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()

    return EMPTY_TREE_SHA


def get_commit_diff(repo_path, base, commit_hash):
    """
    Get the binary-safe patch between a base tree-ish and a commit.

    Uses plumbing so user diff configuration (external drivers, colour,
    prefixes) cannot leak into the patch.

    Args:
        repo_path: Repository path
        base: Parent commit or empty tree hash
        commit_hash: Commit hash

    Returns:
        bytes: Patch content (empty for an empty commit), or None on error
    """
    result = run_git_command(
        ['git', 'diff-tree', '-p', '--binary', '--full-index', '--no-color',
         base, commit_hash],
        cwd=repo_path,
        operation_description=f"Failed to generate patch for {commit_hash}",
        text=False
    )

    return result.stdout if result else None


def get_commit_info(repo_path, commit_hash):
    """
    Get information about a commit.

    Args:
        repo_path: Repository path
        commit_hash: Commit hash

    Returns:
        dict: Commit info with keys: message, encoding, author, author_email,
              author_date, committer, committer_email, committer_date,
              or None on error
    """
    # Raw message bytes as stored in the commit object
    result = run_git_command(
        ['git', 'cat-file', 'commit', commit_hash],
        cwd=repo_path,
        operation_description="Failed to get commit info",
        text=False
    )

    if result is None:
        return None

    header, _, raw_message = result.stdout.partition(b'\n\n')

    encoding = None
    for line in header.split(b'\n'):
        if line.startswith(b'encoding '):
            encoding = line[len(b'encoding '):].decode('ascii', errors='replace').strip()

    try:
        message = raw_message.decode(encoding or 'utf-8')
    except (LookupError, UnicodeDecodeError) as e:
        sys.stderr.write(f"Error: Cannot decode message of {commit_hash} "
                         f"as {encoding or 'UTF-8'}: {e}\n")
        return None

    result = run_git_command(
        ['git', 'log', '-1', '--encoding=UTF-8',
         '--format=%an%x00%ae%x00%aI%x00%cn%x00%ce%x00%cI', commit_hash],
        cwd=repo_path,
        operation_description="Failed to get commit author info"
    )

    if result is None:
        return None

    fields = result.stdout.rstrip('\n').split(FIELD_SEPARATOR)
    if len(fields) != 6:
        sys.stderr.write(f"Error: Unexpected commit metadata for {commit_hash}\n")
        return None

    return {
        'message': message,
        'encoding': encoding,
        'author': fields[0],
        'author_email': fields[1],
        'author_date': fields[2],
        'committer': fields[3],
        'committer_email': fields[4],
        'committer_date': fields[5]
    }


def object_exists(repo_path, object_hash, object_type='commit'):
    """
    Test whether an object exists in the local object store.

    Args:
        repo_path: Repository path
        object_hash: Full object hash
        object_type: Expected object type

    Returns:
        bool: True if the object exists with that type
    """
    if not object_hash:
        return False

    result = run_git_command(
        ['git', 'cat-file', '-e', f'{object_hash}^{{{object_type}}}'],
        cwd=repo_path,
        check_returncode=False
    )

    return bool(result) and result.returncode == 0


def is_ancestor(repo_path, commit_hash, ref='HEAD'):
    """
    Check whether a commit is reachable from a ref.

    Args:
        repo_path: Repository path
        commit_hash: Commit to look for
        ref: Ref to walk from

    Returns:
        bool: True if commit_hash is an ancestor of (or equal to) ref
    """
    result = run_git_command(
        ['git', 'merge-base', '--is-ancestor', commit_hash, ref],
        cwd=repo_path,
        check_returncode=False
    )

    return bool(result) and result.returncode == 0


def ref_exists(repo_path, ref):
    """
    Check whether a fully qualified ref exists.

    Args:
        repo_path: Repository path
        ref: Ref name (e.g. refs/heads/main)

    Returns:
        bool: True if the ref exists
    """
    result = run_git_command(
        ['git', 'show-ref', '--verify', '--quiet', ref],
        cwd=repo_path,
        check_returncode=False
    )

    return bool(result) and result.returncode == 0


def list_remotes(repo_path):
    """
    List the configured remotes of a repository.

    Args:
        repo_path: Repository path

    Returns:
        list: Remote names (empty on error)
    """
    result = run_git_command(
        ['git', 'remote'],
        cwd=repo_path,
        check_returncode=False
    )

    if result and result.returncode == 0:
        return result.stdout.split()

    return []


def list_local_branches(repo_path):
    """
    List local branch names.

    Args:
        repo_path: Repository path

    Returns:
        list: Branch names (empty on error)
    """
    result = run_git_command(
        ['git', 'for-each-ref', '--format=%(refname:short)', 'refs/heads/'],
        cwd=repo_path,
        check_returncode=False
    )

    if result and result.returncode == 0:
        return result.stdout.split()

    return []


def get_working_tree_status(repo_path):
    """
    Get porcelain status covering tracked and untracked changes.

    Args:
        repo_path: Repository path

    Returns:
        str: Porcelain status (empty string when clean), or None on error
    """
    result = run_git_command(
        ['git', 'status', '--porcelain', '--untracked-files=all'],
        cwd=repo_path,
        operation_description=f"Failed to read working tree status of {repo_path}"
    )

    return result.stdout if result else None


def list_stashes(repo_path):
    """
    List stash entries, most recent first.

    Args:
        repo_path: Repository path

    Returns:
        list: Stash list lines (index in the list is the stash slot)
    """
    result = run_git_command(
        ['git', 'stash', 'list'],
        cwd=repo_path,
        check_returncode=False
    )

    if result and result.returncode == 0 and result.stdout.strip():
        return result.stdout.rstrip('\n').split('\n')

    return []
