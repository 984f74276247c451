#!/usr/bin/env python3
"""
Transfer Verification Script

Verifies that the last N commits of a source repository were replayed
faithfully onto a destination repository by the commit bridge. Checks
commit order, messages, authorship, timestamps and commit IDs, and
compares the resulting file contents.

Usage:
    ./verify_transfer.py --source <source_repo> --destination <dest_repo> [--count N]
    ./verify_transfer.py --help

Examples:
    ./verify_transfer.py --source ./source --destination ./destination --count 3
    ./verify_transfer.py --source ~/work/project --destination ~/home/project --verbose

The script verifies:
- The destination's last N commits match the source's last N, in order
- Commit messages, authors and timestamps are preserved
- Commit IDs are reproduced (reported as a warning when they differ)
- Tracked files and their contents match at HEAD
"""

import sys
import argparse
import subprocess
import hashlib
from pathlib import Path


def print_help():
    """
    Print detailed help information to stderr.
    """
    help_text = """
Transfer Verification Script

Verifies that commits exported from a source repository were accurately
imported into a destination repository.

Required Arguments:
  --source <path>        Path to source repository
  --destination <path>   Path to destination repository

Optional Arguments:
  --count <N>           Number of commits to compare (default: all source commits)
  --verbose             Show detailed verification progress
  --help                Show this help message

Verification Checks:
  1. Commit order - Destination's last N commits line up with the source's
  2. Commit metadata - Messages, authors, committers and timestamps preserved
  3. Commit IDs - Hashes reproduced (warning only)
  4. File content - Tracked files match exactly (SHA256 hash comparison)
  5. File permissions - Execute permissions match

Exit Codes:
  0 - Verification passed
  1 - Verification failed (discrepancies found)
  2 - Error during verification
"""
    sys.stderr.write(help_text)


def parse_arguments():
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument('--source', type=str, help='Path to source repository')
    parser.add_argument('--destination', type=str, help='Path to destination repository')
    parser.add_argument('--count', type=int, default=None, help='Number of commits to compare')
    parser.add_argument('--verbose', action='store_true', help='Show detailed progress')
    parser.add_argument('--help', action='store_true', help='Show help message')

    args = parser.parse_args()

    if args.help:
        print_help()
        sys.exit(0)

    return args


def print_usage():
    """
    Print brief usage information to stderr.
    """
    sys.stderr.write("Usage: verify_transfer.py --source <source_repo> --destination <dest_repo> [--count N]\n")
    sys.stderr.write("       verify_transfer.py --help\n")


def validate_arguments(args):
    """
    Validate that all required arguments are present.

    Returns:
        bool: True if valid, False otherwise
    """
    missing = []

    if not args.source:
        missing.append('--source')
    if not args.destination:
        missing.append('--destination')

    if missing:
        sys.stderr.write(f"Error: Missing required arguments: {', '.join(missing)}\n")
        print_usage()
        return False

    if args.count is not None and args.count < 1:
        sys.stderr.write("Error: --count must be a positive integer\n")
        return False

    return True


def get_tracked_files(repo_path):
    """
    Get all tracked files in a repository.

    Args:
        repo_path: Path to repository

    Returns:
        set: Set of relative file paths, or None on error
    """
    try:
        result = subprocess.run(
            ['git', 'ls-files'],
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=True
        )
        return set(result.stdout.split('\n')) - {''}
    except subprocess.CalledProcessError as e:
        sys.stderr.write(f"Error: Failed to get tracked files: {e}\n")
        return None


def calculate_file_hash(file_path):
    """
    Calculate SHA256 hash of a file.

    Returns:
        str: Hexadecimal hash string, or None on error
    """
    try:
        sha256_hash = hashlib.sha256()
        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(4096), b''):
                sha256_hash.update(chunk)
        return sha256_hash.hexdigest()
    except OSError as e:
        sys.stderr.write(f"Error: Failed to calculate hash for {file_path}: {e}\n")
        return None


def compare_file_content(source_path, dest_path, rel_path, verbose=False):
    """
    Compare content of two files using hash comparison.

    Returns:
        bool: True if files match, False otherwise
    """
    source_hash = calculate_file_hash(source_path / rel_path)
    dest_hash = calculate_file_hash(dest_path / rel_path)

    if source_hash is None or dest_hash is None:
        return False

    matches = source_hash == dest_hash

    if verbose:
        print(f"  {'✓ Content matches' if matches else '✗ Content differs'}: {rel_path}")

    return matches


def compare_file_permissions(source_path, dest_path, rel_path):
    """
    Compare execute permissions of two files.

    Returns:
        str: Warning message, or None if they match
    """
    try:
        source_executable = bool((source_path / rel_path).stat().st_mode & 0o111)
        dest_executable = bool((dest_path / rel_path).stat().st_mode & 0o111)
    except OSError as e:
        return f"Could not compare permissions for {rel_path}: {e}"

    if source_executable != dest_executable:
        return f"Execute permission mismatch: {rel_path}"
    return None


def get_commit_list(repo_path, count=None):
    """
    List commits reachable from HEAD, oldest first.

    Args:
        repo_path: Path to repository
        count: Only the last `count` commits when given

    Returns:
        list: Commit hashes, or None on error
    """
    args = ['git', 'rev-list', '--reverse', '--first-parent', 'HEAD']
    if count is not None:
        args.insert(2, f'--max-count={count}')

    try:
        result = subprocess.run(args, cwd=repo_path, capture_output=True, text=True, check=True)
        return result.stdout.split()
    except subprocess.CalledProcessError as e:
        sys.stderr.write(f"Error: Failed to list commits: {e}\n")
        return None


def get_commit_info(repo_path, commit_hash):
    """
    Get detailed information about a commit.

    Returns:
        dict: Commit information, or None on error
    """
    try:
        result = subprocess.run(
            ['git', 'cat-file', 'commit', commit_hash],
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=True
        )
        message = result.stdout.partition('\n\n')[2]

        result = subprocess.run(
            ['git', 'log', '-1', '--format=%an%x00%ae%x00%aI%x00%cn%x00%ce%x00%cI%x00%T', commit_hash],
            cwd=repo_path,
            capture_output=True,
            text=True,
            check=True
        )
        fields = result.stdout.rstrip('\n').split('\x00')

        return {
            'hash': commit_hash,
            'message': message,
            'author_name': fields[0],
            'author_email': fields[1],
            'author_date': fields[2],
            'committer_name': fields[3],
            'committer_email': fields[4],
            'committer_date': fields[5],
            'tree': fields[6],
        }

    except (subprocess.CalledProcessError, IndexError) as e:
        sys.stderr.write(f"Error: Failed to get commit info for {commit_hash}: {e}\n")
        return None


class VerificationResult:
    """Container for verification results."""

    def __init__(self):
        self.passed = True
        self.errors = []
        self.warnings = []
        self.stats = {
            'files_checked': 0,
            'files_matched': 0,
            'files_missing': 0,
            'files_differ': 0,
            'commits_checked': 0,
            'commits_matched': 0,
            'ids_matched': 0,
            'timestamp_mismatches': 0
        }

    def add_error(self, error):
        """Add an error message."""
        self.errors.append(error)
        self.passed = False

    def add_warning(self, warning):
        """Add a warning message."""
        self.warnings.append(warning)

    def merge(self, other):
        """Fold another result into this one."""
        self.passed = self.passed and other.passed
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        for key, value in other.stats.items():
            self.stats[key] += value
        return self

    def print_summary(self):
        """Print verification summary."""
        print(f"\n{'='*60}")
        print(f"VERIFICATION SUMMARY")
        print(f"{'='*60}")

        print(f"\nCommit Verification:")
        print(f"  Commits checked: {self.stats['commits_checked']}")
        print(f"  Commits matched: {self.stats['commits_matched']}")
        print(f"  Commit IDs reproduced: {self.stats['ids_matched']}")
        print(f"  Timestamp mismatches: {self.stats['timestamp_mismatches']}")

        print(f"\nFile Verification:")
        print(f"  Files checked: {self.stats['files_checked']}")
        print(f"  Files matched: {self.stats['files_matched']}")
        print(f"  Files missing: {self.stats['files_missing']}")
        print(f"  Files with different content: {self.stats['files_differ']}")

        if self.warnings:
            print(f"\nWarnings ({len(self.warnings)}):")
            for warning in self.warnings[:10]:
                print(f"  ⚠ {warning}")
            if len(self.warnings) > 10:
                print(f"  ... and {len(self.warnings) - 10} more warnings")

        if self.errors:
            print(f"\nErrors ({len(self.errors)}):")
            for error in self.errors[:10]:
                print(f"  ✗ {error}")
            if len(self.errors) > 10:
                print(f"  ... and {len(self.errors) - 10} more errors")

        print(f"\n{'='*60}")
        if self.passed:
            print(f"✓ VERIFICATION PASSED")
            print(f"{'='*60}")
            print(f"Destination carries the source commits faithfully.")
        else:
            print(f"✗ VERIFICATION FAILED")
            print(f"{'='*60}")
            print(f"Discrepancies found between source and destination repositories.")


def verify_commits(source_path, dest_path, count=None, verbose=False):
    """
    Compare the last N commits of source and destination pairwise.

    Returns:
        VerificationResult: Verification results
    """
    result = VerificationResult()

    if verbose:
        print("Verifying commits...")

    source_commits = get_commit_list(source_path, count)
    if source_commits is None:
        result.add_error("Failed to get source commit list")
        return result

    dest_commits = get_commit_list(dest_path, len(source_commits))
    if dest_commits is None:
        result.add_error("Failed to get destination commit list")
        return result

    if len(dest_commits) < len(source_commits):
        result.add_error(f"Destination has {len(dest_commits)} commit(s), expected at least {len(source_commits)}")
        return result

    for source_hash, dest_hash in zip(source_commits, dest_commits):
        result.stats['commits_checked'] += 1
        source_info = get_commit_info(source_path, source_hash)
        dest_info = get_commit_info(dest_path, dest_hash)
        if source_info is None or dest_info is None:
            result.add_error(f"Could not read commit pair {source_hash[:8]} / {dest_hash[:8]}")
            continue

        subject = source_info['message'].split('\n')[0][:50]
        mismatched = [
            key for key in ('message', 'author_name', 'author_email', 'tree')
            if source_info[key] != dest_info[key]
        ]
        if mismatched:
            result.add_error(f"Commit differs ({', '.join(mismatched)}): {subject}")
            continue

        result.stats['commits_matched'] += 1
        if verbose:
            print(f"  ✓ Matched commit: {subject}")

        if source_info['author_date'] != dest_info['author_date']:
            result.add_warning(f"Commit timestamp not preserved: {subject}")
            result.stats['timestamp_mismatches'] += 1

        if source_hash == dest_hash:
            result.stats['ids_matched'] += 1
        else:
            result.add_warning(f"Commit ID not reproduced: {source_hash[:8]} -> {dest_hash[:8]} ({subject})")

    if not verbose:
        print(f"✓ Verified {result.stats['commits_checked']} commits")

    return result


def verify_files(source_path, dest_path, verbose=False):
    """
    Verify that all source files exist in destination with matching content.

    Returns:
        VerificationResult: Verification results
    """
    result = VerificationResult()

    if verbose:
        print("\nVerifying files...")

    source_files = get_tracked_files(source_path)
    dest_files = get_tracked_files(dest_path)
    if source_files is None or dest_files is None:
        result.add_error("Failed to get file lists")
        return result

    for rel_path in sorted(source_files):
        result.stats['files_checked'] += 1

        if rel_path not in dest_files:
            result.add_error(f"File missing in destination: {rel_path}")
            result.stats['files_missing'] += 1
            continue

        if not compare_file_content(source_path, dest_path, rel_path, verbose):
            result.add_error(f"File content differs: {rel_path}")
            result.stats['files_differ'] += 1
            continue

        result.stats['files_matched'] += 1

        warning = compare_file_permissions(source_path, dest_path, rel_path)
        if warning:
            result.add_warning(warning)

    if not verbose:
        print(f"✓ Verified {result.stats['files_checked']} files")

    return result


def verify_transfer(source_path, dest_path, count=None, verbose=False):
    """
    Run commit and file verification.

    Returns:
        VerificationResult: Combined result
    """
    source_path = Path(source_path)
    dest_path = Path(dest_path)
    return verify_commits(source_path, dest_path, count, verbose).merge(
        verify_files(source_path, dest_path, verbose))


def main():
    """
    Main entry point for the verification script.
    """
    args = parse_arguments()

    if not validate_arguments(args):
        sys.exit(2)

    source_path = Path(args.source).resolve()
    dest_path = Path(args.destination).resolve()

    print(f"Verifying transfer from source to destination")
    print(f"  Source:      {source_path}")
    print(f"  Destination: {dest_path}")
    print()

    for path, name in ((source_path, "Source repository"), (dest_path, "Destination repository")):
        if not (path / '.git').exists():
            sys.stderr.write(f"Error: {name} is not a git repository: {path}\n")
            sys.exit(2)

    final_result = verify_transfer(source_path, dest_path, args.count, args.verbose)
    final_result.print_summary()

    sys.exit(0 if final_result.passed else 1)


if __name__ == '__main__':
    main()
