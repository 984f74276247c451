import subprocess

import pytest

from create_test_repo import create_scenario, run_git, TEST_USER_NAME, TEST_USER_EMAIL
from bridge_guard import StashGuard

GIT_ENV_OVERRIDES = [
    'GIT_DIR', 'GIT_WORK_TREE', 'GIT_INDEX_FILE',
    'GIT_AUTHOR_NAME', 'GIT_AUTHOR_EMAIL', 'GIT_AUTHOR_DATE',
    'GIT_COMMITTER_NAME', 'GIT_COMMITTER_EMAIL', 'GIT_COMMITTER_DATE',
]


@pytest.fixture(autouse=True)
def isolated_git(tmp_path_factory, monkeypatch):
    """Point git at a throwaway HOME so user configuration cannot leak in."""
    home = tmp_path_factory.mktemp('home')
    (home / '.gitconfig').write_text(
        "[user]\n"
        f"\tname = {TEST_USER_NAME}\n"
        f"\temail = {TEST_USER_EMAIL}\n"
        "[commit]\n"
        "\tgpgsign = false\n"
        "[init]\n"
        "\tdefaultBranch = main\n"
        "[advice]\n"
        "\tdetachedHead = false\n",
        encoding='utf-8'
    )
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.setenv('XDG_CONFIG_HOME', str(home / '.config'))
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    for name in GIT_ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def scenario(tmp_path):
    """Source with commits A, B, C; carrier with a bare origin; empty destination."""
    return create_scenario(tmp_path)


@pytest.fixture
def guard():
    return StashGuard(quiet=True)


@pytest.fixture
def stash_guard():
    return StashGuard(auto_stash=True, quiet=True)


def head(repo_path):
    return run_git(repo_path, 'rev-parse', 'HEAD')


def has_commits(repo_path):
    result = subprocess.run(['git', 'rev-parse', '--verify', '-q', 'HEAD'],
                            cwd=repo_path, capture_output=True, check=False)
    return result.returncode == 0


def log_subjects(repo_path):
    if not has_commits(repo_path):
        return []
    output = run_git(repo_path, 'log', '--reverse', '--format=%s')
    return output.split('\n') if output else []


def status(repo_path):
    return run_git(repo_path, 'status', '--porcelain', '--untracked-files=all')


def branches(repo_path):
    output = run_git(repo_path, 'for-each-ref', '--format=%(refname:short)', 'refs/heads/')
    return output.split('\n') if output else []


def stashes(repo_path):
    output = run_git(repo_path, 'stash', 'list')
    return output.split('\n') if output else []
