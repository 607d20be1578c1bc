# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Pytest tests for local worktree lookup, creation and comparison.

Repos are real git repositories built with GitPython under tmp_path. "origin" is
configured but never fetched; its remote-tracking refs are set with update-ref.
"""

from pathlib import Path

import git
import pytest

from pr_inbox.worktree import (
    WorktreeEntry,
    WorktreeManager,
    normalize_branch_ref,
    parse_worktree_list,
    validate_branch_name,
)

ACTOR = git.Actor("Test User", "test@example.com")


def _commit(repo: git.Repo, name: str) -> git.Commit:
    (Path(repo.working_tree_dir) / name).write_text(name + "\n")
    repo.index.add([name])
    return repo.index.commit(f"add {name}", author=ACTOR, committer=ACTOR)


@pytest.fixture
def source(tmp_path):
    """<tmp>/src/widgets on main with one commit, origin/main at that commit."""
    src = tmp_path / "src"
    repo = git.Repo.init(src / "widgets")
    first = _commit(repo, "a.txt")
    repo.git.branch("-M", "main")
    repo.create_remote("origin", url=str(tmp_path / "upstream.git"))
    repo.git.update_ref("refs/remotes/origin/main", first.hexsha)
    return src, repo, first


def _same_path(a, b) -> bool:
    return Path(a).resolve() == Path(b).resolve()


# ============================================================================
# Pure helpers
# ============================================================================

def test_parse_worktree_list():
    """Test porcelain parsing, including detached and bare entries."""
    porcelain = (
        "worktree /src/widgets\n"
        "HEAD 1111111111111111111111111111111111111111\n"
        "branch refs/heads/main\n"
        "\n"
        "worktree /src/widgets/feat\n"
        "HEAD 2222222222222222222222222222222222222222\n"
        "branch refs/heads/feat\n"
        "\n"
        "worktree /src/widgets/detached\n"
        "HEAD 3333333333333333333333333333333333333333\n"
        "detached\n"
    )
    assert parse_worktree_list(porcelain) == [
        WorktreeEntry("/src/widgets", "refs/heads/main"),
        WorktreeEntry("/src/widgets/feat", "refs/heads/feat"),
        WorktreeEntry("/src/widgets/detached", None),
    ]
    assert parse_worktree_list("") == []


@pytest.mark.parametrize(
    "ref,expected",
    [
        (None, None),
        ("refs/heads/feat/x", "feat/x"),
        ("refs/remotes/origin/feat", "feat"),
        ("feat", "feat"),
    ],
)
def test_normalize_branch_ref(ref, expected):
    """Test that local and origin refs reduce to the bare branch name."""
    assert normalize_branch_ref(ref) == expected


@pytest.mark.parametrize("branch", ["", "-b", "/abs", "a/../b", "..", "a//b", "a\\b"])
def test_validate_branch_name_rejects_path_escapes(branch):
    """Test that names which would not map to a directory under the repo are rejected."""
    with pytest.raises(ValueError):
        validate_branch_name(branch)


def test_repo_path_uses_repo_name_only(tmp_path):
    """Test that the owner part is ignored and malformed names are rejected."""
    mgr = WorktreeManager(tmp_path)
    assert mgr.repo_path("acme/widgets") == tmp_path / "widgets"
    for bad in ("widgets", "acme/", "a/b/c", "acme/.."):
        with pytest.raises(ValueError):
            mgr.repo_path(bad)


# ============================================================================
# check() / create()
# ============================================================================

def test_check_missing_repo(tmp_path):
    """Test that an absent clone is reported, not raised."""
    mgr = WorktreeManager(tmp_path)
    assert mgr.check("acme/widgets", "feat") == {"exists": False, "error": "Repository not found locally"}
    status, payload = mgr.create("acme/widgets", "feat")
    assert status == 500
    assert "Repository not found" in payload["error"]


def test_check_reports_default_path(source):
    """Test that a branch without a worktree reports the default path under the repo dir."""
    src, repo, _ = source
    result = WorktreeManager(src).check("acme/widgets", "feat")
    assert result["exists"] is False
    assert _same_path(result["path"], src / "widgets" / "feat")


def test_check_finds_main_worktree(source):
    """Test that the branch checked out in the main working tree is found there."""
    src, _, _ = source
    result = WorktreeManager(src).check("acme/widgets", "main")
    assert result["exists"] is True
    assert _same_path(result["path"], src / "widgets")


def test_create_from_remote_branch_tracks_it(source):
    """Test that a remote-only branch is created locally, tracking origin/<branch>."""
    src, repo, first = source
    repo.git.update_ref("refs/remotes/origin/feat", first.hexsha)
    mgr = WorktreeManager(src)

    status, payload = mgr.create("acme/widgets", "feat")

    assert status == 200
    assert payload["success"] is True
    assert _same_path(payload["path"], src / "widgets" / "feat")
    assert (src / "widgets" / "feat" / "a.txt").exists()
    assert repo.heads["feat"].tracking_branch().name == "origin/feat"

    check = mgr.check("acme/widgets", "feat")
    assert check["exists"] is True
    assert _same_path(check["path"], src / "widgets" / "feat")

    status, payload = mgr.create("acme/widgets", "feat")
    assert status == 200
    assert payload["message"] == "Worktree already exists"


def test_create_from_local_branch(source):
    """Test that an existing local branch is checked out as-is."""
    src, repo, _ = source
    repo.create_head("local-only")
    status, payload = WorktreeManager(src).create("acme/widgets", "local-only")
    assert status == 200
    assert repo.heads["local-only"].tracking_branch() is None
    assert (src / "widgets" / "local-only" / "a.txt").exists()


def test_create_new_branch_from_origin_main(source):
    """Test that an unknown branch starts from origin/main and tracks it."""
    src, repo, first = source
    status, _ = WorktreeManager(src).create("acme/widgets", "brand-new")
    assert status == 200
    assert repo.heads["brand-new"].commit == first
    assert repo.heads["brand-new"].tracking_branch().name == "origin/main"


def test_create_git_failure_is_500(source):
    """Test that a git error (no origin/main to start from) maps to 500."""
    src, repo, _ = source
    repo.git.update_ref("-d", "refs/remotes/origin/main")
    status, payload = WorktreeManager(src).create("acme/widgets", "brand-new")
    assert status == 500
    assert payload["error"]


# ============================================================================
# compare()
# ============================================================================

def test_compare_counts_incoming_and_outgoing(source):
    """Test ahead/behind counts between origin/<branch> and <branch>."""
    src, repo, first = source
    repo.git.update_ref("refs/remotes/origin/feat", first.hexsha)
    mgr = WorktreeManager(src)
    mgr.create("acme/widgets", "feat")
    assert mgr.compare("acme/widgets", "feat") == {"exists": True, "incoming": 0, "outgoing": 0}

    second = _commit(repo, "b.txt")
    repo.git.update_ref("refs/heads/feat", second.hexsha)
    assert mgr.compare("acme/widgets", "feat") == {"exists": True, "incoming": 0, "outgoing": 1}

    third = _commit(repo, "c.txt")
    repo.git.update_ref("refs/remotes/origin/feat", third.hexsha)
    assert mgr.compare("acme/widgets", "feat") == {"exists": True, "incoming": 1, "outgoing": 0}


def test_compare_without_worktree_or_remote(source):
    """Test the not-found answers for a missing worktree and a missing remote branch."""
    src, repo, _ = source
    mgr = WorktreeManager(src)
    assert mgr.compare("acme/widgets", "feat") == {"exists": False, "error": "Worktree not found"}

    repo.create_head("local-only")
    mgr.create("acme/widgets", "local-only")
    assert mgr.compare("acme/widgets", "local-only") == {
        "exists": True,
        "incoming": 0,
        "outgoing": 0,
        "error": "Remote branch not found",
    }
