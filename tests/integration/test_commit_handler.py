"""Commit handler against a real git repository."""

import os
import stat
from pathlib import Path

import pytest

from phaseflow.commits import CommitHandler
from phaseflow.config import CommitConfig
from phaseflow.errors import (
    CommitError,
    CommitValidationError,
    CommitVerificationError,
    NonRetryableCommitError,
    RetryableCommitError,
    RollbackRefusedError,
)


def _handler(repo, sleeps=None, **config):
    sleep = sleeps.append if sleeps is not None else (lambda _: None)
    return CommitHandler(repo.working_tree_dir, CommitConfig(**config), sleep=sleep)


def _write(repo, name, content="content\n"):
    path = Path(repo.working_tree_dir) / name
    path.write_text(content)
    return path


def _commit_count(repo):
    return int(repo.git.rev_list("--count", "HEAD"))


def test_empty_diff_is_skipped(git_repo):
    handler = _handler(git_repo)
    head = git_repo.head.commit.hexsha
    count = _commit_count(git_repo)

    assert handler.prepare([]) is False
    assert handler.execute("Add generated requirements", "developer", 2) is None

    assert git_repo.head.commit.hexsha == head
    assert _commit_count(git_repo) == count
    assert handler.records == []


def test_prepare_specific_files_skips_missing(git_repo, caplog):
    _write(git_repo, "a.md")
    _write(git_repo, "b.md")
    handler = _handler(git_repo)

    assert handler.prepare(["a.md", "missing.md"]) is True
    staged = git_repo.git.diff("--cached", "--name-only").splitlines()
    assert staged == ["a.md"]
    assert "File does not exist, skipping: missing.md" in caplog.text


def test_execute_and_verify(git_repo):
    _write(git_repo, "notes.md")
    handler = _handler(git_repo)
    handler.prepare()

    commit_id = handler.execute("Add generated requirements document", "developer", 2)

    assert commit_id == git_repo.head.commit.hexsha
    assert git_repo.head.commit.summary == (
        "[DEVELOPER] [STEP-002] Add generated requirements document"
    )
    record = handler.records[-1]
    assert record.validated and not record.bypassed
    assert record.commit_id == commit_id

    result = handler.verify(commit_id)
    assert result.verified
    assert result.files == ["notes.md"]
    assert result.author == "Test User <test@example.com>"
    assert result.warnings == []
    assert handler.records[-1].verified


def test_invalid_message_rejected_unless_bypassed(git_repo):
    _write(git_repo, "notes.md")
    handler = _handler(git_repo)
    handler.prepare()

    with pytest.raises(CommitValidationError) as exc_info:
        handler.execute("Add generated requirements document", "developer", "abc")
    assert "REQUIRED FORMAT" in exc_info.value.report
    assert handler.records == []

    commit_id = handler.execute(
        "Add generated requirements document", "developer", "abc", bypass_validation=True
    )
    assert commit_id is not None
    record = handler.records[-1]
    assert record.bypassed
    assert record.validated


def test_non_canonical_commit_only_warns_by_default(git_repo):
    _write(git_repo, "hack.txt")
    git_repo.git.add("hack.txt")
    git_repo.git.commit("-m", "quick hack")
    handler = _handler(git_repo)

    result = handler.verify("HEAD")

    assert result.verified
    assert any("invalid message format" in w for w in result.warnings)


def test_strict_verification_rolls_back_tip(git_repo):
    parent = git_repo.head.commit.hexsha
    _write(git_repo, "hack.txt")
    git_repo.git.add("hack.txt")
    git_repo.git.commit("-m", "quick hack")
    bad = git_repo.head.commit.hexsha
    handler = _handler(git_repo, strict_verification=True)

    result = handler.verify(bad)

    assert not result.verified
    assert result.rolled_back
    assert "invalid message format" in result.error
    assert git_repo.head.commit.hexsha == parent
    # soft rollback keeps the change staged and on disk
    assert handler.has_staged_changes()
    assert (Path(git_repo.working_tree_dir) / "hack.txt").exists()


def test_rollback_refused_when_not_tip(git_repo):
    _write(git_repo, "hack.txt")
    git_repo.git.add("hack.txt")
    git_repo.git.commit("-m", "quick hack")
    bad = git_repo.head.commit.hexsha
    _write(git_repo, "later.txt")
    git_repo.git.add("later.txt")
    git_repo.git.commit("-m", "[QA] [STEP-003] Add follow-up checks on top")
    head = git_repo.head.commit.hexsha
    handler = _handler(git_repo, strict_verification=True)

    with pytest.raises(RollbackRefusedError):
        handler.verify(bad)
    assert git_repo.head.commit.hexsha == head


def test_verification_failure_without_rollback(git_repo):
    _write(git_repo, "hack.txt")
    git_repo.git.add("hack.txt")
    git_repo.git.commit("-m", "quick hack")
    handler = _handler(git_repo, strict_verification=True, enable_rollback=False)
    head = git_repo.head.commit.hexsha

    with pytest.raises(CommitVerificationError, match="invalid message format"):
        handler.verify(head)
    # nothing was rolled back, so the failure surfaces as an exception
    assert git_repo.head.commit.hexsha == head
    assert not handler.has_staged_changes()


def test_verify_unknown_commit(git_repo):
    handler = _handler(git_repo)
    with pytest.raises(CommitVerificationError):
        handler.verify("0" * 40)
    with pytest.raises(CommitVerificationError):
        handler.verify("")


def test_unreachable_commit_fails_verification(git_repo):
    base = git_repo.head.commit.hexsha
    git_repo.git.checkout("-b", "side")
    _write(git_repo, "side.txt")
    git_repo.git.add("side.txt")
    git_repo.git.commit("-m", "[DEVELOPER] [STEP-004] Add side branch experiment")
    side = git_repo.head.commit.hexsha
    git_repo.git.checkout("-")
    assert git_repo.head.commit.hexsha == base
    handler = _handler(git_repo)

    with pytest.raises(RollbackRefusedError):
        handler.verify(side)


def test_root_commit_rollback_refused(git_repo):
    handler = _handler(git_repo)
    with pytest.raises(RollbackRefusedError):
        handler.rollback(git_repo.head.commit.hexsha)


def test_lock_contention_is_retried(git_repo):
    _write(git_repo, "notes.md")
    handler_sleeps = []
    index_lock = Path(git_repo.git_dir) / "index.lock"

    def release_lock(delay):
        handler_sleeps.append(delay)
        index_lock.unlink()

    handler = CommitHandler(
        git_repo.working_tree_dir,
        CommitConfig(initial_delay=0.01, jitter_factor=0),
        sleep=release_lock,
    )
    handler.prepare()
    index_lock.write_text("")

    commit_id = handler.execute("Add generated requirements document", "developer", 5)

    assert commit_id == git_repo.head.commit.hexsha
    assert handler_sleeps == [0.01]


def test_lock_contention_exhausts_retries(git_repo):
    _write(git_repo, "notes.md")
    sleeps = []
    handler = _handler(git_repo, sleeps, max_retries=2)
    handler.prepare()
    (Path(git_repo.git_dir) / "index.lock").write_text("")

    with pytest.raises(RetryableCommitError):
        handler.execute("Add generated requirements document", "developer", 5)
    assert len(sleeps) == 2


@pytest.mark.skipif(os.name == "nt", reason="hooks need a POSIX shell")
def test_hook_rejection_is_not_retried(git_repo):
    hook = Path(git_repo.git_dir) / "hooks" / "pre-commit"
    hook.parent.mkdir(exist_ok=True)
    hook.write_text("#!/bin/sh\necho 'policy rejected this change' >&2\nexit 1\n")
    hook.chmod(hook.stat().st_mode | stat.S_IEXEC)
    _write(git_repo, "notes.md")
    sleeps = []
    handler = _handler(git_repo, sleeps)
    handler.prepare()

    with pytest.raises(NonRetryableCommitError, match="policy rejected"):
        handler.execute("Add generated requirements document", "developer", 5)
    assert sleeps == []


@pytest.mark.parametrize(
    "detail, retryable",
    [
        ("fatal: Unable to create '.git/index.lock': File exists.", True),
        ("Connection reset by peer", True),
        ("operation timed out", True),
        ("resource busy", True),
        ("pathspec 'x' did not match any files", False),
        ("nothing to commit, working tree clean", False),
    ],
)
def test_retryable_classification(detail, retryable):
    assert CommitHandler.is_retryable(detail) is retryable


def test_not_a_repository(tmp_path):
    with pytest.raises(CommitError):
        CommitHandler(tmp_path / "missing")


def test_message_format_helpers_exposed():
    assert CommitHandler.format_message("qa", 1, "Run the smoke suite") == (
        "[QA] [STEP-001] Run the smoke suite"
    )
    assert CommitHandler.correct_message_format("qa: run smoke suite").corrected
