"""Stage, commit, verify and roll back changes in the working repository."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from pydantic import BaseModel, Field

from ..config import CommitConfig
from ..errors import (
    CommitError,
    CommitValidationError,
    CommitVerificationError,
    NonRetryableCommitError,
    RetryableCommitError,
    RollbackRefusedError,
)
from ..utils.retry import ExponentialBackoff
from .messages import (
    MessageCorrection,
    correct_message_format,
    format_error_report,
    format_message,
    validate_message,
)

logger = logging.getLogger(__name__)

RETRYABLE_PATTERN = re.compile(
    r"lock|timeout|timed out|network|connection|temporary|busy", re.IGNORECASE
)


class CommitRecord(BaseModel):
    """A commit produced (or skipped) by :meth:`CommitHandler.execute`."""

    message: str
    persona: str
    step_id: str
    commit_id: Optional[str] = None
    validated: bool = False
    bypassed: bool = False
    verified: bool = False
    warnings: List[str] = Field(default_factory=list)


class VerificationResult(BaseModel):
    hash: str
    verified: bool
    message: str = ""
    author: str = ""
    timestamp: Optional[datetime] = None
    files: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    rolled_back: bool = False
    error: Optional[str] = None


def _git_detail(exc: GitCommandError) -> str:
    detail = exc.stderr or exc.stdout or str(exc)
    return str(detail).strip()


class CommitHandler:
    """Transactional commit helper.

    ``prepare`` stages, ``execute`` validates and commits with bounded
    backoff, ``verify`` confirms the result and rolls back the tip when
    verification fails.
    """

    def __init__(
        self,
        repo_path: str | Path = ".",
        config: Optional[CommitConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        try:
            self.repo = Repo(repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise CommitError(f"{repo_path} is not inside a git repository") from exc
        self.config = config or CommitConfig()
        self.backoff = ExponentialBackoff(
            initial_delay=self.config.initial_delay,
            max_delay=self.config.max_delay,
            multiplier=self.config.multiplier,
            max_retries=self.config.max_retries,
            jitter_factor=self.config.jitter_factor,
            sleep=sleep,
        )
        self.records: List[CommitRecord] = []

    @property
    def working_dir(self) -> Path:
        return Path(self.repo.working_tree_dir)

    # ------------------------------------------------------------------
    # Staging
    def prepare(self, files: Optional[Sequence[str]] = None) -> bool:
        """Stage ``files`` (or every pending change) and report if anything is staged."""
        logger.info("Preparing commit...")
        if files:
            self._stage_files(files)
        else:
            self._stage_all()

        if self.config.validate_staging and not self.has_staged_changes():
            logger.warning("No changes staged after git add operation")
            return False
        logger.info("Commit preparation completed successfully")
        return True

    def _stage_files(self, files: Sequence[str]) -> None:
        logger.info(f"Staging {len(files)} specific files")
        for file in files:
            path = Path(file)
            if not path.is_absolute():
                path = self.working_dir / path
            if not path.exists():
                logger.warning(f"File does not exist, skipping: {file}")
                continue
            self.repo.git.add("--", str(path))
            logger.info(f"Staged file: {file}")

    def _stage_all(self) -> None:
        if not self.repo.git.status("--porcelain").strip():
            logger.info("No changes detected to stage")
            return
        logger.info("Staging all changes")
        self.repo.git.add("-A")

    def has_staged_changes(self) -> bool:
        try:
            self.repo.git.diff("--cached", "--quiet")
        except GitCommandError as exc:
            if exc.status == 1:
                return True
            raise
        return False

    # ------------------------------------------------------------------
    # Messages
    @staticmethod
    def format_message(persona: str, step_id: int | str, description: str) -> str:
        return format_message(persona, step_id, description)

    @staticmethod
    def correct_message_format(message: str) -> MessageCorrection:
        return correct_message_format(message)

    @staticmethod
    def is_retryable(error: Exception | str) -> bool:
        return bool(RETRYABLE_PATTERN.search(str(error)))

    # ------------------------------------------------------------------
    # Commit
    def execute(
        self,
        description: str,
        persona: str,
        step_id: int | str,
        bypass_validation: bool = False,
    ) -> Optional[str]:
        """Commit the staged changes; ``None`` when nothing is staged."""
        message = format_message(persona, step_id, description)
        validation = validate_message(message)
        for warning in validation.warnings:
            logger.warning(f"Commit message warning: {warning}")

        record = CommitRecord(
            message=message,
            persona=persona.upper(),
            step_id=str(step_id).zfill(3),
            validated=validation.valid,
            warnings=list(validation.warnings),
        )
        if self.config.validate_format and not validation.valid:
            if not bypass_validation:
                raise CommitValidationError(
                    f"Invalid commit message format: {message}",
                    report=format_error_report(validation),
                )
            logger.warning(
                f"Commit message validation bypassed for '{message}': "
                + "; ".join(validation.errors)
            )
            record.bypassed = True
            record.validated = True

        if not self.has_staged_changes():
            logger.warning("No changes to commit - skipping commit operation")
            return None

        total = self.config.max_retries + 1

        def _attempt(attempt: int) -> str:
            logger.info(f"Attempting commit (attempt {attempt + 1}/{total})")
            try:
                self.repo.git.commit("-m", message)
            except GitCommandError as exc:
                detail = _git_detail(exc)
                logger.warning(f"Commit attempt {attempt + 1} failed: {detail}")
                if self.is_retryable(detail):
                    raise RetryableCommitError(detail) from exc
                raise NonRetryableCommitError(f"Non-retryable commit error: {detail}") from exc
            return self.repo.head.commit.hexsha

        try:
            commit_id = self.backoff.execute(
                _attempt, is_retryable=lambda exc: isinstance(exc, RetryableCommitError)
            )
        except CommitError as exc:
            logger.error(f"Execute commit failed: {exc}")
            raise

        record.commit_id = commit_id
        self.records.append(record)
        logger.info(f"Commit successful: {commit_id}")
        return commit_id

    # ------------------------------------------------------------------
    # Verification
    def _resolve(self, commit_id: str) -> str:
        try:
            return self.repo.git.rev_parse("--verify", "--quiet", f"{commit_id}^{{commit}}")
        except GitCommandError as exc:
            raise CommitVerificationError(f"Commit {commit_id} does not exist") from exc

    def _head(self) -> Optional[str]:
        try:
            return self.repo.git.rev_parse("--verify", "--quiet", "HEAD")
        except GitCommandError:
            return None

    def verify(self, commit_id: str) -> VerificationResult:
        """Confirm ``commit_id`` exists, is reachable from HEAD and is well formed.

        A failed verification of the current tip is soft-rolled back and
        reported with ``verified=False``. A failed verification of any other
        commit raises :class:`RollbackRefusedError`.
        """
        if not commit_id:
            raise CommitVerificationError("Invalid commit hash provided for verification")
        logger.info(f"Verifying commit: {commit_id}")
        sha = self._resolve(commit_id)
        commit = self.repo.commit(sha)

        result = VerificationResult(
            hash=sha,
            verified=False,
            message=commit.message.strip(),
            author=f"{commit.author.name} <{commit.author.email}>",
            timestamp=commit.authored_datetime,
            files=sorted(commit.stats.files.keys()),
        )

        failure: Optional[str] = None
        head = self._head()
        if head is None or not self.repo.is_ancestor(sha, head):
            failure = f"Commit {sha} is not reachable from the current tip"
        else:
            validation = validate_message(commit.summary)
            if not validation.valid:
                note = f"Commit {sha} has invalid message format: {commit.summary}"
                if self.config.strict_verification:
                    failure = note
                else:
                    logger.warning(note)
                    result.warnings.append(note)

        if failure is None:
            result.verified = True
            for record in self.records:
                if record.commit_id == sha:
                    record.verified = True
            logger.info(f"Commit verification successful: {sha}")
            return result

        logger.error(f"Commit verification failed for {sha}: {failure}")
        result.error = failure
        if not self.config.enable_rollback:
            raise CommitVerificationError(failure)
        if sha != head:
            raise RollbackRefusedError(
                f"Cannot roll back {sha}: it is not the current tip (HEAD: {head}); "
                "later history depends on it"
            )
        self.rollback(sha)
        result.rolled_back = True
        return result

    def rollback(self, commit_id: str) -> None:
        """Soft-reset HEAD past ``commit_id``, keeping its changes staged."""
        sha = self._resolve(commit_id)
        head = self._head()
        if head != sha:
            raise RollbackRefusedError(
                f"Cannot rollback commit {sha} - it is not the latest commit (HEAD: {head})"
            )
        if not self.repo.commit(sha).parents:
            raise RollbackRefusedError(f"Cannot rollback root commit {sha}")
        logger.warning(f"Attempting rollback of commit: {sha}")
        self.repo.git.reset("--soft", "HEAD~1")
        logger.info(f"Successfully rolled back commit: {sha}")
