"""Append-only key/value store kept as linear history on a dedicated git ref.

Every write reads the current tip into a throwaway index file, swaps in the
new blob, writes a tree and a commit parented on the old tip, then moves the
ref with a compare-and-swap. The primary working tree and ``.git/index`` are
never touched.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import List, Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from ..constants import DEFAULT_STATE_REF
from ..errors import StateLogError

logger = logging.getLogger(__name__)


def normalize_key(path: str) -> str:
    """Return ``path`` as a relative POSIX key or raise ``ValueError``."""
    pure = PurePosixPath(str(path).replace("\\", "/"))
    if not str(path) or pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Invalid state key: {path!r}")
    key = pure.as_posix()
    if key in ("", "."):
        raise ValueError(f"Invalid state key: {path!r}")
    return key


class VersionedStateLog:
    """Versioned blobs on ``refs/heads/<ref_name>``."""

    def __init__(
        self,
        repo_path: str | Path = ".",
        ref_name: str = DEFAULT_STATE_REF,
        author_name: str = "phaseflow",
        author_email: str = "phaseflow@localhost",
    ) -> None:
        try:
            self.repo = Repo(repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise StateLogError(f"{repo_path} is not inside a git repository") from exc
        self.ref_name = ref_name
        self.ref = f"refs/heads/{ref_name}"
        self._identity = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": author_name,
            "GIT_COMMITTER_EMAIL": author_email,
        }

    # ------------------------------------------------------------------
    def tip(self) -> Optional[str]:
        """Return the commit the state ref points at, or ``None``."""
        try:
            return self.repo.git.rev_parse("--verify", "--quiet", f"{self.ref}^{{commit}}")
        except GitCommandError:
            return None

    def init(self) -> bool:
        """Create the state ref on an empty-tree commit if it is missing.

        Returns ``True`` when the ref was created.
        """
        if self.tip() is not None:
            return False
        try:
            empty_tree = self.repo.git.mktree()
            commit = self._commit_tree(empty_tree, None, "Initial state")
            self.repo.git.update_ref("-m", "phaseflow: init state log", self.ref, commit)
        except GitCommandError as exc:
            raise StateLogError(f"Failed to initialise {self.ref}: {exc}") from exc
        logger.info(f"Initialized state ref {self.ref}")
        return True

    def read(self, path: str, revision: Optional[str] = None) -> Optional[bytes]:
        """Return the blob at ``path`` in ``revision`` (default: tip)."""
        key = normalize_key(path)
        rev = revision or self.tip()
        if rev is None:
            return None
        try:
            item = self.repo.commit(rev).tree / key
        except KeyError:
            return None
        if item.type != "blob":
            return None
        return item.data_stream.read()

    def write(self, path: str, content: bytes | str) -> str:
        """Append a commit that sets ``path`` to ``content``; return its id."""
        key = normalize_key(path)
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        parent = self._ensure_tip()
        with tempfile.TemporaryDirectory(prefix="phaseflow-state-") as tmp:
            blob_file = os.path.join(tmp, "blob")
            Path(blob_file).write_bytes(data)
            try:
                blob_sha = self.repo.git.hash_object("-w", "--no-filters", blob_file)
                tree_sha = self._build_tree(
                    tmp, parent, "--add", "--cacheinfo", f"100644,{blob_sha},{key}"
                )
            except GitCommandError as exc:
                raise StateLogError(f"Failed to stage {key}: {exc}") from exc
        return self._advance(tree_sha, parent, f"Update {key}")

    def remove(self, path: str) -> Optional[str]:
        """Append a commit without ``path``. No-op when it is already absent."""
        key = normalize_key(path)
        if self.read(key) is None:
            return None
        parent = self._ensure_tip()
        with tempfile.TemporaryDirectory(prefix="phaseflow-state-") as tmp:
            try:
                tree_sha = self._build_tree(tmp, parent, "--force-remove", key)
            except GitCommandError as exc:
                raise StateLogError(f"Failed to remove {key}: {exc}") from exc
        return self._advance(tree_sha, parent, f"Remove {key}")

    def list(self) -> List[str]:
        """Enumerate every path present at the tip."""
        tip = self.tip()
        if tip is None:
            return []
        tree = self.repo.commit(tip).tree
        return sorted(item.path for item in tree.traverse() if item.type == "blob")

    def history(self, path: Optional[str] = None, max_count: Optional[int] = None) -> List[str]:
        """Commit ids on the state ref, newest first, optionally touching ``path``."""
        if self.tip() is None:
            return []
        kwargs = {}
        if max_count is not None:
            kwargs["max_count"] = max_count
        if path is not None:
            kwargs["paths"] = normalize_key(path)
        return [c.hexsha for c in self.repo.iter_commits(self.ref, **kwargs)]

    # ------------------------------------------------------------------
    def _ensure_tip(self) -> str:
        self.init()
        tip = self.tip()
        if tip is None:
            raise StateLogError(f"State ref {self.ref} could not be resolved")
        return tip

    def _build_tree(self, tmp: str, parent: str, *update_args: str) -> str:
        index_file = os.path.join(tmp, "index")
        with self.repo.git.custom_environment(GIT_INDEX_FILE=index_file):
            self.repo.git.read_tree(parent)
            self.repo.git.update_index(*update_args)
            return self.repo.git.write_tree()

    def _commit_tree(self, tree_sha: str, parent: Optional[str], message: str) -> str:
        args = [tree_sha]
        if parent:
            args += ["-p", parent]
        args += ["-m", message]
        with self.repo.git.custom_environment(**self._identity):
            return self.repo.git.commit_tree(*args)

    def _advance(self, tree_sha: str, parent: str, message: str) -> str:
        try:
            commit = self._commit_tree(tree_sha, parent, message)
            # old value makes the ref move a compare-and-swap
            self.repo.git.update_ref("-m", f"phaseflow: {message}", self.ref, commit, parent)
        except GitCommandError as exc:
            raise StateLogError(f"Failed to advance {self.ref}: {exc}") from exc
        logger.debug(f"{self.ref} -> {commit[:10]} ({message})")
        return commit
