"""Bare git working copies on the local filesystem."""
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterator, List, Optional
from urllib.parse import urlparse

from commitboard.domain.errors import MaterializationFailed
from commitboard.domain.models import CommitRecord, Repository
from commitboard.domain.working_copy_interface import IWorkingCopyStorage, WorkingCopy


logger = logging.getLogger(__name__)

LOG_FORMAT = "%ae%x1f%at"
FIELD_SEPARATOR = "\x1f"
BRANCH_REFSPEC = "+refs/heads/*:refs/heads/*"


def authenticated_url(url: str, token: Optional[str]) -> str:
    """Embed a token into an HTTPS clone URL; other URLs pass through."""
    parsed = urlparse(url)
    if not token or parsed.scheme != "https":
        return url
    return f"https://x-access-token:{token}@{parsed.netloc}{parsed.path}"


class GitWorkingCopyStorage(IWorkingCopyStorage):
    """Keeps one bare clone per repository under ``base_path / path_name``.

    A repository seen before is updated with ``git fetch`` instead of being
    cloned again.
    """

    def __init__(self, base_path: str, git_timeout_seconds: int = 300):
        self.base_path = Path(base_path)
        self.git_timeout_seconds = git_timeout_seconds
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_repo_path(self, repository: Repository) -> Path:
        return self.base_path / repository.path_name

    def materialize(self, repository: Repository, token: Optional[str] = None) -> WorkingCopy:
        local_path = self.get_repo_path(repository)
        remote = authenticated_url(repository.url, token)

        if (local_path / "HEAD").exists():
            logger.info(f"Fetching updates for {repository.url}")
            self._git(["fetch", "--prune", remote, BRANCH_REFSPEC], local_path, token)
            return WorkingCopy(repository=repository, local_path=local_path, fresh_clone=False)

        logger.info(f"Cloning {repository.url} into {local_path}")
        if local_path.exists():
            shutil.rmtree(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._git(["clone", "--bare", remote, str(local_path)], None, token)
            if remote != repository.url:
                self._git(["remote", "set-url", "origin", repository.url], local_path)
        except MaterializationFailed:
            if local_path.exists():
                shutil.rmtree(local_path)
            raise
        return WorkingCopy(repository=repository, local_path=local_path, fresh_clone=True)

    def size(self, copy: WorkingCopy) -> int:
        total = 0
        for root, _dirs, files in os.walk(copy.local_path):
            for name in files:
                path = os.path.join(root, name)
                if not os.path.islink(path):
                    total += os.path.getsize(path)
        return total

    def commit_count(self, copy: WorkingCopy) -> int:
        if not self._has_head(copy.local_path):
            return 0
        output = self._git(["rev-list", "--count", "HEAD"], copy.local_path)
        return int(output.strip() or 0)

    def commit_log(self, copy: WorkingCopy) -> Iterator[CommitRecord]:
        if not self._has_head(copy.local_path):
            return
        process = subprocess.Popen(
            ["git", "log", f"--format={LOG_FORMAT}", "HEAD"],
            cwd=copy.local_path,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        try:
            for line in process.stdout:
                line = line.rstrip("\n")
                if not line:
                    continue
                email, _, timestamp = line.partition(FIELD_SEPARATOR)
                yield CommitRecord(author_email=email, timestamp=int(timestamp or 0))
        finally:
            process.stdout.close()
            stderr = process.stderr.read()
            process.stderr.close()
            if process.wait() != 0:
                raise MaterializationFailed(f"git log failed for {copy.repository.url}: {stderr.strip()}")

    def release(self, copy: WorkingCopy) -> None:
        # Clones are kept for incremental fetches on the next run.
        logger.debug(f"Released working copy {copy.local_path}")

    def delete(self, copy: WorkingCopy) -> None:
        if copy.local_path.exists():
            shutil.rmtree(copy.local_path)
            logger.info(f"Deleted working copy {copy.local_path}")

    def _has_head(self, local_path: Path) -> bool:
        result = subprocess.run(
            ["git", "rev-parse", "--verify", "--quiet", "HEAD"],
            cwd=local_path,
            capture_output=True,
            text=True,
        )
        return result.returncode == 0

    def _git(self, args: List[str], cwd: Optional[Path], token: Optional[str] = None) -> str:
        """Run a git command, raising MaterializationFailed with the token redacted."""
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.git_timeout_seconds,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise MaterializationFailed(
                f"git {args[0]} timed out after {self.git_timeout_seconds} seconds"
            ) from e
        except OSError as e:
            raise MaterializationFailed(f"git could not be executed: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if token:
                stderr = stderr.replace(token, "***")
            raise MaterializationFailed(f"git {args[0]} failed: {stderr}")
        return result.stdout
