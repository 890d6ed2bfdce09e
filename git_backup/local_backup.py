"""
Local mirror synchronisation

Copyright 2025 HyperSec

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import logging
import os
import re
import shutil
import subprocess
import threading
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .base import (
    Credentials,
    Outcome,
    Repository,
    SyncResult,
    mask_credentials,
    normalise_remote_url,
)
from .errors import GitCommandError, SyncCancelledError

MINIMUM_GIT_VERSION = (2, 0, 0)
STDERR_LIMIT = 500
PARTIAL_SUFFIX = ".partial"

# Answers git's credential requests from the environment of the git process
CREDENTIAL_HELPER = (
    "!f() { test \"$1\" = get || exit 0; "
    "echo \"username=${GIT_BACKUP_USERNAME}\"; "
    "echo \"password=${GIT_BACKUP_PASSWORD}\"; }; f"
)


def git_version() -> Optional[Tuple[int, int, int]]:
    """Installed git version, or None when git cannot be run"""
    try:
        result = subprocess.run(
            ["git", "version"], capture_output=True, text=True, timeout=10
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    match = re.search(r"(\d+)\.(\d+)\.(\d+)", result.stdout)
    if result.returncode != 0 or not match:
        return None
    return tuple(int(part) for part in match.groups())


def robust_rmtree(path: Path, logger: logging.Logger, max_retries: int = 3) -> bool:
    """
    Robustly remove a directory tree with retries.
    Handles race conditions where files may still be written during removal.

    Args:
        path: Path to remove
        logger: Logger for messages
        max_retries: Maximum number of retry attempts

    Returns:
        True if successfully removed, False otherwise
    """
    if not path.exists():
        return True

    for attempt in range(max_retries):
        try:
            shutil.rmtree(path)
            return True
        except OSError as e:
            if attempt < max_retries - 1:
                # Wait briefly before retry to allow any processes to complete
                time.sleep(0.5 * (attempt + 1))
                logger.debug(
                    f"[CLEANUP] Retry {attempt + 1}/{max_retries} removing {path}: {e}"
                )
            else:
                logger.warning(
                    f"[CLEANUP] Failed to remove {path} after {max_retries} attempts: {e}"
                )
                return False
    return False


class PathState(Enum):
    MISSING = "missing"
    BACKUP = "backup"
    CONFLICT = "conflict"


class LocalBackup:
    def __init__(
        self,
        backup_path: str,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        poll_interval: float = 0.2,
    ):
        """
        Initialize local mirror manager
        Args:
            backup_path: Directory holding one bare mirror per repository
            dry_run: Only report what would happen
            cancel_event: When set, running git processes are killed and
                pending syncs fail as cancelled
            poll_interval: Seconds between cancellation checks while git runs
        """
        self.backup_path = Path(backup_path)
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(self.__class__.__name__)

        # Never prompt for credentials; a rejected token must fail the command.
        # The ceiling stops git from treating an enclosing repository as ours.
        self._env = dict(
            os.environ,
            GIT_TERMINAL_PROMPT="0",
            GIT_CEILING_DIRECTORIES=str(self.backup_path.resolve()),
        )

        if not dry_run:
            try:
                self.backup_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self.logger.error(
                    f"[ERROR] Failed to create backup directory {self.backup_path}: {e}"
                )
                raise
        self.logger.info(f"[CONFIG] Backup directory: {self.backup_path}")

    def _run_git(
        self, args: List[str], cwd: Path, env: Optional[Dict[str, str]] = None
    ) -> subprocess.CompletedProcess:
        if self.cancel_event.is_set():
            raise SyncCancelledError()

        process = subprocess.Popen(
            ["git", *args],
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=env or self._env,
        )
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event.is_set():
                    process.kill()
                    process.communicate()
                    raise SyncCancelledError()
        return subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)

    def _run_git_checked(
        self, action: str, args: List[str], cwd: Path, env: Optional[Dict[str, str]] = None
    ) -> str:
        result = self._run_git(args, cwd, env)
        if result.returncode != 0:
            stderr = mask_credentials((result.stderr or "").strip())[:STDERR_LIMIT]
            raise GitCommandError(action, result.returncode, stderr)
        return result.stdout

    def inspect(self, path: Path, clone_url: str) -> Tuple[PathState, Optional[str]]:
        """
        Classify a destination path.

        A valid prior backup is a bare repository whose git dir is the path
        itself and whose origin matches clone_url once credentials and a
        trailing .git are ignored.
        """
        if not path.exists() and not path.is_symlink():
            return PathState.MISSING, None
        if not path.is_dir():
            return PathState.CONFLICT, f"{path} exists and is not a directory"

        result = self._run_git(["rev-parse", "--is-bare-repository", "--git-dir"], path)
        lines = result.stdout.split()
        if result.returncode != 0 or len(lines) < 2:
            return PathState.CONFLICT, f"{path} exists and is not a git repository"
        if lines[0] != "true" or (path / lines[1]).resolve() != path.resolve():
            return PathState.CONFLICT, f"{path} exists and is not a mirror backup"

        origin = self._run_git(["config", "--get", "remote.origin.url"], path)
        origin_url = origin.stdout.strip()
        if origin.returncode != 0 or not origin_url:
            return PathState.CONFLICT, f"{path} has no origin remote"
        if normalise_remote_url(origin_url) != normalise_remote_url(clone_url):
            return (
                PathState.CONFLICT,
                f"{path} mirrors {mask_credentials(origin_url)}, not {clone_url}",
            )
        return PathState.BACKUP, None

    def credential_options(
        self, credentials: Optional[Credentials]
    ) -> Tuple[List[str], Optional[Dict[str, str]]]:
        """
        Git options and environment that hand credentials to git.

        The token travels in the environment of the git process only, so it
        never shows up in the process list, the URL or the mirror's config.
        Any helper from the user's git config is cleared first.
        """
        if credentials is None:
            return [], None
        options = ["-c", "credential.helper=", "-c", f"credential.helper={CREDENTIAL_HELPER}"]
        env = dict(
            self._env,
            GIT_BACKUP_USERNAME=credentials.username,
            GIT_BACKUP_PASSWORD=credentials.token,
        )
        return options, env

    def _clone(self, repo: Repository, path: Path, credentials: Optional[Credentials]):
        staging = self.backup_path / f".{repo.name}.{uuid.uuid4().hex[:8]}{PARTIAL_SUFFIX}"
        options, env = self.credential_options(credentials)
        try:
            self._run_git_checked(
                "Clone",
                [*options, "clone", "--mirror", repo.clone_url, str(staging)],
                self.backup_path,
                env,
            )
            staging.rename(path)
        finally:
            if staging.exists():
                robust_rmtree(staging, self.logger)

    def _update(self, repo: Repository, path: Path, credentials: Optional[Credentials]):
        options, env = self.credential_options(credentials)
        self._run_git_checked(
            "Fetch",
            [
                *options,
                "fetch", "--prune", "--force", "--quiet",
                repo.clone_url, "+refs/*:refs/*",
            ],
            path,
            env,
        )

    def sync_repository(
        self, repo: Repository, credentials: Optional[Credentials] = None
    ) -> SyncResult:
        """
        Clone or update one repository under backup_path/repo.name
        Args:
            repo: Repository to mirror
            credentials: Handed to git through a credential helper for private access
        Returns:
            SyncResult: outcome, with a reason on failure
        """
        path = self.backup_path / repo.name

        try:
            state, reason = self.inspect(path, repo.clone_url)
            if state is PathState.CONFLICT:
                self.logger.error(f"[ERROR] Refusing to sync {repo.name}: {reason}")
                return SyncResult(repo.name, Outcome.FAILED, reason)

            action = "clone" if state is PathState.MISSING else "update"
            if self.dry_run:
                self.logger.info(f"[DRY-RUN] Would {action} {repo.name} in {path}")
                return SyncResult(repo.name, Outcome.SKIPPED, f"dry run: would {action}")

            if state is PathState.MISSING:
                self.logger.info(f"[CLONE] Cloning {repo.name}...")
                self._clone(repo, path, credentials)
                self.logger.info(f"[SUCCESS] Cloned {repo.name} to {path}")
                return SyncResult(repo.name, Outcome.CLONED_FRESH)

            self.logger.info(f"[UPDATE] Updating {repo.name}...")
            self._update(repo, path, credentials)
            self.logger.info(f"[SUCCESS] Updated {repo.name}")
            return SyncResult(repo.name, Outcome.UPDATED_EXISTING)

        except SyncCancelledError as e:
            self.logger.warning(f"[CANCEL] Sync of {repo.name} cancelled")
            return SyncResult(repo.name, Outcome.FAILED, str(e))
        except GitCommandError as e:
            self.logger.error(f"[ERROR] {repo.name}: {e}")
            return SyncResult(repo.name, Outcome.FAILED, str(e))
        except OSError as e:
            reason = mask_credentials(f"{type(e).__name__}: {e}")
            self.logger.error(f"[ERROR] {repo.name}: {reason}")
            return SyncResult(repo.name, Outcome.FAILED, reason)

    def prune(self, keep_names: Iterable[str]) -> List[str]:
        """
        Remove mirrors that no longer correspond to a listed repository.

        Only bare repositories are considered; anything else under the
        backup root is left alone.
        """
        keep = set(keep_names)
        pruned = []
        if not self.backup_path.is_dir():
            return pruned

        for entry in sorted(self.backup_path.iterdir()):
            if entry.name in keep or entry.name.startswith("."):
                continue
            if entry.is_symlink() or not entry.is_dir():
                continue
            if not ((entry / "HEAD").is_file() and (entry / "objects").is_dir()):
                continue
            if self.dry_run:
                self.logger.info(f"[DRY-RUN] Would prune {entry.name}")
            else:
                self.logger.info(f"[PRUNE] Removing {entry.name}")
                if not robust_rmtree(entry, self.logger):
                    continue
            pruned.append(entry.name)
        return pruned

    def cleanup_stale_temps(self):
        """Clean up staging directories left behind by interrupted runs"""
        if self.dry_run or not self.backup_path.is_dir():
            return

        stale_count = 0
        for item in self.backup_path.iterdir():
            if item.is_dir() and item.name.startswith(".") and item.name.endswith(PARTIAL_SUFFIX):
                if robust_rmtree(item, self.logger):
                    stale_count += 1
                    self.logger.debug(f"[CLEANUP] Removed stale staging directory: {item}")

        if stale_count > 0:
            self.logger.info(
                f"[CLEANUP] Removed {stale_count} stale staging directories from previous runs"
            )
