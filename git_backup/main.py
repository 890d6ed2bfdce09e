#!/usr/bin/env python3
"""
Back up GitHub, GitLab and Bitbucket repositories (and GitHub gists) as local mirrors

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

import argparse
import logging
import os
import sys
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table
from rich_argparse import ArgumentDefaultsRichHelpFormatter
from tqdm import tqdm

from .base import (
    BackupReport,
    BackupTarget,
    Outcome,
    Repository,
    RepositoryManager,
    RetryPolicy,
    SyncResult,
    mask_credentials,
)
from .descriptor import resolve
from .errors import ConfigurationError, ListingError, ParseError
from .local_backup import MINIMUM_GIT_VERSION, LocalBackup, git_version
from .providers import create_manager
from .token_discovery import discover_token

EXIT_OK = 0
EXIT_REPO_FAILURES = 1
EXIT_INPUT_ERROR = 2
EXIT_LISTING_ERROR = 3


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru"""

    def emit(self, record: logging.LogRecord):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module so loguru reports it
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, mask_credentials(record.getMessage())
        )


def setup_logging(verbose: bool = False, log_file: str = "git-backup.log"):
    """Setup console and file logging with loguru"""

    logger.remove()

    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file_path = log_dir / log_file

    log_level = "DEBUG" if verbose else "INFO"

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<level>{message}</level>"
    )
    logger.add(sys.stdout, format=console_format, level=log_level, colorize=True)

    file_format = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"
    logger.add(
        log_file_path,
        format=file_format,
        level=log_level,
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        encoding="utf-8",
    )

    # Managers and the sync engine log through the standard library
    logging.basicConfig(
        handlers=[InterceptHandler()],
        level=logging.DEBUG if verbose else logging.INFO,
        force=True,
    )
    for noisy in ("urllib3", "github", "gitlab"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("[CONFIG] Logging configured")
    logger.debug(f"Log file: {log_file_path}")

    return logger


class RepoBackupOrchestrator:
    def __init__(
        self,
        target: BackupTarget,
        destination: str,
        token: Optional[str] = None,
        username: Optional[str] = None,
        workers: int = 5,
        retries: int = 3,
        dry_run: bool = False,
        prune: bool = False,
        show_progress: bool = True,
        manager: Optional[RepositoryManager] = None,
        local_backup: Optional[LocalBackup] = None,
    ):
        """
        Wire a backup target to its provider manager and the local mirror store.

        manager and local_backup may be injected; otherwise they are built
        from the target, token and destination.
        """
        if workers < 1:
            raise ConfigurationError("--workers must be at least 1")

        self.target = target
        self.workers = workers
        self.prune = prune
        self.show_progress = show_progress

        if manager is None:
            if not token:
                raise ConfigurationError(
                    f"No token found for {target.provider.value}; "
                    "pass --token or set GIT_TOKEN"
                )
            manager = create_manager(
                target, token, username=username, retry_policy=RetryPolicy(attempts=retries)
            )
        self.manager = manager

        if local_backup is None:
            local_backup = LocalBackup(destination, dry_run=dry_run)
        self.local_backup = local_backup
        self.cancel_event: threading.Event = local_backup.cancel_event
        self.pruned: List[str] = []

    def discover(self) -> Iterator[Repository]:
        """Lazy stream of repositories to back up"""
        self.manager.authenticate()
        if self.target.repo:
            logger.info(f"[DISCOVER] Looking up {self.target}")
            yield self.manager.get_repository(self.target.owner, self.target.repo)
            return
        logger.info(f"[DISCOVER] Listing repositories for {self.target}")
        yield from self.manager.list_repositories(self.target.owner)

    def _collect(self, futures: Dict[Future, Repository], report: BackupReport, pbar):
        for future in futures:
            repo = futures[future]
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"[ERROR] Error backing up {repo.name} - {e}")
                result = SyncResult(repo.name, Outcome.FAILED, mask_credentials(str(e)))
            report.add(result)
            pbar.update(1)
            pbar.set_postfix({"OK": len(report.succeeded), "FAIL": len(report.failed)})

    def run_backup(self) -> BackupReport:
        """
        Sync every discovered repository.

        Listing runs in the calling thread while up to `workers` syncs run in
        the pool, with at most twice that many queued. A listing failure
        cancels queued syncs, kills running git processes and is re-raised.
        """
        logger.info(f"[START] Backing up {self.target} using {self.workers} workers")
        self.local_backup.cleanup_stale_temps()

        report = BackupReport()
        credentials = None
        listed: List[str] = []
        claimed = set()
        window = 2 * self.workers

        with ThreadPoolExecutor(max_workers=self.workers) as executor, tqdm(
            desc="Backing up", unit="repo", disable=not self.show_progress
        ) as pbar:
            in_flight: Dict[Future, Repository] = {}
            try:
                for repo in self.discover():
                    if credentials is None:
                        credentials = self.manager.clone_credentials()
                    listed.append(repo.name)

                    if repo.name.casefold() in claimed:
                        logger.error(f"[ERROR] Duplicate repository name {repo.name}, skipping")
                        report.add(
                            SyncResult(repo.name, Outcome.FAILED, "duplicate repository name")
                        )
                        pbar.update(1)
                        continue
                    claimed.add(repo.name.casefold())

                    if len(in_flight) >= window:
                        done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                        self._collect({f: in_flight.pop(f) for f in done}, report, pbar)

                    future = executor.submit(self.local_backup.sync_repository, repo, credentials)
                    in_flight[future] = repo
            except ListingError:
                self.cancel_event.set()
                for future in in_flight:
                    future.cancel()
                raise

            done, _ = wait(in_flight)
            self._collect({f: in_flight[f] for f in done}, report, pbar)

        if not listed:
            logger.warning("[WARN] No repositories found to backup")

        if self.prune and self.target.repo is None:
            self.pruned = self.local_backup.prune(listed)
            if self.pruned:
                logger.info(f"[PRUNE] Removed {len(self.pruned)} stale mirrors")

        counts = report.counts()
        logger.info("=" * 60)
        logger.info("[SUMMARY] BACKUP SUMMARY")
        logger.info("=" * 60)
        for outcome in Outcome:
            if counts[outcome]:
                logger.info(f"[{outcome.name}] {outcome.value}: {counts[outcome]}")
        logger.info(f"[TOTAL] Total repositories: {len(report)}")

        if report.failed:
            logger.error(
                f"[WARN] {len(report.failed)} repositories failed to backup - check logs for details"
            )
        else:
            logger.info("[COMPLETE] All repositories backed up successfully!")
        return report


def print_report(report: BackupReport, console: Optional[Console] = None):
    console = console or Console()
    table = Table(title="Backup report")
    table.add_column("Repository", style="cyan")
    table.add_column("Outcome")
    table.add_column("Reason", style="dim")

    styles = {
        Outcome.CLONED_FRESH: "green",
        Outcome.UPDATED_EXISTING: "green",
        Outcome.SKIPPED: "yellow",
        Outcome.FAILED: "bold red",
    }
    for result in report.results:
        style = styles[result.outcome]
        table.add_row(
            result.repo_name,
            f"[{style}]{result.outcome.value}[/{style}]",
            result.reason or "",
        )
    console.print(table)


def check_git():
    version = git_version()
    if version is None:
        raise ConfigurationError("git is not installed or cannot be run")
    if version < MINIMUM_GIT_VERSION:
        required = ".".join(map(str, MINIMUM_GIT_VERSION))
        found = ".".join(map(str, version))
        raise ConfigurationError(f"git {required} or newer is required, found {found}")
    logger.debug(f"[CONFIG] git version {'.'.join(map(str, version))}")


def get_env_default(env_var: str, fallback=None):
    """Get value from environment or .env file"""
    return os.getenv(env_var, fallback)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-backup",
        description="[bold blue]git-backup[/bold blue] - Mirror your GitHub, GitLab and Bitbucket repositories (and GitHub gists) into a local directory",
        epilog="""
[bold green]Examples:[/bold green]
  [dim]# All repositories of a GitHub user or organisation[/dim]
  [yellow]%(prog)s[/yellow] [cyan]github/octocat[/cyan] [magenta]/backups/github[/magenta]

  [dim]# A single repository[/dim]
  [yellow]%(prog)s[/yellow] [cyan]git@github.com:octocat/hello-world.git[/cyan] [magenta]/backups[/magenta]

  [dim]# Gists[/dim]
  [yellow]%(prog)s[/yellow] [cyan]gist.github.com/octocat[/cyan] [magenta]/backups/gists[/magenta]

  [dim]# GitLab group, removing mirrors of deleted projects[/dim]
  [yellow]%(prog)s[/yellow] [cyan]gitlab/my-group[/cyan] [magenta]/backups/gitlab[/magenta] [cyan]--prune[/cyan]
        """,
        formatter_class=ArgumentDefaultsRichHelpFormatter,
    )

    parser.add_argument(
        "source",
        help="What to back up: host/owner or host/owner/repo, as a URL, SSH address or shorthand",
    )
    parser.add_argument(
        "destination",
        nargs="?",
        default=get_env_default("GIT_BACKUP_DESTINATION", "."),
        help="Directory holding one mirror per repository (env: GIT_BACKUP_DESTINATION)",
    )

    auth_group = parser.add_argument_group("Authentication")
    auth_group.add_argument(
        "--token",
        metavar="TOKEN",
        help="Access token (env: GIT_TOKEN, or the provider's own token variables and CLI config)",
    )
    auth_group.add_argument(
        "--username",
        default=get_env_default("BITBUCKET_USERNAME"),
        metavar="USER",
        help="Bitbucket username for app passwords (env: BITBUCKET_USERNAME, defaults to the owner)",
    )

    ops_group = parser.add_argument_group("Backup Operations")
    ops_group.add_argument(
        "--prune",
        action="store_true",
        help="Delete local mirrors of repositories that no longer exist upstream",
    )
    ops_group.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be cloned or updated without touching the destination",
    )

    perf_group = parser.add_argument_group("Performance Options")
    perf_group.add_argument(
        "--workers",
        type=int,
        default=int(get_env_default("PARALLEL_WORKERS", "5")),
        metavar="N",
        help="Number of parallel git workers (env: PARALLEL_WORKERS)",
    )
    perf_group.add_argument(
        "--retries",
        type=int,
        default=int(get_env_default("LISTING_RETRIES", "3")),
        metavar="N",
        help="Attempts per listing page before giving up (env: LISTING_RETRIES)",
    )
    perf_group.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the progress bar",
    )

    log_group = parser.add_argument_group("Logging Options")
    log_group.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    log_group.add_argument(
        "--log-file",
        default=get_env_default("LOG_FILE", "git-backup.log"),
        metavar="FILE",
        help="Log file name under logs/ (env: LOG_FILE)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    # Load environment variables first (before parsing args)
    load_dotenv()

    args = build_parser().parse_args(argv)
    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        target = resolve(args.source)
        logger.info(f"[CONFIG] Target: {target}")
        check_git()

        token, username = discover_token(target.provider, args.token, args.username)
        orchestrator = RepoBackupOrchestrator(
            target,
            args.destination,
            token=token,
            username=username,
            workers=args.workers,
            retries=args.retries,
            dry_run=args.dry_run,
            prune=args.prune,
            show_progress=not args.no_progress,
        )
        report = orchestrator.run_backup()
    except (ParseError, ConfigurationError) as e:
        logger.error(f"[ERROR] {e}")
        return EXIT_INPUT_ERROR
    except ListingError as e:
        logger.error(f"[ERROR] {mask_credentials(str(e))}")
        return EXIT_LISTING_ERROR
    except OSError as e:
        logger.error(f"[ERROR] Cannot use destination {args.destination}: {e}")
        return EXIT_INPUT_ERROR

    print_report(report)
    return EXIT_OK if report.ok else EXIT_REPO_FAILURES


if __name__ == "__main__":
    sys.exit(main())
