"""
Base classes and shared types for repository backup

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
import re
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from .errors import ListingError, TransientError


class Provider(Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"


class Kind(Enum):
    REPOSITORIES = "repositories"
    GISTS = "gists"


@dataclass(frozen=True)
class BackupTarget:
    provider: Provider
    kind: Kind
    owner: str
    repo: Optional[str] = None

    def __post_init__(self):
        if self.kind is Kind.GISTS and self.provider is not Provider.GITHUB:
            raise ValueError("Gists are only available on GitHub")

    def __str__(self):
        label = self.provider.value
        if self.kind is Kind.GISTS:
            label += " gists"
        path = f"{self.owner}/{self.repo}" if self.repo else self.owner
        return f"{label}:{path}"


@dataclass(frozen=True)
class Repository:
    name: str
    clone_url: str
    is_private: bool
    platform: str = ""


@dataclass(frozen=True)
class Credentials:
    username: str
    token: str = field(repr=False)


class Outcome(Enum):
    CLONED_FRESH = "cloned"
    UPDATED_EXISTING = "updated"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncResult:
    repo_name: str
    outcome: Outcome
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILED


@dataclass
class BackupReport:
    """Sync results in completion order"""

    results: List[SyncResult] = field(default_factory=list)

    def add(self, result: SyncResult):
        self.results.append(result)

    @property
    def succeeded(self) -> List[SyncResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[SyncResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def counts(self) -> Counter:
        return Counter(r.outcome for r in self.results)

    def __len__(self):
        return len(self.results)


def strip_credentials(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https", "ssh") or "@" not in parts.netloc:
        return url
    return urlunsplit(parts._replace(netloc=parts.netloc.rsplit("@", 1)[1]))


def normalise_remote_url(url: str) -> str:
    """Comparable form of a remote URL: no credentials, no trailing .git"""
    url = strip_credentials(url.strip())
    parts = urlsplit(url)
    if parts.scheme:
        url = urlunsplit(
            parts._replace(scheme=parts.scheme.lower(), netloc=parts.netloc.lower())
        )
    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


_CREDENTIALS_RE = re.compile(r"(://)[^/@\s]+@")


def mask_credentials(text: str) -> str:
    return _CREDENTIALS_RE.sub(r"\1***@", text)


@dataclass
class RetryPolicy:
    """
    Bounded exponential backoff for a single remote call.

    Only TransientError is retried. Once the attempts are used up the last
    error is wrapped in a ListingError naming the provider and owner.
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int, error: TransientError) -> float:
        if error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def call(
        self,
        fn: Callable[[], Any],
        provider: str,
        owner: str,
        logger: Optional[logging.Logger] = None,
    ) -> Any:
        logger = logger or logging.getLogger(__name__)
        attempts = max(self.attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except TransientError as e:
                if attempt == attempts:
                    raise ListingError(
                        provider,
                        owner,
                        f"giving up after {attempts} attempts: {e}",
                    ) from e
                delay = self.delay_for(attempt, e)
                logger.warning(
                    f"[RETRY] {provider} ({owner}) attempt {attempt}/{attempts} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                self.sleep(delay)


class RepositoryManager(ABC):
    """
    One hosting API, seen as a lazy sequence of normalised repositories.

    Subclasses describe a single page fetch; paging, retries and the
    translation of every page into Repository records live here.
    """

    platform = ""

    def __init__(self, token: str, retry_policy: Optional[RetryPolicy] = None):
        self.token = token
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def authenticate(self) -> None:
        pass

    @abstractmethod
    def clone_credentials(self) -> Credentials:
        pass

    @abstractmethod
    def get_repository(self, owner: str, name: str) -> Repository:
        pass

    @abstractmethod
    def _fetch_page(self, owner: str, cursor: Any) -> Tuple[List[Any], Any]:
        """Return (raw items, next cursor); a None cursor ends the listing"""

    @abstractmethod
    def _normalise(self, raw: Any) -> Optional[Repository]:
        """Turn one raw listing entry into a Repository, or None to skip it"""

    def _first_cursor(self, owner: str) -> Any:
        return 0

    def _call(self, owner: str, fn: Callable[[], Any]) -> Any:
        return self.retry_policy.call(fn, self.platform, owner, self.logger)

    def _iter_pages(self, owner: str) -> Iterator[List[Any]]:
        cursor = self._first_cursor(owner)
        while cursor is not None:
            items, cursor = self._call(owner, partial(self._fetch_page, owner, cursor))
            yield items

    def list_repositories(self, owner: str) -> Iterator[Repository]:
        count = 0
        for page_number, items in enumerate(self._iter_pages(owner), 1):
            repos = [r for r in map(self._normalise, items) if r is not None]
            self.logger.debug(
                f"[PAGE] {self.platform} page {page_number}: {len(repos)} repositories"
            )
            count += len(repos)
            yield from repos
        self.logger.info(f"[LIST] Found {count} repositories for {owner} on {self.platform}")
