"""
GitHub repository listing

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

from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import requests
from github import (
    Auth,
    BadCredentialsException,
    Github,
    GithubException,
    RateLimitExceededException,
    UnknownObjectException,
)

from .base import Credentials, Repository, RepositoryManager, RetryPolicy
from .errors import (
    AuthenticationError,
    ListingError,
    NotFoundError,
    RateLimitError,
    TransientError,
)

PAGE_SIZE = 100


def _retry_after(headers: Optional[Dict[str, str]]) -> Optional[float]:
    if not headers:
        return None
    value = {k.lower(): v for k, v in headers.items()}.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class GitHubManager(RepositoryManager):
    platform = "github"

    def __init__(
        self,
        token: str,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[Github] = None,
    ):
        super().__init__(token, retry_policy)
        # Retries are driven per page by RetryPolicy, not by PyGithub
        self.client = client or Github(
            auth=Auth.Token(token), per_page=PAGE_SIZE, retry=None, timeout=30
        )
        self.login: Optional[str] = None
        self._listings: Dict[str, Any] = {}

    @contextmanager
    def _translate_errors(self, owner: str):
        """Map PyGithub and transport failures onto the backup error taxonomy"""
        try:
            yield
        except BadCredentialsException as e:
            raise AuthenticationError(
                self.platform, owner, "token rejected (bad credentials)"
            ) from e
        except RateLimitExceededException as e:
            raise RateLimitError(
                "GitHub rate limit exceeded", retry_after=_retry_after(e.headers)
            ) from e
        except UnknownObjectException as e:
            raise NotFoundError(self.platform, owner, "not found") from e
        except GithubException as e:
            status = e.status or 0
            if status in (401, 403):
                raise AuthenticationError(
                    self.platform, owner, f"access denied (HTTP {status})"
                ) from e
            if status == 429 or status >= 500:
                raise TransientError(
                    f"GitHub returned HTTP {status}",
                    retry_after=_retry_after(e.headers),
                ) from e
            raise ListingError(
                self.platform, owner, f"unexpected response (HTTP {status})"
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Problem talking to GitHub: {e}") from e

    def authenticate(self) -> None:
        def fetch_login():
            with self._translate_errors("<token>"):
                return self.client.get_user().login

        self.login = self._call("<token>", fetch_login)
        self.logger.debug(f"GitHub authentication successful for user: {self.login}")

    def clone_credentials(self) -> Credentials:
        return Credentials(username="x-access-token", token=self.token)

    def _is_self(self, owner: str) -> bool:
        return self.login is not None and owner.lower() == self.login.lower()

    def _owner_listing(self, owner: str):
        """PaginatedList of everything the owner owns, private where visible"""
        if self._is_self(owner):
            return self.client.get_user().get_repos(affiliation="owner")
        user = self.client.get_user(owner)
        if user.type == "Organization":
            return self.client.get_organization(owner).get_repos(type="all")
        return user.get_repos(type="owner")

    def _listing(self, owner: str):
        if owner not in self._listings:
            self._listings[owner] = self._owner_listing(owner)
        return self._listings[owner]

    def _fetch_page(self, owner: str, cursor: int) -> Tuple[List[Any], Optional[int]]:
        with self._translate_errors(owner):
            items = list(self._listing(owner).get_page(cursor))
        next_cursor = cursor + 1 if len(items) >= PAGE_SIZE else None
        return items, next_cursor

    def _normalise(self, raw) -> Optional[Repository]:
        return Repository(
            name=raw.name,
            clone_url=raw.clone_url,
            is_private=bool(raw.private),
            platform=self.platform,
        )

    def list_repositories(self, owner: str):
        # A listing is restartable from page one only
        self._listings.pop(owner, None)
        return super().list_repositories(owner)

    def get_repository(self, owner: str, name: str) -> Repository:
        def fetch():
            with self._translate_errors(owner):
                return self.client.get_repo(f"{owner}/{name}")

        return self._normalise(self._call(owner, fetch))
