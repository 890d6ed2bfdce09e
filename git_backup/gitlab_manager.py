"""
GitLab project listing

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

import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import gitlab
import requests

from .base import Credentials, Repository, RepositoryManager, RetryPolicy
from .errors import (
    AuthenticationError,
    ListingError,
    NotFoundError,
    RateLimitError,
    TransientError,
)

PAGE_SIZE = 100


class GitLabManager(RepositoryManager):
    platform = "gitlab"

    def __init__(
        self,
        token: str,
        url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[gitlab.Gitlab] = None,
    ):
        super().__init__(token, retry_policy)
        self.url = url or os.getenv("GITLAB_URL", "https://gitlab.com")
        self.client = client or gitlab.Gitlab(
            self.url,
            private_token=token,
            per_page=PAGE_SIZE,
            retry_transient_errors=False,
            timeout=30,
        )
        self._managers: Dict[str, Any] = {}

    @contextmanager
    def _translate_errors(self, owner: str):
        try:
            yield
        except gitlab.exceptions.GitlabAuthenticationError as e:
            raise AuthenticationError(self.platform, owner, "token rejected") from e
        except gitlab.exceptions.GitlabError as e:
            code = e.response_code or 0
            if code in (401, 403):
                raise AuthenticationError(
                    self.platform, owner, f"access denied (HTTP {code})"
                ) from e
            if code == 404:
                raise NotFoundError(self.platform, owner, "not found") from e
            if code == 429:
                raise RateLimitError("GitLab rate limit exceeded") from e
            if code >= 500:
                raise TransientError(f"GitLab returned HTTP {code}") from e
            raise ListingError(
                self.platform, owner, f"unexpected response: {e.error_message}"
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Problem talking to GitLab: {e}") from e

    def authenticate(self) -> None:
        def check():
            with self._translate_errors("<token>"):
                self.client.auth()

        self._call("<token>", check)
        user = getattr(self.client, "user", None)
        if user is not None:
            self.logger.debug(f"GitLab authentication successful for user: {user.username}")

    def clone_credentials(self) -> Credentials:
        return Credentials(username="oauth2", token=self.token)

    def _projects_manager(self, owner: str):
        """Projects of a user (owned only) or, failing that, of a group"""
        users = self.client.users.list(username=owner, get_all=False)
        if users:
            return users[0].projects, {"owned": True}
        group = self.client.groups.get(owner)
        return group.projects, {}

    def _fetch_page(self, owner: str, cursor: int) -> Tuple[List[Any], Optional[int]]:
        with self._translate_errors(owner):
            if owner not in self._managers:
                self._managers[owner] = self._projects_manager(owner)
            manager, filters = self._managers[owner]
            # python-gitlab pages are 1-based
            items = manager.list(page=cursor + 1, per_page=PAGE_SIZE, **filters)
        next_cursor = cursor + 1 if len(items) >= PAGE_SIZE else None
        return list(items), next_cursor

    def _normalise(self, raw) -> Optional[Repository]:
        return Repository(
            name=raw.path,
            clone_url=raw.http_url_to_repo,
            is_private=raw.visibility == "private",
            platform=self.platform,
        )

    def list_repositories(self, owner: str):
        self._managers.pop(owner, None)
        return super().list_repositories(owner)

    def get_repository(self, owner: str, name: str) -> Repository:
        def fetch():
            with self._translate_errors(owner):
                return self.client.projects.get(f"{owner}/{name}")

        return self._normalise(self._call(owner, fetch))
