"""
Bitbucket Cloud repository listing

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

from typing import Any, Dict, List, Optional, Tuple

import requests

from .base import (
    Credentials,
    Repository,
    RepositoryManager,
    RetryPolicy,
    strip_credentials,
)
from .errors import (
    AuthenticationError,
    ListingError,
    NotFoundError,
    RateLimitError,
    TransientError,
)

API_URL = "https://api.bitbucket.org/2.0"
PAGE_SIZE = 100


class BitbucketManager(RepositoryManager):
    """
    Bitbucket repository manager.

    Two credential types are supported:
    - App passwords: Basic auth with the account username
    - Workspace access tokens (ATCTT prefix): Bearer auth, and
      x-token-auth as the clone username
    """

    platform = "bitbucket"

    def __init__(
        self,
        token: str,
        username: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
    ):
        super().__init__(token, retry_policy)
        self.username = username
        self.timeout = timeout
        self.is_workspace_token = token.startswith("ATCTT") if token else False
        self.is_app_password = not self.is_workspace_token

        self.session = session or requests.Session()
        if self.is_workspace_token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        elif username:
            self.session.auth = (username, token)

    def _get(self, url: str, owner: str) -> Dict[str, Any]:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransientError(f"Problem talking to Bitbucket: {e}") from e

        status = response.status_code
        if status in (401, 403):
            hint = (
                "app passwords need Account: Read and Repositories: Read"
                if self.is_app_password
                else "workspace tokens need Repositories: Read"
            )
            raise AuthenticationError(
                self.platform, owner, f"authentication failed (HTTP {status}); {hint}"
            )
        if status == 404:
            raise NotFoundError(self.platform, owner, "not found")
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Bitbucket rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise TransientError(f"Bitbucket returned HTTP {status}")
        if status != 200:
            self.logger.debug(f"Response: {response.text[:500]}")
            raise ListingError(self.platform, owner, f"unexpected response (HTTP {status})")

        try:
            return response.json()
        except ValueError as e:
            raise ListingError(self.platform, owner, "invalid JSON response") from e

    def authenticate(self) -> None:
        if self.is_app_password and not self.username:
            raise AuthenticationError(
                self.platform, "<token>", "app passwords require a Bitbucket username"
            )
        # Workspace tokens may not reach /user; their first listing page
        # surfaces a rejected token instead
        if self.is_app_password:
            self._call("<token>", lambda: self._get(f"{API_URL}/user", "<token>"))
            self.logger.debug(f"Bitbucket authentication successful for user: {self.username}")

    def clone_credentials(self) -> Credentials:
        if self.is_workspace_token:
            return Credentials(username="x-token-auth", token=self.token)
        return Credentials(username=self.username or "x-token-auth", token=self.token)

    def _first_cursor(self, owner: str) -> str:
        return f"{API_URL}/repositories/{owner}?role=owner&pagelen={PAGE_SIZE}"

    def _fetch_page(self, owner: str, cursor: str) -> Tuple[List[Any], Optional[str]]:
        data = self._get(cursor, owner)
        return data.get("values", []), data.get("next")

    def _clone_url(self, repo: Dict[str, Any]) -> Optional[str]:
        for link in repo.get("links", {}).get("clone", []):
            if link.get("name") == "https":
                # Cloud embeds the account name (user@bitbucket.org); drop it
                return strip_credentials(link["href"])
        return None

    def _normalise(self, raw: Dict[str, Any]) -> Optional[Repository]:
        if raw.get("scm", "git") != "git":
            self.logger.debug(f"Skipping non-git repository: {raw.get('slug')}")
            return None
        clone_url = self._clone_url(raw)
        if clone_url is None:
            self.logger.warning(f"[WARN] No HTTPS clone URL for {raw.get('slug')}, skipping")
            return None
        return Repository(
            name=raw["slug"],
            clone_url=clone_url,
            is_private=raw.get("is_private", True),
            platform=self.platform,
        )

    def get_repository(self, owner: str, name: str) -> Repository:
        url = f"{API_URL}/repositories/{owner}/{name}"
        raw = self._call(owner, lambda: self._get(url, owner))
        repo = self._normalise(raw)
        if repo is None:
            raise ListingError(self.platform, owner, f"{name} cannot be cloned over HTTPS with git")
        return repo
