"""
GitHub gist listing

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

import re
from typing import Iterable, Iterator, List, Optional

from .base import Repository
from .errors import ListingError
from .github_manager import GitHubManager

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


def sanitise_name(name: Optional[str]) -> str:
    """Filesystem-safe directory name; may be empty"""
    return _UNSAFE_CHARS_RE.sub("_", name or "").lstrip(".")


def gist_base_name(files, gist_id: str) -> str:
    """
    GitHub titles a gist after the first file in its own listing order, so
    use the first key of the files mapping rather than the smallest one.
    """
    first = next(iter(files or {}), None)
    return sanitise_name(first) or sanitise_name(gist_id)


def disambiguate(repos: Iterable[Repository]) -> List[Repository]:
    """
    Give repeated names a numeric suffix: notes.md, notes.md-2, notes.md-3.

    Input order decides who keeps the bare name, so callers sort first.
    Names are compared case-insensitively so Notes.md and notes.md cannot
    share a directory on a case-insensitive filesystem.
    """
    taken = set()
    seen_counts = {}
    result = []
    for repo in repos:
        name = repo.name
        key = name.casefold()
        if key in taken:
            n = seen_counts.get(key, 1)
            while name.casefold() in taken:
                n += 1
                name = f"{repo.name}-{n}"
            seen_counts[key] = n
        taken.add(name.casefold())
        result.append(
            Repository(
                name=name,
                clone_url=repo.clone_url,
                is_private=repo.is_private,
                platform=repo.platform,
            )
        )
    return result


def _creation_order(gist):
    created = gist.created_at.isoformat() if gist.created_at else ""
    return created, gist.id


class GitHubGistsManager(GitHubManager):
    """
    Gists are named after their first file, and names can repeat. Stable
    directory names need the whole set, so the listing is drained before
    anything is yielded and ordered oldest first: creating a new gist never
    renames the directory of an existing one.
    """

    platform = "github-gists"

    def _owner_listing(self, owner: str):
        if self._is_self(owner):
            return self.client.get_user().get_gists()
        return self.client.get_user(owner).get_gists()

    def _normalise(self, raw) -> Repository:
        return Repository(
            name=gist_base_name(raw.files, raw.id),
            clone_url=raw.git_pull_url,
            is_private=not raw.public,
            platform=self.platform,
        )

    def list_repositories(self, owner: str) -> Iterator[Repository]:
        self._listings.pop(owner, None)
        gists = [raw for items in self._iter_pages(owner) for raw in items]
        gists.sort(key=_creation_order)
        repos = disambiguate(self._normalise(g) for g in gists)
        self.logger.info(f"[LIST] Found {len(repos)} gists for {owner}")
        yield from repos

    def get_repository(self, owner: str, name: str) -> Repository:
        raise ListingError(
            self.platform, owner, "individual gists cannot be backed up on their own"
        )
