"""
Selection of the repository manager for a backup target

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

from typing import Optional

from .base import BackupTarget, Kind, Provider, RepositoryManager, RetryPolicy
from .bitbucket_manager import BitbucketManager
from .github_gists_manager import GitHubGistsManager
from .github_manager import GitHubManager
from .gitlab_manager import GitLabManager

MANAGERS = {
    (Provider.GITHUB, Kind.REPOSITORIES): GitHubManager,
    (Provider.GITHUB, Kind.GISTS): GitHubGistsManager,
    (Provider.GITLAB, Kind.REPOSITORIES): GitLabManager,
    (Provider.BITBUCKET, Kind.REPOSITORIES): BitbucketManager,
}


def create_manager(
    target: BackupTarget,
    token: str,
    username: Optional[str] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> RepositoryManager:
    manager_cls = MANAGERS[(target.provider, target.kind)]
    if manager_cls is BitbucketManager:
        # App passwords authenticate as the account that owns them
        return BitbucketManager(
            token, username=username or target.owner, retry_policy=retry_policy
        )
    return manager_cls(token, retry_policy=retry_policy)
