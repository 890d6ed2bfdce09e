"""
git-backup - Mirror repositories and gists from GitHub, GitLab and Bitbucket

Keeps one bare mirror per repository under a destination directory and
brings existing mirrors up to date on every run.

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

__version__ = "1.0.0"
__license__ = "Apache-2.0"
__description__ = "Mirror GitHub, GitLab and Bitbucket repositories and GitHub gists into a local directory"

from .base import BackupTarget, Repository, RepositoryManager, SyncResult
from .bitbucket_manager import BitbucketManager
from .descriptor import resolve
from .github_gists_manager import GitHubGistsManager
from .github_manager import GitHubManager
from .gitlab_manager import GitLabManager
from .local_backup import LocalBackup
from .main import main

__all__ = [
    "BackupTarget",
    "Repository",
    "RepositoryManager",
    "SyncResult",
    "resolve",
    "GitHubManager",
    "GitHubGistsManager",
    "GitLabManager",
    "BitbucketManager",
    "LocalBackup",
    "main",
]
