"""
Exception types shared across git-backup

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


class BackupError(Exception):
    """Base class for every error raised by git-backup"""


class ConfigurationError(BackupError):
    """Missing token, missing git binary and similar start-up problems"""


class ParseError(BackupError):
    """The source string could not be turned into a backup target"""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Cannot parse source '{source}': {message}")


class UnknownHostError(ParseError):
    def __init__(self, source: str, host: str):
        self.host = host
        super().__init__(source, f"'{host}' is not a known host")


class MissingOwnerError(ParseError):
    def __init__(self, source: str):
        super().__init__(source, "no owner given")


class GistWithRepoError(ParseError):
    def __init__(self, source: str, repo: str):
        self.repo = repo
        super().__init__(
            source,
            f"gists can only be backed up as a full listing, got repository '{repo}'",
        )


class UnexpectedSegmentsError(ParseError):
    def __init__(self, source: str, extra: list):
        self.extra = extra
        super().__init__(source, f"unexpected path segments: {'/'.join(extra)}")


class ListingError(BackupError):
    """
    Listing repositories failed for good.

    Raised directly when the retry budget for a page is exhausted, in which
    case the last transient error is chained as __cause__.
    """

    def __init__(self, provider: str, owner: str, message: str):
        self.provider = provider
        self.owner = owner
        self.message = message
        super().__init__(f"{provider} ({owner}): {message}")


class AuthenticationError(ListingError):
    """The provider rejected the token"""


class NotFoundError(ListingError):
    """The owner or repository does not exist (or is invisible to the token)"""


class TransientError(BackupError):
    """A failure worth retrying: timeouts, connection errors, 5xx responses"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitError(TransientError):
    pass


class SyncError(BackupError):
    """
    A single repository could not be synced.

    Never escapes the sync engine: it is turned into a failed SyncResult.
    """


class GitCommandError(SyncError):
    def __init__(self, action: str, returncode: int, stderr: str = ""):
        self.action = action
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"{action} failed (git exit code {returncode}){detail}")


class SyncCancelledError(SyncError):
    def __init__(self):
        super().__init__("cancelled")
