"""
Resolve free-form source strings into backup targets

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

from .base import BackupTarget, Kind, Provider
from .errors import (
    GistWithRepoError,
    MissingOwnerError,
    UnexpectedSegmentsError,
    UnknownHostError,
)

# Host or alias (lower case) -> (provider, kind)
HOSTS = {
    "github": (Provider.GITHUB, Kind.REPOSITORIES),
    "github.com": (Provider.GITHUB, Kind.REPOSITORIES),
    "www.github.com": (Provider.GITHUB, Kind.REPOSITORIES),
    "gist.github": (Provider.GITHUB, Kind.GISTS),
    "gists.github": (Provider.GITHUB, Kind.GISTS),
    "gist.github.com": (Provider.GITHUB, Kind.GISTS),
    "gists.github.com": (Provider.GITHUB, Kind.GISTS),
    "gitlab": (Provider.GITLAB, Kind.REPOSITORIES),
    "gitlab.com": (Provider.GITLAB, Kind.REPOSITORIES),
    "www.gitlab.com": (Provider.GITLAB, Kind.REPOSITORIES),
    "gitlab.org": (Provider.GITLAB, Kind.REPOSITORIES),
    "www.gitlab.org": (Provider.GITLAB, Kind.REPOSITORIES),
    "bitbucket": (Provider.BITBUCKET, Kind.REPOSITORIES),
    "bitbucket.org": (Provider.BITBUCKET, Kind.REPOSITORIES),
    "www.bitbucket.org": (Provider.BITBUCKET, Kind.REPOSITORIES),
}

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*://", re.IGNORECASE)
_SEPARATOR_RE = re.compile(r"[/:]")

# scp-style user that carries no owner information
_ANONYMOUS_USERS = {"git"}


def _split_userinfo(rest: str, had_scheme: bool):
    """
    Split 'user@host...' into (owner or None, remainder).

    With a scheme any userinfo is credentials and is dropped, as is a numeric
    port. Without one, 'git@' is the conventional ssh user while any other
    user names the owner (jsdw@github.com/repo).
    """
    if had_scheme:
        authority, sep, path = rest.partition("/")
        authority = authority.rsplit("@", 1)[-1]
        host, colon, port = authority.partition(":")
        if colon and (port.isdigit() or not port):
            authority = host
        return None, authority + sep + path

    head = _SEPARATOR_RE.split(rest, 1)[0]
    if "@" not in head:
        return None, rest
    user, remainder = rest.split("@", 1)
    if not user or user.lower() in _ANONYMOUS_USERS:
        return None, remainder
    return user, remainder


def resolve(source: str) -> BackupTarget:
    """
    Parse a source such as 'github/jsdw', 'https://github.com/jsdw/repo.git',
    'git@github.com:jsdw/repo.git' or 'gist.github/jsdw' into a BackupTarget.
    """
    text = source.strip()

    had_scheme = False
    match = _SCHEME_RE.match(text)
    if match:
        text = text[match.end():]
        had_scheme = True

    user_owner, text = _split_userinfo(text, had_scheme)

    segments = [s for s in _SEPARATOR_RE.split(text) if s]
    if not segments:
        raise UnknownHostError(source, "")

    host = segments[0]
    entry = HOSTS.get(host.lower())
    if entry is None:
        raise UnknownHostError(source, host)
    provider, kind = entry

    path = segments[1:]
    if user_owner:
        path.insert(0, user_owner)

    if not path:
        raise MissingOwnerError(source)
    if len(path) > 2:
        raise UnexpectedSegmentsError(source, path[2:])

    owner = path[0]
    repo = path[1] if len(path) == 2 else None
    if repo is not None and repo.lower().endswith(".git"):
        repo = repo[: -len(".git")]
        if not repo:
            raise UnexpectedSegmentsError(source, [".git"])

    if kind is Kind.GISTS and repo is not None:
        raise GistWithRepoError(source, repo)

    return BackupTarget(provider=provider, kind=kind, owner=owner, repo=repo)
