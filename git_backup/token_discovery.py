"""
Auto-discovery of authentication tokens from standard locations

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
import netrc
import os
import subprocess
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

import yaml

from .base import Provider

logger = logging.getLogger(__name__)

GITHUB_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")
BITBUCKET_NETRC_HOSTS = ("bitbucket.org", "api.bitbucket.org")


def _first_env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            logger.debug(f"[TOKEN] Using {name}")
            return value
    return None


def _gh_cli_token() -> Optional[str]:
    try:
        result = subprocess.run(
            ["gh", "auth", "token"], capture_output=True, text=True, timeout=5
        )
    except (subprocess.TimeoutExpired, FileNotFoundError):
        return None
    token = result.stdout.strip() if result.returncode == 0 else ""
    if token:
        logger.info("[TOKEN] Using the token of the gh CLI")
    return token or None


def _glab_token(hostname: str) -> Optional[str]:
    """Token stored for hostname by the glab CLI, if any"""
    candidates = [Path.home() / ".config"]
    if os.getenv("XDG_CONFIG_HOME"):
        candidates.append(Path(os.environ["XDG_CONFIG_HOME"]))

    for config_path in (base / "glab-cli" / "config.yml" for base in candidates):
        if not config_path.is_file():
            continue
        try:
            config = yaml.safe_load(config_path.read_text())
        except (OSError, yaml.YAMLError) as e:
            logger.debug(f"[TOKEN] Ignoring unreadable {config_path}: {e}")
            continue
        hosts = config.get("hosts") if isinstance(config, dict) else None
        entry = hosts.get(hostname) if isinstance(hosts, dict) else None
        if isinstance(entry, dict) and entry.get("token"):
            logger.info(f"[TOKEN] Using the {hostname} token from {config_path}")
            return entry["token"]
    return None


def _netrc_login(hosts) -> Tuple[Optional[str], Optional[str]]:
    """(password, login) for the first of hosts found in ~/.netrc"""
    path = Path.home() / ".netrc"
    if not path.exists():
        return None, None
    try:
        entries = netrc.netrc(str(path))
    except (OSError, netrc.NetrcParseError) as e:
        logger.debug(f"[TOKEN] Ignoring unreadable {path}: {e}")
        return None, None
    for host in hosts:
        found = entries.authenticators(host)
        if found:
            logger.info(f"[TOKEN] Using the {host} login from {path}")
            return found[2], found[0]
    return None, None


def get_github_token() -> Optional[str]:
    """GITHUB_TOKEN, GH_TOKEN, then `gh auth token`"""
    return _first_env(*GITHUB_ENV_VARS) or _gh_cli_token()


def get_gitlab_token(gitlab_url: str = "https://gitlab.com") -> Optional[str]:
    """GITLAB_TOKEN, then the glab CLI entry for the instance's host"""
    hostname = urlparse(gitlab_url).netloc or "gitlab.com"
    return _first_env("GITLAB_TOKEN") or _glab_token(hostname)


def get_bitbucket_credentials() -> Tuple[Optional[str], Optional[str]]:
    """
    (secret, username) for Bitbucket Cloud.

    An access token in BITBUCKET_TOKEN needs no username; an app password
    comes with BITBUCKET_USERNAME or a ~/.netrc login.
    """
    token = _first_env("BITBUCKET_TOKEN")
    if token:
        return token, os.getenv("BITBUCKET_USERNAME")

    username = os.getenv("BITBUCKET_USERNAME")
    app_password = os.getenv("BITBUCKET_APP_PASSWORD")
    if username and app_password:
        logger.debug("[TOKEN] Using BITBUCKET_USERNAME and BITBUCKET_APP_PASSWORD")
        return app_password, username

    return _netrc_login(BITBUCKET_NETRC_HOSTS)


def discover_token(
    provider: Provider,
    explicit: Optional[str] = None,
    username: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Find the token to use for one provider.

    An explicit token wins, then GIT_TOKEN, then the provider's own
    variables and CLI configuration.

    Returns:
        Tuple of (token, username); either may be None
    """
    if explicit:
        logger.debug("[TOKEN] Using token given on the command line")
        return explicit, username

    token = _first_env("GIT_TOKEN")
    if token:
        return token, username

    if provider is Provider.GITHUB:
        return get_github_token(), username
    if provider is Provider.GITLAB:
        return get_gitlab_token(os.getenv("GITLAB_URL", "https://gitlab.com")), username

    token, discovered_username = get_bitbucket_credentials()
    return token, username or discovered_username
