"""
Tests for RepoBackupOrchestrator and the command line entry point

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

import subprocess
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from git_backup.base import (
    BackupTarget,
    Credentials,
    Kind,
    Outcome,
    Provider,
    Repository,
    SyncResult,
)
from git_backup.errors import AuthenticationError, ConfigurationError, ListingError
from git_backup.local_backup import LocalBackup
from git_backup.main import (
    EXIT_INPUT_ERROR,
    EXIT_LISTING_ERROR,
    EXIT_OK,
    EXIT_REPO_FAILURES,
    RepoBackupOrchestrator,
    get_env_default,
    main,
    setup_logging,
)

main_module = sys.modules["git_backup.main"]

TARGET = BackupTarget(Provider.GITHUB, Kind.REPOSITORIES, "jsdw")


def make_upstream(path: Path) -> Path:
    path.mkdir(parents=True)
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    (path / "README.md").write_text("# Test\n")
    subprocess.run(["git", "add", "README.md"], cwd=path, capture_output=True, check=True)
    subprocess.run(
        [
            "git", "-c", "user.name=Test User", "-c", "user.email=test@test.com",
            "commit", "-m", "Initial commit",
        ],
        cwd=path,
        capture_output=True,
        check=True,
    )
    return path


def fake_manager(repos=None, auth_error=None, listing=None):
    """Manager double whose listing is a plain iterator"""
    manager = MagicMock()
    if auth_error is not None:
        manager.authenticate.side_effect = auth_error
    manager.clone_credentials.return_value = Credentials("x-access-token", "secret")
    manager.list_repositories.side_effect = lambda owner: (
        listing() if listing else iter(repos or [])
    )
    return manager


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def three_repos(workspace):
    """Two real upstream repositories and one that cannot be cloned"""
    good_a = make_upstream(workspace / "upstream" / "alpha")
    good_b = make_upstream(workspace / "upstream" / "beta")
    return [
        Repository("alpha", str(good_a), False, "github"),
        Repository("broken", str(workspace / "upstream" / "missing"), False, "github"),
        Repository("beta", str(good_b), True, "github"),
    ]


class TestSetupLogging:
    """Tests for setup_logging function"""

    def test_setup_logging_default(self, workspace, monkeypatch):
        """Test default logging setup"""
        monkeypatch.chdir(workspace)
        result = setup_logging()
        assert result is not None
        assert Path("logs").exists()

    def test_setup_logging_custom_file(self, workspace, monkeypatch):
        monkeypatch.chdir(workspace)
        setup_logging(verbose=True, log_file="custom.log")
        assert (Path("logs") / "custom.log").exists()


class TestGetEnvDefault:
    """Tests for get_env_default function"""

    def test_get_env_default_exists(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "test_value")
        assert get_env_default("TEST_VAR") == "test_value"

    def test_get_env_default_fallback(self, monkeypatch):
        monkeypatch.delenv("MISSING_VAR", raising=False)
        assert get_env_default("MISSING_VAR") is None
        assert get_env_default("MISSING_VAR", "fallback") == "fallback"


class TestRepoBackupOrchestratorInit:
    """Tests for RepoBackupOrchestrator initialisation"""

    def test_missing_token(self, workspace):
        with pytest.raises(ConfigurationError):
            RepoBackupOrchestrator(TARGET, str(workspace), token=None)

    def test_invalid_worker_count(self, workspace):
        with pytest.raises(ConfigurationError):
            RepoBackupOrchestrator(TARGET, str(workspace), manager=MagicMock(), workers=0)

    def test_builds_manager_for_target(self, workspace):
        orchestrator = RepoBackupOrchestrator(TARGET, str(workspace), token="ghp_test", retries=5)
        assert orchestrator.manager.platform == "github"
        assert orchestrator.manager.retry_policy.attempts == 5


class TestRunBackup:
    """Tests for the pipelined sync run"""

    def test_one_failure_among_three(self, workspace, three_repos):
        """Test a failing clone does not stop the other repositories"""
        orchestrator = RepoBackupOrchestrator(
            TARGET,
            str(workspace / "backups"),
            workers=2,
            show_progress=False,
            manager=fake_manager(three_repos),
        )

        report = orchestrator.run_backup()

        outcomes = {r.repo_name: r.outcome for r in report.results}
        assert outcomes == {
            "alpha": Outcome.CLONED_FRESH,
            "beta": Outcome.CLONED_FRESH,
            "broken": Outcome.FAILED,
        }
        assert report.ok is False
        assert (workspace / "backups" / "alpha").is_dir()
        assert not (workspace / "backups" / "broken").exists()

    def test_second_run_updates(self, workspace, three_repos):
        repos = [r for r in three_repos if r.name != "broken"]
        for expected in (Outcome.CLONED_FRESH, Outcome.UPDATED_EXISTING):
            report = RepoBackupOrchestrator(
                TARGET,
                str(workspace / "backups"),
                show_progress=False,
                manager=fake_manager(repos),
            ).run_backup()
            assert {r.outcome for r in report.results} == {expected}

    def test_authentication_failure_aborts_before_sync(self, workspace):
        """Test no repository is synced when the token is rejected"""
        local_backup = MagicMock(spec=LocalBackup)
        local_backup.cancel_event = MagicMock()
        manager = fake_manager(
            [Repository("alpha", "https://github.com/jsdw/alpha.git", False)],
            auth_error=AuthenticationError("github", "<token>", "token rejected"),
        )
        orchestrator = RepoBackupOrchestrator(
            TARGET, str(workspace), show_progress=False, manager=manager, local_backup=local_backup
        )

        with pytest.raises(AuthenticationError):
            orchestrator.run_backup()
        local_backup.sync_repository.assert_not_called()
        manager.list_repositories.assert_not_called()

    def test_listing_failure_cancels_and_skips_prune(self, workspace):
        """Test a fatal listing error sets the cancel event and prunes nothing"""
        local_backup = MagicMock(spec=LocalBackup)
        local_backup.cancel_event = MagicMock()
        local_backup.sync_repository.side_effect = lambda repo, creds: SyncResult(
            repo.name, Outcome.CLONED_FRESH
        )

        def listing():
            yield Repository("alpha", "https://github.com/jsdw/alpha.git", False)
            raise ListingError("github", "jsdw", "giving up after 3 attempts")

        orchestrator = RepoBackupOrchestrator(
            TARGET,
            str(workspace),
            prune=True,
            show_progress=False,
            manager=fake_manager(listing=listing),
            local_backup=local_backup,
        )

        with pytest.raises(ListingError):
            orchestrator.run_backup()
        local_backup.cancel_event.set.assert_called_once()
        local_backup.prune.assert_not_called()

    @pytest.mark.parametrize("second_name", ["alpha", "Alpha"])
    def test_duplicate_names_are_not_synced_twice(self, workspace, second_name):
        """Test names equal up to case never share a destination directory"""
        local_backup = MagicMock(spec=LocalBackup)
        local_backup.cancel_event = MagicMock()
        local_backup.sync_repository.side_effect = lambda repo, creds: SyncResult(
            repo.name, Outcome.UPDATED_EXISTING
        )
        repos = [
            Repository("alpha", "https://github.com/jsdw/alpha.git", False),
            Repository(second_name, "https://github.com/jsdw/Alpha.git", False),
        ]
        orchestrator = RepoBackupOrchestrator(
            TARGET, str(workspace), show_progress=False,
            manager=fake_manager(repos), local_backup=local_backup,
        )

        report = orchestrator.run_backup()

        assert local_backup.sync_repository.call_count == 1
        assert [r.reason for r in report.failed] == ["duplicate repository name"]

    def test_prune_after_complete_listing(self, workspace):
        local_backup = MagicMock(spec=LocalBackup)
        local_backup.cancel_event = MagicMock()
        local_backup.sync_repository.side_effect = lambda repo, creds: SyncResult(
            repo.name, Outcome.UPDATED_EXISTING
        )
        local_backup.prune.return_value = ["old"]
        repos = [Repository("alpha", "https://github.com/jsdw/alpha.git", False)]
        orchestrator = RepoBackupOrchestrator(
            TARGET, str(workspace), prune=True, show_progress=False,
            manager=fake_manager(repos), local_backup=local_backup,
        )

        orchestrator.run_backup()

        local_backup.prune.assert_called_once_with(["alpha"])
        assert orchestrator.pruned == ["old"]

    def test_single_repository_target(self, workspace):
        """Test a repo target is looked up directly and never prunes"""
        local_backup = MagicMock(spec=LocalBackup)
        local_backup.cancel_event = MagicMock()
        local_backup.sync_repository.side_effect = lambda repo, creds: SyncResult(
            repo.name, Outcome.CLONED_FRESH
        )
        manager = fake_manager()
        manager.get_repository.return_value = Repository(
            "tool", "https://github.com/jsdw/tool.git", False
        )
        target = BackupTarget(Provider.GITHUB, Kind.REPOSITORIES, "jsdw", "tool")
        orchestrator = RepoBackupOrchestrator(
            target, str(workspace), prune=True, show_progress=False,
            manager=manager, local_backup=local_backup,
        )

        report = orchestrator.run_backup()

        assert [r.repo_name for r in report.results] == ["tool"]
        manager.get_repository.assert_called_once_with("jsdw", "tool")
        manager.list_repositories.assert_not_called()
        local_backup.prune.assert_not_called()


class TestMain:
    """Tests for exit codes of the command line entry point"""

    @pytest.fixture(autouse=True)
    def isolated(self, workspace, monkeypatch):
        monkeypatch.chdir(workspace)
        for var in ("GIT_TOKEN", "PARALLEL_WORKERS", "LISTING_RETRIES", "GIT_BACKUP_DESTINATION"):
            monkeypatch.delenv(var, raising=False)

    def use_manager(self, monkeypatch, manager):
        monkeypatch.setattr(main_module, "create_manager", lambda *args, **kwargs: manager)

    def test_partial_failure_exit_code(self, workspace, three_repos, monkeypatch):
        self.use_manager(monkeypatch, fake_manager(three_repos))

        code = main(["github/jsdw", str(workspace / "backups"), "--token", "t", "--no-progress"])

        assert code == EXIT_REPO_FAILURES

    def test_success_exit_code(self, workspace, three_repos, monkeypatch):
        repos = [r for r in three_repos if r.name != "broken"]
        self.use_manager(monkeypatch, fake_manager(repos))

        code = main(["github/jsdw", str(workspace / "backups"), "--token", "t", "--no-progress"])

        assert code == EXIT_OK

    def test_authentication_failure_exit_code(self, workspace, monkeypatch):
        """Test a rejected token maps to exit 3 and nothing is cloned"""
        self.use_manager(
            monkeypatch,
            fake_manager(auth_error=AuthenticationError("github", "<token>", "token rejected")),
        )

        code = main(["github/jsdw", str(workspace / "backups"), "--token", "bad", "--no-progress"])

        assert code == EXIT_LISTING_ERROR
        assert list((workspace / "backups").iterdir()) == []

    def test_bad_source_exit_code(self, workspace):
        assert main(["gist.github/jsdw/my-repo", str(workspace)]) == EXIT_INPUT_ERROR

    def test_missing_token_exit_code(self, workspace, monkeypatch):
        monkeypatch.setattr(main_module, "discover_token", lambda *args: (None, None))
        assert main(["gitlab/jsdw", str(workspace / "backups")]) == EXIT_INPUT_ERROR

    def test_missing_git_exit_code(self, workspace, monkeypatch):
        monkeypatch.setattr(main_module, "git_version", lambda: None)
        assert main(["github/jsdw", str(workspace), "--token", "t"]) == EXIT_INPUT_ERROR

    def test_old_git_exit_code(self, workspace, monkeypatch):
        monkeypatch.setattr(main_module, "git_version", lambda: (1, 9, 5))
        assert main(["github/jsdw", str(workspace), "--token", "t"]) == EXIT_INPUT_ERROR

    def test_entry_point_module_is_patchable(self):
        """Test the module holding main is reachable despite the package re-export"""
        assert main_module.main is main
        assert hasattr(main_module, "create_manager")
