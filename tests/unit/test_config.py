"""
Unit tests for settings, bootstrap profiles and build argument merging.
"""
import pytest

from cartridge_testcluster.config import Settings, merge_build_args


class TestSettings:

    def test_defaults(self):
        settings = Settings()

        assert settings.router_port == 3301
        assert settings.api_port == 8081
        assert settings.router_username == "admin"
        assert settings.router_password == "testapp-cluster-cookie"
        assert settings.shard_bootstrap_command == "return require('cartridge').admin_bootstrap_vshard()"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CARTRIDGE_ROUTER_PASSWORD", "secret-cookie")
        monkeypatch.setenv("CARTRIDGE_USE_FIXED_PORTS", "true")

        settings = Settings()

        assert settings.router_password == "secret-cookie"
        assert settings.use_fixed_ports is True

    @pytest.mark.parametrize("profile,healthy_timeout", [("default", 10.0), ("extended", 60.0)])
    def test_bootstrap_profiles(self, profile, healthy_timeout):
        timeouts = Settings(bootstrap_profile=profile).bootstrap_timeouts()

        assert timeouts.router_timeout == 60.0
        assert timeouts.healthy_timeout == healthy_timeout
        assert timeouts.poll_interval == 1.0
        assert timeouts.retry_policy.max_attempts == 2
        assert timeouts.retry_policy.backoff_delay == 10.0

    def test_explicit_healthy_timeout_wins_over_profile(self):
        timeouts = Settings(bootstrap_profile="extended", healthy_timeout_seconds=5).bootstrap_timeouts()

        assert timeouts.healthy_timeout == 5

    def test_run_dir_from_build_args(self):
        assert Settings().resolve_run_dir({}) == "/tmp/run"
        assert Settings().resolve_run_dir({"TARANTOOL_RUNDIR": "/var/run/app"}) == "/var/run/app"
        assert Settings(run_dir="/run/explicit").resolve_run_dir({"TARANTOOL_RUNDIR": "/var/run/app"}) == "/run/explicit"


class TestMergeBuildArgs:

    def test_environment_fills_missing_args(self):
        args = merge_build_args(
            {"CUSTOM": "1"},
            environ={"TARANTOOL_VERSION": "2.11", "TARANTOOL_WORKDIR": "/app", "HOME": "/root"}
        )

        assert args == {"CUSTOM": "1", "TARANTOOL_VERSION": "2.11", "TARANTOOL_WORKDIR": "/app"}

    def test_caller_args_win(self):
        args = merge_build_args({"TARANTOOL_VERSION": "2.10"}, environ={"TARANTOOL_VERSION": "2.11"})

        assert args == {"TARANTOOL_VERSION": "2.10"}

    def test_caller_mapping_is_not_modified(self):
        build_args = {"CUSTOM": "1"}

        merge_build_args(build_args, environ={"TARANTOOL_RUNDIR": "/run"})

        assert build_args == {"CUSTOM": "1"}

    def test_empty(self):
        assert merge_build_args(None, environ={}) == {}
