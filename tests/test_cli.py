"""Tests for argument parsing and the main entry point."""

import logging
from unittest.mock import patch

import pytest

from chaos_monkey import cli
from chaos_monkey.disruptions import (
    ExecAction,
    KillAction,
    NetemDisruption,
    PacketLossDisruption,
    RemoveAction,
    StopDisruption,
    StressDisruption,
)
from chaos_monkey.errors import ValidationError

from conftest import FakeExecutor, make_container


def parse(*argv):
    return cli.build_parser().parse_args(list(argv))


class TestBuildDisruption:
    def test_netem_delay(self):
        args = parse("netem", "--duration", "1m", "--target", "10.0.0.1", "delay", "--time", "200", "web")
        d = cli.build_disruption(args)
        assert isinstance(d, NetemDisruption)
        assert d.duration == 60.0
        assert d.args[:2] == ("delay", "200ms")
        assert d.ips == ("10.0.0.1/32",)
        assert args.targets == ["web"]

    def test_netem_rate(self):
        args = parse("netem", "-d", "10s", "rate", "--rate", "1mbit")
        assert cli.build_disruption(args).args == ("rate", "1mbit")

    def test_iptables_loss(self):
        args = parse(
            "iptables", "-d", "30s", "--protocol", "tcp", "--dst-port", "80,443",
            "loss", "--mode", "nth", "--every", "5", "--packet", "2", "db",
        )
        d = cli.build_disruption(args)
        assert isinstance(d, PacketLossDisruption)
        assert d.dports == ("80", "443")
        assert len(d.commands) == 2

    def test_iptables_bad_probability(self):
        args = parse("iptables", "-d", "30s", "loss", "--probability", "2")
        with pytest.raises(ValidationError):
            cli.build_disruption(args)

    def test_stress(self):
        d = cli.build_disruption(parse("stress", "-d", "20s", "--stressors", "--cpu 2", "--no-pull-image"))
        assert isinstance(d, StressDisruption)
        assert d.pull is False
        assert d.command[:3] == ["stress-ng", "--cpu", "2"]
        assert not d.inject_cgroup
        assert cli.build_disruption(parse("stress", "-d", "20s", "--inject-cgroup")).inject_cgroup

    def test_stop_restart(self):
        d = cli.build_disruption(parse("stop", "--restart", "--duration", "5s", "-t", "3"))
        assert isinstance(d, StopDisruption)
        assert (d.timeout, d.restart, d.duration) == (3, True, 5.0)
        assert cli.build_disruption(parse("stop")).one_shot

    def test_one_shot_commands(self):
        assert cli.build_disruption(parse("kill", "--signal", "SIGTERM")) == KillAction(signal="SIGTERM")
        assert cli.build_disruption(parse("rm", "--no-force", "--links")) == RemoveAction(
            force=False, links=True, volumes=True
        )
        d = cli.build_disruption(parse("exec", "--command", "touch", "--args", "/tmp/x"))
        assert d == ExecAction(command="touch", args=("/tmp/x",))

    def test_bad_duration(self):
        with pytest.raises(ValidationError):
            cli.build_disruption(parse("pause", "--duration", "soon"))


class TestMain:
    @pytest.fixture
    def fake(self, monkeypatch):
        executor = FakeExecutor([make_container("web"), make_container("api")])
        monkeypatch.setattr(cli, "new_executor", lambda settings: executor)
        monkeypatch.delenv("CHAOS_RUNTIME", raising=False)
        monkeypatch.delenv("DRY_RUN", raising=False)
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        root = logging.getLogger()
        monkeypatch.setattr(root, "handlers", list(root.handlers))
        monkeypatch.setattr(root, "level", root.level)
        return executor

    def test_kill_once(self, fake):
        assert cli.main(["kill", "web"]) == 0
        assert [call[1] for call in fake.ops("kill")] == [make_container("web").id]
        assert fake.closed

    def test_dry_run(self, fake):
        assert cli.main(["--dry-run", "netem", "-d", "10ms", "delay", "re2:^a"]) == 0
        assert fake.calls == []

    def test_names_and_pattern_conflict_is_rejected_early(self, fake):
        with patch.object(cli, "names_or_pattern", return_value=(("web",), "^a")):
            assert cli.main(["kill"]) == 1
        assert fake.calls == []

    def test_duration_longer_than_interval(self, fake):
        assert cli.main(["--interval", "5s", "pause", "--duration", "10s"]) == 1

    def test_failure_exit_code(self, fake):
        fake.fail("kill", fake.containers[0])
        assert cli.main(["kill"]) == 1

    def test_unknown_runtime_env(self, fake, monkeypatch):
        monkeypatch.setenv("CHAOS_RUNTIME", "podman")
        assert cli.main(["kill"]) == 1

    def test_unknown_log_level(self, fake, monkeypatch):
        assert cli.main(["--log-level", "verbose", "kill"]) == 1
        monkeypatch.setenv("LOG_LEVEL", "loud")
        assert cli.main(["kill"]) == 1
        assert fake.calls == []
