"""Tests for tc/netem and iptables argument construction."""

import pytest

from chaos_monkey.commands import parse_cidrs, parse_ports, split_list, validate_interface
from chaos_monkey.commands import iptables, netem
from chaos_monkey.errors import ValidationError


class TestCommon:
    def test_interface_validation(self):
        assert validate_interface("eth0") == "eth0"
        assert validate_interface("br-1_a") == "br-1_a"
        for bad in ("", "0eth", "eth0; rm -rf /", "eth 0"):
            with pytest.raises(ValidationError):
                validate_interface(bad)

    def test_cidr_normalization(self):
        assert parse_cidrs(["10.0.0.1", "192.168.1.7/24"]) == ["10.0.0.1/32", "192.168.1.0/24"]
        with pytest.raises(ValidationError):
            parse_cidrs(["not-an-ip"])

    def test_ports(self):
        assert parse_ports(["80", 443, "0", "65535"]) == ["80", "443", "0", "65535"]
        for bad in ("65536", "-1", "http"):
            with pytest.raises(ValidationError):
                parse_ports([bad])

    def test_split_list(self):
        assert split_list(["80,443", "8080"]) == ["80", "443", "8080"]
        assert split_list("a, b") == ["a", "b"]
        assert split_list(None) == []


class TestNetemArgs:
    def test_delay(self):
        assert netem.delay_args(100) == ["delay", "100ms"]
        assert netem.delay_args(100, 10, 20, "normal") == ["delay", "100ms", "10ms", "20.00", "distribution", "normal"]

    def test_delay_validation(self):
        with pytest.raises(ValidationError):
            netem.delay_args(0)
        with pytest.raises(ValidationError):
            netem.delay_args(100, jitter=200)
        with pytest.raises(ValidationError):
            netem.delay_args(100, correlation=101)
        with pytest.raises(ValidationError):
            netem.delay_args(100, distribution="gaussian")

    def test_percent_kinds(self):
        assert netem.loss_args(5) == ["loss", "5.00"]
        assert netem.duplicate_args(1.5, 10) == ["duplicate", "1.50", "10.00"]
        assert netem.corrupt_args(0.1) == ["corrupt", "0.10"]
        with pytest.raises(ValidationError):
            netem.loss_args(101)
        with pytest.raises(ValidationError):
            netem.corrupt_args(10, correlation=-1)

    def test_loss_models(self):
        assert netem.loss_state_args(5) == ["loss", "state", "5.00", "100.00", "0.00", "100.00", "0.00"]
        assert netem.loss_gemodel_args(3) == ["loss", "gemodel", "3.00", "100.00", "100.00", "0.00"]
        with pytest.raises(ValidationError):
            netem.loss_state_args(5, p14=150)
        with pytest.raises(ValidationError):
            netem.loss_gemodel_args(-1)

    def test_rate(self):
        assert netem.rate_args("100kbit") == ["rate", "100kbit"]
        assert netem.rate_args("1mbit", 20, 100, -5) == ["rate", "1mbit", "20", "100", "-5"]
        for bad in ("", "100", "fast", "10kbps"):
            with pytest.raises(ValidationError):
                netem.rate_args(bad)
        with pytest.raises(ValidationError):
            netem.rate_args("1mbit", cell_size=-1)


class TestNetemCommands:
    def test_unfiltered_delay(self):
        assert netem.build_netem_commands("eth0", ["delay", "100ms"]) == [
            ["qdisc", "add", "dev", "eth0", "root", "netem", "delay", "100ms"]
        ]
        assert netem.build_stop_netem_commands("eth0") == [["qdisc", "del", "dev", "eth0", "root", "netem"]]

    def test_filtered_by_ip(self):
        commands = netem.build_netem_commands("eth0", ["delay", "100ms"], ips=parse_cidrs(["10.0.0.1"]))
        assert commands == [
            ["qdisc", "add", "dev", "eth0", "root", "handle", "1:", "prio"],
            ["qdisc", "add", "dev", "eth0", "parent", "1:1", "handle", "10:", "sfq"],
            ["qdisc", "add", "dev", "eth0", "parent", "1:2", "handle", "20:", "sfq"],
            ["qdisc", "add", "dev", "eth0", "parent", "1:3", "handle", "30:", "netem", "delay", "100ms"],
            [
                "filter", "add", "dev", "eth0", "protocol", "ip", "parent", "1:0", "prio", "1",
                "u32", "match", "ip", "dst", "10.0.0.1/32", "flowid", "1:3",
            ],
        ]

    def test_filtered_by_ports(self):
        commands = netem.build_netem_commands("eth1", ["loss", "5.00"], sports=["53"], dports=["80", "443"])
        filters = commands[4:]
        assert len(filters) == 3
        assert filters[0][11:] == ["match", "ip", "sport", "53", "0xffff", "flowid", "1:3"]
        assert filters[2][11:] == ["match", "ip", "dport", "443", "0xffff", "flowid", "1:3"]

    def test_filtered_revert_removes_root(self):
        assert netem.build_stop_netem_commands("eth0", filtered=True) == [
            ["qdisc", "del", "dev", "eth0", "root", "handle", "1:", "prio"]
        ]


class TestIptables:
    def test_loss_validation(self):
        iptables.validate_loss("random", probability=0.5)
        iptables.validate_loss("nth", every=2, packet=1)
        with pytest.raises(ValidationError):
            iptables.validate_loss("random", probability=1.5)
        with pytest.raises(ValidationError):
            iptables.validate_loss("nth", every=0)
        with pytest.raises(ValidationError):
            iptables.validate_loss("nth", every=2, packet=2)
        with pytest.raises(ValidationError):
            iptables.validate_loss("burst")

    def test_random_rule(self):
        commands = iptables.build_iptables_commands(
            iptables.rule_prefix("eth0"), iptables.statistic_suffix("random", probability=0.2)
        )
        assert commands == [
            ["-I", "INPUT", "-i", "eth0", "-m", "statistic", "--mode", "random", "--probability", "0.20", "-j", "DROP"]
        ]

    def test_nth_rule_with_protocol(self):
        commands = iptables.build_iptables_commands(
            iptables.rule_prefix("eth0", "tcp"), iptables.statistic_suffix("nth", every=3, packet=0)
        )
        assert commands == [
            [
                "-I", "INPUT", "-i", "eth0", "-p", "tcp",
                "-m", "statistic", "--mode", "nth", "--every", "3", "--packet", "0", "-j", "DROP",
            ]
        ]

    def test_rule_per_filter_value(self):
        suffix = iptables.statistic_suffix("random", probability=0.5)
        commands = iptables.build_iptables_commands(
            iptables.rule_prefix("eth0"),
            suffix,
            src_ips=["10.0.0.1/32"],
            dst_ips=["10.0.0.2/32", "10.0.0.3/32"],
            dports=["80"],
        )
        assert [c[4:6] for c in commands] == [
            ["-s", "10.0.0.1/32"],
            ["-d", "10.0.0.2/32"],
            ["-d", "10.0.0.3/32"],
            ["--dport", "80"],
        ]
        assert all(c[-len(suffix):] == suffix for c in commands)

    def test_unknown_protocol(self):
        with pytest.raises(ValidationError):
            iptables.rule_prefix("eth0", "sctp")

    def test_delete_swaps_insert(self):
        commands = [["-I", "INPUT", "-i", "eth0"], ["-A", "INPUT"], ["-L"]]
        assert iptables.delete_commands(commands) == [["-D", "INPUT", "-i", "eth0"], ["-D", "INPUT"], ["-L"]]
        assert commands[0][0] == "-I"
