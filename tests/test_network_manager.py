import subprocess

import pytest

from fcsandbox.exceptions import ExternalToolFailure
from fcsandbox.network_manager import NetworkManager


class RecordingRunner:
    """Replaces NetworkManager._run_command with canned command results"""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    def __call__(self, cmd, check=True, capture_output=True, text=True):
        self.calls.append(cmd)
        key = " ".join(cmd)
        returncode, stdout = 0, ""
        for prefix, response in self.responses.items():
            if key.startswith(prefix):
                returncode, stdout = response
                break
        if returncode == 'missing':
            raise ExternalToolFailure(f"Command not found: {cmd[0]}", cmd=cmd)
        if check and returncode != 0:
            raise ExternalToolFailure(f"Command failed: {key}", cmd=cmd, returncode=returncode)
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    def commands(self):
        return [" ".join(cmd) for cmd in self.calls]


@pytest.fixture
def manager(monkeypatch):
    def install(responses=None):
        network = NetworkManager()
        runner = RecordingRunner(responses)
        monkeypatch.setattr(network, "_run_command", runner)
        return network, runner
    return install


def test_create_tap_from_scratch(manager):
    network, runner = manager({"ip link show tap-a": (1, "")})
    network.create_tap("tap-a", "tester", "172.16.0.1")
    assert runner.commands() == [
        "ip link show tap-a",
        "ip tuntap add tap-a mode tap user tester",
        "ip addr show tap-a",
        "ip addr add 172.16.0.1/24 dev tap-a",
        "ip link set tap-a up",
    ]


def test_create_tap_reuses_configured_device(manager):
    network, runner = manager({
        "ip addr show tap-a": (0, "    inet 172.16.0.1/24 scope global tap-a\n"),
    })
    network.create_tap("tap-a", "tester", "172.16.0.1")
    commands = runner.commands()
    assert not any(cmd.startswith("ip tuntap add") for cmd in commands)
    assert not any(cmd.startswith("ip addr add") for cmd in commands)
    assert commands[-1] == "ip link set tap-a up"


def test_create_tap_failure_raises(manager):
    network, _ = manager({
        "ip link show tap-a": (1, ""),
        "ip tuntap add": (1, ""),
    })
    with pytest.raises(ExternalToolFailure):
        network.create_tap("tap-a", "tester", "172.16.0.1")


def test_destroy_missing_tap_is_noop(manager):
    network, runner = manager({"ip link show tap-a": (1, "")})
    assert network.destroy_tap("tap-a") is False
    assert runner.commands() == ["ip link show tap-a"]


def test_destroy_tap(manager):
    network, runner = manager()
    assert network.destroy_tap("tap-a") is True
    assert runner.commands()[-1] == "ip link del tap-a"


def test_list_tap_devices(manager):
    network, _ = manager({"ip -o link show": (0, (
        "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536 qdisc noqueue\n"
        "2: eth0: <BROADCAST,MULTICAST,UP> mtu 1500 qdisc fq_codel\n"
        "7: tap-a: <NO-CARRIER,BROADCAST,MULTICAST,UP> mtu 1500\n"
        "8: tap-b@if3: <BROADCAST,MULTICAST> mtu 1500\n"
    ))})
    assert network.list_tap_devices() == ["tap-a", "tap-b"]


def test_get_tap_device_ip(manager):
    network, _ = manager({"ip addr show tap-a": (0, (
        "7: tap-a: <BROADCAST,MULTICAST,UP> mtu 1500\n"
        "    link/ether 1a:2b:3c:4d:5e:6f brd ff:ff:ff:ff:ff:ff\n"
        "    inet 172.16.3.1/24 scope global tap-a\n"
    ))})
    assert network.get_tap_device_ip("tap-a") == "172.16.3.1"


def test_get_tap_device_ip_without_address(manager):
    network, _ = manager({"ip addr show tap-a": (1, "")})
    assert network.get_tap_device_ip("tap-a") is None
    assert network.get_tap_device_ip(None) is None


def test_add_forward_rule_is_idempotent(manager):
    network, runner = manager({"iptables -C": (1, "")})
    assert network.add_forward_rule("tap-a", "eth0") is True
    assert runner.commands()[-1] == "iptables -A FORWARD -i tap-a -o eth0 -j ACCEPT"

    network, runner = manager()
    assert network.add_forward_rule("tap-a", "eth0") is False
    assert not any(cmd.startswith("iptables -A") for cmd in runner.commands())


def test_remove_absent_forward_rule(manager):
    network, _ = manager({"iptables -D": (1, "")})
    assert network.remove_forward_rule("tap-a", "eth0") is False


def test_list_forward_rules(manager):
    network, _ = manager({"iptables -S FORWARD": (0, (
        "-P FORWARD DROP\n"
        "-A FORWARD -i tap-a -o eth0 -j ACCEPT\n"
        "-A FORWARD -i eth0 -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT\n"
    ))})
    rules = network.list_forward_rules()
    assert len(rules) == 2
    assert rules[0]['in'] == "tap-a"
    assert rules[0]['out'] == "eth0"
    assert rules[0]['target'] == "ACCEPT"
    assert rules[1]['out'] is None


def test_unreadable_firewall(manager):
    network, _ = manager({"iptables -S FORWARD": (4, "")})
    assert network.list_forward_rules() is None

    network, _ = manager({"iptables": ('missing', "")})
    assert network.list_forward_rules() is None


def test_list_hypervisor_pids(manager):
    network, _ = manager({"pgrep": (0, "123\n456\n")})
    assert network.list_hypervisor_pids() == [123, 456]

    network, _ = manager({"pgrep": (1, "")})
    assert network.list_hypervisor_pids() == []


def test_detect_host_interface(manager):
    network, _ = manager({"ip route show default": (0, "default via 10.0.0.1 dev ens3 proto dhcp metric 100\n")})
    assert network.detect_host_interface() == "ens3"

    network, _ = manager({"ip route show default": (0, "")})
    assert network.detect_host_interface() is None


def test_setup_host_nat_adds_missing_rules(manager):
    network, runner = manager({"iptables -t nat -C": (1, ""), "iptables -C": (1, "")})
    network.setup_host_nat("eth0")
    commands = runner.commands()
    assert "iptables -t nat -A POSTROUTING -o eth0 -j MASQUERADE" in commands
    assert ("iptables -A FORWARD -i eth0 -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT"
            in commands)


def test_nat_rules_present(manager):
    network, _ = manager()
    assert network.nat_rules_present("eth0")

    network, _ = manager({"iptables -t nat -C": (1, "")})
    assert not network.nat_rules_present("eth0")


def test_teardown_host_nat_tolerates_absent_rules(manager):
    network, runner = manager({"iptables": (1, "")})
    network.teardown_host_nat("eth0")
    assert len(runner.calls) == 2


def test_run_command_reports_missing_tool():
    with pytest.raises(ExternalToolFailure) as excinfo:
        NetworkManager()._run_command(["definitely-not-a-real-tool-xyz"])
    assert "Command not found" in str(excinfo.value)


def test_create_tap_with_guest_route(manager):
    network, runner = manager({"ip link show tap-a": (1, "")})
    network.create_tap("tap-a", "tester", "172.16.0.1", prefix_len=32, guest_ip="172.16.0.7")
    commands = runner.commands()
    assert "ip addr add 172.16.0.1/32 dev tap-a" in commands
    # The route needs the device up first
    assert commands[-2:] == ["ip link set tap-a up", "ip route replace 172.16.0.7/32 dev tap-a"]
