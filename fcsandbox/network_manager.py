#!/usr/bin/env python3

import subprocess
import sys
from pathlib import Path

from .exceptions import ExternalToolFailure
from .resource_allocator import TAP_PREFIX


IP_FORWARD_PATH = "/proc/sys/net/ipv4/ip_forward"


def _conntrack_rule(host_iface):
    return ["FORWARD", "-i", host_iface, "-m", "conntrack",
            "--ctstate", "RELATED,ESTABLISHED", "-j", "ACCEPT"]


def _masquerade_rule(host_iface):
    return ["POSTROUTING", "-o", host_iface, "-j", "MASQUERADE"]


def _forward_rule(tap_name, host_iface):
    return ["FORWARD", "-i", tap_name, "-o", host_iface, "-j", "ACCEPT"]


class NetworkManager:
    """Manages TAP devices, forwarding rules and host NAT

    Host network state is never cached: every query runs ip/iptables/pgrep
    again.
    """

    def _run_command(self, cmd, check=True, capture_output=True, text=True):
        """Helper method to run subprocess commands with consistent error handling"""
        try:
            return subprocess.run(cmd, check=check, capture_output=capture_output, text=text)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip() if capture_output else None
            raise ExternalToolFailure(
                f"Command failed: {' '.join(cmd)}" + (f"\nError: {stderr}" if stderr else ""),
                cmd=cmd, returncode=e.returncode, stderr=stderr
            )
        except FileNotFoundError:
            raise ExternalToolFailure(f"Command not found: {cmd[0]}", cmd=cmd)

    def _probe(self, cmd):
        """Run a check-style command; True on exit code 0, False otherwise"""
        try:
            return self._run_command(cmd, check=False).returncode == 0
        except ExternalToolFailure:
            return False

    # ---------- TAP devices ----------

    def tap_exists(self, tap_name):
        return self._probe(["ip", "link", "show", tap_name])

    def _create_tap_device(self, tap_name, owner_user):
        print(f"Creating {tap_name}")
        cmd = ["ip", "tuntap", "add", tap_name, "mode", "tap"]
        if owner_user:
            cmd += ["user", owner_user]
        self._run_command(cmd)
        print(f"✓ {tap_name} created")

    def _bring_device_up(self, device_name):
        self._run_command(["ip", "link", "set", device_name, "up"])
        print(f"✓ {device_name} is up")

    def create_tap(self, tap_name, owner_user, gateway_ip, prefix_len=24, guest_ip=None):
        """Create and configure a TAP device with the gateway address

        An existing device is reused; the address is only added if absent.
        With ``guest_ip`` a host route to the guest is pinned to this device,
        for networks where several TAPs carry the same gateway address.
        """
        if not self.tap_exists(tap_name):
            self._create_tap_device(tap_name, owner_user)
        else:
            print(f"Warning: TAP device {tap_name} already exists, reusing it", file=sys.stderr)

        address = f"{gateway_ip}/{prefix_len}"
        addr_result = self._run_command(["ip", "addr", "show", tap_name])
        if f"inet {address}" not in addr_result.stdout:
            print(f"Configuring IP {address} on {tap_name}")
            self._run_command(["ip", "addr", "add", address, "dev", tap_name])
            print(f"✓ IP {address} configured on {tap_name}")
        else:
            print(f"✓ IP {address} already configured on {tap_name}")

        self._bring_device_up(tap_name)
        if guest_ip:
            self._run_command(["ip", "route", "replace", f"{guest_ip}/32", "dev", tap_name])
            print(f"✓ Route {guest_ip}/32 via {tap_name}")
        return True

    def destroy_tap(self, tap_name):
        """Remove a TAP device; a missing device is not an error

        Returns:
            bool: True if a device was removed
        """
        if not self.tap_exists(tap_name):
            return False
        print(f"Removing TAP device: {tap_name}")
        self._run_command(["ip", "link", "del", tap_name])
        print(f"✓ TAP device {tap_name} removed")
        return True

    def list_tap_devices(self, prefix=TAP_PREFIX):
        """Names of live network devices starting with prefix"""
        try:
            result = self._run_command(["ip", "-o", "link", "show"])
        except ExternalToolFailure as e:
            print(f"Warning: Could not discover TAP devices: {e}", file=sys.stderr)
            return []

        # Format: "12: tap-a: <BROADCAST,MULTICAST,UP> mtu 1500 ..."
        devices = []
        for line in result.stdout.splitlines():
            parts = line.split(':')
            if len(parts) < 2:
                continue
            device_name = parts[1].strip().split('@')[0]
            if device_name.startswith(prefix) and device_name not in devices:
                devices.append(device_name)
        return devices

    def get_tap_device_ip(self, device_name):
        """IPv4 address configured on a device, or None"""
        if not device_name:
            return None
        try:
            result = self._run_command(["ip", "addr", "show", device_name])
        except ExternalToolFailure:
            return None

        # Format: "inet 172.16.0.1/24 scope global tap-a"
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == 'inet':
                return parts[1].split('/')[0]
        return None

    # ---------- Forwarding rules ----------

    def add_forward_rule(self, tap_name, host_iface):
        rule = _forward_rule(tap_name, host_iface)
        if self._probe(["iptables", "-C"] + rule):
            print(f"✓ Forward rule for {tap_name} already present")
            return False
        self._run_command(["iptables", "-A"] + rule)
        print(f"✓ Forward rule {tap_name} -> {host_iface} added")
        return True

    def remove_forward_rule(self, tap_name, host_iface):
        """Delete the forward rule; an absent rule is fine"""
        return self._probe(["iptables", "-D"] + _forward_rule(tap_name, host_iface))

    def list_forward_rules(self):
        """Parsed FORWARD chain rules, or None if the firewall cannot be read

        Returns:
            list: dicts with 'in', 'out', 'target' and the raw 'rule' line
        """
        try:
            result = self._run_command(["iptables", "-S", "FORWARD"], check=False)
        except ExternalToolFailure:
            return None
        if result.returncode != 0:
            return None

        rules = []
        for line in result.stdout.splitlines():
            tokens = line.split()
            if len(tokens) < 2 or tokens[0] != '-A':
                continue
            rule = {'in': None, 'out': None, 'target': None, 'rule': line.strip()}
            for i, token in enumerate(tokens[:-1]):
                if token == '-i':
                    rule['in'] = tokens[i + 1]
                elif token == '-o':
                    rule['out'] = tokens[i + 1]
                elif token == '-j':
                    rule['target'] = tokens[i + 1]
            rules.append(rule)
        return rules

    # ---------- Processes ----------

    def list_hypervisor_pids(self):
        """PIDs of every running firecracker process"""
        try:
            result = self._run_command(["pgrep", "-x", "firecracker"], check=False)
        except ExternalToolFailure:
            return []
        return [int(line) for line in result.stdout.split() if line.isdigit()]

    # ---------- Host NAT ----------

    def detect_host_interface(self):
        """Uplink interface of the default route, or None"""
        try:
            result = self._run_command(["ip", "route", "show", "default"], check=False)
        except ExternalToolFailure:
            return None
        # Format: "default via 10.0.0.1 dev eth0 proto dhcp ..."
        for line in result.stdout.splitlines():
            tokens = line.split()
            if 'dev' in tokens:
                index = tokens.index('dev')
                if index + 1 < len(tokens):
                    return tokens[index + 1]
        return None

    def nat_rules_present(self, host_iface):
        masquerade = self._probe(["iptables", "-t", "nat", "-C"] + _masquerade_rule(host_iface))
        conntrack = self._probe(["iptables", "-C"] + _conntrack_rule(host_iface))
        return masquerade and conntrack

    def setup_host_nat(self, host_iface):
        """Install MASQUERADE on the uplink and accept return traffic"""
        if not self._probe(["iptables", "-t", "nat", "-C"] + _masquerade_rule(host_iface)):
            self._run_command(["iptables", "-t", "nat", "-A"] + _masquerade_rule(host_iface))
        print(f"✓ NAT MASQUERADE on {host_iface}")

        if not self._probe(["iptables", "-C"] + _conntrack_rule(host_iface)):
            self._run_command(["iptables", "-A"] + _conntrack_rule(host_iface))
        print(f"✓ Return traffic from {host_iface} accepted")

    def teardown_host_nat(self, host_iface):
        """Remove the global NAT rules; absent rules are fine"""
        self._probe(["iptables", "-t", "nat", "-D"] + _masquerade_rule(host_iface))
        self._probe(["iptables", "-D"] + _conntrack_rule(host_iface))
        print(f"✓ NAT rules on {host_iface} removed")

    def enable_ip_forwarding(self):
        path = Path(IP_FORWARD_PATH)
        try:
            if path.read_text().strip() == "1":
                print("✓ IP forwarding already enabled")
                return
        except OSError:
            pass
        self._run_command(["sysctl", "-w", "net.ipv4.ip_forward=1"])
        print("✓ IP forwarding enabled")
