#!/usr/bin/env python3
"""Read-only reconciliation of VM records against live host state.

The auditor compares what the records claim (TAP devices, forward rules,
addresses, processes, disks) with what ip, iptables and pgrep report and
returns findings. It never changes anything and never raises; each
finding carries a remediation command for the operator to run.
"""

import sys
from pathlib import Path

from .exceptions import SandboxError
from .resource_allocator import TAP_PREFIX, tap_name_for


ORPHANED = 'orphaned'
MISSING = 'missing'
STALE = 'stale'
INCONSISTENT = 'inconsistent'

HIGH = 'high'
MEDIUM = 'medium'
LOW = 'low'


def finding(category, severity, subject, message, remediation):
    return {
        'category': category,
        'severity': severity,
        'subject': subject,
        'message': message,
        'remediation': remediation,
    }


class NetworkAuditor:
    """Detects orphaned, missing, stale and inconsistent resources"""

    def __init__(self, store, network, is_alive):
        self.store = store
        self.network = network
        self.is_alive = is_alive
        self.firewall_checked = False

    def audit(self, records=None, corrupt_names=()):
        """Run every check

        Args:
            records: VM records; loaded from the store when omitted
            corrupt_names: Names whose record could not be parsed

        Returns:
            list: Finding dicts, see finding()
        """
        if records is None:
            try:
                records, corrupt_names = self.store.load_all(tolerant=True)
            except (SandboxError, OSError) as e:
                # Without the records every live resource would look orphaned
                print(f"Warning: Could not load VM records: {e}", file=sys.stderr)
                self.firewall_checked = False
                return [finding(
                    INCONSISTENT, HIGH, str(self.store.vms_dir),
                    f"VM records cannot be read: {e}",
                    "sudo vm doctor"
                )]
        records = list(records)
        corrupt_names = list(corrupt_names)

        self.firewall_checked = False
        live_taps = self._query(self.network.list_tap_devices, [])
        forward_rules = self._query(self.network.list_forward_rules, None)
        hypervisor_pids = self._query(self.network.list_hypervisor_pids, [])

        findings = []
        checks = [
            lambda: self._check_stale_pids(records),
            lambda: self._check_orphaned_taps(records, corrupt_names, live_taps),
            lambda: self._check_missing_taps(records, live_taps),
            lambda: self._check_duplicate_ips(records),
            lambda: self._check_network_fields(records, live_taps),
            lambda: self._check_orphaned_processes(records, hypervisor_pids),
            lambda: self._check_disks(records),
            lambda: self._check_corrupt(corrupt_names),
        ]
        if forward_rules is not None:
            self.firewall_checked = True
            checks += [
                lambda: self._check_orphaned_rules(records, corrupt_names, forward_rules),
                lambda: self._check_missing_rules(records, live_taps, forward_rules),
            ]

        for check in checks:
            try:
                findings.extend(check())
            except (SandboxError, OSError) as e:
                print(f"Warning: Audit check failed: {e}", file=sys.stderr)
        return findings

    def audit_host(self, config):
        """Host prerequisites: kernel image, global NAT, firecracker binary"""
        findings = []

        kernel = config.kernel_path()
        if not Path(kernel).is_file():
            findings.append(finding(
                MISSING, HIGH, str(kernel),
                f"Kernel image {kernel} is missing",
                "sudo vm build <name>  # downloads the kernel"
            ))

        try:
            config.check_firecracker_binary()
        except SandboxError as e:
            findings.append(finding(
                MISSING, HIGH, config.firecracker_bin, str(e),
                f"install firecracker to {config.firecracker_bin}"
            ))

        host_iface = config.get('HOST_IFACE') or self._query(self.network.detect_host_interface, None)
        if host_iface is None:
            findings.append(finding(
                MISSING, MEDIUM, "default route",
                "No default route; VMs will have no outbound network",
                "ip route show default"
            ))
        elif self._query(self.network.list_forward_rules, None) is not None:
            if not self._query(lambda: self.network.nat_rules_present(host_iface), False):
                findings.append(finding(
                    MISSING, MEDIUM, host_iface,
                    f"NAT MASQUERADE or return-traffic rule on {host_iface} is missing",
                    "sudo vm setup"
                ))

        return findings

    def _query(self, query, fallback):
        try:
            return query()
        except (SandboxError, OSError) as e:
            print(f"Warning: Could not query host state: {e}", file=sys.stderr)
            return fallback

    # ---------- Checks ----------

    def _check_stale_pids(self, records):
        for record in records:
            pid = record.get('pid')
            if pid is not None and not self.is_alive(pid):
                yield finding(
                    STALE, LOW, record['name'],
                    f"VM '{record['name']}' records PID {pid} but the process is gone",
                    f"vm down {record['name']}"
                )

    def _claimed_taps(self, records, corrupt_names):
        claimed = {record['tap_name'] for record in records if record.get('tap_name')}
        # An unreadable record still owns the TAP its name implies
        claimed.update(tap_name_for(name) for name in corrupt_names)
        return claimed

    def _check_orphaned_taps(self, records, corrupt_names, live_taps):
        claimed = self._claimed_taps(records, corrupt_names)
        for tap in live_taps:
            if tap.startswith(TAP_PREFIX) and tap not in claimed:
                yield finding(
                    ORPHANED, MEDIUM, tap,
                    f"TAP device {tap} exists but no VM claims it",
                    f"sudo ip link del {tap}"
                )

    def _check_missing_taps(self, records, live_taps):
        for record in records:
            tap = record.get('tap_name')
            if record.get('built_at') and tap and tap not in live_taps:
                gateway = record.get('gateway_ip') or '<gateway>'
                yield finding(
                    MISSING, HIGH, record['name'],
                    f"VM '{record['name']}' is built but TAP device {tap} does not exist",
                    f"sudo ip tuntap add {tap} mode tap && sudo ip addr add {gateway}/24 dev {tap} "
                    f"&& sudo ip link set {tap} up"
                )

    def _check_orphaned_rules(self, records, corrupt_names, forward_rules):
        claimed = self._claimed_taps(records, corrupt_names)
        for rule in forward_rules:
            tap = rule.get('in')
            if tap and tap.startswith(TAP_PREFIX) and tap not in claimed:
                yield finding(
                    ORPHANED, LOW, tap,
                    f"FORWARD rule for {tap} has no VM",
                    "sudo iptables " + rule['rule'].replace('-A', '-D', 1)
                )

    def _check_missing_rules(self, records, live_taps, forward_rules):
        for record in records:
            tap = record.get('tap_name')
            if not (record.get('built_at') and tap and tap in live_taps):
                continue
            uplink = record.get('host_iface')
            present = any(
                rule.get('in') == tap and (uplink is None or rule.get('out') == uplink)
                for rule in forward_rules
            )
            if not present:
                yield finding(
                    MISSING, MEDIUM, record['name'],
                    f"VM '{record['name']}' has no FORWARD rule for {tap}",
                    f"sudo iptables -A FORWARD -i {tap} -o {uplink or '<uplink>'} -j ACCEPT"
                )

    def _check_duplicate_ips(self, records):
        owners = {}
        for record in records:
            if record.get('guest_ip'):
                owners.setdefault(record['guest_ip'], []).append(record['name'])
        for guest_ip, names in sorted(owners.items()):
            if len(names) > 1:
                yield finding(
                    INCONSISTENT, HIGH, guest_ip,
                    f"Guest IP {guest_ip} is assigned to several VMs: {', '.join(sorted(names))}",
                    f"sudo vm destroy --force {sorted(names)[-1]}"
                )

    def _check_network_fields(self, records, live_taps):
        for record in records:
            if not record.get('built_at'):
                continue
            name = record['name']
            missing = [field for field in ('guest_ip', 'gateway_ip', 'tap_name', 'host_iface')
                       if not record.get(field)]
            if missing:
                yield finding(
                    INCONSISTENT, HIGH, name,
                    f"VM '{name}' is built but has no {', '.join(missing)}",
                    f"sudo vm destroy --force {name} && vm init {name}"
                )
                continue

            tap = record['tap_name']
            if tap in live_taps:
                live_ip = self.network.get_tap_device_ip(tap)
                if live_ip != record['gateway_ip']:
                    yield finding(
                        INCONSISTENT, MEDIUM, name,
                        f"TAP {tap} has address {live_ip or 'none'} but VM '{name}' "
                        f"expects gateway {record['gateway_ip']}",
                        f"sudo ip addr add {record['gateway_ip']}/24 dev {tap}"
                    )

    def _check_orphaned_processes(self, records, hypervisor_pids):
        recorded = {record['pid'] for record in records if record.get('pid') is not None}
        for pid in hypervisor_pids:
            if pid not in recorded:
                yield finding(
                    ORPHANED, MEDIUM, str(pid),
                    f"firecracker process {pid} is not tracked by any VM",
                    f"sudo kill {pid}"
                )

    def _check_disks(self, records):
        for record in records:
            if not record.get('built_at'):
                continue
            name = record['name']
            if not self.store.rootfs_path(name).exists():
                yield finding(
                    MISSING, HIGH, name,
                    f"VM '{name}' is built but {self.store.rootfs_path(name)} is missing",
                    f"sudo vm destroy --force {name} && vm init {name} && sudo vm build {name}"
                )
            if not self.store.home_path(name).exists():
                yield finding(
                    MISSING, LOW, name,
                    f"VM '{name}' has no home volume {self.store.home_path(name)}",
                    f"sudo vm destroy --force {name} && vm init {name} && sudo vm build {name}"
                )

    def _check_corrupt(self, corrupt_names):
        for name in corrupt_names:
            yield finding(
                INCONSISTENT, HIGH, name,
                f"State of VM '{name}' cannot be read ({self.store.record_path(name)})",
                f"sudo vm destroy --force {name}"
            )
