#!/usr/bin/env python3

from .process_supervisor import format_uptime, process_uptime


def derive_state(record, is_alive):
    """Lifecycle state of a record

    Returns:
        str: 'pending' (initialized, not built), 'running', 'crashed'
        (recorded process is gone) or 'stopped'
    """
    if not record.get('built_at'):
        return 'pending'
    pid = record.get('pid')
    if pid is None:
        return 'stopped'
    return 'running' if is_alive(pid) else 'crashed'


class VMDiscovery:
    """Manages VM discovery and state detection"""

    def __init__(self, store, is_alive):
        self.store = store
        self.is_alive = is_alive

    def discover_all_vms(self):
        """Discover every VM under the VMs directory

        Returns:
            list: List of VM dictionaries containing:
                - name: VM name
                - state: 'pending', 'running', 'crashed', 'stopped' or 'corrupt'
                - ip: Guest IP address (None if not assigned)
                - pid: Hypervisor PID while running
                - uptime: Human readable uptime while running
        """
        records, corrupt = self.store.load_all(tolerant=True)

        all_vms = []
        for record in records:
            state = derive_state(record, self.is_alive)
            running = state == 'running'
            all_vms.append({
                'name': record['name'],
                'state': state,
                'ip': record.get('guest_ip'),
                'pid': record['pid'] if running else None,
                'uptime': format_uptime(process_uptime(record['pid'])) if running else None,
            })

        for name in corrupt:
            all_vms.append({'name': name, 'state': 'corrupt', 'ip': None, 'pid': None, 'uptime': None})

        return sorted(all_vms, key=lambda vm: vm['name'])
