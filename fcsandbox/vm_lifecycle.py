#!/usr/bin/env python3

import re
import shutil
import sys
from pathlib import Path

from .config_manager import ConfigManager
from .exceptions import (
    AlreadyExists, Corrupt, ExternalToolFailure, InvalidName, InvalidState,
    NotFound, SandboxError
)
from .filesystem_manager import FilesystemManager
from .firecracker_api import FirecrackerAPI
from .guest_ssh import GuestSSH
from .locking import ALLOCATION_LOCK, FileLock
from .network_audit import NetworkAuditor
from .network_manager import NetworkManager
from .process_supervisor import ProcessSupervisor, format_uptime, process_rss, process_uptime
from .resource_allocator import ResourceAllocator, tap_name_for
from .state_store import StateStore
from .vm_discovery import VMDiscovery, derive_state


NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


def validate_name(name):
    if not name or not NAME_PATTERN.match(name):
        raise InvalidName(
            f"Invalid VM name '{name}': use only letters, digits, '-' and '_'"
        )


def ask_confirmation(question):
    """Ask a yes/no question on the terminal"""
    while True:
        response = input(f"{question} (yes/no): ").strip().lower()
        if response in ['yes', 'y']:
            return True
        elif response in ['no', 'n', '']:
            return False
        else:
            print("Please enter 'yes' or 'no'")


def _human_size(path):
    try:
        size = Path(path).stat().st_size
    except OSError:
        return None
    if size < 1024 * 1024:
        return f"{size}B"
    if size < 1024 ** 3:
        return f"{size / 1024 ** 2:.1f}M"
    return f"{size / 1024 ** 3:.1f}G"


class VMLifecycle:
    """Manages VM init, build, up, down and destroy operations

    Every operation reads the VM record before acting and writes it after.
    Operations that create or delete resources hold the VM's lock; the
    address scan in init additionally holds the global allocation lock.
    """

    def __init__(self, config_manager=None, store=None, allocator=None, supervisor=None,
                 network_manager=None, filesystem_manager=None, ssh_factory=None):
        self.config_manager = config_manager or ConfigManager()
        config = self.config_manager

        self.store = store or StateStore(config.vms_dir)
        self.allocator = allocator or ResourceAllocator(config.get('NETWORK_MODE'), config.get('SUBNET_PREFIX'))
        self.supervisor = supervisor or ProcessSupervisor(
            self.store,
            config.firecracker_bin,
            ssh_max_retries=config.get_int('SSH_MAX_RETRIES', ProcessSupervisor.ssh_max_retries),
            ssh_retry_delay=config.get_int('SSH_RETRY_DELAY', ProcessSupervisor.ssh_retry_delay)
        )
        self.network_manager = network_manager or NetworkManager()
        self.filesystem_manager = filesystem_manager or FilesystemManager(config)
        self.ssh_factory = ssh_factory or GuestSSH

        self.discovery = VMDiscovery(self.store, self.supervisor.is_alive)
        self.auditor = NetworkAuditor(self.store, self.network_manager, self.supervisor.is_alive)
        self.lock_timeout = config.get_int('LOCK_TIMEOUT', 10)

    # ---------- Helpers ----------

    def _vm_lock(self, name):
        return FileLock(self.config_manager.locks_dir, f"vm-{name}", timeout=self.lock_timeout)

    def _allocation_lock(self):
        return FileLock(self.config_manager.locks_dir, ALLOCATION_LOCK, timeout=self.lock_timeout)

    def _require_vm(self, name):
        validate_name(name)
        if not self.store.exists(name):
            raise NotFound(f"VM '{name}' does not exist. Create it with: vm init {name}")
        return self.store.load(name)

    def _require_built(self, name):
        record = self._require_vm(name)
        if not record['built_at']:
            raise InvalidState(f"VM '{name}' has not been built. Build it with: sudo vm build {name}")
        return record

    def _settings(self, name):
        return self.config_manager.load_vm_config(self.store.vm_dir(name))

    def _ssh_for(self, record, settings):
        username = settings.get('USERNAME') or self.config_manager.invoking_user()
        return self.ssh_factory(username, record['guest_ip'], settings.get('SSH_KEY_PATH'))

    def _host_iface(self):
        return self.config_manager.get('HOST_IFACE') or self.network_manager.detect_host_interface()

    def _check_ip_conflict(self, record):
        """Refuse to launch if a live VM already uses this guest IP"""
        records, _ = self.store.load_all(tolerant=True)
        for other in records:
            if other['name'] == record['name'] or other.get('guest_ip') != record['guest_ip']:
                continue
            if other.get('pid') is not None and self.supervisor.is_alive(other['pid']):
                raise InvalidState(
                    f"Guest IP {record['guest_ip']} is already in use by running VM '{other['name']}'"
                )

    def _prepare_launch(self, name):
        """Common preconditions of up and console

        Returns:
            tuple: (record, settings, kernel_path)
        """
        record = self._require_built(name)

        if self.supervisor.reap_stale(name):
            print(f"Cleaned up stale PID file for VM '{name}'")
            record = self.store.load(name)

        if record['pid'] is not None:
            raise InvalidState(f"VM '{name}' is already running (PID {record['pid']})")

        tap_name = record['tap_name']
        if not tap_name or not self.network_manager.tap_exists(tap_name):
            raise InvalidState(
                f"TAP device {tap_name or tap_name_for(name)} does not exist. "
                "Run 'vm doctor' for details"
            )

        self._check_ip_conflict(record)

        kernel_path = self.config_manager.kernel_path()
        if not kernel_path.is_file():
            raise NotFound(f"Kernel not found at {kernel_path}. Run: sudo vm build {name}")

        return record, self._settings(name), kernel_path

    # ---------- Operations ----------

    def init_vm(self, name):
        """Create the record, assign network identity and write config.env"""
        validate_name(name)
        tap_name = ResourceAllocator.validate_tap_name(name)
        if self.store.exists(name):
            raise AlreadyExists(f"VM '{name}' already exists")

        print(f"Initializing VM: {name}...")
        with self._vm_lock(name):
            with self._allocation_lock():
                self.store.create(name)
                try:
                    guest_ip, gateway_ip, _ = self.allocator.allocate(self.store, name)
                except SandboxError:
                    shutil.rmtree(self.store.vm_dir(name), ignore_errors=True)
                    raise

            vm_dir = self.store.vm_dir(name)
            ssh_key = self.config_manager.detect_ssh_key()
            self.config_manager.write_vm_config(vm_dir, name, ssh_key_path=ssh_key)
            if self.config_manager.is_root():
                self.filesystem_manager.chown_to_user(vm_dir, self.config_manager.invoking_user())

        print(f"✓ VM '{name}' initialized with IP {guest_ip} (gateway {gateway_ip}, TAP {tap_name})")
        if ssh_key:
            print(f"✓ Detected SSH key: {ssh_key}")
        else:
            print("Warning: No SSH key found in ~/.ssh; set SSH_KEY_PATH in config.env", file=sys.stderr)
        print(f"Edit {vm_dir / 'config.env'}, then run: sudo vm build {name}")

        return {'name': name, 'guest_ip': guest_ip, 'gateway_ip': gateway_ip}

    def build_vm(self, name):
        """Build disk images and host networking for an initialized VM"""
        self.config_manager.require_root('build')
        self._require_vm(name)

        with self._vm_lock(name):
            record = self.store.load(name)
            vm_dir = self.store.vm_dir(name)

            if record['built_at'] or self.store.rootfs_path(name).exists():
                raise InvalidState(
                    f"VM '{name}' is already built or has a partial build. "
                    f"To rebuild: sudo vm destroy --force {name} && vm init {name}"
                )
            if record['pid'] is not None and self.supervisor.is_alive(record['pid']):
                raise InvalidState(f"VM '{name}' is running. Stop it first: vm down {name}")

            settings = self._settings(name)
            if not settings.get('USERNAME'):
                raise InvalidState(f"USERNAME not set in {vm_dir / 'config.env'}")
            ssh_key = settings.get('SSH_KEY_PATH')
            if not ssh_key or not Path(ssh_key).is_file():
                raise InvalidState(f"SSH_KEY_PATH not set or file doesn't exist: {ssh_key}")

            guest_ip = record['guest_ip']
            gateway_ip = record['gateway_ip']
            if not guest_ip or not gateway_ip:
                raise InvalidState(f"VM '{name}' has no IP assignment. Recreate it with vm init")

            host_iface = self._host_iface()
            if not host_iface:
                raise NotFound("Could not detect the host uplink interface; set HOST_IFACE in the config file")

            print(f"Building VM '{name}' with IP {guest_ip}...")
            kernel_path = self.filesystem_manager.ensure_kernel()
            self.filesystem_manager.build_rootfs(
                self.store.rootfs_path(name), settings['UBUNTU_VERSION'], settings['ROOTFS_SIZE']
            )
            self.filesystem_manager.create_home_volume(self.store.home_path(name), settings['HOME_SIZE'])
            self.filesystem_manager.copy_ssh_key(ssh_key, vm_dir)
            self.filesystem_manager.configure_guest(name, vm_dir, settings, guest_ip, gateway_ip)

            owner = self.config_manager.invoking_user()
            tap_name = self.allocator.assign_device(self.store, name, host_iface)
            print(f"Creating TAP device {tap_name}...")
            if self.allocator.mode == "shared":
                # Every TAP carries the same gateway, so route each guest explicitly
                self.network_manager.create_tap(tap_name, owner, gateway_ip, prefix_len=32, guest_ip=guest_ip)
            else:
                self.network_manager.create_tap(tap_name, owner, gateway_ip)
            self.network_manager.add_forward_rule(tap_name, host_iface)

            self.store.mark_built(name)
            self.filesystem_manager.chown_to_user(vm_dir, owner)
            self.filesystem_manager.chown_to_user(kernel_path, owner)

        print(f"✓ VM '{name}' built successfully")
        print(f"  IP: {guest_ip}")
        print(f"  TAP: {tap_name}")
        print(f"Next: vm up {name}")
        return self.store.load(name)

    def up_vm(self, name):
        """Start a built VM in the background and wait for SSH"""
        record, settings, kernel_path = self._prepare_launch(name)
        ssh = self._ssh_for(record, settings)

        print(f"Starting VM '{name}' ({settings['CPUS']} vCPUs, {settings['MEMORY']} MiB, IP {record['guest_ip']})...")
        pid = self.supervisor.start(name, settings, kernel_path, ssh)

        if ssh.has_first_boot():
            print("Running first-boot setup...")
            if ssh.run_first_boot():
                print("✓ First-boot setup complete")
            else:
                print("Warning: First-boot setup failed; it will run again on the next up", file=sys.stderr)

        if self.store.home_path(name).exists():
            if ssh.mount_home():
                print("✓ Home volume mounted")
            else:
                print("Warning: Could not mount home volume", file=sys.stderr)

        print(f"✓ VM '{name}' is running (PID {pid})")
        print(f"Connect with: vm ssh {name}")
        return pid

    def console_vm(self, name):
        """Run a VM in the foreground with its serial console on the terminal"""
        record, settings, kernel_path = self._prepare_launch(name)
        print(f"Starting VM '{name}' in console mode (Ctrl-C stops the VM)...")
        return self.supervisor.run_console(name, settings, kernel_path)

    def down_vm(self, name):
        """Stop a VM; stopping a stopped VM succeeds"""
        record = self._require_vm(name)

        ssh = None
        if record['guest_ip'] and record['pid'] is not None:
            ssh = self._ssh_for(record, self._settings(name))

        outcome = self.supervisor.stop(name, ssh=ssh, graceful=True)
        if outcome == 'not-running':
            print(f"VM '{name}' is not running")
        elif outcome == 'stale':
            print(f"VM '{name}' is not running (cleaned up stale PID)")
        else:
            print(f"✓ VM '{name}' stopped ({outcome})")
        return outcome

    def ssh_vm(self, name, args=None):
        """Open an interactive SSH session; returns ssh's exit code"""
        record = self._require_vm(name)
        if derive_state(record, self.supervisor.is_alive) != 'running':
            raise InvalidState(f"VM '{name}' is not running. Start it with: vm up {name}")
        ssh = self._ssh_for(record, self._settings(name))
        return ssh.interactive(args or [])

    def status_vm(self, name):
        """Collect everything known about one VM"""
        record = self._require_vm(name)
        settings = self._settings(name)
        state = derive_state(record, self.supervisor.is_alive)
        tap_name = record['tap_name']

        status = {
            'name': name,
            'state': state,
            'guest_ip': record['guest_ip'],
            'gateway_ip': record['gateway_ip'],
            'subnet_index': record['subnet_index'],
            'user': settings.get('USERNAME'),
            'cpus': settings['CPUS'],
            'memory': settings['MEMORY'],
            'tap_name': tap_name,
            'tap_present': bool(tap_name) and self.network_manager.tap_exists(tap_name),
            'host_iface': record['host_iface'],
            'built_at': record['built_at'],
            'rootfs': _human_size(self.store.rootfs_path(name)),
            'home': _human_size(self.store.home_path(name)),
            'console_log': str(self.store.console_log_path(name)),
            'pid': None,
            'uptime': None,
            'memory_rss': None,
            'vmm_version': None,
            'machine_config': None,
        }

        if state == 'running':
            pid = record['pid']
            status['pid'] = pid
            status['uptime'] = format_uptime(process_uptime(pid))
            rss = process_rss(pid)
            status['memory_rss'] = f"{rss} MiB" if rss is not None else None
            if record['socket_path']:
                api = FirecrackerAPI(record['socket_path'])
                info = api.get_instance_info()
                status['vmm_version'] = info.get('vmm_version') if info else None
                status['machine_config'] = api.get_vm_config()
        elif state == 'crashed':
            status['pid'] = record['pid']

        return status

    def list_vms(self):
        return self.discovery.discover_all_vms()

    def doctor(self):
        """Audit records against host state; returns the findings"""
        findings = self.auditor.audit()
        findings += self.auditor.audit_host(self.config_manager)
        return findings

    def destroy_vm(self, name, force=False, confirm=None):
        """Stop a VM and remove its host networking and files

        Args:
            force: Skip confirmation and tolerate missing or failing cleanup steps
            confirm: Callable taking the question, defaults to a terminal prompt

        Returns:
            bool: False if the user cancelled
        """
        self.config_manager.require_root('destroy')
        validate_name(name)
        if not self.store.exists(name):
            raise NotFound(f"VM '{name}' does not exist")

        with self._vm_lock(name):
            if not force:
                print("\n⚠️  WARNING: This will permanently delete:")
                print("   - VM files (rootfs, home volume) and all data in the VM")
                print("   - Configuration files")
                print(f"   - TAP device {tap_name_for(name)} and its forward rule")
                if not (confirm or ask_confirmation)(f"\nDestroy VM '{name}'?"):
                    print("Destroy cancelled")
                    return False

            print(f"Destroying VM: {name}...")
            try:
                record = self.store.load(name)
            except Corrupt as e:
                if not force:
                    raise
                print(f"Warning: {e}; continuing because of --force", file=sys.stderr)
                record = None

            if record is not None and record['pid'] is not None:
                self._stop_for_destroy(name, record, force)

            tap_name = (record and record['tap_name']) or tap_name_for(name)
            host_iface = (record and record['host_iface']) or self._host_iface()
            if host_iface:
                self.network_manager.remove_forward_rule(tap_name, host_iface)

            try:
                self.network_manager.destroy_tap(tap_name)
            except ExternalToolFailure as e:
                if not force:
                    raise
                print(f"Warning: Could not remove TAP device {tap_name}: {e}", file=sys.stderr)

            self.store.remove(name)

        print(f"✓ VM '{name}' destroyed")
        return True

    def _stop_for_destroy(self, name, record, force):
        if not self.supervisor.is_alive(record['pid']):
            self.supervisor.reap_stale(name)
            return
        print("Stopping running VM...")
        ssh = self._ssh_for(record, self._settings(name)) if record['guest_ip'] else None
        try:
            self.supervisor.stop(name, ssh=ssh, graceful=True)
        except SandboxError as e:
            if not force:
                raise
            print(f"Warning: Could not stop VM: {e}", file=sys.stderr)

    def setup_host(self):
        """Prepare the host: directories, IP forwarding and global NAT"""
        config = self.config_manager
        config.require_root('setup')

        config.ensure_directories()
        self.filesystem_manager.chown_to_user(config.vms_root, config.invoking_user())
        print(f"✓ VM directories ready under {config.vms_root}")

        self.network_manager.enable_ip_forwarding()

        host_iface = self._host_iface()
        if not host_iface:
            raise NotFound("Could not detect the host uplink interface; set HOST_IFACE in the config file")
        self.network_manager.setup_host_nat(host_iface)

        try:
            version = config.check_firecracker_binary()
            print(f"✓ Firecracker binary found: {version or config.firecracker_bin}")
        except NotFound as e:
            print(f"Warning: {e}", file=sys.stderr)

        print("✓ Host setup complete. Create a VM with: vm init <name>")
        return host_iface

    def cleanup_host(self, force=False, confirm=None):
        """Destroy every VM and remove the global NAT rules

        Returns:
            bool: False if the user cancelled
        """
        self.config_manager.require_root('cleanup')

        if not force:
            print("This will:")
            print("  - Stop all running VMs")
            print("  - Destroy all VM instances")
            print("  - Remove the NAT rules")
            if not (confirm or ask_confirmation)("Continue?"):
                print("Cleanup cancelled")
                return False

        failed = []
        for name in self.store.list_names():
            print(f"Processing VM: {name}")
            try:
                self.destroy_vm(name, force=True)
            except SandboxError as e:
                print(f"Warning: Could not destroy VM '{name}': {e}", file=sys.stderr)
                failed.append(name)

        host_iface = self._host_iface()
        if host_iface:
            self.network_manager.teardown_host_nat(host_iface)

        if failed:
            raise InvalidState(f"Cleanup incomplete, could not destroy: {', '.join(failed)}")
        print("✓ Cleanup complete")
        return True
