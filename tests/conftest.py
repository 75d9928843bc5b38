import subprocess
from pathlib import Path

import pytest

from fcsandbox.config_manager import ConfigManager
from fcsandbox.state_store import StateStore
from fcsandbox.vm_lifecycle import VMLifecycle


class FakeNetwork:
    """In-memory stand-in for NetworkManager"""

    def __init__(self):
        self.taps = {}
        self.prefixes = {}
        self.routes = {}
        self.rules = []
        self.pids = []
        self.firewall_readable = True
        self.host_iface = "eth0"
        self.nat = False
        self.forwarding = False

    def tap_exists(self, tap_name):
        return tap_name in self.taps

    def create_tap(self, tap_name, owner_user, gateway_ip, prefix_len=24, guest_ip=None):
        self.taps[tap_name] = gateway_ip
        self.prefixes[tap_name] = prefix_len
        if guest_ip:
            self.routes[guest_ip] = tap_name
        return True

    def destroy_tap(self, tap_name):
        return self.taps.pop(tap_name, None) is not None

    def add_forward_rule(self, tap_name, host_iface):
        if (tap_name, host_iface) in self.rules:
            return False
        self.rules.append((tap_name, host_iface))
        return True

    def remove_forward_rule(self, tap_name, host_iface):
        if (tap_name, host_iface) in self.rules:
            self.rules.remove((tap_name, host_iface))
            return True
        return False

    def list_tap_devices(self, prefix="tap-"):
        return [name for name in self.taps if name.startswith(prefix)]

    def list_forward_rules(self):
        if not self.firewall_readable:
            return None
        return [
            {'in': tap, 'out': iface, 'target': 'ACCEPT',
             'rule': f"-A FORWARD -i {tap} -o {iface} -j ACCEPT"}
            for tap, iface in self.rules
        ]

    def list_hypervisor_pids(self):
        return list(self.pids)

    def get_tap_device_ip(self, device_name):
        return self.taps.get(device_name)

    def detect_host_interface(self):
        return self.host_iface

    def nat_rules_present(self, host_iface):
        return self.nat

    def setup_host_nat(self, host_iface):
        self.nat = True

    def teardown_host_nat(self, host_iface):
        self.nat = False

    def enable_ip_forwarding(self):
        self.forwarding = True


class FakeFilesystem:
    """Writes placeholder images instead of running image tooling"""

    def __init__(self, config_manager):
        self.config_manager = config_manager
        self.configured = []

    def ensure_kernel(self):
        kernel = self.config_manager.kernel_path()
        kernel.parent.mkdir(parents=True, exist_ok=True)
        kernel.write_bytes(b"vmlinux")
        return kernel

    def build_rootfs(self, rootfs_file, ubuntu_version, rootfs_size):
        Path(rootfs_file).write_bytes(b"rootfs")
        return rootfs_file

    def create_home_volume(self, home_file, size):
        Path(home_file).write_bytes(b"home")
        return home_file

    def copy_ssh_key(self, ssh_key_path, vm_dir):
        target = Path(vm_dir) / "ssh_key.pub"
        target.write_text(Path(ssh_key_path).read_text())
        return target

    def configure_guest(self, vm_name, vm_dir, settings, guest_ip, gateway_ip):
        self.configured.append(vm_name)
        return True

    def chown_to_user(self, path, username):
        pass


class FakeSSH:
    """Scripted guest: probe answers come from ``probe_results``"""

    def __init__(self, probe_results=None, poweroff_result=False):
        self.probe_results = list(probe_results or [])
        self.poweroff_result = poweroff_result
        self.probes = 0
        self.poweroffs = 0
        self.interactive_args = None
        self.first_boot_pending = False

    def probe(self):
        self.probes += 1
        if self.probe_results:
            return self.probe_results.pop(0)
        return False

    def poweroff(self):
        self.poweroffs += 1
        return self.poweroff_result

    def has_first_boot(self):
        return self.first_boot_pending

    def run_first_boot(self):
        self.first_boot_pending = False
        return True

    def mount_home(self):
        return True

    def interactive(self, args=None):
        self.interactive_args = args
        return 0


@pytest.fixture
def environ(tmp_path):
    return {
        'VMS_ROOT': str(tmp_path / "vms-root"),
        'FIRECRACKER_BIN': str(tmp_path / "bin" / "firecracker"),
        'HOST_IFACE': "eth0",
        'FCSANDBOX_CONFIG': str(tmp_path / "missing.env"),
        'SSH_MAX_RETRIES': "3",
        'SSH_RETRY_DELAY': "0",
        'LOCK_TIMEOUT': "1",
        'USER': "tester",
    }


@pytest.fixture
def config(environ):
    return ConfigManager(environ=environ)


@pytest.fixture
def store(config):
    return StateStore(config.vms_dir)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def ssh():
    return FakeSSH()


@pytest.fixture
def fake_firecracker(config):
    """Executable that ignores its arguments and sleeps like a running VM"""
    binary = Path(config.firecracker_bin)
    binary.parent.mkdir(parents=True, exist_ok=True)
    # No exec, so the process keeps the name "firecracker"
    binary.write_text("#!/bin/sh\ntrap 'kill $! 2>/dev/null; exit 0' TERM\nsleep 30 &\nwait\n")
    binary.chmod(0o755)
    return binary


@pytest.fixture
def ssh_key(tmp_path):
    key = tmp_path / "id_ed25519.pub"
    key.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITEST tester@host\n")
    return key


@pytest.fixture
def lifecycle(config, store, network, ssh, fake_firecracker, monkeypatch):
    monkeypatch.setattr(config, "is_root", lambda: True)
    vm_lifecycle = VMLifecycle(
        config,
        store=store,
        network_manager=network,
        filesystem_manager=FakeFilesystem(config),
        ssh_factory=lambda username, guest_ip, ssh_key_path=None: ssh,
    )
    vm_lifecycle.supervisor.api_timeout = 0.2
    return vm_lifecycle


@pytest.fixture
def built_vm(lifecycle, ssh_key):
    """Initialize and build a VM named 'a'"""
    def build(name="a"):
        lifecycle.init_vm(name)
        with open(lifecycle.store.vm_dir(name) / "config.env", "a") as f:
            f.write(f"SSH_KEY_PATH={ssh_key}\n")
        lifecycle.build_vm(name)
        return name
    return build


@pytest.fixture
def dead_pid():
    """PID of a process that has already exited and been reaped"""
    process = subprocess.Popen(["true"])
    process.wait()
    return process.pid
