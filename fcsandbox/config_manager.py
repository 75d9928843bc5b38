#!/usr/bin/env python3

import os
import pwd
import shutil
import subprocess
import sys
from pathlib import Path

from .exceptions import NotFound, PrivilegeRequired


DEFAULT_CONFIG_FILE = "/etc/firecracker-sandbox.env"

# Keys that may also be given as process environment variables
ENV_KEYS = [
    'VMS_ROOT', 'FIRECRACKER_BIN', 'KERNEL_VERSION', 'KERNEL_URL', 'IMAGES_PATH',
    'ROOTFS_BUILDER', 'CONFIGURE_HOOK', 'FIRST_BOOT_SCRIPT', 'NETWORK_MODE',
    'SUBNET_PREFIX', 'HOST_IFACE', 'DNS_SERVERS', 'LOCK_TIMEOUT',
    'SSH_MAX_RETRIES', 'SSH_RETRY_DELAY',
]

DEFAULT_VM_SETTINGS = {
    'CPUS': 4,
    'MEMORY': 8192,
    'ROOTFS_SIZE': '8G',
    'HOME_SIZE': '20G',
    'UBUNTU_VERSION': '24.04',
}

SSH_KEY_CANDIDATES = ["id_ed25519.pub", "id_rsa.pub", "id_ecdsa.pub"]

DEFAULT_APT_PACKAGES = """# APT packages to install (one per line)
# Lines starting with # are comments

podman
postgresql
tmux
vim
git
curl
htop
ripgrep
"""

DEFAULT_NIX_PACKAGES = """# Nix packages to install (space-separated)
go_1_24 nodejs
"""


def parse_env_file(path):
    """Parse a KEY=VALUE file, skipping comments and stripping inline comments"""
    config = {}
    path = Path(path)
    if not path.exists():
        return config

    try:
        with open(path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        if '#' in value:
                            value = value.split('#')[0]
                        value = value.strip()
                        # Values written by older shell configs are quoted
                        if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
                            value = value[1:-1]
                        config[key.strip()] = value
    except OSError as e:
        print(f"Warning: Could not read config file {path}: {e}", file=sys.stderr)

    return config


class ConfigManager:
    """Manages environment configuration, host paths and per-VM settings"""

    def __init__(self, config_file=None, environ=None):
        self.environ = os.environ if environ is None else environ

        # --config wins, then FCSANDBOX_CONFIG, then the system-wide default
        if config_file:
            self.config_file = Path(config_file)
        elif self.environ.get('FCSANDBOX_CONFIG'):
            self.config_file = Path(self.environ['FCSANDBOX_CONFIG'])
        else:
            self.config_file = Path(DEFAULT_CONFIG_FILE)

        self.env_config = self.load_env_config()
        self._apply_defaults()

    def load_env_config(self):
        """Load configuration from the config file, then environment overrides"""
        config = parse_env_file(self.config_file)
        for key in ENV_KEYS:
            if self.environ.get(key):
                config[key] = self.environ[key]
        return config

    def _apply_defaults(self):
        """Fill in every key that neither the file nor the environment set"""
        if not self.env_config.get('VMS_ROOT'):
            self.env_config['VMS_ROOT'] = str(Path(self.invoking_user_home()) / "vms")
        vms_root = Path(self.env_config['VMS_ROOT'])

        if not self.env_config.get('FIRECRACKER_BIN'):
            found = shutil.which("firecracker")
            self.env_config['FIRECRACKER_BIN'] = found or str(vms_root / "bin" / "firecracker")

        version = self.env_config.setdefault('KERNEL_VERSION', '6.1.77')
        if not self.env_config.get('KERNEL_URL'):
            self.env_config['KERNEL_URL'] = (
                "https://s3.amazonaws.com/spec.ccfc.min/firecracker-ci/v1.7/x86_64/"
                f"vmlinux-{version}"
            )

        defaults = {
            'IMAGES_PATH': str(vms_root / "images"),
            'ROOTFS_BUILDER': str(vms_root / "bin" / "build" / "build-ubuntu-rootfs.sh"),
            'CONFIGURE_HOOK': str(vms_root / "bin" / "build" / "configure-vm.sh"),
            'FIRST_BOOT_SCRIPT': str(vms_root / "bin" / "first-boot.sh"),
            'NETWORK_MODE': 'subnet',
            'SUBNET_PREFIX': '172.16',
            'DNS_SERVERS': '8.8.8.8,8.8.4.4',
            'LOCK_TIMEOUT': '10',
            'SSH_MAX_RETRIES': '60',
            'SSH_RETRY_DELAY': '2',
        }
        for key, value in defaults.items():
            if not self.env_config.get(key):
                self.env_config[key] = value

        if self.env_config['NETWORK_MODE'] not in ("subnet", "shared"):
            print(f"Warning: Invalid NETWORK_MODE '{self.env_config['NETWORK_MODE']}', using 'subnet'",
                  file=sys.stderr)
            self.env_config['NETWORK_MODE'] = 'subnet'

    def get_env_config(self):
        """Get the loaded environment configuration

        Returns:
            dict: Environment configuration dictionary
        """
        return self.env_config

    def get(self, key, default=None):
        return self.env_config.get(key, default)

    def get_int(self, key, default):
        """Read an integer setting, warning and falling back on bad values"""
        value = self.env_config.get(key)
        if value in (None, ''):
            return default
        try:
            return int(value)
        except ValueError:
            print(f"Warning: Invalid {key} value in config file: {value}", file=sys.stderr)
            return default

    # ---------- Host paths ----------

    @property
    def vms_root(self):
        return Path(self.env_config['VMS_ROOT'])

    @property
    def vms_dir(self):
        return self.vms_root / "vms"

    @property
    def kernels_dir(self):
        return self.vms_root / "kernels"

    @property
    def images_dir(self):
        return Path(self.env_config['IMAGES_PATH'])

    @property
    def locks_dir(self):
        return self.vms_root / "locks"

    @property
    def firecracker_bin(self):
        return self.env_config['FIRECRACKER_BIN']

    def kernel_path(self):
        return self.kernels_dir / f"vmlinux-{self.env_config['KERNEL_VERSION']}"

    def ensure_directories(self):
        """Create the VMS_ROOT directory tree"""
        for dir_path in [self.vms_dir, self.kernels_dir, self.images_dir, self.locks_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    # ---------- Invoking user ----------

    def invoking_user(self):
        """The real user behind sudo, or the current user"""
        user = self.environ.get('SUDO_USER') or self.environ.get('USER')
        if user:
            return user
        return pwd.getpwuid(os.getuid()).pw_name

    def invoking_user_home(self):
        try:
            return pwd.getpwnam(self.invoking_user()).pw_dir
        except KeyError:
            return str(Path.home())

    def is_root(self):
        return os.geteuid() == 0

    def require_root(self, action):
        if not self.is_root():
            raise PrivilegeRequired(f"'{action}' must be run with sudo")

    def detect_ssh_key(self):
        """Find the invoking user's public key

        Returns:
            str: Path to the first key found, or None
        """
        ssh_dir = Path(self.invoking_user_home()) / ".ssh"
        for candidate in SSH_KEY_CANDIDATES:
            key = ssh_dir / candidate
            if key.is_file():
                return str(key)
        return None

    # ---------- Per-VM settings ----------

    def write_vm_config(self, vm_dir, vm_name, ssh_key_path=None, username=None):
        """Create config.env and the package lists for a freshly initialized VM"""
        vm_dir = Path(vm_dir)
        username = username or self.invoking_user()

        lines = [
            f"# VM Configuration for {vm_name}",
            f"# Edit this file, then run: sudo vm build {vm_name}",
            "",
            "# Resources",
            f"CPUS={DEFAULT_VM_SETTINGS['CPUS']}",
            f"MEMORY={DEFAULT_VM_SETTINGS['MEMORY']}",
            f"ROOTFS_SIZE={DEFAULT_VM_SETTINGS['ROOTFS_SIZE']}",
            f"HOME_SIZE={DEFAULT_VM_SETTINGS['HOME_SIZE']}",
            "",
            "# User setup",
            f"USERNAME={username}",
        ]
        if ssh_key_path:
            lines.append(f"SSH_KEY_PATH={ssh_key_path}")
        else:
            lines.append("# SSH_KEY_PATH=~/.ssh/id_ed25519.pub  # Update this path")
        lines += [
            "",
            "# Ubuntu version",
            f"UBUNTU_VERSION={DEFAULT_VM_SETTINGS['UBUNTU_VERSION']}",
        ]

        (vm_dir / "config.env").write_text("\n".join(lines) + "\n")
        (vm_dir / "apt-packages.txt").write_text(DEFAULT_APT_PACKAGES)
        (vm_dir / "packages.nix").write_text(DEFAULT_NIX_PACKAGES)

    def load_vm_config(self, vm_dir):
        """Load a VM's config.env merged over the defaults

        Returns:
            dict: Settings with CPUS and MEMORY as integers
        """
        raw = parse_env_file(Path(vm_dir) / "config.env")
        settings = dict(DEFAULT_VM_SETTINGS)
        settings['USERNAME'] = None
        settings['SSH_KEY_PATH'] = None

        for key, value in raw.items():
            if key in ('CPUS', 'MEMORY'):
                try:
                    settings[key] = int(value)
                except ValueError:
                    print(f"Warning: Invalid {key} value in {vm_dir}/config.env: {value}", file=sys.stderr)
            else:
                settings[key] = value

        if settings.get('SSH_KEY_PATH'):
            settings['SSH_KEY_PATH'] = os.path.expanduser(settings['SSH_KEY_PATH'])
        return settings

    # ---------- Preflight ----------

    def check_firecracker_binary(self):
        """Check that the Firecracker binary exists and report its version

        Returns:
            str: First line of ``firecracker --version`` (may be empty)
        """
        firecracker_path = self.firecracker_bin

        if not Path(firecracker_path).is_file():
            raise NotFound(
                f"Firecracker binary not found at {firecracker_path}. "
                "Install it or run: sudo vm setup"
            )

        try:
            result = subprocess.run(
                [firecracker_path, "--version"],
                capture_output=True,
                text=True,
                timeout=5
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            print(f"Warning: Could not check Firecracker version: {e}", file=sys.stderr)
            return ""

        if result.returncode != 0:
            print("Warning: Firecracker binary found but could not verify it's working properly",
                  file=sys.stderr)
            return ""

        version_lines = result.stdout.strip().split('\n')
        return version_lines[0] if version_lines else ""
