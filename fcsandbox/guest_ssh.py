#!/usr/bin/env python3

import subprocess
import sys
from pathlib import Path


SSH_BASE_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
]


def private_key_for(ssh_key_path):
    """Private key matching a configured public key path

    Falls back to the configured path itself when no private key sits
    next to it (the user pointed SSH_KEY_PATH at a private key).
    """
    if not ssh_key_path:
        return None
    key = Path(ssh_key_path)
    if key.suffix == ".pub":
        private = key.with_suffix("")
        if private.is_file():
            return str(private)
    if key.is_file():
        return str(key)
    return None


class GuestSSH:
    """Runs commands inside a guest over ssh"""

    def __init__(self, username, guest_ip, ssh_key_path=None):
        self.username = username
        self.guest_ip = guest_ip
        self.identity = private_key_for(ssh_key_path)

    @property
    def target(self):
        return f"{self.username}@{self.guest_ip}"

    def _command(self, remote_command=None, connect_timeout=None, batch=True, extra_args=None):
        cmd = ["ssh"]
        if connect_timeout is not None:
            cmd += ["-o", f"ConnectTimeout={connect_timeout}"]
        cmd += SSH_BASE_OPTIONS
        if batch:
            cmd += ["-o", "BatchMode=yes"]
        if self.identity:
            cmd += ["-i", self.identity]
        cmd.append(self.target)
        if extra_args:
            cmd += list(extra_args)
        if remote_command:
            cmd.append(remote_command)
        return cmd

    def run(self, remote_command, connect_timeout=5, capture_output=True, timeout=None):
        """Run a command in the guest

        Returns:
            subprocess.CompletedProcess; a missing ssh binary or a local
            timeout is reported as returncode 255 like any ssh failure
        """
        cmd = self._command(remote_command, connect_timeout=connect_timeout)
        try:
            return subprocess.run(cmd, capture_output=capture_output, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            return subprocess.CompletedProcess(cmd, 255, "", "ssh timed out")
        except FileNotFoundError:
            print("Error: ssh is not installed", file=sys.stderr)
            return subprocess.CompletedProcess(cmd, 255, "", "ssh not found")

    def probe(self):
        """True once sshd in the guest accepts our key"""
        return self.run("exit 0", connect_timeout=2, timeout=15).returncode == 0

    def poweroff(self):
        """Ask the guest to shut itself down"""
        return self.run("sudo poweroff", connect_timeout=5, timeout=20).returncode == 0

    def has_first_boot(self):
        return self.run("sudo test -f /first-boot.sh").returncode == 0

    def run_first_boot(self):
        """Run /first-boot.sh with output streamed to the terminal, then delete it

        Returns:
            bool: True if the script succeeded (it is only deleted then)
        """
        result = self.run("sudo /first-boot.sh", capture_output=False)
        if result.returncode != 0:
            return False
        # Leaving the script in place would re-run it on the next up
        self.run("sudo rm -f /first-boot.sh")
        return True

    def mount_home(self):
        result = self.run("sudo mkdir -p /mnt/home && (mountpoint -q /mnt/home || sudo mount /dev/vdb /mnt/home)")
        return result.returncode == 0

    def interactive(self, args=None):
        """Open an interactive session, passing extra ssh arguments through

        Returns:
            int: ssh exit code
        """
        cmd = self._command(batch=False, extra_args=args)
        try:
            return subprocess.call(cmd)
        except FileNotFoundError:
            print("Error: ssh is not installed", file=sys.stderr)
            return 255
