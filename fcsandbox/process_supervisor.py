#!/usr/bin/env python3

import json
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

from .exceptions import ExternalToolFailure, Timeout
from .firecracker_api import FirecrackerAPI


BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"


def guest_mac_for(guest_ip):
    """Locally administered MAC derived from the guest IP (AA:FC:<ip octets>)"""
    octets = [int(part) for part in guest_ip.split('.')]
    return "AA:FC:" + ":".join(f"{octet:02X}" for octet in octets)


def read_proc_state(pid):
    """Single-letter process state from /proc, or None if unavailable"""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return None
    # The command name may contain spaces, so split after its closing paren
    return stat.rsplit(')', 1)[-1].split()[0]


def process_uptime(pid):
    """Seconds since the process started, or None"""
    try:
        fields = Path(f"/proc/{pid}/stat").read_text().rsplit(')', 1)[-1].split()
        uptime = float(Path("/proc/uptime").read_text().split()[0])
    except (OSError, IndexError, ValueError):
        return None
    # fields[0] is field 3 (state), so field 22 (starttime) is fields[19]
    start_ticks = int(fields[19])
    return max(0, int(uptime - start_ticks / os.sysconf("SC_CLK_TCK")))


def format_uptime(seconds):
    if seconds is None:
        return "-"
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def process_rss(pid):
    """Resident memory in MiB, or None"""
    try:
        for line in Path(f"/proc/{pid}/status").read_text().splitlines():
            if line.startswith("VmRSS:"):
                return int(line.split()[1]) // 1024
    except (OSError, IndexError, ValueError):
        return None
    return None


class ProcessSupervisor:
    """Starts, stops and probes the Firecracker process of each VM

    The supervisor is the only component that writes the pid and
    socket_path fields of a VM record.
    """

    ssh_max_retries = 60
    ssh_retry_delay = 2
    api_timeout = 10
    graceful_timeout = 30
    term_timeout = 5
    kill_timeout = 1

    def __init__(self, store, firecracker_bin, ssh_max_retries=None, ssh_retry_delay=None):
        self.store = store
        self.firecracker_bin = str(firecracker_bin)
        if ssh_max_retries is not None:
            self.ssh_max_retries = ssh_max_retries
        if ssh_retry_delay is not None:
            self.ssh_retry_delay = ssh_retry_delay

    # ---------- Liveness ----------

    @staticmethod
    def is_alive(pid):
        """Non-destructive liveness probe (signal 0); zombies count as dead"""
        if not pid or pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to another user
            return True
        return read_proc_state(pid) != 'Z'

    def owns_process(self, pid):
        """True unless /proc shows the PID now runs something other than firecracker"""
        try:
            comm = Path(f"/proc/{pid}/comm").read_text().strip()
        except OSError:
            return True
        # The kernel truncates comm to 15 bytes
        return comm == Path(self.firecracker_bin).name[:15]

    def reap_stale(self, name):
        """Clear pid/socket if the recorded process is gone

        Returns:
            bool: True if stale state was removed
        """
        pid = self.store.read_pid(name)
        if pid is None or self.is_alive(pid):
            return False
        self._clear_state(name)
        return True

    # ---------- Machine description ----------

    def build_machine_config(self, name, record, settings, kernel_path):
        """Firecracker config-file document for a VM"""
        guest_ip = record['guest_ip']
        gateway_ip = record['gateway_ip']

        drives = [{
            "drive_id": "rootfs",
            "path_on_host": str(self.store.rootfs_path(name)),
            "is_root_device": True,
            "is_read_only": False
        }]
        if self.store.home_path(name).exists():
            drives.append({
                "drive_id": "home",
                "path_on_host": str(self.store.home_path(name)),
                "is_root_device": False,
                "is_read_only": False
            })

        return {
            "boot-source": {
                "kernel_image_path": str(kernel_path),
                "boot_args": f"{BOOT_ARGS} ip={guest_ip}::{gateway_ip}:255.255.255.0::eth0:off"
            },
            "drives": drives,
            "machine-config": {
                "vcpu_count": settings['CPUS'],
                "mem_size_mib": settings['MEMORY']
            },
            "network-interfaces": [{
                "iface_id": "eth0",
                "guest_mac": guest_mac_for(guest_ip),
                "host_dev_name": record['tap_name']
            }]
        }

    def _prepare_launch(self, name, settings, kernel_path):
        """Write the machine description and clear any stale socket

        Returns:
            tuple: (command, socket_path)
        """
        record = self.store.load(name)
        config = self.build_machine_config(name, record, settings, kernel_path)
        config_path = self.store.machine_config_path(name)
        config_path.write_text(json.dumps(config, indent=2) + "\n")

        socket_path = self.store.socket_path(name)
        self._remove_socket(name)

        cmd = [self.firecracker_bin, "--api-sock", str(socket_path), "--config-file", str(config_path)]
        return cmd, socket_path

    # ---------- Start ----------

    def start(self, name, settings, kernel_path, ssh):
        """Launch the VM in the background and wait until SSH answers

        The PID is recorded as soon as the process exists. A VM that dies
        or never becomes reachable is killed and its state cleared.
        """
        cmd, socket_path = self._prepare_launch(name, settings, kernel_path)
        console_log = self.store.console_log_path(name)

        print("Starting Firecracker...")
        try:
            with open(console_log, 'ab') as log:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True
                )
        except OSError as e:
            raise ExternalToolFailure(f"Could not start {self.firecracker_bin}: {e}", cmd=cmd)

        self.store.write_pid(name, process.pid, socket_path)
        print(f"✓ Firecracker started (PID {process.pid})")

        def running():
            return process.poll() is None

        api = FirecrackerAPI(socket_path)
        if not api.wait_until_ready(timeout=self.api_timeout, is_alive=running):
            if not running():
                self._clear_state(name)
                raise ExternalToolFailure(
                    f"Firecracker process died. Check logs: {console_log}",
                    cmd=cmd, returncode=process.returncode
                )
            print(f"Warning: Firecracker API socket not answering yet: {socket_path}", file=sys.stderr)

        print("Waiting for VM to boot and SSH to be ready...")
        for attempt in range(1, self.ssh_max_retries + 1):
            if ssh.probe():
                print(f"✓ SSH is ready (attempt {attempt})")
                return process.pid

            if not running():
                self._clear_state(name)
                raise ExternalToolFailure(
                    f"VM process died while waiting for SSH. Check logs: {console_log}",
                    cmd=cmd, returncode=process.returncode
                )

            time.sleep(self.ssh_retry_delay)

        self._terminate(process)
        self._clear_state(name)
        raise Timeout(
            f"Timeout waiting for SSH after {self.ssh_max_retries} attempts. "
            f"VM process was killed. Check logs: {console_log}"
        )

    def run_console(self, name, settings, kernel_path):
        """Run the VM in the foreground attached to the terminal

        Returns:
            int: Firecracker exit code
        """
        cmd, socket_path = self._prepare_launch(name, settings, kernel_path)

        try:
            process = subprocess.Popen(cmd)
        except OSError as e:
            raise ExternalToolFailure(f"Could not start {self.firecracker_bin}: {e}", cmd=cmd)

        self.store.write_pid(name, process.pid, socket_path)
        try:
            try:
                return process.wait()
            except KeyboardInterrupt:
                # Ctrl-C reaches the whole foreground group; make sure it is gone
                self._terminate(process)
                return process.returncode
        finally:
            self._clear_state(name)

    def _terminate(self, process):
        process.terminate()
        try:
            process.wait(timeout=self.term_timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    # ---------- Stop ----------

    def stop(self, name, ssh=None, graceful=True):
        """Stop a VM with escalating force

        Tiers: guest poweroff over SSH (30s), SIGTERM (5s), SIGKILL.
        A tier is skipped once the process is gone. Stopping a VM that
        is not running succeeds after clearing stale state.

        Returns:
            str: 'not-running', 'stale', 'graceful', 'terminated' or 'killed'
        """
        pid = self.store.read_pid(name)
        if pid is None:
            self._remove_socket(name)
            return 'not-running'

        if not self.is_alive(pid):
            self._clear_state(name)
            return 'stale'

        if not self.owns_process(pid):
            print(f"Warning: PID {pid} now belongs to another program, not signalling it",
                  file=sys.stderr)
            self._clear_state(name)
            return 'stale'

        outcome = 'graceful'

        if graceful and ssh is not None:
            print("Attempting graceful shutdown...")
            if ssh.poweroff():
                print("Shutdown command sent, waiting for VM to stop...")
                if self._wait_for_exit(pid, self.graceful_timeout):
                    self._clear_state(name)
                    return 'graceful'
                print(f"Warning: VM did not stop gracefully within {self.graceful_timeout} seconds",
                      file=sys.stderr)
            else:
                print("Warning: Could not reach guest over SSH", file=sys.stderr)

        if self.is_alive(pid):
            print("Attempting forceful shutdown (SIGTERM)...")
            self._signal(pid, signal.SIGTERM)
            outcome = 'terminated'
            if self._wait_for_exit(pid, self.term_timeout):
                self._clear_state(name)
                return outcome

        if self.is_alive(pid):
            print("Warning: Force killing VM process...", file=sys.stderr)
            self._signal(pid, signal.SIGKILL)
            outcome = 'killed'
            if not self._wait_for_exit(pid, self.kill_timeout):
                raise ExternalToolFailure(f"Failed to kill VM process {pid}")

        self._clear_state(name)
        return outcome

    def _signal(self, pid, signum):
        try:
            os.kill(pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError:
            raise ExternalToolFailure(
                f"Not permitted to signal VM process {pid}; it belongs to another user"
            )

    def _wait_for_exit(self, pid, timeout):
        """Poll once a second; True if the process is gone within timeout"""
        for _ in range(timeout):
            if not self.is_alive(pid):
                return True
            time.sleep(1)
        return not self.is_alive(pid)

    # ---------- State ----------

    def _remove_socket(self, name):
        try:
            self.store.socket_path(name).unlink()
        except FileNotFoundError:
            pass
        except OSError:
            pass

    def _clear_state(self, name):
        self.store.clear_pid(name)
        self._remove_socket(name)
