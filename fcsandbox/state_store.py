#!/usr/bin/env python3
"""Durable per-VM state.

Each VM lives in ``<vms_dir>/<name>/``. Its facts (assigned IP, TAP name,
hypervisor PID, built marker, ...) are kept in a single JSON document,
``state/vm.json``, that is always replaced as a whole (write to a temp file,
fsync, rename), so a crash can never leave half a document behind.

Any field may be missing. Readers get ``None`` for a missing field and must
treat that as its own state, never as a zero value.

VM directories created by the shell version of this tool stored one fact
per file (``ip.txt``, ``vm.pid``, ``built``, ...). Those are still read when
``vm.json`` is absent, and are folded into ``vm.json`` on the first write.
"""

import json
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path

from .exceptions import AlreadyExists, Corrupt, NotFound, PrivilegeRequired


RECORD_FILE = "vm.json"

# Records are written by root (build, up) and read by the user (list, doctor)
RECORD_MODE = 0o644

FIELDS = (
    'name',
    'guest_ip',
    'gateway_ip',
    'subnet_index',
    'tap_name',
    'host_iface',
    'pid',
    'socket_path',
    'built_at',
)

INT_FIELDS = ('pid', 'subnet_index')

# One-fact-per-file layout used by the shell tool
LEGACY_FILES = {
    'guest_ip': 'ip.txt',
    'gateway_ip': 'gateway.txt',
    'tap_name': 'tap_name.txt',
    'host_iface': 'host_iface.txt',
    'pid': 'vm.pid',
    'built_at': 'built',
}


class StateStore:
    """Typed accessors over the per-VM state directories"""

    def __init__(self, vms_dir):
        self.vms_dir = Path(vms_dir)

    # ---------- Paths ----------

    def vm_dir(self, name):
        return self.vms_dir / name

    def state_dir(self, name):
        return self.vm_dir(name) / "state"

    def record_path(self, name):
        return self.state_dir(name) / RECORD_FILE

    def rootfs_path(self, name):
        return self.vm_dir(name) / "rootfs.ext4"

    def home_path(self, name):
        return self.vm_dir(name) / "home.ext4"

    def socket_path(self, name):
        return self.state_dir(name) / "vm.sock"

    def machine_config_path(self, name):
        return self.state_dir(name) / "vm-config.json"

    def console_log_path(self, name):
        return self.state_dir(name) / "console.log"

    # ---------- Records ----------

    def exists(self, name):
        return self.vm_dir(name).is_dir()

    def list_names(self):
        """Names of every VM directory that has a state directory"""
        if not self.vms_dir.is_dir():
            return []
        return sorted(
            entry.name for entry in self.vms_dir.iterdir()
            if entry.is_dir() and (entry / "state").is_dir()
        )

    def create(self, name):
        """Create an empty record for a new VM"""
        self.vms_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.vm_dir(name).mkdir()
        except FileExistsError:
            raise AlreadyExists(f"VM '{name}' already exists at {self.vm_dir(name)}")
        self.state_dir(name).mkdir()
        self._write_document(name, {'name': name})

    def remove(self, name):
        """Delete the VM directory and everything in it"""
        self._require(name)
        shutil.rmtree(self.vm_dir(name))

    def load(self, name):
        """Return the full record, with None for every missing field"""
        self._require(name)
        doc = self._read_document(name)
        record = {field: doc.get(field) for field in FIELDS}
        if record['name'] is None:
            record['name'] = name
        return record

    def load_all(self, tolerant=True):
        """Load every record

        Args:
            tolerant: Collect corrupt records instead of raising

        Returns:
            tuple: (list of records, list of names whose state is corrupt)
        """
        records = []
        corrupt = []
        for name in self.list_names():
            try:
                records.append(self.load(name))
            except Corrupt:
                if not tolerant:
                    raise
                corrupt.append(name)
            except NotFound:
                # Removed between listing and loading
                continue
        return records, corrupt

    # ---------- Field accessors ----------

    def read_ip(self, name):
        return self.load(name)['guest_ip']

    def write_ip(self, name, guest_ip):
        self._update(name, guest_ip=guest_ip)

    def read_gateway(self, name):
        return self.load(name)['gateway_ip']

    def read_subnet_index(self, name):
        return self.load(name)['subnet_index']

    def write_network(self, name, guest_ip, gateway_ip, subnet_index):
        self._update(name, guest_ip=guest_ip, gateway_ip=gateway_ip, subnet_index=subnet_index)

    def read_tap_name(self, name):
        return self.load(name)['tap_name']

    def write_tap_name(self, name, tap_name):
        self._update(name, tap_name=tap_name)

    def read_host_iface(self, name):
        return self.load(name)['host_iface']

    def write_host_iface(self, name, host_iface):
        self._update(name, host_iface=host_iface)

    def read_pid(self, name):
        return self.load(name)['pid']

    def read_socket_path(self, name):
        return self.load(name)['socket_path']

    def write_pid(self, name, pid, socket_path=None):
        self._update(name, pid=int(pid), socket_path=str(socket_path) if socket_path else None)

    def clear_pid(self, name):
        self._update(name, pid=None, socket_path=None)

    def is_built(self, name):
        return self.load(name)['built_at'] is not None

    def built_at(self, name):
        return self.load(name)['built_at']

    def mark_built(self, name, when=None):
        when = when or datetime.now().astimezone()
        self._update(name, built_at=when.isoformat(timespec='seconds'))

    # ---------- Internals ----------

    def _require(self, name):
        if not self.exists(name):
            raise NotFound(f"VM '{name}' does not exist")

    def _update(self, name, **changes):
        """Read-modify-write the whole document; None removes a field"""
        self._require(name)
        doc = self._read_document(name)
        for key, value in changes.items():
            if value is None:
                doc.pop(key, None)
            else:
                doc[key] = value
        self._write_document(name, doc)
        self._drop_legacy_files(name)

    def _read_document(self, name):
        path = self.record_path(name)
        if not path.exists():
            return self._read_legacy(name)

        try:
            doc = json.loads(self._read_text(path))
        except ValueError as e:
            raise Corrupt(f"State file {path} is not valid JSON: {e}")
        if not isinstance(doc, dict):
            raise Corrupt(f"State file {path} does not contain a JSON object")

        for field in INT_FIELDS:
            value = doc.get(field)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise Corrupt(f"State file {path} has non-numeric {field}: {value!r}")
        return doc

    def _read_legacy(self, name):
        state_dir = self.state_dir(name)
        doc = {}
        for field, filename in LEGACY_FILES.items():
            path = state_dir / filename
            if not path.is_file():
                continue
            value = self._read_text(path).strip()
            if field in INT_FIELDS:
                try:
                    value = int(value)
                except ValueError:
                    raise Corrupt(f"State file {path} has non-numeric {field}: {value!r}")
            doc[field] = value
        if 'pid' in doc:
            doc['socket_path'] = str(self.socket_path(name))
        return doc

    @staticmethod
    def _read_text(path):
        try:
            return path.read_text()
        except PermissionError:
            raise PrivilegeRequired(f"State file {path} is not readable; run with sudo")

    def _drop_legacy_files(self, name):
        for filename in LEGACY_FILES.values():
            path = self.state_dir(name) / filename
            if path.is_file():
                path.unlink()

    def _write_document(self, name, doc):
        state_dir = self.state_dir(name)
        state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=state_dir, prefix=f".{RECORD_FILE}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                os.fchmod(f.fileno(), RECORD_MODE)
                json.dump(doc, f, indent=2, sort_keys=True)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.record_path(name))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
