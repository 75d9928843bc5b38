#!/usr/bin/env python3
"""Error types raised by the sandbox library.

The CLI turns any SandboxError into an ``Error: ...`` line on stderr and a
non-zero exit code.
"""


class SandboxError(RuntimeError):
    """Base class for every error the sandbox raises on purpose"""


class NotFound(SandboxError):
    """A VM or a host resource it depends on does not exist"""


class AlreadyExists(SandboxError):
    """A VM with the requested name already exists"""


class InvalidState(SandboxError):
    """The VM is in the wrong lifecycle state for the requested operation"""


class PrivilegeRequired(InvalidState):
    """The operation must be run as root (sudo)"""


class InvalidName(SandboxError, ValueError):
    """The VM name does not match the identifier grammar"""


class ResourceExhausted(SandboxError):
    """No free network slot is left in the address space"""


class Corrupt(SandboxError):
    """A state file exists but cannot be parsed"""


class ExternalToolFailure(SandboxError):
    """A subprocess (ip, iptables, firecracker, ssh, ...) failed"""

    def __init__(self, message, cmd=None, returncode=None, stderr=None):
        super().__init__(message)
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr


class Timeout(SandboxError):
    """A bounded wait (boot, shutdown, lock) ran out of time"""
