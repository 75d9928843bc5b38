"""
Firecracker Sandbox Library

This package contains the core modules for running Firecracker sandbox VMs:
- config_manager: Host configuration and per-VM config.env handling
- state_store: Durable per-VM state (state/vm.json)
- locking: Advisory lock files shared by concurrent invocations
- resource_allocator: Guest IP, gateway and TAP assignment
- firecracker_api: Client for the Firecracker control socket
- guest_ssh: Commands inside the guest over ssh
- process_supervisor: Starting, stopping and probing Firecracker processes
- network_manager: TAP devices, forward rules and host NAT
- network_audit: Read-only reconciliation of records against the host
- filesystem_manager: Kernel, rootfs and home volume images
- vm_discovery: VM discovery and state detection
- vm_lifecycle: VM lifecycle operations (init, build, up, down, destroy)
"""

__version__ = "2.0.0"
__author__ = "Firecracker Sandbox"

# Import main classes for convenience
from .config_manager import ConfigManager
from .exceptions import SandboxError
from .firecracker_api import FirecrackerAPI
from .network_audit import NetworkAuditor
from .network_manager import NetworkManager
from .process_supervisor import ProcessSupervisor
from .resource_allocator import ResourceAllocator
from .state_store import StateStore
from .vm_discovery import VMDiscovery
from .vm_lifecycle import VMLifecycle

__all__ = [
    'ConfigManager',
    'SandboxError',
    'FirecrackerAPI',
    'NetworkAuditor',
    'NetworkManager',
    'ProcessSupervisor',
    'ResourceAllocator',
    'StateStore',
    'VMDiscovery',
    'VMLifecycle'
]
