#!/usr/bin/env python3

import argparse
import sys

from fcsandbox import __version__
from fcsandbox.config_manager import ConfigManager
from fcsandbox.exceptions import SandboxError
from fcsandbox.vm_lifecycle import VMLifecycle


COMMANDS = ["init", "build", "up", "console", "down", "ssh", "status",
            "list", "doctor", "destroy", "setup", "cleanup"]

# Commands that operate on the whole host rather than one VM
HOST_COMMANDS = ["list", "doctor", "setup", "cleanup"]


def show_help_and_exit():
    """Show help message with examples and exit"""
    help_text = f"""
Firecracker Sandbox v{__version__} - Run isolated development VMs on Firecracker

USAGE:
    vm COMMAND [NAME] [OPTIONS]

COMMANDS:
    init NAME       Create a VM: assign its IP and write config.env
    build NAME      Build disk images, TAP device and forward rule (sudo)
    up NAME         Start the VM in the background and wait for SSH
    console NAME    Start the VM in the foreground with its serial console
    down NAME       Stop the VM (graceful, then SIGTERM, then SIGKILL)
    ssh NAME [...]  Open an SSH session; extra arguments are passed to ssh
    status NAME     Show details of one VM
    list            List all VMs with their state
    doctor          Check VM records against TAP devices, rules and processes
    destroy NAME    Stop the VM and delete it with its TAP device (sudo)
    setup           Prepare the host: directories, IP forwarding, NAT (sudo)
    cleanup         Destroy every VM and remove the NAT rules (sudo)

OPTIONAL PARAMETERS:
    --config        Path to configuration file (default: /etc/firecracker-sandbox.env,
                    or $FCSANDBOX_CONFIG)
    --force         Skip confirmation and tolerate missing resources (destroy, cleanup)
    --help, -h      Show this help message
    --version, -v   Show version information

EXAMPLE USAGE:
    # One-time host preparation
    sudo vm setup

    # Create, build and start a VM
    vm init dev
    sudo vm build dev
    vm up dev

    # Work inside it, forwarding a port
    vm ssh dev -L 8080:localhost:8080

    # Find leaked TAP devices, rules and processes
    vm doctor

    # Remove a VM without prompting
    sudo vm destroy dev --force

PREREQUISITES:
    - Root/sudo access for build, destroy, setup and cleanup
    - ip, iptables, pgrep, ssh, mkfs.ext4 and resize2fs on the host
    - Python dependencies: pip install requests requests-unixsocket
"""
    print(help_text)
    sys.exit(0)


def _print_table(headers, table_data):
    widths = [len(h) for h in headers]
    for row in table_data:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(str(cell)))

    print(' | '.join(h.ljust(w) for h, w in zip(headers, widths)))
    print('-+-'.join('-' * w for w in widths))
    for row in table_data:
        print(' | '.join(str(cell).ljust(w) for cell, w in zip(row, widths)))


def format_vms_table(all_vms):
    """Format VM information as a table for CLI display"""
    if not all_vms:
        print("No VMs found. Create one with: vm init <name>")
        return

    table_data = []
    for vm in all_vms:
        table_data.append([
            vm['name'],
            vm['state'],
            vm['ip'] or 'N/A',
            vm['pid'] or '-',
            vm['uptime'] or '-'
        ])
    _print_table(['VM Name', 'State', 'IP', 'PID', 'Uptime'], table_data)


def format_status(status):
    """Print the status of one VM"""
    print(f"VM: {status['name']}")
    print(f"  State:      {status['state']}")
    print(f"  IP:         {status['guest_ip'] or 'N/A'} (gateway {status['gateway_ip'] or 'N/A'})")
    print(f"  User:       {status['user'] or 'N/A'}")
    print(f"  Resources:  {status['cpus']} vCPUs, {status['memory']} MiB")
    tap = status['tap_name'] or 'N/A'
    if status['tap_name']:
        tap += " (present)" if status['tap_present'] else " (missing)"
    print(f"  TAP:        {tap} via {status['host_iface'] or 'N/A'}")
    print(f"  Rootfs:     {status['rootfs'] or 'not built'}")
    print(f"  Home:       {status['home'] or 'not built'}")
    if status['built_at']:
        print(f"  Built:      {status['built_at']}")

    if status['state'] == 'running':
        print(f"  PID:        {status['pid']}")
        print(f"  Uptime:     {status['uptime']}")
        print(f"  Memory RSS: {status['memory_rss'] or 'N/A'}")
        machine = (status['machine_config'] or {}).get('machine-config')
        if machine:
            print(f"  Live:       {machine.get('vcpu_count')} vCPUs, {machine.get('mem_size_mib')} MiB")
        if status.get('vmm_version'):
            print(f"  Firecracker: v{status['vmm_version']}")
    elif status['state'] == 'crashed':
        print(f"  PID:        {status['pid']} (not running, run: vm down {status['name']})")

    print(f"  Console:    {status['console_log']}")


def format_findings(findings, firewall_checked=True):
    """Print doctor findings grouped by category"""
    if not firewall_checked:
        print("Note: firewall rules could not be read (run with sudo to check them)")

    if not findings:
        print("✓ No problems found")
        return

    print(f"Found {len(findings)} problem(s):")
    for category in ['stale', 'orphaned', 'missing', 'inconsistent']:
        group = [f for f in findings if f['category'] == category]
        if not group:
            continue
        print()
        print(f"{category.upper()}:")
        for item in group:
            print(f"  [{item['severity']}] {item['message']}")
            print(f"      fix: {item['remediation']}")


def create_lifecycle(config_file=None):
    return VMLifecycle(ConfigManager(config_file=config_file))


def run(args, extra_args):
    """Dispatch a parsed command; returns the exit code"""
    vm_lifecycle = create_lifecycle(args.config)

    if args.command == "list":
        format_vms_table(vm_lifecycle.list_vms())
        return 0

    elif args.command == "doctor":
        findings = vm_lifecycle.doctor()
        format_findings(findings, vm_lifecycle.auditor.firewall_checked)
        return 1 if findings else 0

    elif args.command == "setup":
        vm_lifecycle.setup_host()
        return 0

    elif args.command == "cleanup":
        vm_lifecycle.cleanup_host(force=args.force)
        return 0

    elif args.command == "init":
        vm_lifecycle.init_vm(args.name)

    elif args.command == "build":
        vm_lifecycle.build_vm(args.name)

    elif args.command == "up":
        vm_lifecycle.up_vm(args.name)

    elif args.command == "console":
        returncode = vm_lifecycle.console_vm(args.name)
        if returncode is not None and returncode < 0:
            return 130
        return returncode or 0

    elif args.command == "down":
        vm_lifecycle.down_vm(args.name)

    elif args.command == "ssh":
        return vm_lifecycle.ssh_vm(args.name, extra_args)

    elif args.command == "status":
        format_status(vm_lifecycle.status_vm(args.name))

    elif args.command == "destroy":
        vm_lifecycle.destroy_vm(args.name, force=args.force)

    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="vm", description="Manage Firecracker sandbox VMs", add_help=False)
    parser.add_argument("command", nargs="?", choices=COMMANDS, help="Command to perform")
    parser.add_argument("name", nargs="?", help="Name of the VM")
    parser.add_argument("--version", "-v", action="version", version=f"Firecracker Sandbox {__version__}")
    parser.add_argument("--config", help="Path to configuration file (default: /etc/firecracker-sandbox.env)")
    parser.add_argument("--force", action="store_true", help="Skip confirmation and tolerate missing resources")
    parser.add_argument("--help", "-h", action="store_true", help="Show help message")

    args, extra_args = parser.parse_known_args(argv)

    # Show help if requested or no command specified
    if args.help or not args.command:
        show_help_and_exit()

    if extra_args and extra_args[0] == "--":
        extra_args = extra_args[1:]
    if extra_args and args.command != "ssh":
        parser.error(f"unrecognized arguments: {' '.join(extra_args)}")

    if args.command not in HOST_COMMANDS and not args.name:
        print(f"Error: VM name required. Usage: vm {args.command} <name>", file=sys.stderr)
        sys.exit(1)

    try:
        code = run(args, extra_args)
    except SandboxError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)

    sys.exit(code)


if __name__ == "__main__":
    main()
