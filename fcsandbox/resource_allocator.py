#!/usr/bin/env python3

from .exceptions import InvalidName, ResourceExhausted


TAP_PREFIX = "tap-"

# Linux interface names are at most 15 bytes (IFNAMSIZ - 1)
MAX_IFNAME_LEN = 15

SUBNET_INDEXES = range(0, 256)
SHARED_HOSTS = range(2, 255)


def tap_name_for(vm_name):
    """TAP device name derived from the VM name"""
    return f"{TAP_PREFIX}{vm_name}"


class ResourceAllocator:
    """Assigns guest IP, gateway and TAP device to VMs

    In ``subnet`` mode every VM gets its own /24: index ``i`` maps to
    ``<prefix>.<i>.2`` for the guest and ``<prefix>.<i>.1`` for the gateway
    on its TAP device. In ``shared`` mode all VMs share ``<prefix>.0.0/24``
    with gateway ``.1``.

    The lowest free slot always wins. Slots are compared against every
    existing record, not just running ones, so an address handed out at
    init is never reused before that VM is destroyed.
    """

    def __init__(self, mode="subnet", subnet_prefix="172.16"):
        if mode not in ("subnet", "shared"):
            raise ValueError(f"Unknown network mode: {mode}")
        self.mode = mode
        self.subnet_prefix = subnet_prefix

    def candidates(self):
        """Yield (guest_ip, gateway_ip, subnet_index) in allocation order"""
        if self.mode == "subnet":
            for index in SUBNET_INDEXES:
                yield (f"{self.subnet_prefix}.{index}.2", f"{self.subnet_prefix}.{index}.1", index)
        else:
            gateway = f"{self.subnet_prefix}.0.1"
            for host in SHARED_HOSTS:
                yield (f"{self.subnet_prefix}.0.{host}", gateway, None)

    def subnet_index_of(self, address):
        """Third octet of an address inside the prefix, else None"""
        if not address or not address.startswith(self.subnet_prefix + "."):
            return None
        octets = address.split(".")
        if len(octets) != 4 or not octets[2].isdigit():
            return None
        index = int(octets[2])
        return index if index in SUBNET_INDEXES else None

    def assign_network(self, existing_records):
        """Pick the lowest unused slot

        Args:
            existing_records: Iterable of VM record dicts

        Returns:
            tuple: (guest_ip, gateway_ip, subnet_index); subnet_index is None in shared mode
        """
        used_ips = set()
        used_indexes = set()
        for record in existing_records:
            if record.get('guest_ip'):
                used_ips.add(record['guest_ip'])
            if record.get('subnet_index') is not None:
                used_indexes.add(record['subnet_index'])
            # Records without an index (shared mode, shell tool) still occupy their /24
            for field in ('guest_ip', 'gateway_ip'):
                index = self.subnet_index_of(record.get(field))
                if index is not None:
                    used_indexes.add(index)

        for guest_ip, gateway_ip, index in self.candidates():
            if guest_ip in used_ips:
                continue
            if index is not None and index in used_indexes:
                continue
            return guest_ip, gateway_ip, index

        if self.mode == "subnet":
            raise ResourceExhausted(
                f"No free subnet left in {self.subnet_prefix}.0.0-{self.subnet_prefix}.255.0 "
                f"({len(SUBNET_INDEXES)} VMs assigned)"
            )
        raise ResourceExhausted(
            f"No available IP addresses in range {self.subnet_prefix}.0.2-254"
        )

    def allocate(self, store, name):
        """Assign a slot to ``name`` and persist it

        Must run under the allocation lock so two invocations cannot
        claim the same slot.
        """
        # A corrupt record could hide an address in use, so refuse to guess
        records, _ = store.load_all(tolerant=False)
        others = [record for record in records if record['name'] != name]
        guest_ip, gateway_ip, index = self.assign_network(others)
        store.write_network(name, guest_ip, gateway_ip, index)
        return guest_ip, gateway_ip, index

    def assign_device(self, store, name, host_iface):
        """Record the TAP device and uplink interface used by ``name``"""
        tap_name = tap_name_for(name)
        store.write_tap_name(name, tap_name)
        if host_iface:
            store.write_host_iface(name, host_iface)
        return tap_name

    @staticmethod
    def validate_tap_name(vm_name):
        tap_name = tap_name_for(vm_name)
        if len(tap_name) > MAX_IFNAME_LEN:
            raise InvalidName(
                f"VM name '{vm_name}' is too long: its TAP device '{tap_name}' "
                f"exceeds {MAX_IFNAME_LEN} characters (use at most "
                f"{MAX_IFNAME_LEN - len(TAP_PREFIX)} characters)"
            )
        return tap_name
