#!/usr/bin/env python3
# Models Module
# Devices, partition plans and redundancy groups

from dataclasses import dataclass, field
from enum import Enum

MIB = 1024 * 1024
GIB = 1024 * MIB


@dataclass(frozen=True)
class Device:
    """A whole-disk block device eligible for installation"""

    path: str
    stable_path: str
    size_bytes: int
    logical_sector_size: int = 512
    physical_sector_size: int = 512
    model: str = ""
    transport: str = ""
    removable: bool = False
    existing_os: str = ""

    @property
    def size_gib(self):
        return self.size_bytes // GIB

    @property
    def is_nvme(self):
        return self.transport == "nvme" or "nvme" in self.path

    def label(self):
        text = f"{self.path} - {self.size_gib}GB - {self.model or 'Unknown'}"
        if self.existing_os:
            text += f" ({self.existing_os} detected)"
        return text

    def to_dict(self):
        return {
            "path": self.path,
            "stable_path": self.stable_path,
            "size_bytes": self.size_bytes,
            "logical_sector_size": self.logical_sector_size,
            "physical_sector_size": self.physical_sector_size,
            "model": self.model,
            "transport": self.transport,
            "removable": self.removable,
            "existing_os": self.existing_os,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(**data)


class PartitionRole(Enum):
    """Partition roles with their fixed GPT number, type code and label"""

    EFI = (1, "EF00", "EFI")
    BOOT_POOL = (2, "BE00", "bpool")
    ROOT_POOL = (3, "BF00", "rpool")
    HOME_POOL = (4, "BF00", "hpool")
    SWAP = (5, "8200", "swap")

    def __init__(self, number, type_code, gpt_label):
        self.number = number
        self.type_code = type_code
        self.gpt_label = gpt_label


# Pool name -> partition role backing it
POOL_ROLES = {
    "bpool": PartitionRole.BOOT_POOL,
    "rpool": PartitionRole.ROOT_POOL,
    "hpool": PartitionRole.HOME_POOL,
}


@dataclass(frozen=True)
class PlannedPartition:
    role: PartitionRole
    start_mib: int
    size_mib: int
    node: str
    logical_sector_size: int = 512

    @property
    def number(self):
        return self.role.number

    @property
    def end_mib(self):
        return self.start_mib + self.size_mib

    @property
    def size_bytes(self):
        return self.size_mib * MIB

    def to_dict(self):
        return {
            "role": self.role.name,
            "start_mib": self.start_mib,
            "size_mib": self.size_mib,
            "node": self.node,
            "logical_sector_size": self.logical_sector_size,
        }

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["role"] = PartitionRole[data["role"]]
        return cls(**data)


@dataclass(frozen=True)
class PartitionPlan:
    """Immutable partition layout of one device"""

    device: Device
    ordinal: int
    partitions: tuple = ()
    usable_mib: int = 0

    def get(self, role):
        for part in self.partitions:
            if part.role is role:
                return part
        return None

    def __getitem__(self, role):
        part = self.get(role)
        if part is None:
            raise KeyError(f"{self.device.stable_path} has no {role.name} partition")
        return part

    @property
    def has_swap(self):
        return self.get(PartitionRole.SWAP) is not None

    @property
    def allocated_mib(self):
        return sum(p.size_mib for p in self.partitions)

    def nodes(self):
        return [p.node for p in self.partitions]

    def to_dict(self):
        return {
            "device": self.device.to_dict(),
            "ordinal": self.ordinal,
            "usable_mib": self.usable_mib,
            "partitions": [p.to_dict() for p in self.partitions],
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            device=Device.from_dict(data["device"]),
            ordinal=data["ordinal"],
            usable_mib=data.get("usable_mib", 0),
            partitions=tuple(PlannedPartition.from_dict(p) for p in data["partitions"]),
        )


class RedundancyMode(Enum):
    STRIPE = "stripe"
    MIRROR = "mirror"
    STRIPED_MIRROR = "striped-mirror"
    RAIDZ1 = "raidz1"
    RAIDZ2 = "raidz2"
    RAIDZ3 = "raidz3"

    @classmethod
    def parse(cls, value):
        """Accept mode names as well as the raidN aliases used on the command line"""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        if key.startswith("zfs-"):
            key = key[4:]
        key = MODE_ALIASES.get(key, key)
        for mode in cls:
            if mode.value == key:
                return mode
        raise ValueError(f"Unknown redundancy mode: {value}")

    @property
    def description(self):
        return MODE_DESCRIPTIONS[self]


MODE_ALIASES = {
    "raid0": "stripe",
    "single": "stripe",
    "raid1": "mirror",
    "raid10": "striped-mirror",
    "striped_mirror": "striped-mirror",
}

MODE_DESCRIPTIONS = {
    RedundancyMode.STRIPE: "Stripe (no redundancy, 1+ disks)",
    RedundancyMode.MIRROR: "Mirror (1 disk failure tolerance, 2+ disks)",
    RedundancyMode.STRIPED_MIRROR: "Striped mirrors (1 disk per mirror, 4+ even disks)",
    RedundancyMode.RAIDZ1: "RAIDZ1 (single parity, 3+ disks)",
    RedundancyMode.RAIDZ2: "RAIDZ2 (double parity, 4+ disks)",
    RedundancyMode.RAIDZ3: "RAIDZ3 (triple parity, 5+ disks)",
}


@dataclass(frozen=True)
class Member:
    path: str
    size_bytes: int


@dataclass(frozen=True)
class RedundancyGroup:
    """Same-role partitions of every selected device plus the redundancy mode"""

    role: PartitionRole
    mode: RedundancyMode
    members: tuple = ()

    @classmethod
    def from_plans(cls, role, mode, plans):
        members = tuple(
            Member(plan[role].node, plan[role].size_bytes) for plan in plans
        )
        return cls(role=role, mode=mode, members=members)

    @property
    def paths(self):
        return [m.path for m in self.members]


@dataclass(frozen=True)
class VdevSpec:
    """Validated vdev arguments for zpool create"""

    mode: RedundancyMode
    args: tuple = field(default_factory=tuple)

    def __iter__(self):
        return iter(self.args)

    def __str__(self):
        return " ".join(self.args)
