#!/usr/bin/env python3
# Config Module
# Installation settings and the per-run context shared by all components

import os
import secrets
import string
from dataclasses import dataclass, replace

from .models import GIB, MIB, Device, PartitionPlan, RedundancyMode

BOOT_POOL = "bpool"
ROOT_POOL = "rpool"
HOME_POOL = "hpool"
POOL_NAMES = (BOOT_POOL, ROOT_POOL, HOME_POOL)


@dataclass(frozen=True)
class InstallConfig:
    """Static settings; defaults follow the Kubuntu three-pool layout"""

    target_dir: str = "/mnt"
    temp_dir: str = ""
    state_file: str = "/var/lib/zfsinstall/state.json"
    log_dir: str = "./logs"

    distro: str = "ubuntu"
    release: str = "noble"
    mirror: str = "https://archive.ubuntu.com/ubuntu"
    hostname: str = "kubuntu-zfs"
    username: str = "kubu"

    # Partition sizes in MiB
    align_mib: int = 1
    efi_mib: int = 512
    boot_pool_mib: int = 2 * 1024
    root_pool_mib: int = 400 * 1024
    swap_mib: int = 8 * 1024
    min_home_mib: int = 16 * 1024
    gpt_backup_mib: int = 1

    compression: str = "lz4"
    encryption: bool = False
    firmware_mode: str = "uefi"
    min_memory_mb: int = 1024

    stable_path_dirs: tuple = ("/dev/disk/by-id",)
    partition_wait_timeout: float = 10.0
    partition_wait_interval: float = 0.5
    zed_cache_timeout: float = 10.0

    dry_run: bool = False
    assume_yes: bool = False

    @classmethod
    def from_env(cls, environ=None, **overrides):
        """Build a config from environment variables, then explicit overrides"""
        environ = os.environ if environ is None else environ
        values = {}
        env_map = {
            "ZFSINSTALL_TARGET": "target_dir",
            "ZFSINSTALL_STATE_FILE": "state_file",
            "ZFSINSTALL_LOG_DIR": "log_dir",
            "DEFAULT_USERNAME": "username",
            "DEFAULT_HOSTNAME": "hostname",
            "UBUNTU_VERSION": "release",
        }
        for env_key, attr in env_map.items():
            if environ.get(env_key):
                values[attr] = environ[env_key]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def work_dir(self):
        return self.temp_dir or f"/tmp/zfs-install-{os.getpid()}"

    @property
    def min_device_bytes(self):
        """Smallest disk that fits the layout with swap and a minimal home pool"""
        mib = (
            self.align_mib + self.efi_mib + self.boot_pool_mib + self.root_pool_mib
            + self.swap_mib + self.min_home_mib + self.gpt_backup_mib
        )
        return mib * MIB

    @property
    def min_device_gib(self):
        return -(-self.min_device_bytes // GIB)

    def target_path(self, *parts):
        return os.path.join(self.target_dir, *[p.lstrip("/") for p in parts])


def generate_install_id(length=6):
    """Short random identifier used in dataset names"""
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass(frozen=True)
class InstallContext:
    """
    Everything decided during validation, built once and passed along.

    Components never mutate it; phases that learn something new (partition
    plans, created pools) produce a new context with `evolve`.
    """

    config: InstallConfig
    devices: tuple = ()
    mode: RedundancyMode = RedundancyMode.STRIPE
    install_id: str = ""
    username: str = ""
    encryption: bool = False
    ashift: int = 12
    arc_max_mb: int = 0
    plans: tuple = ()

    def evolve(self, **changes):
        return replace(self, **changes)

    @property
    def system_name(self):
        return f"{self.config.distro}_{self.install_id}"

    @property
    def root_dataset(self):
        return f"{ROOT_POOL}/ROOT/{self.system_name}"

    @property
    def boot_dataset(self):
        return f"{BOOT_POOL}/BOOT/{self.system_name}"

    @property
    def home_dataset(self):
        return f"{HOME_POOL}/HOME/{self.system_name}"

    def to_state(self):
        """Phase-scoped fields persisted together with the checkpoint"""
        return {
            "devices": [d.to_dict() for d in self.devices],
            "mode": self.mode.value,
            "install_id": self.install_id,
            "username": self.username,
            "encryption": self.encryption,
            "ashift": self.ashift,
            "arc_max_mb": self.arc_max_mb,
            "plans": [p.to_dict() for p in self.plans],
        }

    @classmethod
    def from_state(cls, config, data):
        return cls(
            config=config,
            devices=tuple(Device.from_dict(d) for d in data.get("devices", [])),
            mode=RedundancyMode.parse(data.get("mode", "stripe")),
            install_id=data.get("install_id", ""),
            username=data.get("username", "") or config.username,
            encryption=bool(data.get("encryption", config.encryption)),
            ashift=int(data.get("ashift", 12)),
            arc_max_mb=int(data.get("arc_max_mb", 0)),
            plans=tuple(PartitionPlan.from_dict(p) for p in data.get("plans", [])),
        )
