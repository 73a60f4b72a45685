#!/usr/bin/env python3
# ZFS Multi-Disk Installer
# Package initialization file

from .disk_manager import DiskManager
from .partition_manager import PartitionManager
from .zfs_manager import ZFSManager
from .boot_manager import BootManager
from .system_config import SystemConfig
from .installer import CleanupHandler, Installer

__version__ = "0.1.0"
