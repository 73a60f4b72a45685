#!/usr/bin/env python3
# Disk Manager Module
# Discovers candidate disks, resolves persistent paths and handles disk selection

import json
import math
import os
import re

from InquirerPy import inquirer
from InquirerPy.base.control import Choice

from . import commands
from .errors import (
    CommandError,
    DeviceValidationError,
    NoSuitableDevicesError,
    ValidationError,
)
from .log import LoggerFactory
from .models import Device, RedundancyMode
from .vdev import available_modes, compose, is_mode_available, minimum_devices, recommended_mode

log = LoggerFactory.for_disks()

SKIP_NAME_PREFIXES = ("loop", "ram", "zram", "sr", "fd", "md", "dm-", "zd")
USB_DRIVERS = ("DRIVER=usb-storage", "DRIVER=uas", "DEVTYPE=usb")
PART_SUFFIX = re.compile(r"-part\d+$")

# Interface-specific by-id names win over generic identifiers
PREFERRED_ID_PREFIXES = ("nvme-", "ata-", "scsi-")
GENERIC_ID_PREFIXES = ("wwn-", "nvme-eui.", "nvme-nvme.", "scsi-0", "scsi-1", "scsi-3")

LINUX_FSTYPES = ("ext2", "ext3", "ext4", "btrfs", "xfs")
DISTRO_LABELS = (
    ("kubuntu", "Kubuntu Linux"),
    ("ubuntu", "Ubuntu Linux"),
    ("debian", "Debian Linux"),
    ("fedora", "Fedora Linux"),
    ("centos", "RedHat/CentOS Linux"),
    ("redhat", "RedHat/CentOS Linux"),
    ("rhel", "RedHat/CentOS Linux"),
    ("arch", "Arch Linux"),
    ("suse", "SUSE Linux"),
    ("mint", "Linux Mint"),
)


def _flag(value):
    if isinstance(value, bool):
        return value
    return str(value).strip() in ("1", "true", "True")


def _int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _walk(node):
    yield node
    for child in node.get("children") or []:
        yield from _walk(child)


def detect_ashift(devices):
    """Block alignment exponent matching the largest sector size, never below 4K"""
    sector = max(
        [max(d.logical_sector_size, d.physical_sector_size) for d in devices] or [4096]
    )
    return max(12, int(math.log2(sector)))


def detect_existing_os(node):
    """Best-effort guess at what currently lives on a disk, from lsblk data"""
    parts = list(_walk(node))[1:] or [node]

    ntfs = [p for p in parts if (p.get("fstype") or "").lower() == "ntfs"]
    for part in ntfs:
        label = (part.get("label") or "").lower()
        if "windows" in label or label == "system reserved":
            return "Windows"
    if ntfs:
        return "NTFS filesystem"

    linux = [p for p in parts if (p.get("fstype") or "").lower() in LINUX_FSTYPES]
    for part in linux:
        label = (part.get("label") or "").lower()
        for needle, name in DISTRO_LABELS:
            if needle in label:
                return name
    if linux:
        return "Linux"

    if any((p.get("fstype") or "") == "zfs_member" for p in parts):
        return "ZFS pool"
    return ""


class DiskManager:
    def __init__(self, config, runner, sys_block="/sys/block", proc_mounts="/proc/mounts",
                 mdstat="/proc/mdstat"):
        self.config = config
        self.runner = runner
        self.sys_block = sys_block
        self.proc_mounts = proc_mounts
        self.mdstat = mdstat

    # -- inventory ---------------------------------------------------------

    def get_block_devices(self):
        """Raw lsblk tree"""
        result = self.runner.query(commands.lsblk_json())
        if not result.ok:
            raise ValidationError(f"lsblk failed: {result.stderr.strip()}")
        try:
            return json.loads(result.stdout or "{}").get("blockdevices", [])
        except ValueError as e:
            raise ValidationError(f"Cannot parse lsblk output: {e}") from e

    def discover(self):
        """
        Return the disks that may be used for installation.

        Loop/RAM devices, removable and USB disks, anything mounted, md array
        members and disks backing an imported pool are dropped. Every remaining
        disk must have a persistent by-id path; disks without one are skipped
        because the pools would otherwise reference an unstable name.
        """
        log.info("Discovering available disks...")
        mounted = self._mounted_sources()
        md_members = self._md_members()
        pool_members = self._active_pool_members()
        min_bytes = self.config.min_device_bytes

        found = []
        seen = set()
        for node in self.get_block_devices():
            name = node.get("name", "")
            path = node.get("path") or f"/dev/{name}"
            if node.get("type") != "disk" or name.startswith(SKIP_NAME_PREFIXES):
                continue

            real = os.path.realpath(path)
            if real in seen:
                continue
            seen.add(real)

            reason = self._exclusion_reason(node, mounted, md_members, pool_members)
            if reason:
                log.info(f"Skipping {path}: {reason}")
                continue

            size = _int(node.get("size"))
            if size < min_bytes:
                log.warning(
                    f"Skipping {path}: too small ({size // 2**30} GB < "
                    f"{self.config.min_device_gib} GB minimum)"
                )
                continue

            stable_path = self.resolve_stable_path(path)
            if not stable_path:
                log.warning(f"Skipping {path}: no persistent /dev/disk/by-id path found")
                continue

            try:
                existing_os = detect_existing_os(node)
            except (KeyError, TypeError, AttributeError) as e:
                log.warning(f"OS detection failed for {path}: {e}")
                existing_os = ""

            device = Device(
                path=path,
                stable_path=stable_path,
                size_bytes=size,
                logical_sector_size=_int(node.get("log-sec"), 512),
                physical_sector_size=_int(node.get("phy-sec"), 512),
                model=(node.get("model") or "").strip(),
                transport=node.get("tran") or "",
                removable=False,
                existing_os=existing_os,
            )
            found.append(device)
            log.info(f"Found disk: {device.label()}")
            log.debug(f"  By-ID path: {stable_path}")

        if not found:
            raise NoSuitableDevicesError(
                f"No suitable disks found for installation "
                f"(minimum {self.config.min_device_gib} GB required)"
            )
        return found

    def _exclusion_reason(self, node, mounted, md_members, pool_members):
        name = node.get("name", "")
        if _flag(node.get("rm")):
            return "removable device"
        if (node.get("tran") or "").lower() == "usb" or self._is_usb(name):
            return "USB-attached device"
        for item in _walk(node):
            item_path = item.get("path") or f"/dev/{item.get('name', '')}"
            if item.get("mountpoint") or item_path in mounted:
                return "currently mounted"
            if (item.get("fstype") or "") == "linux_raid_member" or item.get("name") in md_members:
                return "part of RAID array"
            if os.path.realpath(item_path) in pool_members:
                return "member of an imported ZFS pool"
        return ""

    def _is_usb(self, name):
        """sysfs check for USB transport that lsblk may not report"""
        block = os.path.join(self.sys_block, name)
        if not os.path.exists(block):
            return False
        if "/usb" in os.path.realpath(block):
            return True
        uevent = os.path.join(block, "device", "uevent")
        try:
            with open(uevent, "r") as f:
                content = f.read()
        except OSError:
            return False
        return any(marker in content for marker in USB_DRIVERS)

    def _mounted_sources(self):
        sources = set()
        try:
            with open(self.proc_mounts, "r") as f:
                for line in f:
                    fields = line.split()
                    if fields and fields[0].startswith("/dev/"):
                        sources.add(fields[0])
                        sources.add(os.path.realpath(fields[0]))
        except OSError:
            log.debug(f"Cannot read {self.proc_mounts}")
        return sources

    def _md_members(self):
        members = set()
        try:
            with open(self.mdstat, "r") as f:
                for line in f:
                    if " : " not in line or not line.startswith("md"):
                        continue
                    for token in line.split(":", 1)[1].split():
                        match = re.match(r"^([a-z0-9]+)\[\d+\]", token)
                        if match:
                            members.add(match.group(1))
        except OSError:
            pass
        return members

    def _active_pool_members(self):
        result = self.runner.query(["zpool", "list", "-v", "-H", "-P"])
        members = set()
        if not result.ok:
            return members
        for line in result.stdout.splitlines():
            token = line.strip().split("\t")[0].strip()
            if token.startswith("/dev/"):
                members.add(os.path.realpath(token))
        return members

    def resolve_stable_path(self, device_path):
        """Find a persistent by-id link for a whole disk, preferring nvme-/ata-/scsi- names"""
        target = os.path.realpath(device_path)
        candidates = []
        for directory in self.config.stable_path_dirs:
            try:
                entries = sorted(os.listdir(directory))
            except OSError:
                continue
            for entry in entries:
                link = os.path.join(directory, entry)
                if PART_SUFFIX.search(entry) or not os.path.islink(link):
                    continue
                if os.path.realpath(link) == target:
                    candidates.append(link)

        if not candidates:
            return None
        candidates.sort(key=lambda p: (self._id_rank(os.path.basename(p)), p))
        return candidates[0]

    @staticmethod
    def _id_rank(name):
        if name.startswith(GENERIC_ID_PREFIXES):
            return 2
        if name.startswith(PREFERRED_ID_PREFIXES):
            return 0
        return 1

    def check_health(self, device):
        """SMART / NVMe health check; only ever warns"""
        real = os.path.realpath(device.path)
        try:
            if device.is_nvme:
                result = self.runner.query(commands.nvme_smart_log(real))
                for line in result.stdout.splitlines():
                    if line.strip().startswith("critical_warning"):
                        value = line.split(":", 1)[1].strip()
                        if value not in ("0", "0x0"):
                            log.warning(f"NVMe disk {device.path} shows critical warning: {value}")
                        return value
            else:
                result = self.runner.query(commands.smartctl_health(real))
                for line in result.stdout.splitlines():
                    if "overall-health" in line:
                        value = line.rsplit(":", 1)[1].strip()
                        if value != "PASSED":
                            log.warning(f"SMART health check failed for {device.path}: {value}")
                        return value
        except CommandError as e:
            log.warning(f"Health check unavailable for {device.path}: {e}")
        return None

    # -- selection ---------------------------------------------------------

    def resolve_selection(self, requested, available):
        """Map --disks arguments (kernel or by-id paths) onto discovered devices"""
        by_real = {os.path.realpath(d.path): d for d in available}
        selected = []
        for path in requested:
            device = by_real.get(os.path.realpath(path))
            if device is None:
                raise DeviceValidationError(path, "not an eligible disk (see log for exclusions)")
            if device in selected:
                raise DeviceValidationError(path, "selected more than once")
            selected.append(device)
        return selected

    def validate_selection(self, devices, mode):
        """Pre-destructive check of the raw devices against the redundancy mode"""
        mode = RedundancyMode.parse(mode)
        if len({d.stable_path for d in devices}) != len(devices):
            raise ValidationError("The same disk was selected more than once")
        compose(mode, [(d.stable_path, d.size_bytes) for d in devices])
        for device in devices:
            self.check_health(device)
        return devices

    def select_mode(self, available):
        """Interactive redundancy mode selection"""
        count = len(available)
        recommended = recommended_mode(count)
        choices = []
        for mode in available_modes(count):
            name = mode.description
            if mode is recommended:
                name += " [RECOMMENDED]"
            choices.append(Choice(mode, name=name))
        return inquirer.select(
            message=f"ZFS array configuration ({count} disks available):",
            choices=choices,
            default=recommended,
        ).execute()

    def select_devices(self, available, mode):
        """Interactive disk selection; auto-selects when the count matches exactly"""
        mode = RedundancyMode.parse(mode)
        required = minimum_devices(mode)
        print(f"\nYou need {required} disks for this array type.\n")

        if len(available) == required:
            print(f"Exact match detected - auto-selecting all {required} disks for {mode.value}:")
            for device in available:
                print(f"  * {device.label()}")
            return list(available)

        selected = inquirer.checkbox(
            message="Choose disks (space to select):",
            choices=[Choice(d, name=d.label()) for d in available],
            validate=lambda result: is_mode_available(mode, len(result)),
            invalid_message=f"{mode.value} needs at least {required} disks",
        ).execute()
        return list(selected)
