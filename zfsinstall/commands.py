#!/usr/bin/env python3
# Commands Module
# Argument-list builders for every external tool the installer drives


def _props(flag, properties):
    args = []
    for key, value in properties.items():
        args.extend([flag, f"{key}={value}"])
    return args


# --- Partitioning -----------------------------------------------------------

def sgdisk_zap(disk):
    return ["sgdisk", "--zap-all", disk]


def sgdisk_clear(disk):
    return ["sgdisk", "--clear", disk]


def sgdisk_new(disk, number, start_mib, size_mib, type_code, label):
    """Create partition `number` at an explicit MiB offset with an explicit size"""
    return [
        "sgdisk",
        f"-n{number}:{start_mib}M:+{size_mib}M",
        f"-t{number}:{type_code}",
        f"-c{number}:{label}",
        disk,
    ]


def wipefs(disk):
    return ["wipefs", "-af", disk]


def zpool_labelclear(disk):
    return ["zpool", "labelclear", "-f", disk]


def partprobe(disk):
    return ["partprobe", disk]


def udev_trigger_block():
    return ["udevadm", "trigger", "--subsystem-match=block", "--action=change"]


def udev_trigger_misc():
    return ["udevadm", "trigger", "--subsystem-match=misc", "--action=add"]


def udev_settle(timeout=10):
    return ["udevadm", "settle", f"--timeout={timeout}"]


# --- Inventory --------------------------------------------------------------

LSBLK_COLUMNS = "NAME,PATH,TYPE,SIZE,MODEL,RM,TRAN,LOG-SEC,PHY-SEC,MOUNTPOINT,FSTYPE,LABEL"


def lsblk_json(device=None):
    argv = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device:
        argv.append(device)
    return argv


def blkid_value(tag, device):
    return ["blkid", "-s", tag, "-o", "value", device]


def smartctl_health(device):
    return ["smartctl", "-H", device]


def nvme_smart_log(device):
    return ["nvme", "smart-log", device]


# --- ZFS --------------------------------------------------------------------

def modprobe_zfs():
    return ["modprobe", "zfs"]


def zpool_create(name, vdev, pool_options=None, fs_options=None, altroot=None, force=True):
    """
    zpool create with -o pool properties, -O root dataset properties,
    an optional -R altroot, and the vdev arguments last.
    """
    argv = ["zpool", "create"]
    if force:
        argv.append("-f")
    argv.extend(_props("-o", pool_options or {}))
    argv.extend(_props("-O", fs_options or {}))
    if altroot:
        argv.extend(["-R", altroot])
    argv.append(name)
    argv.extend(vdev)
    return argv


def zpool_list_names(name=None):
    argv = ["zpool", "list", "-H", "-o", "name"]
    if name:
        argv.append(name)
    return argv


def zpool_import_scan(search_dir="/dev/disk/by-id"):
    return ["zpool", "import", "-d", search_dir]


def zpool_import(name, altroot=None, search_dir="/dev/disk/by-id", mount=False):
    argv = ["zpool", "import", "-d", search_dir, "-f"]
    if not mount:
        argv.append("-N")
    if altroot:
        argv.extend(["-R", altroot])
    argv.append(name)
    return argv


def zpool_export(name):
    return ["zpool", "export", name]


def zfs_create(name, properties=None):
    argv = ["zfs", "create"]
    argv.extend(_props("-o", properties or {}))
    argv.append(name)
    return argv


def zfs_get(properties, name):
    return ["zfs", "get", ",".join(properties), name]


def zfs_set(prop, value, name):
    return ["zfs", "set", f"{prop}={value}", name]


def zfs_mount(name=None):
    return ["zfs", "mount", name] if name else ["zfs", "mount", "-a"]


def zfs_load_key(name):
    return ["zfs", "load-key", name]


def zfs_unmount_all():
    return ["zfs", "umount", "-a"]


# --- Filesystems and mounts -------------------------------------------------

def mkfs_vfat(device, label, logical_sector_size=512):
    """FAT32 for an EFI system partition; 4K-native disks need one sector per cluster"""
    argv = ["mkfs.vfat"]
    if logical_sector_size == 4096:
        argv.extend(["-s", "1"])
    argv.extend(["-F", "32", "-n", label, device])
    return argv


def mkswap(device, label="swap1"):
    return ["mkswap", "-f", "-L", label, device]


def mount(device, target, fstype=None, options=None):
    argv = ["mount"]
    if fstype:
        argv.extend(["-t", fstype])
    if options:
        argv.extend(["-o", options])
    argv.extend([device, target])
    return argv


def umount(target, recursive=False, lazy=False):
    argv = ["umount"]
    if recursive:
        argv.append("-R")
    if lazy:
        argv.append("-l")
    argv.append(target)
    return argv


def mountpoint_check(path):
    return ["mountpoint", "-q", path]


# --- Target system ----------------------------------------------------------

def chroot(target, *argv):
    return ["chroot", target] + list(argv)


def grub_install(efi_directory, bootloader_id, target="x86_64-efi"):
    return [
        "grub-install",
        f"--target={target}",
        f"--efi-directory={efi_directory}",
        f"--bootloader-id={bootloader_id}",
        "--recheck",
        "--no-floppy",
    ]


def update_grub():
    return ["update-grub"]


def update_initramfs():
    return ["update-initramfs", "-c", "-k", "all"]


def debootstrap(release, target, mirror, cache_dir=None):
    argv = ["debootstrap", "--arch=amd64"]
    if cache_dir:
        argv.append(f"--cache-dir={cache_dir}")
    argv.extend([release, target, mirror])
    return argv


def zed_foreground():
    return ["zed", "-F"]


def bind_mount(source, target):
    return ["mount", "--make-private", "--rbind", source, target]
