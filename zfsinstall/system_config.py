#!/usr/bin/env python3
# System Config Module
# Base system installation and ZFS-related configuration of the target

import os
import shutil
import time

from . import commands
from .config import POOL_NAMES
from .errors import CommandError, DestructiveOperationError, RequirementsError
from .log import LoggerFactory
from .models import PartitionRole
from .runner import wait_until

log = LoggerFactory.for_system()

REQUIRED_COMMANDS = (
    "zpool", "zfs", "sgdisk", "wipefs", "partprobe", "udevadm", "mkfs.vfat",
    "blkid", "lsblk", "mount", "umount", "chroot", "debootstrap", "mkswap",
)

TARGET_PACKAGES = (
    "linux-generic",
    "zfsutils-linux",
    "zfs-initramfs",
    "zfs-zed",
    "grub-efi-amd64",
    "grub-efi-amd64-signed",
    "shim-signed",
    "dosfstools",
)

VIRTUAL_FILESYSTEMS = ("dev", "proc", "sys")


def calculate_arc_max(mem_mb):
    """ARC ceiling in MiB for a machine with `mem_mb` MiB of RAM"""
    if mem_mb <= 16384:
        arc_max_mb = max(mem_mb // 4, 256)
    elif mem_mb <= 32768:
        arc_max_mb = mem_mb // 5
    else:
        arc_max_mb = 8192

    # Leave at least 1 GiB for the system
    max_allowed = mem_mb - 1024
    if arc_max_mb > max_allowed and max_allowed > 256:
        arc_max_mb = max_allowed
    return arc_max_mb


def read_memory_mb(meminfo="/proc/meminfo"):
    with open(meminfo, "r") as f:
        for line in f:
            if line.startswith("MemTotal:"):
                return int(line.split()[1]) // 1024
    raise RequirementsError(f"MemTotal missing from {meminfo}")


def check_requirements(config, geteuid=os.geteuid, which=shutil.which,
                       efi_dir="/sys/firmware/efi", meminfo="/proc/meminfo"):
    """Root, UEFI firmware, enough memory and every external tool on PATH"""
    if geteuid() != 0:
        raise RequirementsError("This installer must be run with root privileges")
    if config.firmware_mode == "uefi" and not os.path.isdir(efi_dir):
        raise RequirementsError("System is not booted in UEFI mode")

    mem_mb = read_memory_mb(meminfo)
    if mem_mb < config.min_memory_mb:
        raise RequirementsError(
            f"At least {config.min_memory_mb} MB of RAM is required, found {mem_mb} MB"
        )

    missing = [cmd for cmd in REQUIRED_COMMANDS if which(cmd) is None]
    if missing:
        raise RequirementsError(f"Required commands not found: {', '.join(missing)}")
    log.info(f"System requirements met ({mem_mb} MB RAM)")
    return mem_mb


class SystemConfig:
    def __init__(self, context, runner, sleep=time.sleep, clock=time.monotonic):
        self.context = context
        self.config = context.config
        self.runner = runner
        self.sleep = sleep
        self.clock = clock

    def _write(self, relative, content, mode="w"):
        path = self.config.target_path(relative)
        if self.runner.dry_run:
            log.info(f"DRY-RUN: write {path}")
            return path
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, mode) as f:
            f.write(content)
        log.debug(f"Wrote {path}")
        return path

    def _chroot(self, *argv):
        return commands.chroot(self.config.target_dir, *argv)

    # -- base system -------------------------------------------------------

    def install_base_system(self):
        """debootstrap into the mounted root dataset"""
        target = self.config.target_dir
        print(f"\nInstalling {self.config.distro} {self.config.release} base system into {target}...")
        if not self.runner.dry_run and not self.runner.succeeds(commands.mountpoint_check(target)):
            raise DestructiveOperationError(f"Root dataset is not mounted at {target}")
        cache_dir = os.path.join(self.config.work_dir, "debs")
        if not self.runner.dry_run:
            os.makedirs(cache_dir, exist_ok=True)
        try:
            self.runner.run(
                commands.debootstrap(self.config.release, target, self.config.mirror, cache_dir),
                capture=False,
            )
        except CommandError as e:
            raise DestructiveOperationError(f"Base system installation failed: {e}") from e
        log.info("Base system installed")

    def configure_hostname(self):
        hostname = self.config.hostname
        self._write("etc/hostname", f"{hostname}\n")
        self._write(
            "etc/hosts",
            "127.0.0.1 localhost\n"
            f"127.0.1.1 {hostname}\n"
            "::1 localhost ip6-localhost ip6-loopback\n"
            "ff02::1 ip6-allnodes\n"
            "ff02::2 ip6-allrouters\n",
        )

    def configure_apt_sources(self):
        release = self.config.release
        mirror = self.config.mirror
        components = "main restricted universe multiverse"
        self._write(
            "etc/apt/sources.list",
            f"deb {mirror} {release} {components}\n"
            f"deb {mirror} {release}-updates {components}\n"
            f"deb {mirror} {release}-backports {components}\n"
            f"deb http://security.ubuntu.com/ubuntu {release}-security {components}\n",
        )

    def mount_virtual_filesystems(self):
        for name in VIRTUAL_FILESYSTEMS:
            mount_dir = self.config.target_path(name)
            if not self.runner.dry_run:
                os.makedirs(mount_dir, exist_ok=True)
            self.runner.run(commands.bind_mount(f"/{name}", mount_dir))

    def install_packages(self, packages=TARGET_PACKAGES):
        """Kernel, ZFS userland and GRUB inside the target"""
        try:
            self.runner.run(self._chroot("apt-get", "update"), capture=False)
            self.runner.run(
                self._chroot("apt-get", "install", "-y", "--no-install-recommends", *packages),
                capture=False,
            )
        except CommandError as e:
            raise DestructiveOperationError(f"Package installation failed: {e}") from e

    def write_zfs_module_config(self, arc_max_mb):
        arc_max_bytes = arc_max_mb * 1024 * 1024
        self._write(
            "etc/modprobe.d/zfs.conf",
            "# ZFS module configuration\n"
            f"# Maximum ARC size ({arc_max_mb}MB)\n"
            f"options zfs zfs_arc_max={arc_max_bytes}\n",
        )
        log.info(f"ZFS ARC max set to {arc_max_mb} MB")

    def copy_pool_cache(self, source="/etc/zfs/zpool.cache"):
        destination = self.config.target_path("etc/zfs/zpool.cache")
        if self.runner.dry_run:
            log.info(f"DRY-RUN: copy {source} to {destination}")
            return
        if not os.path.exists(source):
            log.warning(f"{source} not found, the target will import pools by scanning")
            return
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        shutil.copy(source, destination)

    def install(self):
        """Everything the system-installation phase does"""
        self.install_base_system()
        self.configure_hostname()
        self.configure_apt_sources()
        self.write_zfs_module_config(self.context.arc_max_mb)
        self.copy_pool_cache()
        self.mount_virtual_filesystems()
        self.install_packages()

    # -- finalize ----------------------------------------------------------

    def configure_swap(self, plan):
        """mkswap on the first disk's swap partition plus an fstab entry"""
        part = plan.get(PartitionRole.SWAP)
        if part is None:
            log.warning(f"{plan.device.path} has no swap partition")
            return None
        self.runner.run(commands.mkswap(part.node, "swap1"))
        uuid = self.runner.run(commands.blkid_value("UUID", part.node), check=False).stdout.strip()
        self._write("etc/fstab", f"UUID={uuid or part.node} none swap defaults,pri=1 0 0\n", mode="a")
        log.info(f"Swap configured on {part.node}")
        return part.node

    def populate_mount_cache(self):
        """
        Let zed record the dataset mount list so the target can mount
        datasets at boot, then strip the install-time altroot prefix.

        Waiting for zed is best effort; a timeout only logs a warning.
        """
        cache_dir = self.config.target_path("etc/zfs/zfs-list.cache")
        cache_files = [os.path.join(cache_dir, pool) for pool in POOL_NAMES]
        if self.runner.dry_run:
            log.info(f"DRY-RUN: populate {cache_dir}")
            return False

        os.makedirs(cache_dir, exist_ok=True)
        for path in cache_files:
            open(path, "a").close()

        zed = self.runner.spawn(self._chroot(*commands.zed_foreground()))
        try:
            filled = wait_until(
                lambda: all(os.path.getsize(p) > 0 for p in cache_files),
                timeout=self.config.zed_cache_timeout,
                interval=0.5,
                sleep=self.sleep,
                clock=self.clock,
            )
        finally:
            if zed is not None:
                zed.terminate()
                zed.wait()

        if not filled:
            log.warning("zfs-list.cache was not fully populated; datasets may need manual mounting")

        prefix = self.config.target_dir.rstrip("/")
        for path in cache_files:
            with open(path, "r") as f:
                lines = f.readlines()
            rewritten = []
            for line in lines:
                fields = line.split("\t")
                if len(fields) > 1 and (fields[1] == prefix or fields[1].startswith(prefix + "/")):
                    fields[1] = fields[1][len(prefix):] or "/"
                rewritten.append("\t".join(fields))
            with open(path, "w") as f:
                f.writelines(rewritten)
        return filled
