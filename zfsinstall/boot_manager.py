#!/usr/bin/env python3
# Boot Manager Module
# Installs GRUB on every disk's EFI partition so any single disk can boot

import os

from . import commands
from .errors import BootloaderError, CommandError
from .log import LoggerFactory
from .models import PartitionRole

log = LoggerFactory.for_boot()

GRUB_DEFAULTS = {
    "GRUB_TIMEOUT_STYLE": "menu",
    "GRUB_TIMEOUT": "5",
    "GRUB_RECORDFAIL_TIMEOUT": "5",
    "GRUB_PRELOAD_MODULES": '"part_gpt zfs"',
    "GRUB_ENABLE_CRYPTODISK": "true",
}


class BootManager:
    def __init__(self, config, runner):
        self.config = config
        self.runner = runner
        self.bootloader_id = config.distro

    def _chroot(self, *argv):
        return commands.chroot(self.config.target_dir, *argv)

    def format_efi(self, plan):
        """FAT32 on one disk's EFI partition"""
        part = plan[PartitionRole.EFI]
        self.runner.run(
            commands.mkfs_vfat(part.node, f"EFI{plan.ordinal}", part.logical_sector_size)
        )
        log.info(f"Formatted EFI partition {part.node}")

    def _uuid(self, node):
        result = self.runner.run(commands.blkid_value("UUID", node), check=False)
        return result.stdout.strip() or node

    def _append_fstab(self, line):
        fstab = self.config.target_path("etc/fstab")
        if self.runner.dry_run:
            log.info(f"DRY-RUN: append to {fstab}: {line}")
            return
        os.makedirs(os.path.dirname(fstab), exist_ok=True)
        with open(fstab, "a") as f:
            f.write(line + "\n")

    def _makedirs(self, path):
        if not self.runner.dry_run:
            os.makedirs(path, exist_ok=True)

    def install_primary(self, plan):
        """Primary GRUB on the first disk; any failure is fatal"""
        part = plan[PartitionRole.EFI]
        mount_dir = self.config.target_path("boot/efi")
        print(f"\nInstalling GRUB to {part.node}...")
        try:
            self.format_efi(plan)
            self._makedirs(mount_dir)
            self.runner.run(commands.mount(part.node, mount_dir))
            self._append_fstab(f"UUID={self._uuid(part.node)} /boot/efi vfat defaults 0 1")
            self.runner.run(self._chroot(*commands.grub_install("/boot/efi", self.bootloader_id)))
        except CommandError as e:
            raise BootloaderError(f"GRUB installation on {part.node} failed: {e}") from e

        efi_binary = self.config.target_path(f"boot/efi/EFI/{self.bootloader_id}/grubx64.efi")
        if not self.runner.dry_run and not os.path.exists(efi_binary):
            raise BootloaderError(f"GRUB installation failed: {efi_binary} is missing")
        log.info("Primary GRUB installed")

    def install_backup(self, plan, index):
        """Backup GRUB on another disk; returns False instead of raising"""
        part = plan[PartitionRole.EFI]
        efi_dir = f"/boot/efi{index}"
        mount_dir = self.config.target_path(efi_dir)
        bootloader_id = f"{self.bootloader_id}-backup{index}"
        mounted = False
        try:
            self.format_efi(plan)
            self._makedirs(mount_dir)
            self.runner.run(commands.mount(part.node, mount_dir))
            mounted = True
            self._append_fstab(
                f"UUID={self._uuid(part.node)} {efi_dir} vfat noauto,defaults 0 0"
            )
            self.runner.run(self._chroot(*commands.grub_install(efi_dir, bootloader_id)))
        except CommandError as e:
            log.warning(f"Backup GRUB installation on {part.node} failed: {e}")
            return False
        finally:
            if mounted:
                self.runner.run(commands.umount(mount_dir), check=False)
        log.info(f"Backup GRUB {bootloader_id} installed on {part.node}")
        return True

    def configure_grub(self, root_dataset):
        """Point GRUB at the ZFS root by editing /etc/default/grub in place"""
        grub_default_path = self.config.target_path("etc/default/grub")
        wanted = dict(GRUB_DEFAULTS)
        wanted["GRUB_CMDLINE_LINUX"] = f'"root=ZFS={root_dataset}"'

        if self.runner.dry_run:
            log.info(f"DRY-RUN: would update {grub_default_path}")
            return wanted

        grub_lines = []
        if os.path.exists(grub_default_path):
            with open(grub_default_path, "r") as f:
                grub_lines = f.readlines()

        seen = set()
        for i, line in enumerate(grub_lines):
            key = line.split("=", 1)[0].lstrip("#").strip()
            if key in wanted and "=" in line:
                grub_lines[i] = f"{key}={wanted[key]}\n"
                seen.add(key)
        for key, value in wanted.items():
            if key not in seen:
                grub_lines.append(f"{key}={value}\n")

        os.makedirs(os.path.dirname(grub_default_path), exist_ok=True)
        with open(grub_default_path, "w") as f:
            f.writelines(grub_lines)
        log.info(f"Updated {grub_default_path}")
        return wanted

    def install(self, plans, root_dataset):
        """
        Install the primary and backup GRUB copies, each on a freshly
        formatted EFI partition, then regenerate the initramfs and grub.cfg.

        Returns the number of backup copies that installed cleanly.
        """
        if not plans:
            raise BootloaderError("No EFI partitions to install GRUB on")
        self.configure_grub(root_dataset)
        self.install_primary(plans[0])

        installed = 0
        for index, plan in enumerate(plans[1:], start=1):
            if self.install_backup(plan, index):
                installed += 1
        if installed < len(plans) - 1:
            print(f"WARNING: only {installed} of {len(plans) - 1} backup bootloaders installed")

        try:
            self.runner.run(self._chroot(*commands.update_initramfs()))
            self.runner.run(self._chroot(*commands.update_grub()))
        except CommandError as e:
            raise BootloaderError(f"Updating boot configuration failed: {e}") from e
        return installed
