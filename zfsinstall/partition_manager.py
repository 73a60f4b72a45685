#!/usr/bin/env python3
# Partition Manager Module
# Computes per-disk partition layouts and writes them with sgdisk

import os
import time

from . import commands
from .errors import (
    CommandError,
    DeviceValidationError,
    PartitionError,
    PartitionNodeTimeoutError,
    SectorSizeError,
)
from .log import LoggerFactory
from .models import MIB, PartitionPlan, PartitionRole, PlannedPartition
from .runner import wait_until

log = LoggerFactory.for_partitions()


def home_room_mib(size_bytes, config):
    """Space left for home once the fixed partitions and a swap-sized reserve are taken"""
    usable_mib = size_bytes // MIB - config.align_mib - config.gpt_backup_mib
    fixed = config.efi_mib + config.boot_pool_mib + config.root_pool_mib
    return usable_mib - fixed - config.swap_mib


def shared_home_mib(devices, config):
    """Home partition size every selected disk can hold; the smallest disk decides"""
    return min(home_room_mib(device.size_bytes, config) for device in devices)


def compute_layout(size_bytes, ordinal, config, home_mib=None):
    """
    Return ([(role, start_mib, size_mib), ...], usable_mib) for one disk.

    Every disk keeps a swap-sized reserve after its home partition. The first
    disk puts its swap partition there; on the others the space stays unused,
    so same-role partitions match across disks. `home_mib` pins the home
    partition to the size shared by the whole selection.
    """
    total_mib = size_bytes // MIB
    usable_mib = total_mib - config.align_mib - config.gpt_backup_mib
    with_swap = ordinal == 1

    room = home_room_mib(size_bytes, config)
    if home_mib is None:
        home_mib = room
    if home_mib > room:
        raise DeviceValidationError(
            f"disk #{ordinal}",
            f"{total_mib} MiB cannot hold a {home_mib} MiB home partition",
        )
    if home_mib < config.min_home_mib:
        raise DeviceValidationError(
            f"disk #{ordinal}",
            f"{total_mib} MiB leaves only {home_mib} MiB for the home pool "
            f"(minimum {config.min_home_mib} MiB)",
        )

    sizes = [
        (PartitionRole.EFI, config.efi_mib),
        (PartitionRole.BOOT_POOL, config.boot_pool_mib),
        (PartitionRole.ROOT_POOL, config.root_pool_mib),
        (PartitionRole.HOME_POOL, home_mib),
    ]
    if with_swap:
        sizes.append((PartitionRole.SWAP, config.swap_mib))

    layout = []
    start = config.align_mib
    for role, size in sizes:
        layout.append((role, start, size))
        start += size
    return layout, usable_mib


def partition_node(stable_path, number):
    return f"{stable_path}-part{number}"


class PartitionManager:
    def __init__(self, config, runner, exists=os.path.exists, sleep=time.sleep,
                 clock=time.monotonic):
        self.config = config
        self.runner = runner
        self.exists = exists
        self.sleep = sleep
        self.clock = clock

    def layout_for(self, device, ordinal, home_mib=None):
        """Immutable plan for a device; validates size and sector size, touches nothing"""
        if device.logical_sector_size == 4096 and self.config.firmware_mode != "uefi":
            raise SectorSizeError(device.path, self.config.firmware_mode)

        layout, usable_mib = compute_layout(device.size_bytes, ordinal, self.config, home_mib)
        partitions = tuple(
            PlannedPartition(
                role=role,
                start_mib=start,
                size_mib=size,
                node=partition_node(device.stable_path, role.number),
                logical_sector_size=device.logical_sector_size,
            )
            for role, start, size in layout
        )
        return PartitionPlan(device=device, ordinal=ordinal, partitions=partitions,
                             usable_mib=usable_mib)

    def layouts_for(self, devices):
        """Plans for the whole selection with one shared home size; touches nothing"""
        home_mib = shared_home_mib(devices, self.config)
        return [
            self.layout_for(device, ordinal, home_mib)
            for ordinal, device in enumerate(devices, start=1)
        ]

    def wipe(self, device):
        """Destroy old pool labels, filesystem signatures and partition tables"""
        disk = device.stable_path
        print(f"Wiping disk {device.path}...")
        for argv in (commands.zpool_labelclear(disk), commands.wipefs(disk)):
            result = self.runner.run(argv, check=False)
            if not result.ok:
                log.debug(f"Ignoring failure of best-effort wipe step: {' '.join(argv)}")
        self.runner.run(commands.sgdisk_zap(disk))
        self.runner.run(commands.sgdisk_clear(disk))

    def write_partitions(self, plan):
        disk = plan.device.stable_path
        for part in plan.partitions:
            log.info(
                f"Creating {part.role.gpt_label} partition {part.number} on {plan.device.path} "
                f"({part.size_mib} MiB at {part.start_mib} MiB)"
            )
            self.runner.run(
                commands.sgdisk_new(
                    disk, part.number, part.start_mib, part.size_mib,
                    part.role.type_code, part.role.gpt_label,
                )
            )

    def reread(self, plan):
        """Make the kernel and udev publish the new partition nodes"""
        disk = plan.device.stable_path
        self.runner.run(commands.partprobe(disk), check=False)
        self.runner.run(commands.udev_trigger_block(), check=False)
        self.runner.run(commands.udev_settle(int(self.config.partition_wait_timeout)), check=False)

        if self.runner.dry_run:
            return
        for node in plan.nodes():
            appeared = wait_until(
                lambda: self.exists(node),
                timeout=self.config.partition_wait_timeout,
                interval=self.config.partition_wait_interval,
                sleep=self.sleep,
                clock=self.clock,
            )
            if not appeared:
                raise PartitionNodeTimeoutError(
                    plan.device.path, node, self.config.partition_wait_timeout
                )
            log.debug(f"Partition node present: {node}")

    def plan(self, device, ordinal, total, home_mib=None):
        """Lay out, wipe and partition one device; return its PartitionPlan"""
        print(f"\n=== Partitioning disk {ordinal}/{total}: {device.path} ===")
        plan = self.layout_for(device, ordinal, home_mib)
        self.wipe(device)
        self.write_partitions(plan)
        self.reread(plan)
        if ordinal == 1:
            log.info(f"Disk {device.path}: EFI, bpool, rpool, hpool and swap partitions created")
        else:
            log.info(f"Disk {device.path}: EFI, bpool, rpool and hpool partitions created")
        return plan

    def partition_all(self, devices):
        """
        Partition every device strictly one after another.

        A failure on device i stops the sequence; devices after i are not
        touched and the raised PartitionError carries the 1-based step.
        """
        # Validate every layout before the first wipe
        home_mib = self.layouts_for(devices)[0][PartitionRole.HOME_POOL].size_mib

        plans = []
        total = len(devices)
        for ordinal, device in enumerate(devices, start=1):
            try:
                plans.append(self.plan(device, ordinal, total, home_mib))
            except PartitionError as e:
                e.step = ordinal
                raise
            except CommandError as e:
                raise PartitionError(device.path, str(e), step=ordinal) from e
        return plans
