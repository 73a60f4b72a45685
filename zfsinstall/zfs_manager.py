#!/usr/bin/env python3
# ZFS Manager Module
# Handles ZFS pool and dataset operations for the three-pool layout

import os
import time

from InquirerPy import inquirer

from . import commands
from .config import BOOT_POOL, HOME_POOL, POOL_NAMES, ROOT_POOL
from .errors import (
    CommandError,
    DatasetCreationError,
    PoolCreationError,
    PoolNameConflictError,
    RequirementsError,
    ResumeStateError,
)
from .log import LoggerFactory
from .models import POOL_ROLES, RedundancyGroup
from .runner import wait_until
from .vdev import compose

log = LoggerFactory.for_zfs()

# Pool features GRUB can read; the boot pool may only enable these
GRUB_COMPATIBLE_FEATURES = frozenset({
    "async_destroy",
    "bookmarks",
    "embedded_data",
    "empty_bpobj",
    "enabled_txg",
    "extensible_dataset",
    "filesystem_limits",
    "hole_birth",
    "large_blocks",
    "livelist",
    "lz4_compress",
    "spacemap_histogram",
    "zpool_checkpoint",
})

BOOT_POOL_FEATURES = ("livelist", "zpool_checkpoint")

ROOT_LEAF_DATASETS = (
    "var/lib",
    "var/log",
    "var/spool",
    "var/cache",
    "var/tmp",
    "var/lib/apt",
    "var/lib/dpkg",
    "var/snap",
    "var/lib/AccountsService",
    "var/lib/NetworkManager",
    "usr/local",
    "srv",
)

KEY_BACKUP_DIR = "root/zfs-keys-backup"
KEY_BACKUP_README = """ZFS Encryption Backup Information
==================================

1. SAVE THE PASSPHRASES YOU ENTERED FOR RPOOL AND HPOOL!
   Without these passphrases, your data cannot be recovered.

2. Copy this entire directory to external media immediately:
   /root/zfs-keys-backup/

3. Store the backup in a safe, separate location.

4. The system will prompt for these passphrases at boot time.
"""

ZSYS_BOOTFS = "com.ubuntu.zsys:bootfs"
ZSYS_LAST_USED = "com.ubuntu.zsys:last-used"
ZSYS_BOOTFS_DATASETS = "com.ubuntu.zsys:bootfs-datasets"


def prompt_passphrase(pool):
    """Ask for a pool passphrase twice; no timeout"""
    print(f"\nEnter the encryption passphrase for {pool}.")
    print("IMPORTANT: Remember this passphrase! You cannot recover data without it!")
    while True:
        passphrase = inquirer.secret(
            message=f"{pool} passphrase:",
            validate=lambda text: len(text) >= 8,
            invalid_message="Passphrase must be at least 8 characters",
        ).execute()
        confirm = inquirer.secret(message=f"Confirm {pool} passphrase:").execute()
        if passphrase == confirm:
            return passphrase
        print("Passphrases do not match, try again.")


def compose_groups(mode, plans):
    """Validate the same-role partitions behind every pool; returns {pool: VdevSpec}"""
    specs = {}
    for pool in POOL_NAMES:
        group = RedundancyGroup.from_plans(POOL_ROLES[pool], mode, plans)
        specs[pool] = compose(group.mode, group.members)
    return specs


class ZFSManager:
    def __init__(self, context, runner, on_pool_created=None,
                 passphrase_provider=prompt_passphrase, exists=os.path.exists,
                 sleep=time.sleep, clock=time.monotonic):
        self.context = context
        self.config = context.config
        self.runner = runner
        self.on_pool_created = on_pool_created
        self.passphrase_provider = passphrase_provider
        self.exists = exists
        self.sleep = sleep
        self.clock = clock
        self.created = []

    # -- environment -------------------------------------------------------

    def load_module(self):
        """Load the zfs kernel module and wait for /dev/zfs"""
        log.info("Loading ZFS kernel module...")
        try:
            self.runner.run(commands.modprobe_zfs())
        except CommandError as e:
            raise RequirementsError(f"Failed to load ZFS module: {e}") from e
        self.runner.run(commands.udev_trigger_misc(), check=False)
        self.runner.run(commands.udev_settle(), check=False)

        if self.runner.dry_run:
            return
        ready = wait_until(
            lambda: self.exists("/dev/zfs"),
            timeout=10.0,
            interval=0.5,
            sleep=self.sleep,
            clock=self.clock,
        )
        if not ready:
            raise RequirementsError("/dev/zfs did not appear after loading the ZFS module")
        log.info("ZFS module loaded")

    def imported_pools(self):
        result = self.runner.query(commands.zpool_list_names())
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def importable_pools(self):
        result = self.runner.query(commands.zpool_import_scan())
        names = set()
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith("pool:"):
                names.add(line.split(":", 1)[1].strip())
        return names

    def check_pool_conflicts(self, names=POOL_NAMES):
        """Refuse to install over any pool that carries one of our names"""
        imported = self.imported_pools()
        importable = self.importable_pools()
        for name in names:
            if name in imported:
                raise PoolNameConflictError(name, imported=True)
            if name in importable:
                raise PoolNameConflictError(name, imported=False)
        log.info("No conflicting ZFS pools found")

    def pool_exists(self, name):
        return self.runner.succeeds(commands.zpool_list_names(name))

    # -- pools -------------------------------------------------------------

    def group_for(self, pool):
        return RedundancyGroup.from_plans(POOL_ROLES[pool], self.context.mode, self.context.plans)

    def _base_pool_options(self):
        return {
            "ashift": self.context.ashift,
            "autotrim": "on",
            "cachefile": "/etc/zfs/zpool.cache",
        }

    def _create_pool(self, name, pool_options, fs_options, passphrase=None):
        group = self.group_for(name)
        vdev = compose(group.mode, group.members)
        print(f"\nCreating ZFS pool '{name}' ({group.mode.value}, {len(group.members)} members)...")
        log.debug(f"{name} vdev: {vdev}")

        argv = commands.zpool_create(
            name, vdev, pool_options, fs_options, altroot=self.config.target_dir
        )
        stdin = f"{passphrase}\n" if passphrase else None
        try:
            self.runner.run(argv, input=stdin)
        except CommandError as e:
            raise PoolCreationError(name, e.stderr.strip() or str(e)) from e

        if not self.runner.dry_run and not self.pool_exists(name):
            raise PoolCreationError(name, "pool not listed after creation")

        self.created.append(name)
        if self.on_pool_created:
            self.on_pool_created(name)
        log.info(f"ZFS pool '{name}' created successfully")
        return name

    def create_boot_pool(self):
        """GRUB-readable boot pool; never encrypted"""
        pool_options = self._base_pool_options()
        pool_options["compatibility"] = "grub2"
        for feature in BOOT_POOL_FEATURES:
            pool_options[f"feature@{feature}"] = "enabled"
        check_boot_features(pool_options)
        fs_options = {
            "devices": "off",
            "acltype": "posixacl",
            "xattr": "sa",
            "compression": self.config.compression,
            "normalization": "formD",
            "relatime": "on",
            "canmount": "off",
            "mountpoint": "/boot",
        }
        return self._create_pool(BOOT_POOL, pool_options, fs_options)

    def _data_pool_options(self, mountpoint):
        fs_options = {}
        if self.context.encryption:
            fs_options.update({
                "encryption": "on",
                "keylocation": "prompt",
                "keyformat": "passphrase",
            })
        fs_options.update({
            "acltype": "posixacl",
            "xattr": "sa",
            "dnodesize": "auto",
            "compression": self.config.compression,
            "normalization": "formD",
            "relatime": "on",
            "canmount": "off",
            "mountpoint": mountpoint,
        })
        return fs_options

    def _passphrase_for(self, pool):
        if not self.context.encryption or self.runner.dry_run:
            return None
        return self.passphrase_provider(pool)

    def create_root_pool(self):
        return self._create_pool(
            ROOT_POOL,
            self._base_pool_options(),
            self._data_pool_options("/"),
            passphrase=self._passphrase_for(ROOT_POOL),
        )

    def create_home_pool(self):
        return self._create_pool(
            HOME_POOL,
            self._base_pool_options(),
            self._data_pool_options("/home"),
            passphrase=self._passphrase_for(HOME_POOL),
        )

    def create_pools(self):
        """
        All three pools in fixed order.

        Name conflicts and every group's size tolerance are checked before the
        first zpool create, so a bad group never leaves a partial pool set.
        """
        self.check_pool_conflicts()
        compose_groups(self.context.mode, self.context.plans)
        return [self.create_boot_pool(), self.create_root_pool(), self.create_home_pool()]

    # -- datasets ----------------------------------------------------------

    def _create_dataset(self, name, **properties):
        try:
            self.runner.run(commands.zfs_create(name, properties))
        except CommandError as e:
            raise DatasetCreationError(name, e.stderr.strip() or str(e)) from e
        log.debug(f"Created dataset {name}")
        return name

    def create_dataset_hierarchy(self):
        """Create the Ubuntu zsys-style dataset tree under all three pools"""
        ctx = self.context
        root_ds = ctx.root_dataset
        print("\nCreating ZFS datasets...")

        self._create_dataset(f"{ROOT_POOL}/ROOT", canmount="off", mountpoint="none")
        self._create_dataset(
            root_ds,
            mountpoint="/",
            **{ZSYS_BOOTFS: "yes", ZSYS_LAST_USED: int(time.time())},
        )
        # Mount the new root before anything is created beneath it
        if not self.runner.dry_run:
            self.runner.run(commands.zfs_mount(root_ds), check=False)

        for container in ("usr", "var"):
            self._create_dataset(
                f"{root_ds}/{container}", canmount="off", **{ZSYS_BOOTFS: "no"}
            )
        for leaf in ROOT_LEAF_DATASETS:
            self._create_dataset(f"{root_ds}/{leaf}")

        self._create_dataset(f"{ROOT_POOL}/USERDATA", canmount="off", mountpoint="/")
        self._create_dataset(
            f"{ROOT_POOL}/USERDATA/root_{ctx.install_id}",
            canmount="on",
            mountpoint="/root",
            **{ZSYS_BOOTFS_DATASETS: root_ds},
        )

        self._create_dataset(f"{BOOT_POOL}/BOOT", canmount="off", mountpoint="none")
        self._create_dataset(ctx.boot_dataset, mountpoint="/boot")

        self._create_dataset(f"{HOME_POOL}/HOME", canmount="off", mountpoint="none")
        self._create_dataset(ctx.home_dataset, mountpoint="/home")
        self._create_dataset(
            f"{ctx.home_dataset}/{ctx.username}",
            mountpoint=f"/home/{ctx.username}",
            **{ZSYS_BOOTFS_DATASETS: root_ds},
        )

        self.runner.run(["chmod", "1777", self.config.target_path("var/tmp")])
        self.runner.run(["chmod", "700", self.config.target_path("root")])
        log.info("ZFS datasets created successfully")
        return root_ds

    # -- encryption notes --------------------------------------------------

    def write_key_backup_notes(self):
        """Save encryption metadata and a README under /root/zfs-keys-backup"""
        if not self.context.encryption:
            return None
        backup_dir = self.config.target_path(KEY_BACKUP_DIR)
        if self.runner.dry_run:
            log.info(f"DRY-RUN: would write encryption notes to {backup_dir}")
            return backup_dir

        os.makedirs(backup_dir, mode=0o700, exist_ok=True)
        with open(os.path.join(backup_dir, "CRITICAL-README.txt"), "w") as f:
            f.write(KEY_BACKUP_README)
        for pool in (ROOT_POOL, HOME_POOL):
            result = self.runner.run(
                commands.zfs_get(("encryption", "keyformat", "keylocation", "keystatus"), pool),
                check=False,
            )
            with open(os.path.join(backup_dir, f"{pool}-encryption.txt"), "w") as f:
                f.write(result.stdout)
        log.warning(f"Encryption information saved to {backup_dir}")
        return backup_dir

    # -- lifecycle ---------------------------------------------------------

    def import_pools(self, names=POOL_NAMES):
        """Re-import pools created by an earlier run before resuming"""
        imported = self.imported_pools()
        for name in names:
            if name in imported:
                log.info(f"Pool {name} already imported")
            else:
                try:
                    self.runner.run(
                        commands.zpool_import(name, altroot=self.config.target_dir)
                    )
                except CommandError as e:
                    raise ResumeStateError(
                        f"Pool {name} from the previous run cannot be imported: {e}"
                    ) from e
                log.info(f"Imported pool {name}")
            if self.on_pool_created:
                self.on_pool_created(name)

        if self.context.encryption:
            for name in (ROOT_POOL, HOME_POOL):
                if name in names:
                    self.runner.run(
                        commands.zfs_load_key(name),
                        input=f"{self.passphrase_provider(name)}\n",
                        check=False,
                    )
        if not self.runner.dry_run:
            self.runner.run(commands.zfs_mount(self.context.root_dataset), check=False)
            self.runner.run(commands.zfs_mount(), check=False)

    def export_pool(self, name):
        try:
            self.runner.run(commands.zpool_export(name))
            log.info(f"ZFS pool '{name}' exported")
            return True
        except CommandError as e:
            log.warning(f"Failed to export pool {name}: {e}")
            return False

    def set_sync_standard(self, names=POOL_NAMES):
        for name in names:
            self.runner.run(commands.zfs_set("sync", "standard", name), check=False)

    def export_all(self, names=POOL_NAMES):
        """Export pools in reverse creation order; returns the exported names"""
        self.runner.run(commands.zfs_unmount_all(), check=False)
        exported = []
        for name in reversed(list(names)):
            if self.export_pool(name):
                exported.append(name)
        return exported


def check_boot_features(pool_options):
    """Raise if a boot-pool option enables a feature GRUB cannot read"""
    for key in pool_options:
        if key.startswith("feature@") and key[len("feature@"):] not in GRUB_COMPATIBLE_FEATURES:
            raise PoolCreationError(BOOT_POOL, f"feature {key} is not readable by GRUB")
