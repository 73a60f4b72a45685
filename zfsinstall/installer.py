#!/usr/bin/env python3
# Installer Module
# Drives the installation phases and cleans up after failures

import os
import shutil
import signal

from InquirerPy import inquirer

from . import commands
from .boot_manager import BootManager
from .config import POOL_NAMES, InstallContext, generate_install_id
from .disk_manager import DiskManager, detect_ashift
from .errors import (
    InstallerError,
    InstallInterrupted,
    ValidationError,
)
from .log import LoggerFactory
from .models import RedundancyMode
from .partition_manager import PartitionManager
from .state import Phase, PhaseRunner, StateStore
from .system_config import SystemConfig, calculate_arc_max, check_requirements
from .zfs_manager import ZFSManager, compose_groups

log = LoggerFactory.for_installer()

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_INTERRUPTED = 130

SELECTION_FIELDS = ("devices", "mode", "install_id", "username", "encryption", "ashift")


class CleanupHandler:
    """
    Best-effort teardown after a failed run.

    Only pools registered by this run are exported, so pools that belonged
    to someone else are never touched. Running it twice does nothing the
    second time.
    """

    def __init__(self, config, runner):
        self.config = config
        self.runner = runner
        self.pools = []
        self.done = False

    def register_pool(self, name):
        if name not in self.pools:
            self.pools.append(name)

    def forget_pool(self, name):
        if name in self.pools:
            self.pools.remove(name)

    def _step(self, argv):
        """One teardown command; an interrupt skips only this command"""
        try:
            return self.runner.run(argv, check=False).ok
        except (InstallInterrupted, KeyboardInterrupt):
            log.warning(f"Interrupted during cleanup: {' '.join(argv)}")
            return False

    def run(self):
        if self.done:
            return []
        self.done = True
        print("\nCleaning up...")

        target = self.config.target_dir
        if self._step(commands.mountpoint_check(target)):
            if not self._step(commands.umount(target, recursive=True)):
                log.warning(f"Failed to unmount {target}, retrying lazily")
                self._step(commands.umount(target, recursive=True, lazy=True))

        exported = []
        for name in reversed(self.pools):
            if self._step(commands.zpool_export(name)):
                exported.append(name)
                log.info(f"Exported pool {name}")
            else:
                log.warning(f"Failed to export pool {name}")

        self.remove_work_dir()
        return exported

    def remove_work_dir(self):
        work_dir = self.config.work_dir
        if os.path.isdir(work_dir):
            try:
                shutil.rmtree(work_dir)
            except OSError as e:
                log.warning(f"Failed to remove {work_dir}: {e}")


class Installer:
    def __init__(self, config, runner, raid_type=None, disks=(), username=None,
                 encryption=None, fresh=False, log_file=None,
                 disk_manager=None, partition_manager=None, zfs_factory=ZFSManager,
                 boot_manager=None, system_factory=SystemConfig,
                 requirements_check=check_requirements):
        self.config = config
        self.runner = runner
        self.raid_type = raid_type
        self.disks = list(disks or ())
        self.username = username
        self.encryption = encryption
        self.fresh = fresh
        self.log_file = log_file

        self.disk_manager = disk_manager or DiskManager(config, runner)
        self.partition_manager = partition_manager or PartitionManager(config, runner)
        self.boot_manager = boot_manager or BootManager(config, runner)
        self.zfs_factory = zfs_factory
        self.system_factory = system_factory
        self.requirements_check = requirements_check

        self.store = StateStore(config.state_file)
        self.cleanup = CleanupHandler(config, runner)
        self.phase_runner = PhaseRunner(self.store, self.phases(), on_phase_start=self._announce)
        self.key_backup_dir = None
        self.exported = []

    def phases(self):
        return [
            Phase("preflight", self.preflight),
            Phase("disk-selection", self.select_disks, requires=SELECTION_FIELDS),
            Phase("disk-preparation", self.prepare_disks, requires=("plans",)),
            Phase("pool-creation", self.create_pools, requires=("pools_created",)),
            Phase("dataset-creation", self.create_datasets, requires=("root_dataset",)),
            Phase("system-installation", self.install_system),
            Phase("bootloader", self.install_bootloader),
            Phase("finalize", self.finalize),
        ]

    def _announce(self, index, total, phase):
        print("\n" + "=" * 80)
        print(f"Phase {index}/{total}: {phase.title}")
        print("=" * 80)

    def _zfs(self, context):
        return self.zfs_factory(context, self.runner, on_pool_created=self.cleanup.register_pool)

    def _context(self, state):
        return InstallContext.from_state(self.config, state.data)

    # -- phases ------------------------------------------------------------

    def preflight(self, state):
        mem_mb = self.requirements_check(self.config)
        self._zfs(InstallContext(self.config)).load_module()
        arc_max_mb = calculate_arc_max(mem_mb)
        log.info(f"Calculated ZFS ARC max size: {arc_max_mb}MB (Total memory: {mem_mb}MB)")
        return {"arc_max_mb": arc_max_mb}

    def select_disks(self, state):
        """Everything that can be rejected is rejected here, before any write"""
        available = self.disk_manager.discover()

        if self.raid_type:
            mode = RedundancyMode.parse(self.raid_type)
        else:
            mode = self.disk_manager.select_mode(available)

        if self.disks:
            devices = self.disk_manager.resolve_selection(self.disks, available)
        else:
            devices = self.disk_manager.select_devices(available, mode)

        self.disk_manager.validate_selection(devices, mode)
        compose_groups(mode, self.partition_manager.layouts_for(devices))

        context = InstallContext(
            config=self.config,
            devices=tuple(devices),
            mode=mode,
            install_id=generate_install_id(),
            username=self.username or self._ask_username(),
            encryption=self._ask_encryption(),
            ashift=detect_ashift(devices),
            arc_max_mb=state.get("arc_max_mb", 0),
        )
        self._zfs(context).check_pool_conflicts()
        self._confirm_destruction(context)

        data = context.to_state()
        data.pop("plans")
        data.pop("arc_max_mb")
        return data

    def _ask_username(self):
        if self.config.assume_yes:
            return self.config.username
        return inquirer.text(
            message="Username for the home dataset:",
            default=self.config.username,
            validate=lambda text: len(text) > 0 and "/" not in text and " " not in text,
        ).execute()

    def _ask_encryption(self):
        if self.encryption is not None:
            return self.encryption
        if self.config.assume_yes:
            return self.config.encryption
        return inquirer.confirm(
            message="Enable native ZFS encryption for rpool and hpool?",
            default=self.config.encryption,
        ).execute()

    def _confirm_destruction(self, context):
        print(f"\nConfiguration: {context.mode.description}, ashift={context.ashift}, "
              f"encryption={'on' if context.encryption else 'off'}")
        print("\nWARNING: ALL DATA on these disks will be DESTROYED:")
        for device in context.devices:
            print(f"  * {device.label()}")
        if self.config.assume_yes:
            return
        confirmed = inquirer.confirm(
            message="Continue with the installation?", default=False
        ).execute()
        if not confirmed:
            raise InstallInterrupted()

    def prepare_disks(self, state):
        context = self._context(state)
        plans = self.partition_manager.partition_all(list(context.devices))
        return {"plans": [p.to_dict() for p in plans]}

    def create_pools(self, state):
        zfs = self._zfs(self._context(state))
        return {"pools_created": zfs.create_pools()}

    def create_datasets(self, state):
        zfs = self._zfs(self._context(state))
        root_dataset = zfs.create_dataset_hierarchy()
        self.key_backup_dir = zfs.write_key_backup_notes()
        return {"root_dataset": root_dataset, "key_backup_dir": self.key_backup_dir}

    def install_system(self, state):
        self.system_factory(self._context(state), self.runner).install()

    def install_bootloader(self, state):
        context = self._context(state)
        system = self.system_factory(context, self.runner)
        if not self.runner.succeeds(commands.mountpoint_check(self.config.target_path("dev"))):
            system.mount_virtual_filesystems()
        self.boot_manager.install(list(context.plans), state.get("root_dataset"))

    def finalize(self, state):
        context = self._context(state)
        zfs = self._zfs(context)
        system = self.system_factory(context, self.runner)

        system.configure_swap(context.plans[0])
        system.populate_mount_cache()
        zfs.set_sync_standard()

        self.runner.run(
            commands.umount(self.config.target_dir, recursive=True, lazy=True), check=False
        )
        self.exported = zfs.export_all()
        for name in self.exported:
            self.cleanup.forget_pool(name)
        return {"exported": self.exported}

    # -- run control -------------------------------------------------------

    def _resume_or_reset(self):
        if self.fresh:
            self.store.clear()
            return
        state = self.store.load()
        if state.is_initial:
            return
        self.phase_runner.ordinal(state.checkpoint)
        print(f"\nFound previous installation state (last completed phase: {state.checkpoint})")
        resume = self.config.assume_yes or inquirer.confirm(
            message="Resume from the last checkpoint?", default=True
        ).execute()
        if not resume:
            self.store.clear()
            return

        self.key_backup_dir = state.get("key_backup_dir")
        pool_phase = self.phase_runner.ordinal("pool-creation")
        if self.phase_runner.ordinal(state.checkpoint) >= pool_phase \
                and state.checkpoint != "finalize":
            zfs = self._zfs(self._context(state))
            zfs.load_module()
            zfs.import_pools(state.get("pools_created", POOL_NAMES))

    def _handle_signal(self, signum, frame):
        raise InstallInterrupted(signum)

    def run(self):
        """Run every phase; returns the process exit code"""
        previous = {
            sig: signal.signal(sig, self._handle_signal)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            self._resume_or_reset()
            self.phase_runner.run_phases()
        except (InstallInterrupted, KeyboardInterrupt):
            print("\nInstallation cancelled by user.")
            self._report_failure(None)
            return EXIT_INTERRUPTED
        except ValidationError as e:
            print(f"\nError: {e}")
            log.error(str(e))
            self._report_failure(e)
            return EXIT_VALIDATION
        except Exception as e:
            print(f"\nError during installation: {e}")
            log.exception(str(e))
            self._report_failure(e)
            return EXIT_FAILURE
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        self.cleanup.remove_work_dir()
        self._report_success()
        return EXIT_SUCCESS

    def _report_failure(self, error):
        # A second Ctrl-C must not cut the teardown short
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, signal.SIG_IGN)
        exported = self.cleanup.run()
        phase = self.phase_runner.current
        if phase is not None:
            step = f" (step {error.step})" if isinstance(error, InstallerError) and error.step else ""
            print(f"Failed during phase: {phase.name}{step}")
        if exported:
            print(f"Exported pools: {', '.join(exported)}")
        if self.log_file:
            print(f"See the log for details: {self.log_file}")

    def _report_success(self):
        print("\n" + "=" * 80)
        print(f"{self.config.distro.capitalize()} with ZFS installation completed!")
        print("=" * 80)
        if self.exported:
            print(f"Exported pools: {', '.join(self.exported)}")
        if self.key_backup_dir:
            print(f"\nEncryption information saved to {self.key_backup_dir}")
            print("Copy it to external media. You will be asked for the rpool and hpool")
            print("passphrases at every boot; without them your data cannot be recovered.")
        print("\nYou can now reboot into your new system.")
        if self.log_file:
            print(f"Installation log: {self.log_file}")

