import os
import signal
from functools import partial

import pytest

from conftest import lsblk_disk
from zfsinstall.installer import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_SUCCESS,
    EXIT_VALIDATION,
    CleanupHandler,
    Installer,
)
from zfsinstall.errors import InstallInterrupted
from zfsinstall.partition_manager import PartitionManager
from zfsinstall.state import StateStore
from zfsinstall.zfs_manager import ZFSManager

THREE_DISKS = ("sda", "sdb", "sdc")


@pytest.fixture
def grub_binary(tmp_path):
    path = tmp_path / "target" / "boot" / "efi" / "EFI" / "ubuntu" / "grubx64.efi"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"")
    return path


@pytest.fixture
def build_installer(config, runner, inventory):
    disk_manager = {}

    def build(*nodes, **options):
        if "manager" not in disk_manager:
            disk_manager["manager"] = inventory(*nodes)
        options.setdefault("raid_type", "raidz1")
        options.setdefault("username", "kubu")
        options.setdefault("encryption", False)
        options.setdefault("zfs_factory", partial(ZFSManager, exists=lambda path: True))
        return Installer(
            config,
            runner,
            disk_manager=disk_manager["manager"],
            partition_manager=PartitionManager(config, runner, exists=lambda path: True),
            requirements_check=lambda cfg: 16384,
            **options,
        )

    return build


def checkpoint(config):
    return StateStore(config.state_file).load().checkpoint


def created_pools(runner):
    return [argv[argv.index("-R") + 2] for argv in runner.calls("zpool", "create")]


def touched_disks(runner):
    return {argv[-1] for argv in runner.history if argv[0] in ("sgdisk", "wipefs")}


def test_three_disk_raidz1_install(build_installer, runner, config, by_id_dir, grub_binary):
    installer = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])

    assert installer.run() == EXIT_SUCCESS

    assert created_pools(runner) == ["bpool", "rpool", "hpool"]
    assert all("raidz1" in argv for argv in runner.calls("zpool", "create"))
    assert touched_disks(runner) == {str(by_id_dir / f"ata-DISK_{n}") for n in THREE_DISKS}
    assert len([argv for argv in runner.history if "grub-install" in argv]) == 3
    assert [argv[-1] for argv in runner.calls("zpool", "export")] == ["hpool", "rpool", "bpool"]
    assert checkpoint(config) == "finalize"
    assert not os.path.exists(config.work_dir)


def test_size_mismatch_fails_before_anything_destructive(build_installer, runner, config):
    installer = build_installer(lsblk_disk("sda"), lsblk_disk("sdb"), lsblk_disk("sdc", size_gib=600))

    assert installer.run() == EXIT_VALIDATION

    assert touched_disks(runner) == set()
    assert runner.calls("zpool", "create") == []
    assert checkpoint(config) == "preflight"


def test_existing_pool_name_aborts_before_partitioning(build_installer, runner, config):
    runner.respond(["zpool", "list", "-H", "-o", "name"], stdout="rpool\n")
    installer = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])

    assert installer.run() == EXIT_VALIDATION

    assert touched_disks(runner) == set()
    assert runner.calls("zpool", "export") == []


def test_partition_failure_on_second_disk(build_installer, runner, config, by_id_dir, capsys):
    runner.fail(["sgdisk", "--zap-all", str(by_id_dir / "ata-DISK_sdb")])
    installer = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])

    assert installer.run() == EXIT_FAILURE

    assert str(by_id_dir / "ata-DISK_sdc") not in touched_disks(runner)
    assert runner.calls("zpool", "create") == []
    assert checkpoint(config) == "disk-selection"
    assert runner.calls("umount", "-R", config.target_dir)
    out = capsys.readouterr().out
    assert "disk-preparation (step 2)" in out


def test_dataset_failure_exports_created_pools_and_resumes(build_installer, runner, config, grub_binary):
    runner.fail(["zfs", "create"])
    first = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])

    assert first.run() == EXIT_FAILURE
    assert [argv[-1] for argv in runner.calls("zpool", "export")] == ["hpool", "rpool", "bpool"]
    assert checkpoint(config) == "pool-creation"

    runner.forget(["zfs", "create"])
    runner.history.clear()
    second = build_installer()

    assert second.run() == EXIT_SUCCESS
    assert runner.calls("zpool", "create") == []
    assert [argv[-1] for argv in runner.calls("zpool", "import") if "-N" in argv] == [
        "bpool", "rpool", "hpool"
    ]
    assert runner.calls("lsblk") == []


def test_fresh_discards_saved_checkpoint(build_installer, runner, config, grub_binary):
    runner.fail(["zfs", "create"])
    assert build_installer(*[lsblk_disk(name) for name in THREE_DISKS]).run() == EXIT_FAILURE
    runner.forget(["zfs", "create"])
    runner.history.clear()

    assert build_installer(fresh=True).run() == EXIT_SUCCESS
    assert created_pools(runner) == ["bpool", "rpool", "hpool"]


def test_interrupt_exits_130_and_cleans_up(build_installer, runner, mocker):
    installer = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])
    mocker.patch.object(installer.disk_manager, "discover", side_effect=InstallInterrupted(2))

    assert installer.run() == EXIT_INTERRUPTED
    assert installer.cleanup.done

def test_identical_480g_disks_install(build_installer, runner, config, grub_binary):
    installer = build_installer(*[lsblk_disk(name, size_gib=480) for name in THREE_DISKS])

    assert installer.run() == EXIT_SUCCESS
    assert created_pools(runner) == ["bpool", "rpool", "hpool"]


def test_mirror_of_500gb_and_520gb_disks_installs(build_installer, runner, config, grub_binary):
    installer = build_installer(
        lsblk_disk("sda", size_bytes=500 * 10**9),
        lsblk_disk("sdb", size_bytes=520 * 10**9),
        raid_type="mirror",
    )

    assert installer.run() == EXIT_SUCCESS
    assert created_pools(runner) == ["bpool", "rpool", "hpool"]
    assert all("mirror" in argv for argv in runner.calls("zpool", "create"))
    home_sizes = {argv[1] for argv in runner.calls("sgdisk") if argv[1].startswith("-n4:")}
    assert len(home_sizes) == 1


def test_mirror_of_500gb_and_650gb_disks_is_rejected(build_installer, runner, config):
    installer = build_installer(
        lsblk_disk("sda", size_bytes=500 * 10**9),
        lsblk_disk("sdb", size_bytes=650 * 10**9),
        raid_type="mirror",
    )

    assert installer.run() == EXIT_VALIDATION
    assert touched_disks(runner) == set()
    assert runner.calls("zpool", "create") == []


def test_raidz3_third_disk_failure_reports_step(build_installer, runner, config, by_id_dir, capsys):
    names = ("sda", "sdb", "sdc", "sdd", "sde")
    runner.fail(["sgdisk", "--zap-all", str(by_id_dir / "ata-DISK_sdc")])
    installer = build_installer(*[lsblk_disk(name) for name in names], raid_type="raidz3")

    assert installer.run() == EXIT_FAILURE

    touched = touched_disks(runner)
    assert {str(by_id_dir / f"ata-DISK_{n}") for n in ("sda", "sdb")} <= touched
    assert not touched & {str(by_id_dir / f"ata-DISK_{n}") for n in ("sdd", "sde")}
    assert len(runner.calls("sgdisk", "--clear")) == 2
    assert runner.calls("zpool", "create") == []
    assert runner.calls("zpool", "export") == []
    out = capsys.readouterr().out
    assert "disk-preparation (step 3)" in out
    assert "Exported pools" not in out


def test_resume_refuses_pools_left_from_an_earlier_attempt(build_installer, runner, config):
    runner.fail(["zpool", "create"])
    assert build_installer(*[lsblk_disk(name) for name in THREE_DISKS]).run() == EXIT_FAILURE
    assert checkpoint(config) == "disk-preparation"

    runner.forget(["zpool", "create"])
    runner.respond(["zpool", "import", "-d"], stdout="   pool: bpool\n     id: 7\n  state: ONLINE\n")
    runner.history.clear()

    assert build_installer().run() == EXIT_VALIDATION
    assert runner.calls("zpool", "create") == []


def test_ctrl_c_at_passphrase_prompt_exports_boot_pool(build_installer, runner, config):
    def interrupted(pool):
        raise KeyboardInterrupt

    installer = build_installer(
        *[lsblk_disk(name) for name in THREE_DISKS],
        encryption=True,
        zfs_factory=partial(ZFSManager, exists=lambda path: True, passphrase_provider=interrupted),
    )

    assert installer.run() == EXIT_INTERRUPTED
    assert created_pools(runner) == ["bpool"]
    assert [argv[-1] for argv in runner.calls("zpool", "export")] == ["bpool"]


def test_unexpected_error_still_cleans_up(build_installer, runner, mocker):
    installer = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])
    mocker.patch.object(installer.disk_manager, "discover", side_effect=KeyError("size"))

    assert installer.run() == EXIT_FAILURE
    assert installer.cleanup.done


def test_signals_are_ignored_while_cleaning_up(build_installer, runner, mocker):
    runner.fail(["zfs", "create"])
    installer = build_installer(*[lsblk_disk(name) for name in THREE_DISKS])
    handlers = []
    real_run = runner.run

    def run(argv, **kwargs):
        if argv[:2] == ["zpool", "export"]:
            handlers.append(signal.getsignal(signal.SIGINT))
        return real_run(argv, **kwargs)

    mocker.patch.object(runner, "run", side_effect=run)

    assert installer.run() == EXIT_FAILURE
    assert handlers == [signal.SIG_IGN] * 3
    assert signal.getsignal(signal.SIGINT) is not signal.SIG_IGN


def test_cleanup_is_idempotent(config, runner):
    cleanup = CleanupHandler(config, runner)
    for name in ("bpool", "rpool", "hpool"):
        cleanup.register_pool(name)
    os.makedirs(config.work_dir)

    assert cleanup.run() == ["hpool", "rpool", "bpool"]
    commands_after_first = len(runner.history)
    assert not os.path.exists(config.work_dir)

    assert cleanup.run() == []
    assert len(runner.history) == commands_after_first


def test_cleanup_continues_when_an_export_fails(config, runner):
    runner.fail(["zpool", "export", "rpool"])
    cleanup = CleanupHandler(config, runner)
    for name in ("bpool", "rpool", "hpool"):
        cleanup.register_pool(name)
    assert cleanup.run() == ["hpool", "bpool"]


def test_cleanup_keeps_exporting_after_an_interrupt(config, runner, mocker):
    real_run = runner.run

    def run(argv, **kwargs):
        if argv[:3] == ["zpool", "export", "rpool"]:
            raise InstallInterrupted(2)
        return real_run(argv, **kwargs)

    mocker.patch.object(runner, "run", side_effect=run)
    cleanup = CleanupHandler(config, runner)
    for name in ("bpool", "rpool", "hpool"):
        cleanup.register_pool(name)

    assert cleanup.run() == ["hpool", "bpool"]
