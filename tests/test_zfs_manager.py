import pytest

from zfsinstall.config import InstallContext
from zfsinstall.errors import (
    DatasetCreationError,
    PoolCreationError,
    PoolNameConflictError,
    RequirementsError,
    SizeMismatchError,
)
from zfsinstall.models import RedundancyMode
from zfsinstall.partition_manager import PartitionManager
from zfsinstall.zfs_manager import GRUB_COMPATIBLE_FEATURES, ZFSManager, compose_groups


@pytest.fixture
def context(config, runner, device_factory):
    devices = [device_factory(name) for name in ("sda", "sdb", "sdc")]
    manager = PartitionManager(config, runner)
    plans = tuple(manager.layout_for(d, i) for i, d in enumerate(devices, start=1))
    return InstallContext(
        config=config,
        devices=tuple(devices),
        mode=RedundancyMode.RAIDZ1,
        install_id="abc123",
        username="kubu",
        ashift=12,
        plans=plans,
    )


def pool_creates(runner):
    return runner.calls("zpool", "create")


def option_values(argv, flag):
    return [argv[i + 1] for i, arg in enumerate(argv) if arg == flag]


def test_boot_pool_features_are_grub_readable(context, runner):
    ZFSManager(context, runner).create_boot_pool()

    (argv,) = pool_creates(runner)
    pool_options = option_values(argv, "-o")
    features = [opt.split("=")[0][len("feature@"):] for opt in pool_options
                if opt.startswith("feature@")]
    assert features
    assert set(features) <= GRUB_COMPATIBLE_FEATURES
    assert "compatibility=grub2" in pool_options
    assert not any(opt.startswith("encryption") for opt in option_values(argv, "-O"))


def test_boot_pool_uses_third_partitions_as_raidz1(context, runner):
    ZFSManager(context, runner).create_boot_pool()
    (argv,) = pool_creates(runner)
    name_index = argv.index("bpool")
    assert argv[name_index + 1] == "raidz1"
    assert all(path.endswith("-part2") for path in argv[name_index + 2:])
    assert argv[argv.index("-R") + 1] == context.config.target_dir


def test_create_pools_registers_each_pool(context, runner):
    registered = []
    ZFSManager(context, runner, on_pool_created=registered.append).create_pools()
    assert registered == ["bpool", "rpool", "hpool"]
    assert len(pool_creates(runner)) == 3


def test_encrypted_pools_read_passphrase_from_stdin(context, runner):
    encrypted = context.evolve(encryption=True)
    asked = []
    manager = ZFSManager(encrypted, runner, passphrase_provider=lambda pool: asked.append(pool) or "s3cretpass")

    manager.create_root_pool()

    (argv,) = pool_creates(runner)
    assert "encryption=on" in option_values(argv, "-O")
    assert "keyformat=passphrase" in option_values(argv, "-O")
    assert asked == ["rpool"]
    assert runner.inputs[runner.history.index(argv)] == "s3cretpass\n"


def test_size_mismatch_fails_before_any_pool_create(context, runner, device_factory):
    plans = list(context.plans)
    bigger = PartitionManager(context.config, runner).layout_for(device_factory("sdc", size_gib=700), 3)
    mismatched = context.evolve(plans=tuple(plans[:2] + [bigger]))

    with pytest.raises(SizeMismatchError):
        ZFSManager(mismatched, runner).create_home_pool()
    assert pool_creates(runner) == []


def test_failed_create_raises_pool_creation_error(context, runner):
    runner.fail(["zpool", "create"], stderr="cannot create 'rpool': pool already exists")
    registered = []
    with pytest.raises(PoolCreationError, match="already exists"):
        ZFSManager(context, runner, on_pool_created=registered.append).create_root_pool()
    assert registered == []


def test_pool_conflict_detects_imported_and_importable(context, runner):
    runner.respond(["zpool", "list", "-H", "-o", "name"], stdout="tank\nhpool\n")
    with pytest.raises(PoolNameConflictError) as exc:
        ZFSManager(context, runner).check_pool_conflicts()
    assert exc.value.pool == "hpool"
    assert exc.value.imported

    runner.respond(["zpool", "list", "-H", "-o", "name"], stdout="tank\n")
    runner.respond(["zpool", "import", "-d"], stdout="   pool: bpool\n     id: 123\n  state: ONLINE\n")
    with pytest.raises(PoolNameConflictError) as exc:
        ZFSManager(context, runner).check_pool_conflicts()
    assert exc.value.pool == "bpool"
    assert not exc.value.imported


def test_dataset_hierarchy_order_and_properties(context, runner):
    root = ZFSManager(context, runner).create_dataset_hierarchy()

    created = [argv[-1] for argv in runner.calls("zfs", "create")]
    assert root == "rpool/ROOT/ubuntu_abc123"
    assert created.index("rpool/ROOT") < created.index(root) < created.index(f"{root}/var")
    assert created.index(f"{root}/var") < created.index(f"{root}/var/lib") < created.index(f"{root}/var/lib/apt")
    assert created.index("hpool/HOME/ubuntu_abc123") < created.index("hpool/HOME/ubuntu_abc123/kubu")

    root_create = runner.calls("zfs", "create")[created.index(root)]
    assert "com.ubuntu.zsys:bootfs=yes" in root_create
    userdata = runner.calls("zfs", "create")[created.index("rpool/USERDATA/root_abc123")]
    assert f"com.ubuntu.zsys:bootfs-datasets={root}" in userdata
    assert ["chmod", "1777", context.config.target_path("var/tmp")] in runner.history


def test_dataset_failure_raises(context, runner):
    runner.fail(["zfs", "create", "-o", "canmount=off", "-o", "mountpoint=none", "rpool/ROOT"])
    with pytest.raises(DatasetCreationError):
        ZFSManager(context, runner).create_dataset_hierarchy()


def test_key_backup_notes_written_when_encrypted(context, runner, tmp_path):
    runner.respond(["zfs", "get"], stdout="NAME PROPERTY VALUE\nrpool encryption aes-256-gcm\n")
    backup_dir = ZFSManager(context.evolve(encryption=True), runner).write_key_backup_notes()

    readme = (tmp_path / "target" / "root" / "zfs-keys-backup" / "CRITICAL-README.txt")
    assert readme.exists()
    assert backup_dir.endswith("zfs-keys-backup")
    assert ZFSManager(context, runner).write_key_backup_notes() is None


def test_load_module_times_out_without_dev_zfs(context, runner):
    ticks = iter(range(100))
    manager = ZFSManager(context, runner, exists=lambda path: False,
                         sleep=lambda s: None, clock=lambda: next(ticks))
    with pytest.raises(RequirementsError):
        manager.load_module()


def test_export_all_reverses_order(context, runner):
    runner.fail(["zpool", "export", "rpool"])
    exported = ZFSManager(context, runner).export_all()
    assert exported == ["hpool", "bpool"]
    assert [argv[-1] for argv in runner.calls("zpool", "export")] == ["hpool", "rpool", "bpool"]


def test_create_pools_checks_every_group_before_the_first_create(context, runner, device_factory):
    plans = list(context.plans)
    bigger = PartitionManager(context.config, runner).layout_for(device_factory("sdc", size_gib=700), 3)
    mismatched = context.evolve(plans=tuple(plans[:2] + [bigger]))
    registered = []

    with pytest.raises(SizeMismatchError):
        ZFSManager(mismatched, runner, on_pool_created=registered.append).create_pools()
    assert pool_creates(runner) == []
    assert registered == []


def test_create_pools_refuses_a_leftover_pool(context, runner):
    runner.respond(["zpool", "import", "-d"], stdout="   pool: bpool\n     id: 42\n  state: ONLINE\n")
    with pytest.raises(PoolNameConflictError) as exc:
        ZFSManager(context, runner).create_pools()
    assert exc.value.pool == "bpool"
    assert pool_creates(runner) == []


def test_compose_groups_covers_all_three_pools(context):
    specs = compose_groups(context.mode, context.plans)
    assert list(specs) == ["bpool", "rpool", "hpool"]
    assert all(spec.args[0] == "raidz1" for spec in specs.values())
    assert specs["hpool"].args[1].endswith("-part4")
