"""
Shared fixtures for the installer tests.

FakeRunner stands in for CommandRunner: it records every argv, returns
scripted results for matching argv prefixes and succeeds silently otherwise.
"""

import json

import pytest

from zfsinstall.config import InstallConfig
from zfsinstall.disk_manager import DiskManager
from zfsinstall.errors import CommandError
from zfsinstall.models import GIB, Device
from zfsinstall.runner import Result


class FakeRunner:
    def __init__(self, dry_run=False):
        self.dry_run = dry_run
        self.history = []
        self.inputs = []
        self.responses = []

    def respond(self, prefix, stdout="", returncode=0, stderr=""):
        self.responses.append((list(prefix), stdout, returncode, stderr))

    def fail(self, prefix, returncode=1, stderr="simulated failure"):
        self.respond(prefix, returncode=returncode, stderr=stderr)

    def forget(self, prefix):
        self.responses = [r for r in self.responses if r[0] != list(prefix)]

    def _match(self, argv):
        for prefix, stdout, returncode, stderr in reversed(self.responses):
            if argv[:len(prefix)] == prefix:
                return Result(argv, returncode, stdout, stderr)
        return Result(argv, 0)

    def run(self, argv, check=True, input=None, capture=True, timeout=None, readonly=False):
        argv = [str(a) for a in argv]
        self.history.append(argv)
        self.inputs.append(input)
        result = self._match(argv)
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stdout, result.stderr)
        return result

    def succeeds(self, argv):
        return self.run(argv, check=False).ok

    def query(self, argv):
        return self.run(argv, check=False, readonly=True)

    def spawn(self, argv):
        self.history.append([str(a) for a in argv])
        return None

    def calls(self, *prefix):
        return [argv for argv in self.history if argv[:len(prefix)] == list(prefix)]


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def by_id_dir(tmp_path):
    path = tmp_path / "by-id"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, by_id_dir):
    target = tmp_path / "target"
    target.mkdir()
    return InstallConfig(
        target_dir=str(target),
        temp_dir=str(tmp_path / "work"),
        state_file=str(tmp_path / "state" / "state.json"),
        log_dir=str(tmp_path / "logs"),
        stable_path_dirs=(str(by_id_dir),),
        zed_cache_timeout=0.0,
        assume_yes=True,
    )


def make_device(name, size_gib=500, sector=512, by_id_dir="/dev/disk/by-id", size_bytes=None):
    return Device(
        path=f"/dev/{name}",
        stable_path=f"{by_id_dir}/ata-DISK_{name}",
        size_bytes=size_bytes or size_gib * GIB,
        logical_sector_size=sector,
        physical_sector_size=sector,
        model=f"Test Disk {name}",
        transport="sata",
    )


@pytest.fixture
def device_factory():
    return make_device


def lsblk_disk(name, size_gib=500, size_bytes=None, **extra):
    node = {
        "name": name,
        "path": f"/dev/{name}",
        "type": "disk",
        "size": size_bytes or size_gib * GIB,
        "model": f"Test Disk {name}",
        "rm": False,
        "tran": "sata",
        "log-sec": 512,
        "phy-sec": 512,
        "mountpoint": None,
        "fstype": None,
        "label": None,
    }
    node.update(extra)
    return node


@pytest.fixture
def inventory(tmp_path, by_id_dir, runner, config):
    """
    Script lsblk and by-id links for a set of disks and return a DiskManager
    reading them. Call it with lsblk node dicts.
    """
    mounts = tmp_path / "mounts"
    mounts.write_text("")

    def build(*nodes, links=None):
        runner.respond(["lsblk"], stdout=json.dumps({"blockdevices": list(nodes)}))
        for node in nodes:
            if links is None or node["name"] in links:
                (by_id_dir / f"ata-DISK_{node['name']}").symlink_to(node["path"])
        return DiskManager(
            config,
            runner,
            sys_block=str(tmp_path / "sys-block"),
            proc_mounts=str(mounts),
            mdstat=str(tmp_path / "mdstat"),
        )

    return build
