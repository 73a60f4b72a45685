#!/usr/bin/env python3
# Ubuntu ZFS Multi-Disk Installer
# Main entry point for the installer

import argparse
import sys

from zfsinstall.config import InstallConfig
from zfsinstall.installer import EXIT_VALIDATION, Installer
from zfsinstall.log import setup_logging
from zfsinstall.models import RedundancyMode
from zfsinstall.runner import CommandRunner

RAID_CHOICES = [mode.value for mode in RedundancyMode] + ["raid0", "raid1", "raid10"]


def build_parser():
    parser = argparse.ArgumentParser(
        description="Install Ubuntu on ZFS across multiple disks (bpool, rpool and hpool)"
    )
    parser.add_argument("--raid-type", choices=RAID_CHOICES,
                        help="Redundancy mode for every pool (prompted if omitted)")
    parser.add_argument("--disks", nargs="+", metavar="DISK",
                        help="Disks to use, as /dev or /dev/disk/by-id paths (prompted if omitted)")
    parser.add_argument("--target-dir", help="Mount point for the new system (default: /mnt)")
    parser.add_argument("--username", help="User whose home dataset is created")
    parser.add_argument("--hostname", help="Hostname of the installed system")
    parser.add_argument("--state-file", help="Checkpoint file used to resume an interrupted run")
    parser.add_argument("--log-dir", help="Directory for per-run log files")
    encrypt = parser.add_mutually_exclusive_group()
    encrypt.add_argument("--encrypt", dest="encryption", action="store_true", default=None,
                         help="Encrypt rpool and hpool with a passphrase")
    encrypt.add_argument("--no-encrypt", dest="encryption", action="store_false",
                         help="Do not encrypt rpool and hpool")
    parser.add_argument("--fresh", action="store_true",
                        help="Ignore any saved checkpoint and start from the beginning")
    parser.add_argument("--yes", action="store_true",
                        help="Do not ask for confirmation before destroying disks")
    parser.add_argument("--dry-run", action="store_true",
                        help="Log every command instead of running it")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    print("=" * 80)
    print("Ubuntu ZFS Multi-Disk Installer")
    print("=" * 80)
    print("\nWARNING: This installer will erase the selected disks. Make sure you have")
    print("a backup of all important data before proceeding.\n")

    try:
        config = InstallConfig.from_env(
            target_dir=args.target_dir,
            username=args.username,
            hostname=args.hostname,
            state_file=args.state_file,
            log_dir=args.log_dir,
            dry_run=args.dry_run,
            assume_yes=args.yes,
        )
    except (TypeError, ValueError) as e:
        print(f"Error: invalid configuration: {e}")
        return EXIT_VALIDATION

    log_file = setup_logging(config.log_dir, debug=args.debug)
    if config.dry_run:
        print("DRY RUN: no command that changes the system will be executed.\n")

    installer = Installer(
        config,
        CommandRunner(dry_run=config.dry_run),
        raid_type=args.raid_type,
        disks=args.disks,
        username=args.username,
        encryption=args.encryption,
        fresh=args.fresh,
        log_file=log_file,
    )
    return installer.run()


if __name__ == "__main__":
    sys.exit(main())
