#!/usr/bin/env python3
# Errors Module
# Exception hierarchy shared by every installer component
#
#   InstallerError
#     ValidationError              (raised before any destructive step)
#       RequirementsError
#       NoSuitableDevicesError
#       DeviceValidationError
#       SectorSizeError
#       VdevValidationError
#         DeviceCountError
#         SizeMismatchError
#       ResourceExistsError
#         PoolNameConflictError
#     DestructiveOperationError    (raised mid-sequence, triggers cleanup)
#       PartitionError
#         PartitionNodeTimeoutError
#       PoolCreationError
#       DatasetCreationError
#       BootloaderError
#     ResumeStateError
#     CommandError
#     InstallInterrupted


class InstallerError(Exception):
    """Base exception for all installer failures"""

    step = None


class ValidationError(InstallerError):
    """Configuration rejected before anything was written to disk"""


class RequirementsError(ValidationError):
    """The live environment cannot run the installation"""


class NoSuitableDevicesError(ValidationError):
    """Device inventory came back empty"""

    def __init__(self, message="No suitable disks found for installation"):
        super().__init__(message)


class DeviceValidationError(ValidationError):
    """A selected device failed validation"""

    def __init__(self, device, reason):
        self.device = device
        self.reason = reason
        super().__init__(f"Device validation failed for {device}: {reason}")


class SectorSizeError(DeviceValidationError):
    """4K-native device on a firmware mode that cannot boot from it"""

    def __init__(self, device, firmware_mode):
        self.firmware_mode = firmware_mode
        super().__init__(
            device,
            f"4K native drives are not supported in {firmware_mode} boot mode",
        )


class VdevValidationError(ValidationError):
    """Redundancy group rejected"""


class DeviceCountError(VdevValidationError):
    """Wrong number of members for the redundancy mode"""

    def __init__(self, mode, count, minimum, reason=""):
        self.mode = mode
        self.count = count
        self.minimum = minimum
        msg = reason or f"{mode} requires at least {minimum} devices, got {count}"
        super().__init__(msg)


class SizeMismatchError(VdevValidationError):
    """Member size outside the tolerance of the reference member"""

    def __init__(self, reference, reference_size, member, member_size, tolerance):
        self.reference = reference
        self.reference_size = reference_size
        self.member = member
        self.member_size = member_size
        self.tolerance = tolerance
        diff = abs(reference_size - member_size)
        super().__init__(
            f"Size mismatch: {member} is {member_size} bytes, expected ~{reference_size} "
            f"bytes like {reference} (difference: {diff} bytes > {tolerance} tolerance)"
        )


class ResourceExistsError(ValidationError):
    """A resource this run would create already exists"""


class PoolNameConflictError(ResourceExistsError):
    """A pool with one of our names is imported or importable"""

    def __init__(self, pool, imported):
        self.pool = pool
        self.imported = imported
        state = "already imported" if imported else "already exists and is importable"
        super().__init__(
            f"Pool {pool} {state}. Export or destroy it before installing."
        )


class DestructiveOperationError(InstallerError):
    """A destructive command failed mid-sequence"""

    def __init__(self, message, step=None):
        self.step = step
        super().__init__(message)


class PartitionError(DestructiveOperationError):
    """Partitioning a device failed"""

    def __init__(self, device, message, step=None):
        self.device = device
        super().__init__(f"Partitioning {device} failed: {message}", step=step)


class PartitionNodeTimeoutError(PartitionError):
    """Kernel never exposed an expected partition node"""

    def __init__(self, device, node, timeout, step=None):
        self.node = node
        self.timeout = timeout
        super().__init__(
            device, f"partition {node} did not appear within {timeout}s", step=step
        )


class PoolCreationError(DestructiveOperationError):
    """zpool create failed or the pool is missing afterwards"""

    def __init__(self, pool, message):
        self.pool = pool
        super().__init__(f"Creating pool {pool} failed: {message}")


class DatasetCreationError(DestructiveOperationError):
    """zfs create failed"""

    def __init__(self, dataset, message):
        self.dataset = dataset
        super().__init__(f"Creating dataset {dataset} failed: {message}")


class BootloaderError(DestructiveOperationError):
    """Primary bootloader installation failed"""


class ResumeStateError(InstallerError):
    """Checkpoint and persisted state or resources disagree"""


class CommandError(InstallerError):
    """An external command exited non-zero"""

    def __init__(self, argv, returncode, stdout="", stderr=""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        detail = self.stderr.strip().splitlines()
        msg = f"Command failed ({returncode}): {' '.join(self.argv)}"
        if detail:
            msg += f": {detail[-1]}"
        super().__init__(msg)


class InstallInterrupted(InstallerError):
    """Operator aborted the run"""

    def __init__(self, signum=None):
        self.signum = signum
        super().__init__("Installation interrupted by user")
