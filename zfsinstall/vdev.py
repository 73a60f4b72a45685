#!/usr/bin/env python3
# Vdev Module
# Validates redundancy groups and formats vdev specifications for zpool create

from .errors import DeviceCountError, SizeMismatchError
from .models import Member, RedundancyMode, VdevSpec

MINIMUM_DEVICES = {
    RedundancyMode.STRIPE: 1,
    RedundancyMode.MIRROR: 2,
    RedundancyMode.STRIPED_MIRROR: 4,
    RedundancyMode.RAIDZ1: 3,
    RedundancyMode.RAIDZ2: 4,
    RedundancyMode.RAIDZ3: 5,
}

# Allowed size deviation from the reference member, as a divisor (10%)
SIZE_TOLERANCE_DIVISOR = 10


def minimum_devices(mode):
    return MINIMUM_DEVICES[RedundancyMode.parse(mode)]


def is_mode_available(mode, count):
    """Whether `count` devices can form a group of the given mode"""
    mode = RedundancyMode.parse(mode)
    if count < MINIMUM_DEVICES[mode]:
        return False
    if mode is RedundancyMode.STRIPED_MIRROR and count % 2:
        return False
    return True


def available_modes(count):
    return [mode for mode in RedundancyMode if is_mode_available(mode, count)]


def recommended_mode(count):
    """Mode suggested for a given device count"""
    if count >= 7:
        return RedundancyMode.RAIDZ3
    if 4 <= count <= 6:
        return RedundancyMode.RAIDZ2
    if count == 3:
        return RedundancyMode.RAIDZ1
    if count == 2:
        return RedundancyMode.MIRROR
    return RedundancyMode.STRIPE


def check_size_tolerance(reference, member):
    """Raise SizeMismatchError when member deviates more than 10% from reference"""
    tolerance = reference.size_bytes // SIZE_TOLERANCE_DIVISOR
    if abs(reference.size_bytes - member.size_bytes) > tolerance:
        raise SizeMismatchError(
            reference.path, reference.size_bytes, member.path, member.size_bytes, tolerance
        )


def _as_members(members):
    result = []
    for member in members:
        if isinstance(member, Member):
            result.append(member)
        else:
            path, size = member
            result.append(Member(path, size))
    return result


def compose(mode, members):
    """
    Validate a redundancy group and return its vdev specification.

    `members` is the ordered list of same-role partitions (Member objects or
    (path, size_bytes) pairs). The first member is always the size reference;
    mismatches are reported relative to it. No commands are run here.
    """
    mode = RedundancyMode.parse(mode)
    members = _as_members(members)
    count = len(members)
    minimum = MINIMUM_DEVICES[mode]

    if count < minimum:
        raise DeviceCountError(mode.value, count, minimum)

    paths = [m.path for m in members]

    if mode is RedundancyMode.STRIPE:
        return VdevSpec(mode, tuple(paths))

    if mode is RedundancyMode.STRIPED_MIRROR:
        if count % 2:
            raise DeviceCountError(
                mode.value, count, minimum,
                reason=f"{mode.value} requires an even number of devices, got {count}",
            )
        args = []
        for first, second in zip(members[0::2], members[1::2]):
            check_size_tolerance(first, second)
            args.extend(["mirror", first.path, second.path])
        # Pairs are striped together, so they must also match each other
        for member in members[1:]:
            check_size_tolerance(members[0], member)
        return VdevSpec(mode, tuple(args))

    for member in members[1:]:
        check_size_tolerance(members[0], member)

    return VdevSpec(mode, (mode.value,) + tuple(paths))
