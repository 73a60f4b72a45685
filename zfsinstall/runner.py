#!/usr/bin/env python3
# Command Runner Module
# Executes external commands and provides the bounded retry helper

import shlex
import subprocess
import time

from .errors import CommandError
from .log import LoggerFactory

log = LoggerFactory.for_runner()


class Result:
    """Outcome of one external command"""

    def __init__(self, argv, returncode, stdout="", stderr=""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""

    @property
    def ok(self):
        return self.returncode == 0

    def __repr__(self):
        return f"Result({self.argv!r}, rc={self.returncode})"


class CommandRunner:
    """
    Thin wrapper around subprocess.run.

    Every component receives a runner instead of calling subprocess itself,
    so command construction can be inspected in tests and a dry run can log
    the full destructive sequence without touching any device.
    """

    def __init__(self, dry_run=False, timeout=None):
        self.dry_run = dry_run
        self.timeout = timeout
        self.history = []

    def run(self, argv, check=True, input=None, capture=True, timeout=None, readonly=False):
        """
        Run argv; raise CommandError on non-zero exit when check is set.

        Read-only queries (readonly=True) execute even in dry-run mode so the
        inventory a dry run reports is real.
        """
        argv = [str(a) for a in argv]
        self.history.append(argv)
        printable = " ".join(shlex.quote(a) for a in argv)

        if self.dry_run and not readonly:
            log.info(f"DRY-RUN: {printable}")
            return Result(argv, 0)

        log.debug(f"Executing: {printable}")
        try:
            proc = subprocess.run(
                argv,
                input=input,
                capture_output=capture,
                text=True,
                timeout=timeout or self.timeout,
            )
        except FileNotFoundError as e:
            raise CommandError(argv, 127, "", str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(argv, -1, "", f"timed out after {e.timeout}s") from e

        result = Result(argv, proc.returncode, proc.stdout, proc.stderr)
        if not result.ok:
            log.debug(f"Command exited {result.returncode}: {printable}")
            if result.stderr.strip():
                log.debug(result.stderr.strip())
            if check:
                raise CommandError(argv, result.returncode, result.stdout, result.stderr)
        return result

    def spawn(self, argv):
        """Start a background process; returns None in dry-run mode"""
        argv = [str(a) for a in argv]
        self.history.append(argv)
        if self.dry_run:
            log.info(f"DRY-RUN (background): {' '.join(argv)}")
            return None
        log.debug(f"Starting background process: {' '.join(argv)}")
        return subprocess.Popen(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)

    def succeeds(self, argv):
        """True when argv exits zero; never raises for a non-zero exit"""
        return self.run(argv, check=False).ok

    def query(self, argv):
        """Read-only command; runs in dry-run mode too and never raises on exit status"""
        return self.run(argv, check=False, readonly=True)


def wait_until(predicate, timeout=10.0, interval=0.5, sleep=time.sleep, clock=time.monotonic):
    """
    Poll `predicate` until it returns truthy or `timeout` seconds pass.

    Returns True if the predicate succeeded, False on timeout. The predicate is
    always evaluated at least once. `sleep` and `clock` are injectable so tests
    can simulate instant success or instant timeout.
    """
    deadline = clock() + timeout
    while True:
        if predicate():
            return True
        if clock() >= deadline:
            return False
        sleep(interval)
