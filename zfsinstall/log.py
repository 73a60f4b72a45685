#!/usr/bin/env python3
# Logging Module
# Console and retained per-run log file sinks

import sys
import time
from pathlib import Path

from loguru import logger

MAX_LOG_FILES = 5
LOG_PATTERN = "zfs-install-*.log"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | "
    "{message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[source]: <10} | "
    "{extra[phase]: <20} | "
    "{message}"
)


def rotate_logs(log_dir, keep=MAX_LOG_FILES):
    """Remove the oldest run logs so that a new one keeps the count at `keep`"""
    logs = sorted(Path(log_dir).glob(LOG_PATTERN), key=lambda p: p.stat().st_mtime)
    excess = len(logs) - keep + 1
    removed = []
    for old_log in logs[:max(excess, 0)]:
        old_log.unlink()
        removed.append(old_log)
    return removed


def setup_logging(log_dir, debug=False, console=True):
    """
    Configure loguru for one installer run.

    Console output goes to stderr at INFO (DEBUG with --debug). Every run also
    writes a DEBUG-level log file that is kept after the run ends, so a failed
    installation always leaves a diagnostic record behind.

    Returns the path of the run log file.
    """
    logger.remove()
    logger.configure(extra={"source": "installer", "phase": "-"})

    if console:
        logger.add(
            sys.stderr,
            level="DEBUG" if debug else "INFO",
            backtrace=False,
            diagnose=False,
            colorize=True,
            format=CONSOLE_FORMAT,
        )

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    rotate_logs(log_dir)

    log_file = log_dir / f"zfs-install-{time.strftime('%Y%m%d-%H%M%S')}.log"
    logger.add(
        log_file,
        level="DEBUG",
        backtrace=True,
        diagnose=False,
        format=FILE_FORMAT,
    )
    return log_file


class LoggerFactory:
    """Component loggers with bound source context"""

    @staticmethod
    def for_runner():
        return logger.bind(source="exec")

    @staticmethod
    def for_disks():
        return logger.bind(source="disks")

    @staticmethod
    def for_partitions():
        return logger.bind(source="partition")

    @staticmethod
    def for_zfs():
        return logger.bind(source="zfs")

    @staticmethod
    def for_boot():
        return logger.bind(source="boot")

    @staticmethod
    def for_system():
        return logger.bind(source="system")

    @staticmethod
    def for_state():
        return logger.bind(source="state")

    @staticmethod
    def for_installer():
        return logger.bind(source="installer")
