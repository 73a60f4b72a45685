#!/usr/bin/env python3
# State Module
# Checkpointed, linear phase execution with one atomically written state record

import json
import os
import tempfile
import time
from pathlib import Path

from loguru import logger

from .errors import ResumeStateError
from .log import LoggerFactory

log = LoggerFactory.for_state()

STATE_VERSION = 1


class InstallState:
    """Last completed phase plus the phase-scoped fields needed to resume"""

    def __init__(self, checkpoint=None, data=None, updated=None):
        self.checkpoint = checkpoint
        self.data = dict(data or {})
        self.updated = updated

    @property
    def is_initial(self):
        return self.checkpoint is None

    def get(self, key, default=None):
        return self.data.get(key, default)

    def missing(self, keys):
        return [k for k in keys if k not in self.data]

    def to_dict(self):
        return {
            "version": STATE_VERSION,
            "checkpoint": self.checkpoint,
            "updated": self.updated,
            "data": self.data,
        }


class StateStore:
    """
    Single JSON file holding the checkpoint and the phase-scoped state.

    Both are written in one os.replace, so a checkpoint can never claim a
    phase is done while the state that phase produced is missing.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self):
        if not self.path.exists():
            return InstallState()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ResumeStateError(f"State file {self.path} is unreadable: {e}") from e
        if not isinstance(raw, dict) or raw.get("version") != STATE_VERSION:
            raise ResumeStateError(f"State file {self.path} has an unsupported format")
        return InstallState(raw.get("checkpoint"), raw.get("data"), raw.get("updated"))

    def save(self, state):
        state.updated = int(time.time())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        log.debug(f"State saved to {self.path} (checkpoint={state.checkpoint})")

    def clear(self):
        if self.path.exists():
            self.path.unlink()
            log.info(f"Removed previous installation state {self.path}")


class Phase:
    """
    One named step of the installation.

    `action(state)` performs the work and returns a dict of phase-scoped
    fields to persist. `requires` lists fields that must be present when the
    phase is skipped on resume, because later phases depend on them.
    """

    def __init__(self, name, action, requires=(), title=None):
        self.name = name
        self.action = action
        self.requires = tuple(requires)
        self.title = title or name.replace("-", " ").capitalize()

    def __repr__(self):
        return f"Phase({self.name!r})"


class PhaseRunner:
    """Runs phases in declaration order, gated by the persisted checkpoint"""

    def __init__(self, store, phases, on_phase_start=None):
        names = [p.name for p in phases]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate phase names: {names}")
        self.store = store
        self.phases = list(phases)
        self.on_phase_start = on_phase_start
        self.current = None

    def ordinal(self, name):
        for index, phase in enumerate(self.phases, start=1):
            if phase.name == name:
                return index
        raise ResumeStateError(f"Checkpoint names unknown phase '{name}'")

    def completed_ordinal(self, state):
        if state.checkpoint is None:
            return 0
        return self.ordinal(state.checkpoint)

    def run_phases(self):
        """Execute every phase not covered by the checkpoint; return the final state"""
        state = self.store.load()
        total = len(self.phases)

        for index, phase in enumerate(self.phases, start=1):
            self.current = phase
            done = self.completed_ordinal(state)

            if done >= index:
                missing = state.missing(phase.requires)
                if missing:
                    raise ResumeStateError(
                        f"Checkpoint '{state.checkpoint}' says {phase.name} is complete, "
                        f"but its saved state is missing: {', '.join(missing)}"
                    )
                log.info(f"Skipping phase {index}/{total} {phase.name} (already completed)")
                continue

            if self.on_phase_start:
                self.on_phase_start(index, total, phase)
            log.info(f"Phase {index}/{total}: {phase.title}")

            with logger.contextualize(phase=phase.name):
                updates = phase.action(state) or {}

            # Data and checkpoint land in the same write
            state = InstallState(phase.name, {**state.data, **updates})
            self.store.save(state)
            log.info(f"Checkpoint saved: {phase.name}")

        self.current = None
        return state
