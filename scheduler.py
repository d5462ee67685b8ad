# scheduler.py -- Phase scheduling and phase-completion barriers.
# Descriptors sharing a phase form one batch; batches run in ascending phase
# order and a batch's barrier opens only after every unit in it resolved.

import threading
from dataclasses import dataclass

from errors import ConfigurationError
from registry import SecretDescriptor, validate_phases

HOST_SECRETS_READY = "host-secrets-ready"
ROLE_USER_SECRETS_READY = "role-user-secrets-ready"
ALL_SECRETS_READY = "all-secrets-ready"

SIGNALS = (HOST_SECRETS_READY, ROLE_USER_SECRETS_READY, ALL_SECRETS_READY)


@dataclass(frozen=True)
class PhaseBatch:
    """Mutually independent descriptors of one phase."""
    phase: int
    descriptors: tuple[SecretDescriptor, ...]

    def names(self) -> list[str]:
        return [d.name for d in self.descriptors]


def schedule(descriptors: list[SecretDescriptor]) -> list[PhaseBatch]:
    """Partition descriptors into batches ordered by ascending phase.

    Args:
        descriptors: Validated descriptors (see registry.build_descriptors).

    Returns:
        One PhaseBatch per phase; descriptors within a batch sorted by name.

    Raises:
        ConfigurationError: If names repeat or phase numbering is not dense.
    """
    names = [d.name for d in descriptors]
    if len(names) != len(set(names)):
        raise ConfigurationError("Descriptor names must be unique")
    validate_phases(descriptors)

    by_phase: dict[int, list[SecretDescriptor]] = {}
    for d in descriptors:
        by_phase.setdefault(d.phase, []).append(d)
    return [
        PhaseBatch(phase, tuple(sorted(by_phase[phase], key=lambda d: d.name)))
        for phase in sorted(by_phase)
    ]


class PhaseBarriers:
    """Completion signals awaited by downstream consumers.

    host-secrets-ready opens after phase 1, role-user-secrets-ready after
    phase 2 and all-secrets-ready after the last phase. A run with a single
    phase opens all three together.

    Args:
        listener: Optional callable(signal_name, phase) invoked as each
            signal opens, for an external supervisor.
    """

    def __init__(self, listener=None) -> None:
        self._events = {name: threading.Event() for name in SIGNALS}
        self._listener = listener

    def _open(self, name: str, phase: int) -> None:
        if self._events[name].is_set():
            return
        self._events[name].set()
        if self._listener is not None:
            self._listener(name, phase)

    def phase_complete(self, phase: int, last_phase: int) -> None:
        """Open every signal satisfied once `phase` has resolved."""
        if phase >= 1:
            self._open(HOST_SECRETS_READY, phase)
        if phase >= 2 or phase == last_phase:
            self._open(ROLE_USER_SECRETS_READY, phase)
        if phase == last_phase:
            self._open(ALL_SECRETS_READY, phase)

    def is_open(self, name: str) -> bool:
        return self._events[name].is_set()

    def wait(self, name: str, timeout: float | None = None) -> bool:
        """Block until the named signal opens; False on timeout."""
        if name not in self._events:
            raise KeyError(f"Unknown signal '{name}'")
        return self._events[name].wait(timeout)
