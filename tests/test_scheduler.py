import pytest

from errors import ConfigurationError
from registry import SecretDescriptor
from scheduler import (
    ALL_SECRETS_READY,
    HOST_SECRETS_READY,
    ROLE_USER_SECRETS_READY,
    PhaseBarriers,
    schedule,
)


def _d(name, phase, identity_from=None):
    return SecretDescriptor(name=name, source=f"/b/{name}.age", target=f"/r/{name}",
                            phase=phase, identity="/k", identity_from=identity_from)


def test_schedule_groups_by_phase():
    batches = schedule([_d("z", 2, "a"), _d("b", 1), _d("a", 1), _d("y", 3, "z")])
    assert [b.phase for b in batches] == [1, 2, 3]
    assert [b.names() for b in batches] == [["a", "b"], ["z"], ["y"]]


def test_schedule_empty():
    assert schedule([]) == []


def test_schedule_rejects_gaps_and_duplicates():
    with pytest.raises(ConfigurationError, match="dense"):
        schedule([_d("a", 1), _d("b", 3)])
    with pytest.raises(ConfigurationError, match="unique"):
        schedule([_d("a", 1), _d("a", 1)])


def test_barriers_open_in_order():
    opened = []
    barriers = PhaseBarriers(listener=lambda name, phase: opened.append((name, phase)))

    barriers.phase_complete(1, 3)
    assert barriers.is_open(HOST_SECRETS_READY)
    assert not barriers.wait(ROLE_USER_SECRETS_READY, timeout=0)

    barriers.phase_complete(2, 3)
    barriers.phase_complete(3, 3)
    assert opened == [
        (HOST_SECRETS_READY, 1),
        (ROLE_USER_SECRETS_READY, 2),
        (ALL_SECRETS_READY, 3),
    ]
    assert barriers.wait(ALL_SECRETS_READY, timeout=0)


def test_single_phase_opens_everything():
    barriers = PhaseBarriers()
    barriers.phase_complete(1, 1)
    assert all(barriers.is_open(s) for s in (HOST_SECRETS_READY, ROLE_USER_SECRETS_READY, ALL_SECRETS_READY))


def test_wait_unknown_signal():
    with pytest.raises(KeyError):
        PhaseBarriers().wait("phase3-ready", timeout=0)
