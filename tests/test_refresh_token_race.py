"""Concurrency tests for rotation of the same token from two requests."""

import asyncio
import threading

import pytest

from tokenward.config import Settings
from tokenward.service.errors import InvalidRefreshToken, TokenReuseDetected
from tokenward.service.refresh_tokens import RefreshTokenService
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import IssuedToken


class LockstepStore(MemoryStore):
    """Holds every rotation lookup until both callers have read the live row."""

    def __init__(self, parties: int = 2) -> None:
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)
        self.armed = False

    def find_refresh_token(self, token, *, include_deleted=False):
        record = super().find_refresh_token(token, include_deleted=include_deleted)
        if self.armed and include_deleted:
            self.barrier.wait()
        return record


def _rotate_in_threads(service, token, count=2):
    results = []
    lock = threading.Lock()

    def _worker():
        try:
            outcome = asyncio.run(service.rotate(token))
        except (TokenReuseDetected, InvalidRefreshToken) as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_worker) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    return results


class TestConcurrentRotation:
    """Two simultaneous rotations of one live token."""

    def test_exactly_one_rotation_wins(self, clock):
        store = LockstepStore()
        service = RefreshTokenService(store, Settings(), clock=clock)
        issued = asyncio.run(service.issue("user-1"))
        store.armed = True

        results = _rotate_in_threads(service, issued.token)

        assert len(results) == 2
        winners = [r for r in results if isinstance(r, IssuedToken)]
        losers = [r for r in results if isinstance(r, TokenReuseDetected)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].user_id == "user-1"

    def test_loser_cascade_leaves_no_live_original(self, clock):
        store = LockstepStore()
        service = RefreshTokenService(store, Settings(), clock=clock)
        issued = asyncio.run(service.issue("user-1"))
        store.armed = True

        _rotate_in_threads(service, issued.token)
        store.armed = False

        original = store.find_refresh_token(issued.token, include_deleted=True)
        assert original.is_revoked
        assert store.find_refresh_token(issued.token) is None

    def test_sequential_rotations_without_race(self, clock):
        store = MemoryStore()
        service = RefreshTokenService(store, Settings(), clock=clock)
        issued = asyncio.run(service.issue("user-1"))

        first = asyncio.run(service.rotate(issued.token))
        assert isinstance(first, IssuedToken)
        with pytest.raises(TokenReuseDetected):
            asyncio.run(service.rotate(issued.token))
