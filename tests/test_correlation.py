"""Tests del registro de correlación de downlinks.

Ejecutar:
    pytest tests/test_correlation.py -v
"""

import threading

import pytest

from connector.correlation import (
    CorrelationEntry,
    CorrelationRegistry,
    find_lock_token,
    lock_token_to_correlation_id,
)
from connector.errors import DuplicateToken, UnknownToken


def _entry(token: str = "az:LockToken:T1", created_at: float = 1000.0, confirmed: bool = False) -> CorrelationEntry:
    return CorrelationEntry(
        token=token,
        tenant_id="app1",
        device_id="dev1",
        lock_token=token.rsplit(":", 1)[-1],
        confirmed=confirmed,
        created_at=created_at,
    )


class TestLockTokenIds:

    def test_correlation_id_format(self):
        assert lock_token_to_correlation_id("abc") == "az:LockToken:abc"

    def test_find_lock_token_among_other_ids(self):
        ids = ["as:downlink:01H", "az:LockToken:T9", "ns:uplink:42"]

        assert find_lock_token(ids) == "T9"

    def test_find_lock_token_missing(self):
        assert find_lock_token(["as:downlink:01H"]) is None
        assert find_lock_token([]) is None
        assert find_lock_token(["az:LockToken:"]) is None


class TestCorrelationRegistry:

    def test_register_then_resolve_removes(self):
        registry = CorrelationRegistry()
        registry.register(_entry())

        entry = registry.resolve("az:LockToken:T1")

        assert entry.lock_token == "T1"
        assert "az:LockToken:T1" not in registry
        assert len(registry) == 0

    def test_duplicate_register_raises(self):
        registry = CorrelationRegistry()
        registry.register(_entry())

        with pytest.raises(DuplicateToken):
            registry.register(_entry())

    def test_second_resolve_raises_unknown(self):
        registry = CorrelationRegistry()
        registry.register(_entry())
        registry.resolve("az:LockToken:T1")

        with pytest.raises(UnknownToken):
            registry.resolve("az:LockToken:T1")

    def test_get_does_not_remove(self):
        registry = CorrelationRegistry()
        registry.register(_entry(confirmed=True))

        assert registry.get("az:LockToken:T1").confirmed is True
        assert "az:LockToken:T1" in registry

    def test_discard_not_counted_as_resolution(self):
        registry = CorrelationRegistry()
        registry.register(_entry())

        assert registry.discard("az:LockToken:T1") is True
        assert registry.discard("az:LockToken:T1") is False
        assert registry.stats["resolved"] == 0

    def test_purge_older_than(self):
        registry = CorrelationRegistry()
        registry.register(_entry("az:LockToken:OLD", created_at=100.0))
        registry.register(_entry("az:LockToken:NEW", created_at=5000.0))

        purged = registry.purge_older_than(3600, now=5000.0)

        assert purged == 1
        assert "az:LockToken:OLD" not in registry
        assert "az:LockToken:NEW" in registry
        assert registry.stats["purged"] == 1

    def test_concurrent_resolve_returns_entry_once(self):
        """Dos resoluciones simultáneas del mismo token: solo una obtiene la entrada."""
        registry = CorrelationRegistry()
        registry.register(_entry())
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(registry.resolve("az:LockToken:T1"))
            except UnknownToken:
                results.append(None)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1
        assert registry.stats["unknown"] == 7
