"""
Unit tests for the response cache.
"""

import threading
from unittest.mock import MagicMock

import pytest

from truenas_block.client.cache import ResponseCache, resource_class


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ResponseCache(ttl=60, clock=clock)


class TestResponseCache:
    """Tests for ResponseCache."""

    @pytest.mark.unit
    def test_fetch_loads_once_within_ttl(self, cache):
        """Test identical queries within the TTL hit the loader once."""
        loader = MagicMock(return_value=[{"id": 1}])

        first = cache.fetch("iscsi.extent.query", [], loader)
        second = cache.fetch("iscsi.extent.query", [], loader)

        assert first == second == [{"id": 1}]
        loader.assert_called_once()

    @pytest.mark.unit
    def test_entries_expire(self, cache, clock):
        loader = MagicMock(side_effect=[["a"], ["b"]])

        cache.fetch("iscsi.target.query", [], loader)
        clock.now += 60

        assert cache.fetch("iscsi.target.query", [], loader) == ["b"]
        assert loader.call_count == 2

    @pytest.mark.unit
    def test_params_are_part_of_key(self, cache):
        loader = MagicMock(side_effect=[["a"], ["b"]])

        cache.fetch("nvmet.subsys.query", [[["subnqn", "=", "x"]]], loader)
        result = cache.fetch("nvmet.subsys.query", [[["subnqn", "=", "y"]]], loader)

        assert result == ["b"]

    @pytest.mark.unit
    def test_non_cacheable_methods_always_load(self, cache):
        loader = MagicMock(return_value={"id": "tank/vms"})

        cache.fetch("pool.dataset.get_instance", ["tank/vms"], loader)
        cache.fetch("pool.dataset.get_instance", ["tank/vms"], loader)

        assert loader.call_count == 2
        assert len(cache) == 0

    @pytest.mark.unit
    def test_zero_ttl_disables_cache(self, clock):
        cache = ResponseCache(ttl=0, clock=clock)
        loader = MagicMock(return_value=[])

        cache.fetch("iscsi.extent.query", [], loader)
        cache.fetch("iscsi.extent.query", [], loader)

        assert loader.call_count == 2

    @pytest.mark.unit
    def test_returned_values_are_copies(self, cache):
        """Test callers cannot modify cached responses."""
        cache.fetch("iscsi.extent.query", [], lambda: [{"id": 1}])
        cached = cache.fetch("iscsi.extent.query", [], MagicMock())
        cached[0]["id"] = 99

        assert cache.fetch("iscsi.extent.query", [], MagicMock()) == [{"id": 1}]

    @pytest.mark.unit
    def test_mutation_invalidates_related_classes(self, cache):
        """Test an extent mutation drops extent and target-extent entries only."""
        cache.put("iscsi.extent.query", [], ["extent"])
        cache.put("iscsi.targetextent.query", [], ["mapping"])
        cache.put("iscsi.target.query", [], ["target"])

        cache.invalidate("iscsi.extent.create")

        assert cache.fetch("iscsi.target.query", [], MagicMock()) == ["target"]
        assert len(cache) == 1

    @pytest.mark.unit
    def test_load_invalidated_midway_is_not_stored(self, cache):
        """Test a response loaded across a mutation of its class is not cached."""
        loading = threading.Event()
        release = threading.Event()
        results = []

        def slow_loader():
            loading.set()
            release.wait(5)
            return ["old"]

        reader = threading.Thread(target=lambda: results.append(cache.fetch("iscsi.extent.query", [], slow_loader)))
        reader.start()
        assert loading.wait(5)
        cache.invalidate("iscsi.extent.create")
        release.set()
        reader.join(5)

        assert results == [["old"]]
        assert len(cache) == 0
        assert cache.fetch("iscsi.extent.query", [], MagicMock(return_value=["new"])) == ["new"]

    @pytest.mark.unit
    def test_load_across_full_clear_is_not_stored(self, cache):
        generation = cache.generation("iscsi.target.query")
        cache.invalidate()

        assert not cache.put("iscsi.target.query", [], ["stale"], generation=generation)
        assert cache.put("iscsi.target.query", [], ["fresh"], generation=cache.generation("iscsi.target.query"))
        assert cache.fetch("iscsi.target.query", [], MagicMock()) == ["fresh"]

    @pytest.mark.unit
    def test_unrelated_invalidation_keeps_load(self, cache):
        generation = cache.generation("iscsi.target.query")
        cache.invalidate("nvmet.namespace.create")

        assert cache.put("iscsi.target.query", [], ["target"], generation=generation)

    @pytest.mark.unit
    def test_invalidate_all(self, cache):
        cache.put("iscsi.extent.query", [], [])
        cache.put("iscsi.target.query", [], [])

        cache.invalidate()

        assert len(cache) == 0


@pytest.mark.unit
def test_resource_class():
    assert resource_class("iscsi.targetextent.delete") == "iscsi.targetextent"
    assert resource_class("ping") == "ping"
