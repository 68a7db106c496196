from __future__ import annotations

from recallmem.cache import QueryCache, make_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_make_key_normalizes_query_and_drops_empty_filters() -> None:
    assert make_key("  Pytest ", {"project": "a", "types": None}, 5) == make_key(
        "pytest", {"project": "a"}, 5
    )
    assert make_key("q", {"types": ["b", "a"]}, 5) == make_key("q", {"types": ["a", "b"]}, 5)
    assert make_key("q", None, 5) != make_key("q", None, 6)


def test_entries_expire() -> None:
    clock = FakeClock()
    cache = QueryCache(ttl_s=10, clock=clock)
    cache.put("q", {"project": "a"}, 5, ["hit"])

    clock.now = 9.9
    assert cache.get("q", {"project": "a"}, 5) == ["hit"]
    clock.now = 10.0
    assert cache.get("q", {"project": "a"}, 5) is None
    assert len(cache) == 0


def test_zero_ttl_disables_cache() -> None:
    cache = QueryCache(ttl_s=0)
    cache.put("q", None, 5, ["hit"])
    assert cache.get("q", None, 5) is None


def test_invalidate_project() -> None:
    cache = QueryCache(ttl_s=60)
    cache.put("q", {"project": "a"}, 5, "a")
    cache.put("q", {"project": "b"}, 5, "b")
    cache.put("q", None, 5, "all")

    assert cache.invalidate_project("a") == 2
    assert cache.get("q", {"project": "b"}, 5) == "b"
    assert cache.get("q", {"project": "a"}, 5) is None
    assert cache.get("q", None, 5) is None

    assert cache.invalidate_project(None) == 1
    assert len(cache) == 0


def test_invalidate_matches_path_and_basename() -> None:
    cache = QueryCache(ttl_s=60)
    cache.put("q", {"project": "/work/proj"}, 5, "path")
    cache.put("q", {"project": "other"}, 5, "other")

    assert cache.invalidate_project("proj") == 1
    assert cache.get("q", {"project": "/work/proj"}, 5) is None
    assert cache.get("q", {"project": "other"}, 5) == "other"
