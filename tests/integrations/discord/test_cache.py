from __future__ import annotations

import threading

import pytest

from flowdesk_gateway.integrations.discord.cache import EntityCache, EntityKind


def test_bounded_sequence_keeps_newest_first_and_drops_oldest() -> None:
    cache = EntityCache(default_cap=100)
    for index in range(101):
        cache.append_bounded(EntityKind.MESSAGE, "channel-1", f"m{index}")

    messages = cache.bounded(EntityKind.MESSAGE, "channel-1")
    assert len(messages) == 100
    assert messages[0] == "m100"
    assert messages[-1] == "m1"
    assert "m0" not in messages


def test_bounded_sequences_are_independent_per_parent() -> None:
    cache = EntityCache(default_cap=2)
    cache.append_bounded(EntityKind.MESSAGE, "a", 1)
    cache.append_bounded(EntityKind.MESSAGE, "b", 2)
    cache.append_bounded(EntityKind.MESSAGE, "a", 3)
    cache.append_bounded(EntityKind.MESSAGE, "a", 4)

    assert cache.bounded(EntityKind.MESSAGE, "a") == [4, 3]
    assert cache.bounded(EntityKind.MESSAGE, "b") == [2]
    assert dict(cache.bounded_items(EntityKind.MESSAGE)) == {"a": [4, 3], "b": [2]}


def test_explicit_cap_shrinks_existing_sequence() -> None:
    cache = EntityCache(default_cap=10)
    for value in range(5):
        cache.append_bounded(EntityKind.MESSAGE, "c", value)
    cache.append_bounded(EntityKind.MESSAGE, "c", 5, cap=3)
    assert cache.bounded(EntityKind.MESSAGE, "c") == [5, 4, 3]


def test_replace_update_and_remove_bounded() -> None:
    cache = EntityCache(default_cap=3)
    cache.replace_bounded(EntityKind.MESSAGE, "c", [5, 4, 3, 2, 1])
    assert cache.bounded(EntityKind.MESSAGE, "c") == [5, 4, 3]

    assert cache.update_bounded(EntityKind.MESSAGE, "c", lambda v: v == 4, lambda v: 40)
    assert not cache.update_bounded(
        EntityKind.MESSAGE, "c", lambda v: v == 99, lambda v: 0
    )
    assert cache.bounded(EntityKind.MESSAGE, "c") == [5, 40, 3]

    assert cache.remove_from_bounded(EntityKind.MESSAGE, "c", lambda v: v > 4) == 2
    assert cache.bounded(EntityKind.MESSAGE, "c") == [3]

    cache.drop_bounded(EntityKind.MESSAGE, "c")
    assert cache.bounded(EntityKind.MESSAGE, "c") == []


def test_keyed_maps_are_last_write_wins() -> None:
    cache = EntityCache()
    cache.upsert(EntityKind.GUILD, "g1", {"name": "old"})
    cache.upsert(EntityKind.GUILD, "g1", {"name": "new"})
    assert cache.get(EntityKind.GUILD, "g1") == {"name": "new"}
    assert cache.count(EntityKind.GUILD) == 1
    assert cache.get(EntityKind.CHANNEL, "g1") is None
    assert cache.remove(EntityKind.GUILD, "g1") == {"name": "new"}
    assert cache.values(EntityKind.GUILD) == []


def test_clear_empties_every_kind() -> None:
    cache = EntityCache()
    cache.upsert(EntityKind.USER, "u1", "user")
    cache.append_bounded(EntityKind.MESSAGE, "c1", "m")
    cache.clear()
    assert cache.values(EntityKind.USER) == []
    assert cache.bounded_items(EntityKind.MESSAGE) == []


def test_invalid_caps_are_rejected() -> None:
    with pytest.raises(ValueError):
        EntityCache(default_cap=0)
    cache = EntityCache()
    with pytest.raises(ValueError):
        cache.append_bounded(EntityKind.MESSAGE, "c", 1, cap=0)


def test_concurrent_readers_see_bounded_snapshots() -> None:
    cache = EntityCache(default_cap=50)
    errors: list[BaseException] = []
    stop = threading.Event()

    def reader() -> None:
        try:
            while not stop.is_set():
                snapshot = cache.bounded(EntityKind.MESSAGE, "c")
                assert len(snapshot) <= 50
                assert snapshot == sorted(snapshot, reverse=True)
        except BaseException as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for value in range(2000):
        cache.append_bounded(EntityKind.MESSAGE, "c", value)
    stop.set()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    assert cache.bounded(EntityKind.MESSAGE, "c")[0] == 1999
