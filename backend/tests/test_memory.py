"""Tests for short-term position memory."""
from dataclasses import replace
from datetime import timedelta

from conftest import NOW
from services.tracking.memory import ShortTermMemory
from services.tracking.models import MapEntry


def entry(volunteer_id, last_seen=NOW, is_live=True):
    return MapEntry(
        id=f"online_{volunteer_id}",
        volunteer_id=volunteer_id,
        name=f"User {volunteer_id}",
        latitude=32.08,
        longitude=34.78,
        status="online",
        source_type="online",
        is_live=is_live,
        last_seen=last_seen,
    )


class TestShortTermMemory:
    """Upsert, recall and eviction"""

    def test_remember_skips_stale_entries(self):
        """Only live entries are written"""
        memory = ShortTermMemory()
        memory.remember([entry("1"), entry("2", is_live=False)])
        assert "1" in memory
        assert "2" not in memory

    def test_remember_overwrites_with_latest(self):
        """A newer live entry replaces the older one"""
        memory = ShortTermMemory()
        memory.remember([entry("1")])
        newer = replace(entry("1", last_seen=NOW + timedelta(minutes=1)), latitude=32.1)
        memory.remember([newer])
        assert memory.get("1").latitude == 32.1
        assert len(memory) == 1

    def test_grace_boundary(self):
        """Exactly at the grace period is fresh, one second past is not"""
        memory = ShortTermMemory(grace=timedelta(minutes=10))
        e = entry("1")
        assert memory.is_fresh(e, NOW + timedelta(minutes=10))
        assert not memory.is_fresh(e, NOW + timedelta(minutes=10, seconds=1))

    def test_evict_returns_count(self):
        """evict removes only expired entries"""
        memory = ShortTermMemory()
        memory.remember([entry("old", last_seen=NOW - timedelta(minutes=11)), entry("new")])
        assert memory.evict(NOW) == 1
        assert "old" not in memory
        assert "new" in memory

    def test_recall_absent_excludes_present_and_expired(self):
        """Present volunteers and expired entries are not recalled"""
        memory = ShortTermMemory()
        memory.remember([
            entry("a", last_seen=NOW - timedelta(minutes=1)),
            entry("b", last_seen=NOW - timedelta(minutes=2)),
            entry("c", last_seen=NOW - timedelta(minutes=20)),
        ])
        recalled = memory.recall_absent({"a"}, NOW)
        assert [e.volunteer_id for e in recalled] == ["b"]

    def test_clear(self):
        """clear empties the memory"""
        memory = ShortTermMemory()
        memory.remember([entry("1")])
        memory.clear()
        assert len(memory) == 0
