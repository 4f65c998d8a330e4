"""Tests for the persistent file cache tier."""

import json

import pytest

from gitspark_core.errors import CacheError
from gitspark_store.file import FileCache


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    return FileCache(tmp_path / "cache", max_size_mb=10, default_ttl=3600, clock=clock, cleanup_probability=0)


class TestReadWrite:
    def test_round_trip(self, cache):
        payload = {"pullRequestId": 7, "title": "Fix", "reviewers": [{"vote": 10}]}
        cache.set("azure-devops:pr:7", payload)
        assert cache.get("azure-devops:pr:7") == payload

    def test_sharded_layout_and_format(self, cache, clock):
        cache.set("k", [1, 2, 3], ttl=60)
        path = cache.path_for("k")

        assert path.parent.name == path.stem[:2]
        assert path.parent.parent == cache.directory
        entry = json.loads(path.read_text())
        assert entry["schemaVersion"] == 1
        assert entry["key"] == "k"
        assert entry["createdAt"] == int(clock.now * 1000)
        assert entry["expiresAt"] == int((clock.now + 60) * 1000)
        assert entry["accessCount"] == 1

    def test_directory_created_lazily(self, cache):
        assert not cache.directory.exists()
        cache.get("anything")
        assert not cache.directory.exists()
        cache.set("k", 1)
        assert cache.directory.is_dir()

    def test_get_refreshes_access_information(self, cache, clock):
        cache.set("k", 1)
        clock.advance(5)
        cache.get("k")
        entry = json.loads(cache.path_for("k").read_text())
        assert entry["accessCount"] == 2
        assert entry["lastAccessedAt"] == int(clock.now * 1000)

    def test_survives_a_new_instance(self, cache, tmp_path, clock):
        cache.set("k", {"a": 1})
        reopened = FileCache(tmp_path / "cache", clock=clock)
        assert reopened.get("k") == {"a": 1}

    def test_delete_and_clear(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert cache.get("b") is None
        assert cache.get_stats().total_files == 0

    def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            cache.set("k", 1, ttl=-1)


class TestExpiry:
    def test_expired_entry_is_deleted_on_read(self, cache, clock):
        cache.set("k", 1, ttl=10)
        clock.advance(11)

        assert cache.get("k") is None
        assert not cache.path_for("k").exists()

    def test_remaining_ttl(self, cache, clock):
        cache.set("k", 1, ttl=100)
        clock.advance(25)
        assert cache.remaining_ttl("k") == pytest.approx(75)
        assert cache.remaining_ttl("missing") is None

    def test_update_keeps_remaining_ttl(self, cache, clock):
        cache.set("k", [1], ttl=100)
        clock.advance(40)
        cache.update("k", lambda current: current + [2])
        assert cache.get("k") == [1, 2]
        assert cache.remaining_ttl("k") == pytest.approx(60)


class TestCorruption:
    def test_unparseable_file_is_removed(self, cache):
        cache.set("k", 1)
        path = cache.path_for("k")
        path.write_text("{not json")

        assert cache.get("k") is None
        assert not path.exists()

    def test_undecodable_bytes_are_removed(self, cache):
        cache.set("k", 1)
        path = cache.path_for("k")
        path.write_bytes(b"\xff\xfe\x00garbage")

        assert cache.get("k") is None
        assert not path.exists()

    def test_undecodable_bytes_in_cleanup_and_stats(self, cache):
        cache.set("good", 1)
        cache.set("bad", 2)
        cache.path_for("bad").write_bytes(b"\xff\xfe")

        stats = cache.get_stats()
        assert stats.total_files == 2
        assert stats.expired_files == 1

        result = cache.cleanup()
        assert result.expired_files_deleted == 1
        assert cache.get("good") == 1

    def test_other_schema_version_reads_as_corrupt(self, cache):
        cache.set("k", 1)
        path = cache.path_for("k")
        entry = json.loads(path.read_text())
        entry["schemaVersion"] = 99
        path.write_text(json.dumps(entry))

        assert cache.get("k") is None
        assert not path.exists()

    def test_entry_for_another_key_is_ignored(self, cache):
        cache.set("other", 1)
        source = cache.path_for("other")
        target = cache.path_for("k")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(source.read_text())

        assert cache.get("k") is None

    def test_unreadable_file_raises_cache_error(self, cache, mocker):
        cache.set("k", 1)
        mocker.patch("gitspark_store.file.open", side_effect=PermissionError("denied"), create=True)

        with pytest.raises(CacheError) as exc_info:
            cache.get("k")
        assert exc_info.value.key == "k"
        assert exc_info.value.tier == "file"

    def test_failed_write_raises_and_leaves_no_temp_file(self, cache, mocker):
        cache.set("k", 1)
        mocker.patch("gitspark_store.file.os.replace", side_effect=OSError("disk full"))

        with pytest.raises(CacheError):
            cache.set("k", 2)

        shard = cache.path_for("k").parent
        assert [p.name for p in shard.iterdir()] == [cache.path_for("k").name]


class TestCleanup:
    def test_removes_expired_and_corrupt_files(self, cache, clock):
        cache.set("old", 1, ttl=10)
        cache.set("fresh", 2, ttl=1000)
        cache.set("broken", 3)
        cache.path_for("broken").write_text("garbage")
        clock.advance(20)

        result = cache.cleanup()

        assert result.expired_files_deleted == 2
        assert result.size_constraint_files_deleted == 0
        assert result.bytes_freed > 0
        assert cache.get("fresh") == 2

    def test_size_limit_evicts_least_recently_accessed(self, tmp_path, clock):
        cache = FileCache(tmp_path / "cache", max_size_mb=0.001, clock=clock, cleanup_probability=0)
        for i in range(5):
            cache.set(f"k{i}", "x" * 200)
            clock.advance(1)
        clock.advance(10)
        cache.get("k0")

        result = cache.cleanup()

        assert result.size_constraint_files_deleted == 3
        assert cache.has("k0")
        assert cache.has("k4")
        assert not cache.has("k1")
        assert cache.get_stats().total_size_bytes <= cache.max_size_bytes * 0.8

    def test_probabilistic_cleanup_on_write(self, tmp_path, clock):
        cache = FileCache(tmp_path / "cache", clock=clock, cleanup_probability=0.01, rng=lambda: 0.0)
        cache.set("old", 1, ttl=10)
        clock.advance(20)
        cache.set("new", 2)

        assert not cache.path_for("old").exists()
        assert cache.path_for("new").exists()

    def test_no_cleanup_when_roll_misses(self, tmp_path, clock):
        cache = FileCache(tmp_path / "cache", clock=clock, cleanup_probability=0.01, rng=lambda: 0.5)
        cache.set("old", 1, ttl=10)
        clock.advance(20)
        cache.set("new", 2)

        assert cache.path_for("old").exists()


def test_stats(cache, clock):
    cache.set("a", "x" * 100, ttl=10)
    clock.advance(5)
    cache.set("b", "y", ttl=100)
    clock.advance(10)

    stats = cache.get_stats()

    assert stats.total_files == 2
    assert stats.expired_files == 1
    assert stats.active_files == 1
    assert stats.total_size_bytes > stats.total_data_size_bytes > 100
    assert stats.oldest_file_age == pytest.approx(15)
    assert stats.max_size_mb == 10
