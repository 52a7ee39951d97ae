"""Tests for ContentStore class."""

import io
from pathlib import Path
from unittest.mock import Mock

import pytest

from blobsync.content_store import ContentStore
from blobsync.core.errors import CorruptTransferError, NotFoundError
from blobsync.core.hashing import hash_bytes
from tests.fixtures.content_store import FakeClock, make_blob


class TestContentStore:
    """Test cases for ContentStore."""

    def test_should_initialize_with_store_path(self, temp_store_path: Path):
        """ContentStore should create its directory layout and index."""
        store = ContentStore(store_path=temp_store_path)

        assert store.store_path == temp_store_path
        assert (temp_store_path / "content").is_dir()
        assert (temp_store_path / "tmp").is_dir()
        assert (temp_store_path / "index.db").exists()
        assert store.total_size_bytes() == 0

    def test_should_store_blob_under_sharded_hash_path(self, content_store: ContentStore):
        content_hash, data = make_blob("alpha")

        entry = content_store.put(content_hash, data)

        assert entry.hash == content_hash
        assert entry.size_bytes == len(data)
        assert entry.path == content_store.content_path / content_hash[:2] / content_hash
        assert entry.path.read_bytes() == data
        assert content_store.has(content_hash)
        assert content_store.read_bytes(content_hash) == data

    def test_should_accept_lowercase_hash(self, content_store: ContentStore):
        content_hash, data = make_blob("lower")

        entry = content_store.put(content_hash.lower(), data)

        assert entry.hash == content_hash
        assert content_store.has(content_hash.lower())

    def test_should_accept_file_and_chunk_sources(self, content_store: ContentStore):
        file_hash, file_data = make_blob("file-source", size=200_000)
        chunk_hash, chunk_data = make_blob("chunk-source")

        content_store.put(file_hash, io.BytesIO(file_data))
        content_store.put(chunk_hash, iter([chunk_data[:10], chunk_data[10:]]))

        assert content_store.read_bytes(file_hash) == file_data
        assert content_store.read_bytes(chunk_hash) == chunk_data

    def test_should_store_identical_bytes_once(self, content_store: ContentStore):
        content_hash, data = make_blob("dup")

        first = content_store.put(content_hash, data)
        second = content_store.put(content_hash, data)

        assert first.hash == second.hash
        assert content_store.total_size_bytes() == len(data)
        assert len(list(content_store.enumerate())) == 1
        assert len(list(content_store.content_path.glob("*/*"))) == 1

    def test_should_reject_bytes_that_do_not_match_hash(self, content_store: ContentStore):
        content_hash, _ = make_blob("claimed")

        with pytest.raises(CorruptTransferError) as exc_info:
            content_store.put(content_hash, b"something else")

        assert exc_info.value.expected == content_hash
        assert exc_info.value.actual == hash_bytes(b"something else")
        assert not content_store.has(content_hash)
        assert not content_store._get_content_path(content_hash).exists()
        assert list(content_store.tmp_path.iterdir()) == []
        assert content_store.total_size_bytes() == 0

    def test_should_reject_invalid_hash(self, content_store: ContentStore):
        with pytest.raises(ValueError):
            content_store.put("not-a-hash", b"data")
        with pytest.raises(ValueError):
            content_store.has("../etc/passwd")

    def test_should_raise_not_found_for_missing_blob(self, content_store: ContentStore):
        content_hash, _ = make_blob("missing")

        with pytest.raises(NotFoundError):
            with content_store.open(content_hash):
                pass
        assert not content_store.is_in_use(content_hash)

    def test_should_touch_entry_on_read(self, content_store: ContentStore, clock: FakeClock):
        content_hash, data = make_blob("read-me")
        stored = content_store.put(content_hash, data)
        assert not stored.reread_locally

        later = clock.advance(60)
        content_store.read_bytes(content_hash)

        entry = content_store.get_entry(content_hash)
        assert entry.last_accessed_at == later
        assert entry.created_at == stored.created_at
        assert entry.reread_locally

    def test_should_touch_entry_on_repeated_put(self, content_store: ContentStore, clock: FakeClock):
        content_hash, data = make_blob("again")
        content_store.put(content_hash, data)

        later = clock.advance(5)
        entry = content_store.put(content_hash, data)

        assert entry.last_accessed_at == later

    def test_touch_should_never_move_backwards(self, content_store: ContentStore, clock: FakeClock):
        content_hash, data = make_blob("monotonic")
        stored = content_store.put(content_hash, data)
        earlier = stored.created_at.replace(year=2020)

        assert content_store.touch(content_hash, at=earlier)
        assert content_store.get_entry(content_hash).last_accessed_at == stored.last_accessed_at

    def test_touch_should_report_missing_entry(self, content_store: ContentStore):
        content_hash, _ = make_blob("ghost")
        assert content_store.touch(content_hash) is False

    def test_should_mark_blob_in_use_while_open(self, content_store: ContentStore):
        content_hash, data = make_blob("open")
        content_store.put(content_hash, data)

        with content_store.open(content_hash) as handle:
            assert content_store.is_in_use(content_hash)
            assert content_store.remove(content_hash, skip_if_in_use=True) is None
            assert handle.read() == data

        assert not content_store.is_in_use(content_hash)

    def test_should_remove_blob_and_update_total(self, content_store: ContentStore):
        keep_hash, keep_data = make_blob("keep", size=100)
        drop_hash, drop_data = make_blob("drop", size=300)
        content_store.put(keep_hash, keep_data)
        content_store.put(drop_hash, drop_data)

        freed = content_store.remove(drop_hash)

        assert freed == 300
        assert not content_store.has(drop_hash)
        assert not content_store._get_content_path(drop_hash).exists()
        assert content_store.total_size_bytes() == 100
        assert content_store.remove(drop_hash) == 0

    def test_should_enumerate_all_entries(self, content_store: ContentStore):
        hashes = set()
        for label in ("a", "b", "c"):
            content_hash, data = make_blob(label)
            content_store.put(content_hash, data)
            hashes.add(content_hash)

        assert {entry.hash for entry in content_store.enumerate(batch_size=2)} == hashes

    def test_should_notify_commit_listeners_once_per_new_entry(self, content_store: ContentStore):
        listener = Mock()
        content_store.add_commit_listener(listener)
        content_hash, data = make_blob("listen")

        content_store.put(content_hash, data)
        content_store.put(content_hash, data)

        listener.assert_called_once()
        assert listener.call_args.args[0].hash == content_hash

    def test_should_survive_failing_commit_listener(self, content_store: ContentStore):
        content_store.add_commit_listener(Mock(side_effect=RuntimeError("boom")))
        content_hash, data = make_blob("robust")

        entry = content_store.put(content_hash, data)

        assert entry.hash == content_hash
        assert content_store.has(content_hash)

    def test_should_report_statistics(self, content_store: ContentStore):
        for label in ("x", "y"):
            content_hash, data = make_blob(label, size=512)
            content_store.put(content_hash, data)

        stats = content_store.get_statistics()

        assert stats["total_content"] == 2
        assert stats["store_size_bytes"] == 1024
        assert stats["oldest_access"] is not None
        assert stats["index_path"] == str(content_store.db_path)
