import os
import threading

import pytest

from gembox.domain.errors import ConflictError, StorageError, ValidationError
from gembox.domain.models import PutStatus
from gembox.storage.file_store import FileSystemPackageStore, normalize_filename, sha1_bytes


@pytest.fixture
def store(config):
    return FileSystemPackageStore(config)


@pytest.fixture
def events(store):
    received = []
    store.add_listener(received.append)
    return received


class TestPut:
    def test_put_then_get_returns_same_bytes(self, store, events):
        result = store.put("foo-1.0.gem", b"AAAA")
        assert result.status == PutStatus.CREATED
        assert result.sha1 == sha1_bytes(b"AAAA")
        assert store.get("foo-1.0.gem") == b"AAAA"
        assert [e.action for e in events] == ["put"]

    def test_identical_reupload_is_duplicate(self, store, events):
        store.put("foo-1.0.gem", b"AAAA")
        result = store.put("foo-1.0.gem", b"AAAA")
        assert result.status == PutStatus.DUPLICATE
        # Nothing changed, so nobody is notified.
        assert len(events) == 1

    def test_different_reupload_conflicts(self, store, events):
        store.put("foo-1.0.gem", b"AAAA")
        with pytest.raises(ConflictError):
            store.put("foo-1.0.gem", b"BBBB")
        assert store.get("foo-1.0.gem") == b"AAAA"
        assert len(events) == 1

    def test_replace_allowed_overwrites(self, config):
        store = FileSystemPackageStore(config.model_copy(update={"allow_replace": True}))
        assert store.put("foo-1.0.gem", b"AAAA").status == PutStatus.CREATED
        assert store.put("foo-1.0.gem", b"BBBB").status == PutStatus.REPLACED
        assert store.get("foo-1.0.gem") == b"BBBB"

    def test_no_temp_files_left_behind(self, store):
        store.put("foo-1.0.gem", b"AAAA")
        store.put("foo-1.0.gem", b"AAAA")
        with pytest.raises(ConflictError):
            store.put("foo-1.0.gem", b"BBBB")
        assert os.listdir(store.directory) == ["foo-1.0.gem"]

    def test_empty_payload(self, store):
        with pytest.raises(ValidationError):
            store.put("foo-1.0.gem", b"")

    def test_oversized_payload(self, config):
        store = FileSystemPackageStore(config.model_copy(update={"max_upload_bytes": 3}))
        with pytest.raises(ValidationError):
            store.put("foo-1.0.gem", b"AAAA")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
    def test_unwritable_directory(self, store):
        store.directory.mkdir(parents=True)
        store.directory.chmod(0o500)
        try:
            with pytest.raises(StorageError) as exc:
                store.put("foo-1.0.gem", b"AAAA")
            assert "writable" in str(exc.value)
        finally:
            store.directory.chmod(0o700)

    def test_archive_path_is_a_file(self, config, store):
        config.gems_directory.mkdir(parents=True)
        store.directory.write_bytes(b"")
        with pytest.raises(StorageError, match="writable"):
            store.put("foo-1.0.gem", b"AAAA")

    def test_concurrent_puts_of_one_name(self, store):
        payloads = [b"content-%d" % i for i in range(8)]
        start = threading.Barrier(len(payloads))
        results, conflicts = [], []

        def put(content):
            start.wait(5)
            try:
                results.append((store.put("foo-1.0.gem", content), content))
            except ConflictError:
                conflicts.append(content)

        threads = [threading.Thread(target=put, args=(p,)) for p in payloads]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(results) == 1
        assert len(conflicts) == len(payloads) - 1
        result, winner = results[0]
        assert result.status == PutStatus.CREATED
        assert store.get("foo-1.0.gem") == winner
        assert os.listdir(store.directory) == ["foo-1.0.gem"]


class TestDelete:
    def test_delete_missing_is_not_an_error(self, store, events):
        assert store.delete("nothing-1.0.gem") is False
        assert events == []

    def test_delete_removes_and_notifies(self, store, events):
        store.put("foo-1.0.gem", b"AAAA")
        assert store.delete("foo-1.0.gem") is True
        assert not store.exists("foo-1.0.gem")
        assert [e.action for e in events] == ["put", "delete"]


class TestFilenames:
    @pytest.mark.parametrize("name", ["", ".gem", ".hidden.gem", "foo.tar.gz", "foo"])
    def test_rejected(self, name):
        with pytest.raises(ValidationError):
            normalize_filename(name)

    def test_path_components_are_stripped(self):
        assert normalize_filename("../../etc/foo-1.0.gem") == "foo-1.0.gem"
        assert normalize_filename("C:\\Users\\me\\foo-1.0.gem") == "foo-1.0.gem"

    def test_list_archives_is_sorted(self, store):
        store.put("b-1.0.gem", b"B")
        store.put("a-1.0.gem", b"A")
        assert store.list_archives() == ["a-1.0.gem", "b-1.0.gem"]
