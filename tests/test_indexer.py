import gzip
import threading
import time

import pytest

from conftest import make_gem
from gembox.data import index_files
from gembox.data.gem_archive import read_specification
from gembox.data.version_collection import VersionCollection
from gembox.domain.errors import IndexRebuildError, MarshalError
from gembox.domain.models import PackageVersion
from gembox.services.indexer import CURRENT_LINK, MANIFEST_FILE, IndexManager
from gembox.storage.file_store import FileSystemPackageStore


def pv(name, version, platform="ruby"):
    return PackageVersion(name=name, version=version, platform=platform)


@pytest.fixture
def store(config):
    return FileSystemPackageStore(config)


def put_gem(store, name, version, **kwargs):
    data = make_gem(name, version, **kwargs)
    filename = "%s-%s.gem" % (name, version)
    store.put(filename, data)
    return filename


class TestForceRebuild:
    def test_collection_matches_archives(self, config, store):
        put_gem(store, "foo", "1.0")
        put_gem(store, "foo", "1.1")
        put_gem(store, "bar", "2.0.rc1")
        manager = IndexManager(config, store)

        assert manager.rebuild(force=True) is True
        assert manager.load_collection() == {pv("foo", "1.0"), pv("foo", "1.1"), pv("bar", "2.0.rc1")}

        store.delete("foo-1.0.gem")
        manager.rebuild(force=True)
        assert manager.load_collection() == {pv("foo", "1.1"), pv("bar", "2.0.rc1")}

    def test_fragments_are_split(self, config, store):
        put_gem(store, "foo", "1.0")
        put_gem(store, "foo", "1.1")
        put_gem(store, "foo", "2.0.beta")
        manager = IndexManager(config, store)
        manager.rebuild()

        current = manager.current_dir()
        specs = index_files.read_fragment(current / "specs.4.8.gz")
        latest = index_files.read_fragment(current / "latest_specs.4.8.gz")
        prerelease = index_files.read_fragment(current / "prerelease_specs.4.8")
        assert specs == {pv("foo", "1.0"), pv("foo", "1.1")}
        assert latest == {pv("foo", "1.1")}
        assert prerelease == {pv("foo", "2.0.beta")}

    def test_gzip_fragment_matches_plain(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild()
        current = manager.current_dir()
        assert gzip.decompress((current / "specs.4.8.gz").read_bytes()) == (current / "specs.4.8").read_bytes()

    def test_quick_spec_round_trips(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild()
        spec = manager.spec_for("foo", "1.0")
        assert spec is not None
        assert spec.summary == "The foo gem"
        assert spec.authors == ["Jane Doe"]
        assert [d.name for d in spec.runtime_dependencies] == ["rake"]

    def test_unreadable_archive_is_skipped(self, config, store):
        put_gem(store, "foo", "1.0")
        store.put("broken-1.0.gem", b"not a tar file")
        manager = IndexManager(config, store)
        manager.rebuild()
        assert manager.load_collection() == {pv("foo", "1.0")}

    def test_only_two_generations_are_kept(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        for _ in range(4):
            manager.rebuild()
        generations = [p for p in config.index_directory.iterdir() if p.name.startswith("gen-")]
        assert len(generations) == 2
        assert (config.index_directory / CURRENT_LINK).resolve() in [g.resolve() for g in generations]

    def test_failure_raises_and_keeps_previous_index(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild()

        def broken_reader(path):
            raise RuntimeError("disk on fire")

        failing = IndexManager(config, store, spec_reader=broken_reader)
        with pytest.raises(IndexRebuildError):
            failing.rebuild(force=True)
        assert failing.force_count == 1
        assert manager.load_collection() == {pv("foo", "1.0")}

    def test_legacy_index(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config.model_copy(update={"build_legacy": True}), store)
        manager.rebuild()
        assert manager.fragment_path("quick/index").read_text() == "foo-1.0\n"
        assert manager.fragment_path("quick/latest_index.rz") is not None


class TestIncrementalUpdate:
    @pytest.fixture
    def incremental_config(self, config):
        return config.model_copy(update={"incremental_updates": True})

    def test_adds_new_archive_without_force_rebuild(self, incremental_config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(incremental_config, store)
        manager.rebuild(force=True)

        put_gem(store, "foo", "1.1")
        manager.rebuild(force=False)
        assert manager.force_count == 1
        assert manager.incremental_count == 1
        assert manager.load_collection() == {pv("foo", "1.0"), pv("foo", "1.1")}
        assert manager.spec_for("foo", "1.0") is not None

    def test_reads_only_changed_archives(self, incremental_config, store):
        put_gem(store, "foo", "1.0")
        read = []

        def counting_reader(path):
            read.append(path.name)
            return read_specification(path)

        manager = IndexManager(incremental_config, store, spec_reader=counting_reader)
        manager.rebuild(force=True)
        read.clear()

        put_gem(store, "bar", "1.0")
        manager.rebuild(force=False)
        assert read == ["bar-1.0.gem"]

    def test_failure_falls_back_to_exactly_one_force_rebuild(self, incremental_config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(incremental_config, store)
        manager.rebuild(force=True)
        (manager.current_dir() / MANIFEST_FILE).unlink()

        put_gem(store, "foo", "1.1")
        assert manager.rebuild(force=False) is True
        assert manager.incremental_count == 1
        assert manager.force_count == 2
        assert manager.load_collection() == {pv("foo", "1.0"), pv("foo", "1.1")}

    def test_without_existing_index_falls_back(self, incremental_config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(incremental_config, store)
        manager.rebuild(force=False)
        assert manager.force_count == 1
        assert manager.load_collection() == {pv("foo", "1.0")}

    def test_failing_fallback_is_not_retried(self, incremental_config, store):
        put_gem(store, "foo", "1.0")

        def broken_reader(path):
            raise RuntimeError("disk on fire")

        manager = IndexManager(incremental_config, store, spec_reader=broken_reader)
        with pytest.raises(IndexRebuildError):
            manager.rebuild(force=False)
        assert manager.incremental_count == 1
        assert manager.force_count == 1

    def test_incremental_disabled_by_default(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild(force=False)
        assert manager.incremental_count == 0
        assert manager.force_count == 1


class TestReading:
    def test_empty_repository(self, config, store):
        manager = IndexManager(config, store)
        collection = manager.load_collection()
        assert len(collection) == 0
        assert collection.group_index() == set()

    def test_legacy_fragments_in_gems_directory(self, config, store):
        config.gems_directory.mkdir(parents=True, exist_ok=True)
        raw = index_files.encode_specs([pv("old", "0.1")])
        (config.gems_directory / "specs.4.8.gz").write_bytes(index_files.gzip_bytes(raw))
        manager = IndexManager(config, store)
        assert manager.load_collection() == {pv("old", "0.1")}

    def test_fragment_path_rejects_traversal(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild()
        assert manager.fragment_path("../gems/foo-1.0.gem") is None
        assert manager.fragment_path("specs.4.8.gz") is not None

    def test_ensure_index_builds_once(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.ensure_index()
        manager.ensure_index()
        assert manager.force_count == 1

    def test_generation_pruned_while_loading(self, config, store, monkeypatch):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild()

        stale = [config.index_directory / "gen-0-pruned"]
        live_dir = manager.current_dir
        monkeypatch.setattr(manager, "current_dir", lambda: stale.pop() if stale else live_dir())
        original_load = VersionCollection.load.__func__

        def load(cls, directory, *args, **kwargs):
            if not directory.exists():
                raise FileNotFoundError(directory / "specs.4.8.gz")
            return original_load(cls, directory, *args, **kwargs)

        monkeypatch.setattr(VersionCollection, "load", classmethod(load))
        assert manager.load_collection() == {pv("foo", "1.0")}

    def test_corrupt_live_fragment_is_an_error(self, config, store):
        put_gem(store, "foo", "1.0")
        manager = IndexManager(config, store)
        manager.rebuild()
        (manager.current_dir() / "specs.4.8.gz").write_bytes(b"not gzip")
        with pytest.raises(MarshalError):
            manager.load_collection()


def test_concurrent_requests_are_coalesced(config, store):
    put_gem(store, "foo", "1.0")
    release = threading.Event()
    entered = threading.Event()

    def slow_reader(path):
        entered.set()
        release.wait(5)
        return read_specification(path)

    manager = IndexManager(config, store, spec_reader=slow_reader)
    results = []
    first = threading.Thread(target=lambda: results.append(manager.rebuild()))
    first.start()
    assert entered.wait(5)

    waiters = [threading.Thread(target=lambda: results.append(manager.rebuild())) for _ in range(2)]
    for t in waiters:
        t.start()
    deadline = time.monotonic() + 5
    while manager._requested < 3 and time.monotonic() < deadline:
        time.sleep(0.01)

    release.set()
    for t in [first] + waiters:
        t.join(5)

    # The first rebuild plus one covering both waiters.
    assert sorted(results) == [False, True, True]
    assert manager.force_count == 2
