from gembox.data import index_files
from gembox.data.version_collection import VersionCollection, group_key
from gembox.domain.models import PackageVersion


def pv(name, version, platform="ruby"):
    return PackageVersion(name=name, version=version, platform=platform)


def write_fragment(directory, fragment, versions):
    raw = index_files.encode_specs(versions)
    (directory / index_files.fragment_filename(fragment)).write_bytes(index_files.gzip_bytes(raw))


def test_load_empty_directory(tmp_path):
    """No fragments on disk is an empty repository, not an error."""
    collection = VersionCollection.load(tmp_path)
    assert len(collection) == 0
    assert list(collection) == []
    assert collection.group_index() == set()


def test_load_unions_release_and_prerelease(tmp_path):
    write_fragment(tmp_path, index_files.SPECS, [pv("foo", "1.0"), pv("bar", "0.1")])
    write_fragment(tmp_path, index_files.PRERELEASE_SPECS, [pv("foo", "2.0.rc1")])
    collection = VersionCollection.load(tmp_path)
    assert collection == {pv("foo", "1.0"), pv("bar", "0.1"), pv("foo", "2.0.rc1")}


def test_missing_prerelease_fragment_is_skipped(tmp_path):
    write_fragment(tmp_path, index_files.SPECS, [pv("foo", "1.0")])
    assert VersionCollection.load(tmp_path) == {pv("foo", "1.0")}


def test_union_deduplicates():
    a = VersionCollection([pv("foo", "1.0"), pv("bar", "1.0")])
    b = VersionCollection([pv("foo", "1.0"), pv("baz", "1.0")])
    assert len(a | b) == 3


def test_group_index_is_case_folded():
    collection = VersionCollection([pv("Rails", "7.0"), pv("rack", "3.0"), pv("zeitwerk", "2.6")])
    assert collection.group_index() == {"r", "z"}


def test_by_name_lists_newest_first():
    collection = VersionCollection([pv("foo", "1.9"), pv("foo", "1.10"), pv("bar", "1.0"), pv("foo", "2.0.pre")])
    grouped = dict(collection.by_name())
    assert list(grouped) == ["bar", "foo"]
    assert [v.version for v in grouped["foo"]] == ["2.0.pre", "1.10", "1.9"]
    assert collection.newest("foo").version == "2.0.pre"
    assert collection.oldest("foo").version == "1.9"
    assert collection.newest("missing") is None


def test_by_name_ignores_case():
    collection = VersionCollection([pv("Zed", "1.0"), pv("baz", "1.0"), pv("Bar", "1.0")])
    assert [name for name, _ in collection.by_name()] == ["Bar", "baz", "Zed"]
    assert collection.names() == ["Bar", "baz", "Zed"]
    assert [group_key(name) for name, _ in collection.by_name()] == ["b", "b", "z"]
