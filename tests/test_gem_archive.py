import io
import tarfile

import pytest

from conftest import make_gem
from gembox.data.gem_archive import extract_data, parse_specification, read_specification
from gembox.domain.errors import GemFormatError


class TestReadSpecification:
    def test_reads_psych_yaml(self):
        spec = read_specification(make_gem("foo", "1.10"))
        assert spec.name == "foo"
        # Must not be read back as the float 1.1
        assert spec.version == "1.10"
        assert spec.platform == "ruby"
        assert spec.authors == ["Jane Doe"]
        assert spec.licenses == ["MIT"]
        assert spec.date is not None and spec.date.year == 2024

    def test_dependencies(self):
        spec = read_specification(make_gem())
        runtime = spec.runtime_dependencies
        assert [d.name for d in runtime] == ["rake"]
        assert runtime[0].requirements == [("~>", "13.0")]
        assert {d.name for d in spec.dependencies} == {"rake", "rspec"}
        assert spec.required_ruby_version == [(">=", "2.7")]

    def test_reads_from_path(self, tmp_path):
        path = tmp_path / "foo-1.0.gem"
        path.write_bytes(make_gem())
        assert read_specification(path).full_name == "foo-1.0"

    def test_platform_in_full_name(self):
        spec = read_specification(make_gem("native", "0.1", platform="x86_64-linux"))
        assert spec.full_name == "native-0.1-x86_64-linux"

    def test_not_a_tar(self):
        with pytest.raises(GemFormatError):
            read_specification(b"definitely not a gem")

    def test_missing_metadata(self):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as archive:
            info = tarfile.TarInfo("data.tar.gz")
            info.size = 0
            archive.addfile(info, io.BytesIO(b""))
        with pytest.raises(GemFormatError):
            read_specification(buf.getvalue())

    def test_metadata_without_version(self):
        with pytest.raises(GemFormatError):
            parse_specification(b"--- {name: foo}\n")

    @pytest.mark.parametrize("name, platform", [("foo/bar", "ruby"), ("../foo", "ruby"), ("foo", "x86 linux")])
    def test_unsafe_name_or_platform(self, name, platform):
        with pytest.raises(GemFormatError):
            read_specification(make_gem(name, "1.0", platform=platform))


class TestExtractData:
    def test_extracts_files(self, tmp_path):
        gem = make_gem(files={"lib/foo.rb": "puts 1\n", "README.md": "hi\n"})
        extracted = extract_data(gem, tmp_path / "out")
        assert sorted(str(p) for p in extracted) == ["README.md", "lib/foo.rb"]
        assert (tmp_path / "out" / "lib" / "foo.rb").read_text() == "puts 1\n"

    def test_rejects_path_traversal(self, tmp_path):
        gem = make_gem(files={"../evil.rb": "x"})
        with pytest.raises(GemFormatError):
            extract_data(gem, tmp_path / "out")
        assert not (tmp_path / "evil.rb").exists()
