import json

from gembox.core.config import CONFIG_FILE, load_repository_config


def test_defaults_are_written(tmp_path):
    config = load_repository_config(tmp_path)
    assert config.gems_directory == tmp_path / "gems"
    assert config.allow_replace is False
    assert config.incremental_updates is False
    saved = json.loads((tmp_path / CONFIG_FILE).read_text())
    assert saved["build_legacy"] is False


def test_relative_paths_resolve_against_data_dir(tmp_path):
    (tmp_path / CONFIG_FILE).write_text(json.dumps({"gems_directory": "store", "allow_replace": True}))
    config = load_repository_config(tmp_path)
    assert config.gems_directory == tmp_path / "store"
    assert config.docs_directory == tmp_path / "docs"
    assert config.allow_replace is True


def test_unreadable_file_falls_back_to_defaults(tmp_path):
    (tmp_path / CONFIG_FILE).write_text("{not json")
    config = load_repository_config(tmp_path)
    assert config.gems_directory == tmp_path / "gems"
