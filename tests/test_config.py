"""
Tests for orcs.toml handling.
"""

import pytest

from orcs.config import (
    CONFIG_FILENAME,
    StoreConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


def test_creates_default_config(tmp_path):
    config = load_or_create_config(tmp_path / "store")
    assert (tmp_path / "store" / CONFIG_FILENAME).exists()
    assert config.cards.handling == [""]
    assert config.index.auto_build is True
    assert config.analysis.max_untagged == 20
    assert config.analysis.similarity_search is False


def test_saved_values_reload(tmp_path):
    config = StoreConfig(path=tmp_path)
    config.cards.classification = "UNCLASSIFIED"
    config.cards.analyst = "kim"
    config.index.poll_interval = 0.5
    config.analysis.document_search = False
    save_config(config)

    loaded = load_config(tmp_path)
    assert loaded.cards.classification == "UNCLASSIFIED"
    assert loaded.cards.analyst == "kim"
    assert loaded.index.poll_interval == 0.5
    assert loaded.analysis.document_search is False


def test_handling_string_becomes_list(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text('[cards]\nhandling = "ORCON"\n')
    assert load_config(tmp_path).cards.handling == ["ORCON"]


def test_newer_version_rejected(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
    with pytest.raises(ValueError, match="newer"):
        load_config(tmp_path)


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path)


def test_store_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ORCS_STORE_PATH", str(tmp_path / "env-store"))
    assert get_default_store_path() == (tmp_path / "env-store").resolve()
