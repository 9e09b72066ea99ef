from __future__ import annotations

import json
from pathlib import Path

from visual_agent.shared.services.settings_store import (
    LAST_PROJECT_KEY,
    MODEL_KEY,
    SettingsStore,
)


def test_missing_file_reads_as_empty(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    assert store.get(MODEL_KEY) is None
    assert store.get(MODEL_KEY, "sonnet") == "sonnet"
    assert store.all() == {}


def test_set_then_get_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    assert SettingsStore(path).set(MODEL_KEY, "opus")
    SettingsStore(path).set(LAST_PROJECT_KEY, "/work/repo")

    reopened = SettingsStore(path)
    assert reopened.get(MODEL_KEY) == "opus"
    assert reopened.get(LAST_PROJECT_KEY) == "/work/repo"
    assert json.loads(path.read_text()) == {
        MODEL_KEY: "opus",
        LAST_PROJECT_KEY: "/work/repo",
    }


def test_set_overwrites_single_key(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.set(MODEL_KEY, "opus")
    store.set(MODEL_KEY, "haiku")
    assert store.all() == {MODEL_KEY: "haiku"}


def test_corrupt_file_reads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json")
    store = SettingsStore(path)
    assert store.get(MODEL_KEY) is None
    # A write replaces the corrupt document
    assert store.set(MODEL_KEY, "opus")
    assert store.get(MODEL_KEY) == "opus"


def test_non_object_document_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("[1, 2]")
    assert SettingsStore(path).all() == {}


def test_failed_write_returns_false(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory")
    store = SettingsStore(blocker / "settings.json")
    assert store.set(MODEL_KEY, "opus") is False
    assert store.get(MODEL_KEY) is None


def test_write_leaves_no_temp_files(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json")
    store.set(MODEL_KEY, "opus")
    assert [p.name for p in tmp_path.iterdir()] == ["settings.json"]
