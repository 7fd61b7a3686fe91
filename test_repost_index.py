"""Tests for the index maintenance commands."""
import logging
from datetime import datetime, timedelta, timezone

import pytest

import config
from fingerprint_store import IndexRegistry, PostRecord
from image_fingerprint import Fingerprint
from repost_index import main

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def index_dir(tmp_path):
    registry = IndexRegistry(tmp_path, hash_size=config.HASH_SIZE, band_count=config.BAND_COUNT)
    store = registry.get("guild")
    for message_id in range(3):
        store.insert(PostRecord(
            fingerprint=Fingerprint.from_int(message_id << 20, config.HASH_BITS),
            author_id=1,
            channel_id=2,
            message_id=message_id,
            posted_at=BASE_TIME + timedelta(hours=message_id),
        ))
    store.record_sighting(0)
    return tmp_path


def test_stats(index_dir, capsys):
    assert main(["--index-dir", str(index_dir), "stats"]) == 0

    out = capsys.readouterr().out
    assert "Community guild" in out
    assert "Indexed images:   3" in out
    assert "Reposts caught:   1" in out


def test_stats_without_indices(tmp_path, capsys):
    assert main(["--index-dir", str(tmp_path / "empty"), "stats"]) == 0
    assert "No indices found" in capsys.readouterr().out


def test_ignore_and_unignore(index_dir, capsys):
    assert main(["--index-dir", str(index_dir), "ignore", "guild", "1"]) == 0
    assert "now ignored" in capsys.readouterr().out
    assert IndexRegistry(index_dir).get("guild").sightings(1) == (1, True)

    assert main(["--index-dir", str(index_dir), "unignore", "guild", "1"]) == 0
    assert IndexRegistry(index_dir).get("guild").sightings(1) == (1, False)


def test_ignore_unknown_message(index_dir):
    assert main(["--index-dir", str(index_dir), "ignore", "guild", "999"]) == 1
    assert main(["--index-dir", str(index_dir), "ignore", "elsewhere", "1"]) == 1


def test_evict_uses_configured_retention(index_dir, capsys, monkeypatch):
    monkeypatch.setattr(config, "RETENTION_MAX_RECORDS", 1)

    assert main(["--index-dir", str(index_dir), "evict"]) == 0
    assert "guild: evicted 2 records" in capsys.readouterr().out
    assert IndexRegistry(index_dir).get("guild").count() == 1


def test_evict_without_retention(index_dir, capsys):
    assert main(["--index-dir", str(index_dir), "evict"]) == 0
    assert "No retention horizon" in capsys.readouterr().out
    assert IndexRegistry(index_dir).get("guild").count() == 3


def test_check(index_dir, capsys):
    assert main(["--index-dir", str(index_dir), "check"]) == 0
    assert "1 indices opened cleanly" in capsys.readouterr().out

    (index_dir / "broken.db").mkdir()
    assert main(["--index-dir", str(index_dir), "check"]) == 1


def test_no_command_prints_help(capsys):
    assert main([]) == 1


def test_logging_is_configured_once(index_dir):
    main(["--index-dir", str(index_dir), "check"])
    main(["--index-dir", str(index_dir), "check"])

    names = [h.get_name() for h in logging.getLogger().handlers]
    assert names.count("repost-console") == 1
