"""Tests for atomic JSON persistence."""

import json
from unittest.mock import patch

import pytest

from agent_pipeline.utils.atomic_io import atomic_write_json, read_json


class TestAtomicWriteJson:

    def test_creates_parents_and_writes(self, tmp_path):
        target = tmp_path / "nested" / "state.json"

        atomic_write_json(target, {"a": [1, 2]})

        assert json.loads(target.read_text()) == {"a": [1, 2]}
        assert [p.name for p in target.parent.iterdir()] == ["state.json"]

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "state.json"
        atomic_write_json(target, {"v": 1})

        atomic_write_json(target, {"v": 2})

        assert read_json(target) == {"v": 2}

    def test_failed_rename_leaves_previous_document(self, tmp_path):
        target = tmp_path / "state.json"
        atomic_write_json(target, {"v": 1})

        with patch("agent_pipeline.utils.atomic_io.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                atomic_write_json(target, {"v": 2}, max_retries=2)

        assert read_json(target) == {"v": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_unserializable_data(self, tmp_path):
        with pytest.raises(TypeError):
            atomic_write_json(tmp_path / "x.json", {"bad": object()})


class TestReadJson:

    def test_missing_file(self, tmp_path):
        assert read_json(tmp_path / "absent.json") is None

    def test_corrupt_file(self, tmp_path):
        target = tmp_path / "bad.json"
        target.write_text("{nope")

        with pytest.raises(json.JSONDecodeError):
            read_json(target)
