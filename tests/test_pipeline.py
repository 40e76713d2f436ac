"""
Unit tests for pipeline.py - CLI helpers and commands

Run with: uv run pytest tests/ -v
"""

import argparse
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import Candidate, Identification
from pipeline import (
    cmd_add,
    cmd_dex,
    cmd_export,
    cmd_import,
    cmd_rebuild,
    cmd_search,
    main,
    parse_crop_box,
    prompt_count,
)
from store import JsonStore

ROBIN = "American Robin (Turdus migratorius)"

CSV_TEXT = (
    "Common Name,Scientific Name,Count,Location,Latitude,Longitude,Date,Time\n"
    "Chukar,Alectoris chukar,3,Antelope Island,41.0,-112.2,2026-05-03,07:30\n"
    "Mallard,Anas platyrhynchos,X,Antelope Island,41.0,-112.2,2026-05-03,08:00\n"
)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield JsonStore(Path(tmpdir))


class TestParseCropBox:
    """Tests for parse_crop_box"""

    def test_valid(self):
        assert parse_crop_box("10, 20, 50, 40") == {"x": 10.0, "y": 20.0, "width": 50.0, "height": 40.0}

    def test_wrong_arity(self):
        with pytest.raises(ValueError):
            parse_crop_box("10,20,50")

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            parse_crop_box("10,20,0,40")
        with pytest.raises(ValueError):
            parse_crop_box("100,20,10,40")

    def test_not_numbers(self):
        with pytest.raises(ValueError):
            parse_crop_box("a,b,c,d")


class TestPromptCount:
    @patch("builtins.input", return_value="")
    def test_default(self, mock_input):
        assert prompt_count() == 1

    @patch("builtins.input", return_value="7")
    def test_number(self, mock_input):
        assert prompt_count() == 7

    @patch("builtins.input", return_value="lots")
    def test_invalid(self, mock_input):
        assert prompt_count() == 1


class TestCommands:
    """Commands run against a temporary store"""

    def import_csv(self, store, tmpdir):
        path = Path(tmpdir) / "checklist.csv"
        path.write_text(CSV_TEXT)
        with patch("pipeline.JsonStore", return_value=store):
            cmd_import(argparse.Namespace(csv=str(path), yes=True))

    def test_import_then_dex(self, store, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.import_csv(store, tmpdir)
        out = capsys.readouterr().out
        assert "Imported 2 observation(s)" in out
        assert "1 new, 0 merged" in out

        with patch("pipeline.JsonStore", return_value=store):
            cmd_dex(argparse.Namespace(sort="name"))
        out = capsys.readouterr().out
        assert "Chukar (Alectoris chukar)" in out
        assert "2 species" in out

    def test_import_twice_skips_duplicates(self, store, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.import_csv(store, tmpdir)
            capsys.readouterr()
            self.import_csv(store, tmpdir)
        out = capsys.readouterr().out
        assert "Skipping 2 duplicate row(s)" in out
        assert "Imported" not in out
        assert store.get_dex_entry("Chukar (Alectoris chukar)")["total_count"] == 3
        assert len(store.list_observations()) == 2
        assert len(store.list_outings()) == 1

    def test_import_missing_file(self, store, capsys):
        with patch("pipeline.JsonStore", return_value=store):
            cmd_import(argparse.Namespace(csv="/nonexistent.csv", yes=True))
        assert "File not found" in capsys.readouterr().out

    def test_export_dex_to_file(self, store, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.import_csv(store, tmpdir)
            output = Path(tmpdir) / "dex.csv"
            with patch("pipeline.JsonStore", return_value=store):
                cmd_export(argparse.Namespace(what="dex", id=None, output=str(output)))
            lines = output.read_text().splitlines()
        assert lines[0].startswith('"Species Name"')
        assert len(lines) == 3

    def test_export_unknown_outing(self, store, capsys):
        with patch("pipeline.JsonStore", return_value=store):
            cmd_export(argparse.Namespace(what="outing", id="nope", output=None))
        assert "not found" in capsys.readouterr().out

    def test_rebuild_is_idempotent(self, store, capsys):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.import_csv(store, tmpdir)
        before = store.list_dex()
        with patch("pipeline.JsonStore", return_value=store):
            cmd_rebuild(argparse.Namespace())
        assert "0 changed, 0 removed" in capsys.readouterr().out
        assert sorted(e["species_name"] for e in store.list_dex()) == sorted(e["species_name"] for e in before)

    def test_search(self, capsys):
        cmd_search(argparse.Namespace(query="cardinal", limit=3))
        assert "Northern Cardinal (Cardinalis cardinalis)" in capsys.readouterr().out

    @patch("pipeline.init_logging")
    def test_main_without_command(self, mock_logging, capsys):
        with patch.object(sys, "argv", ["pipeline.py"]):
            main()
        assert "usage" in capsys.readouterr().out.lower()


class TestAddPhotos:
    """Drive cmd_add through its prompts"""

    def run_add(self, store, answers, names=("a.jpg",)):
        metadata = {
            b"a": {"timestamp": "2026-05-03T07:00:00+00:00", "location": None},
            b"b": {"timestamp": "2026-05-03T07:05:00+00:00", "location": None},
        }

        def identifier(data, location, month, label):
            return Identification([Candidate(ROBIN, 0.9)])

        with tempfile.TemporaryDirectory() as tmpdir:
            files = []
            for name in names:
                path = Path(tmpdir) / name
                path.write_bytes(name[0].encode())
                files.append(str(path))
            with patch("pipeline.JsonStore", return_value=store), \
                    patch("pipeline.BirdIdentifier", return_value=identifier), \
                    patch("pipeline.extract_metadata", side_effect=lambda data, tz_name: metadata[data]), \
                    patch("builtins.input", side_effect=answers):
                cmd_add(argparse.Namespace(files=files))

    def test_confirm_one_photo(self, store, capsys):
        # location, start, end, notes, confirm, count
        self.run_add(store, ["City Park", "", "", "", "", "2"])
        out = capsys.readouterr().out
        assert "Outings: 1, observations: 1" in out

        outing = store.list_outings()[0]
        assert outing["location_name"] == "City Park"
        observation = store.list_observations()[0]
        assert observation["species_name"] == ROBIN
        assert observation["count"] == 2
        assert store.get_dex_entry(ROBIN)["total_count"] == 2

    def test_quit_keeps_decided_photos(self, store, capsys):
        self.run_add(store, ["City Park", "", "", "", "", "1", "q"], names=("a.jpg", "b.jpg"))
        assert "Outings: 1, observations: 1" in capsys.readouterr().out
        assert store.get_dex_entry(ROBIN)["total_count"] == 1
        assert [p["file_name"] for p in store.list_photos()] == ["a.jpg"]
