"""Tests for the enrich_feed command-line entry point."""

import importlib.util
import json
from pathlib import Path

import pytest

from enricher.pipeline.manager import BatchEnricher, RunMetadata

SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "enrich_feed.py"


@pytest.fixture
def cli():
    spec = importlib.util.spec_from_file_location("enrich_feed", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_enriches_feed_without_ai(cli, tmp_path, monkeypatch):
    monkeypatch.setenv("AI_ENRICH", "false")
    feed = tmp_path / "feed.json"
    feed.write_text(
        json.dumps(
            [
                {
                    "id": 1,
                    "name": "Test Powder 300g",
                    "description": "portsjon (5 g). Pakend: 60 portsjonit.",
                },
                {"id": 2, "name": "Magnesium tablets"},
                {"name": "no id"},
            ]
        )
    )

    exit_code = cli.main([str(feed), "--data-dir", str(tmp_path / "out"), "--run-id", "r1", "--workers", "2"])

    assert exit_code == 0
    run_dir = tmp_path / "out" / "r1"
    records = BatchEnricher.load_records(run_dir / "records.jsonl")
    assert [r.id for r in records] == ["wc_1", "wc_2"]
    assert records[0].servings == 60
    metadata = RunMetadata.model_validate_json((run_dir / "metadata.json").read_text())
    assert metadata.status == "completed"
    assert metadata.source == str(feed)


def test_missing_feed_fails(cli, tmp_path):
    assert cli.main([str(tmp_path / "missing.json"), "--no-ai"]) == 1
