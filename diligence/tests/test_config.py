"""Tests for thesis, criteria sheet and app-settings loading."""
from __future__ import annotations

import json

import openpyxl
import pytest

from diligence.config import (
    DEFAULT_CRITERIA,
    AppSettings,
    ConfigError,
    load_app_settings,
    load_criteria,
    load_scoring_config,
    load_thesis_markdown,
    parse_criteria_rows,
)


def _write_sheet(path, rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(["Category", "Weight", "Criterion", "Description", "Scoring Guidance", "Cap"])
    for row in rows:
        ws.append(list(row))
    wb.save(path)
    return path


class TestParseCriteriaRows:
    def test_blank_category_continues_previous(self):
        criteria = parse_criteria_rows([
            ("Team", 60, "Founder-Market Fit", "Depth", "Exits score high", 55),
            (None, None, "Completeness", "Roles", "", None),
            ("Market", 40, "Market Size", "TAM", "Bottom-up", ""),
        ])
        assert criteria.category_names() == ["Team", "Market"]
        team = criteria.categories[0]
        assert team.weight == 60
        assert [c.name for c in team.criteria] == ["Founder-Market Fit", "Completeness"]
        assert team.criteria[0].insufficient_evidence_cap == 55
        assert team.criteria[1].insufficient_evidence_cap is None
        assert criteria.last_updated

    def test_empty_rows_skipped(self):
        criteria = parse_criteria_rows([(), (None, None, None), ("Team", 100, "Fit", "", "", None)])
        assert criteria.category_names() == ["Team"]

    def test_short_rows_tolerated(self):
        criteria = parse_criteria_rows([("Team", 100, "Fit")])
        assert criteria.categories[0].criteria[0].description == ""

    def test_only_filters_category(self):
        assert DEFAULT_CRITERIA.only("Market").category_names() == ["Market"]


class TestLoadCriteria:
    def test_missing_file_uses_default(self, tmp_path):
        criteria = load_criteria(tmp_path / "missing.xlsx")
        assert criteria.category_names() == ["Team", "Market", "Product", "Deal Terms"]
        assert sum(c.weight for c in criteria.categories) == 100

    def test_reads_workbook(self, tmp_path):
        path = _write_sheet(tmp_path / "criteria.xlsx", [
            ("Team", 50, "Fit", "Founder fit", "Guidance", 60),
            ("Product", 50, "Moat", "Defensibility", "Guidance", None),
        ])
        criteria = load_criteria(path)
        assert criteria.category_names() == ["Team", "Product"]
        assert criteria.categories[0].criteria[0].scoring_guidance == "Guidance"

    def test_unreadable_file_raises(self, tmp_path):
        path = tmp_path / "criteria.xlsx"
        path.write_text("not a workbook")
        with pytest.raises(ConfigError):
            load_criteria(path)

    def test_header_only_raises(self, tmp_path):
        path = _write_sheet(tmp_path / "criteria.xlsx", [])
        with pytest.raises(ConfigError):
            load_criteria(path)

    def test_env_path(self, tmp_path, monkeypatch):
        path = _write_sheet(tmp_path / "env.xlsx", [("Deal Terms", 100, "Runway", "", "", None)])
        monkeypatch.setenv("CRITERIA_PATH", str(path))
        assert load_criteria().category_names() == ["Deal Terms"]


class TestThesisAndSettings:
    def test_thesis_markdown(self, tmp_path):
        path = tmp_path / "thesis.md"
        path.write_text("# Thesis\nVertical software.\n")
        assert load_thesis_markdown(path) == "# Thesis\nVertical software."

    def test_missing_thesis(self, tmp_path):
        assert "No thesis markdown file found" in load_thesis_markdown(tmp_path / "nope.md")

    def test_empty_thesis(self, tmp_path):
        path = tmp_path / "thesis.md"
        path.write_text("   ")
        assert load_thesis_markdown(path) == "No thesis markdown content found."

    def test_settings_defaults(self, tmp_path):
        settings = load_app_settings(tmp_path / "missing.json")
        assert settings == AppSettings()
        assert settings.enable_scoring_feedback is True
        assert settings.summarize_transcript_notes_for_scoring is False

    def test_settings_merge(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({
            "summarize_transcript_notes_for_scoring": True,
            "scoring_weights": {"thesis": 50},
        }))
        settings = load_app_settings(path)
        assert settings.summarize_transcript_notes_for_scoring is True
        assert settings.scoring_weights.thesis == 50
        assert settings.scoring_weights.industry == 30

    def test_broken_settings_fall_back(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert load_app_settings(path) == AppSettings()

    def test_scoring_config_summary(self, tmp_path):
        thesis = tmp_path / "thesis.md"
        thesis.write_text("Thesis")
        config = load_scoring_config(thesis, tmp_path / "none.xlsx", tmp_path / "none.json")
        summary = config.summary()
        assert summary["thesis_chars"] == 6
        assert summary["categories"] == ["Team", "Market", "Product", "Deal Terms"]
