"""
Tests for crawler settings loading.
Run with: venv/bin/python -m pytest tests/test_config.py -v
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.loader import CrawlerSettings, load_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("CRAWLER_CONFIG", raising=False)
    monkeypatch.delenv("CRAWLER_HEADLESS", raising=False)


class TestLoadSettings:
    def test_shipped_file_matches_defaults(self):
        assert load_settings() == CrawlerSettings()

    def test_partial_file(self, tmp_path):
        path = tmp_path / "crawler.yaml"
        path.write_text(
            "thresholds:\n  max_detail_failures: 5\n  unknown_key: 1\n"
            "timeouts_ms:\n  detail2: 4000\n"
            "quick_pages: 2\n"
        )
        settings = load_settings(str(path))
        assert settings.thresholds.max_detail_failures == 5
        assert settings.thresholds.sentinel_failures == 99
        assert settings.timeout_for("detail2") == 4000
        assert settings.timeout_for("full") == 30000
        assert settings.quick_pages == 2

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "alt.yaml"
        path.write_text("session:\n  recycle_after: 7\n")
        monkeypatch.setenv("CRAWLER_CONFIG", str(path))
        assert load_settings().session.recycle_after == 7

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_headless_env_override(self, monkeypatch):
        monkeypatch.setenv("CRAWLER_HEADLESS", "false")
        assert load_settings().session.headless is False

    def test_listing_url(self):
        assert CrawlerSettings().source.listing_url(4) == "https://www.rootdata.com/Fundraising?page=4"

    def test_unknown_timeout_falls_back(self):
        assert CrawlerSettings().timeout_for("nightly") == 30000
