"""Tests for localised UI content."""

import pytest

from fraudwatch.service.content import DEFAULT_CONTENT, ContentService
from fraudwatch.service.errors import NotFoundError, ValidationError
from fraudwatch.storage.memory import MemoryStore


@pytest.fixture
def content(tmp_path):
    return ContentService(MemoryStore(str(tmp_path), persist=False))


def test_seed_defaults(content):
    written = content.seed_defaults()
    assert written == sum(len(entries) for entries in DEFAULT_CONTENT.values())
    assert content.languages() == ["BN", "EN"]
    assert content.content_keys() == sorted(DEFAULT_CONTENT["EN"])
    assert content.get_content("en")["content"]["site_title"] == "Fraud Checker"


def test_seed_is_idempotent(content):
    content.seed_defaults()
    content.seed_defaults()
    stats = content.stats()
    assert stats["content_by_language"] == {"EN": 8, "BN": 8}
    assert stats["total_content"] == 16


def test_language_code_is_case_insensitive(content):
    content.set_content("site_title", "bn", "জালিয়াতি চেকার")
    assert content.get_content("Bn") == {
        "language": "BN",
        "content": {"site_title": "জালিয়াতি চেকার"},
    }


@pytest.mark.parametrize("language", ["fr", "", "english"])
def test_unsupported_language(content, language):
    with pytest.raises(ValidationError):
        content.get_content(language)


def test_set_content_overwrites(content):
    content.set_content("submit_report", "EN", "Submit Report")
    updated = content.set_content("submit_report", "EN", "  File a report ")
    assert updated.content_value == "File a report"
    assert content.stats()["total_content"] == 1


@pytest.mark.parametrize("key", ["Site Title", "", "a" * 101, "../x"])
def test_set_content_rejects_bad_keys(content, key):
    with pytest.raises(ValidationError):
        content.set_content(key, "EN", "value")


def test_set_content_rejects_empty_value(content):
    with pytest.raises(ValidationError):
        content.set_content("site_title", "EN", "   ")


def test_delete_content(content):
    content.set_content("site_title", "EN", "Fraud Checker")
    content.delete_content("site_title", "en")
    assert content.get_content("EN")["content"] == {}
    with pytest.raises(NotFoundError):
        content.delete_content("site_title", "EN")


def test_configured_languages_limit_seeding(tmp_path):
    english_only = ContentService(
        MemoryStore(str(tmp_path), persist=False), supported_languages=["en"]
    )
    english_only.seed_defaults()
    assert english_only.languages() == ["EN"]


def test_content_survives_restart(tmp_path):
    ContentService(MemoryStore(str(tmp_path))).set_content("site_title", "EN", "Fraud Checker")
    reloaded = ContentService(MemoryStore(str(tmp_path)))
    assert reloaded.get_content("EN")["content"] == {"site_title": "Fraud Checker"}
