from __future__ import annotations

import re
from typing import Dict, List, Optional, Protocol, Sequence

from fraudwatch.logging import get_logger
from fraudwatch.service.errors import NotFoundError, ValidationError
from fraudwatch.storage.models import LanguageContent

logger = get_logger(__name__)

CONTENT_KEY_RE = re.compile(r"^[a-z0-9_.]{1,100}$")
MAX_CONTENT_LENGTH = 5000

DEFAULT_CONTENT: Dict[str, Dict[str, str]] = {
    "EN": {
        "site_title": "Fraud Checker",
        "site_description": "Check if a phone number, email, or Facebook profile is associated with fraud",
        "search_placeholder": "Enter phone number, email, or Facebook profile...",
        "submit_report": "Submit Report",
        "admin_login": "Admin Login",
        "pending_reports": "Pending Reports",
        "approved_reports": "Approved Reports",
        "rejected_reports": "Rejected Reports",
    },
    "BN": {
        "site_title": "জালিয়াতি চেকার",
        "site_description": "চেক করুন একটি ফোন নম্বর, ইমেইল, বা ফেসবুক প্রোফাইল জালিয়াতির সাথে যুক্ত কিনা",
        "search_placeholder": "ফোন নম্বর, ইমেইল, বা ফেসবুক প্রোফাইল লিখুন...",
        "submit_report": "রিপোর্ট জমা দিন",
        "admin_login": "অ্যাডমিন লগইন",
        "pending_reports": "মুলতুবি রিপোর্ট",
        "approved_reports": "অনুমোদিত রিপোর্ট",
        "rejected_reports": "প্রত্যাখ্যান রিপোর্ট",
    },
}


class ContentStore(Protocol):
    def upsert_content(
        self, content_key: str, language: str, content_value: str
    ) -> LanguageContent: ...

    def delete_content(self, content_key: str, language: str) -> bool: ...

    def get_language_content(self, language: str) -> Dict[str, str]: ...

    def list_languages(self) -> List[str]: ...

    def list_content_keys(self) -> List[str]: ...

    def count_content_by_language(self) -> Dict[str, int]: ...


class ContentService:
    """Localised UI strings served to the public site."""

    def __init__(
        self, store: ContentStore, *, supported_languages: Sequence[str] = ("EN", "BN")
    ) -> None:
        self.store = store
        self.supported_languages = tuple(lang.upper() for lang in supported_languages)

    def _language(self, language: Optional[str]) -> str:
        code = (language or "").strip().upper()
        if code not in self.supported_languages:
            raise ValidationError(
                "Invalid language code",
                detail={"field": "language", "supported": list(self.supported_languages)},
            )
        return code

    def get_content(self, language: str) -> dict:
        code = self._language(language)
        return {"language": code, "content": self.store.get_language_content(code)}

    def languages(self) -> List[str]:
        return self.store.list_languages()

    def content_keys(self) -> List[str]:
        return self.store.list_content_keys()

    def stats(self) -> dict:
        by_language = self.store.count_content_by_language()
        return {
            "total_content": sum(by_language.values()),
            "content_by_language": by_language,
        }

    def set_content(self, content_key: str, language: str, content_value: str) -> LanguageContent:
        code = self._language(language)
        if not CONTENT_KEY_RE.match(content_key or ""):
            raise ValidationError(
                "Content key must be lowercase letters, digits, '_' or '.'",
                detail={"field": "content_key"},
            )
        value = (content_value or "").strip()
        if not value or len(value) > MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"Content must be 1 to {MAX_CONTENT_LENGTH} characters",
                detail={"field": "content_value"},
            )
        content = self.store.upsert_content(content_key, code, value)
        logger.info("language_content_saved", content_key=content_key, language=code)
        return content

    def delete_content(self, content_key: str, language: str) -> None:
        code = self._language(language)
        if not self.store.delete_content(content_key, code):
            raise NotFoundError("Content not found")
        logger.info("language_content_deleted", content_key=content_key, language=code)

    def seed_defaults(self) -> int:
        """Upsert the bundled strings for every supported language; returns the count written."""
        written = 0
        for language, entries in DEFAULT_CONTENT.items():
            if language not in self.supported_languages:
                continue
            for key, value in entries.items():
                self.store.upsert_content(key, language, value)
                written += 1
        logger.info("language_content_seeded", count=written)
        return written
