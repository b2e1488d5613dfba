"""
Tests for identifier and key helpers.
"""

import pytest

from season_book_backend.utils import artifact_key, derive_external_id, sanitize_label


class TestDeriveExternalId:
    def test_uses_session_suffix_and_created(self):
        assert derive_external_id("cs_test_0123456789abcdef", 1718000000) == "ts_456789abcdef_1718000000"

    def test_stable_for_same_session(self):
        assert derive_external_id("cs_live_ABCdef123456", 1) == derive_external_id("cs_live_ABCdef123456", 1)

    def test_keeps_case_and_strips_unsafe_characters(self):
        assert derive_external_id("cs_live_AB!!cd", 5) == "ts_live_AB-cd_5"

    def test_mixed_case_session_suffix_kept_verbatim(self):
        assert derive_external_id("cs_live_a1B2c3D4e5F6g7H8", 1718000000) == "ts_c3D4e5F6g7H8_1718000000"

    def test_empty_session_rejected(self):
        with pytest.raises(ValueError):
            derive_external_id("", 1)


class TestArtifactKey:
    def test_key_layout(self):
        assert artifact_key("orders/", "ts_abc_1", "cover.pdf") == "orders/ts_abc_1/cover.pdf"


class TestSanitizeLabel:
    def test_sanitize(self):
        assert sanitize_label("Riverside FC!", "team") == "riverside-fc"

    def test_keeps_case_when_asked(self):
        assert sanitize_label("Riverside FC!", "team", lowercase=False) == "Riverside-FC"

    def test_fallback(self):
        assert sanitize_label("@#$", "team") == "team"
