"""
Tests for the shipping email.

``resend.Emails.send`` is replaced per test, so nothing leaves the process.
"""

import pytest
import resend
from resend.exceptions import ResendError

from season_book_backend.configuration import EmailSettings
from season_book_backend.errors import ConfigurationMissing
from season_book_backend.notifications import ShippingNotifier


@pytest.fixture
def sent(monkeypatch):
    messages = []

    def send(params):
        messages.append((resend.api_key, params))
        return {"id": "email_1"}

    monkeypatch.setattr(resend.Emails, "send", send)
    return messages


@pytest.fixture
def notifier():
    return ShippingNotifier(EmailSettings(api_key="re_live_key"))


class TestShippingNotifier:
    def test_requires_api_key(self):
        with pytest.raises(ConfigurationMissing):
            ShippingNotifier(EmailSettings())

    def test_placeholder_key_is_not_configured(self):
        assert not EmailSettings(api_key="re_...").is_configured

    def test_sends_tracking_link(self, notifier, sent):
        assert notifier.send_shipped("dana@example.com", "1Z999", "https://track.test/1Z999", external_id="ts_a_1")

        ((api_key, params),) = sent
        assert api_key == "re_live_key"
        assert params["to"] == ["dana@example.com"]
        assert params["from"] == "Team Season <books@teamseason.app>"
        assert params["subject"] == "Your Season Book Has Shipped!"
        assert '<a href="https://track.test/1Z999">1Z999</a>' in params["html"]

    def test_falls_back_to_tracking_service(self, notifier, sent):
        notifier.send_shipped("dana@example.com", "1Z999")
        assert "https://track.aftership.com/1Z999" in sent[0][1]["html"]

    def test_escapes_vendor_supplied_values(self, notifier, sent):
        notifier.send_shipped("dana@example.com", "<b>1Z</b>", 'https://track.test/?a="x"')
        html = sent[0][1]["html"]
        assert "&lt;b&gt;1Z&lt;/b&gt;" in html
        assert "&quot;x&quot;" in html

    def test_rejected_send_returns_false(self, notifier, monkeypatch):
        def reject(params):
            raise ResendError(
                code=422,
                error_type="validation_error",
                message="Invalid `to` field",
                suggested_action="Check the recipient",
            )

        monkeypatch.setattr(resend.Emails, "send", reject)
        assert notifier.send_shipped("not-an-address", "1Z999") is False
