"""
Tests for the structlog processors.
"""

from quotedesk.config import settings
from quotedesk.observability.logging import mask_email, redact, service_context


class TestRedact:

    def test_secret_keys_redacted(self):
        event = redact(None, "info", {"event": "call", "api_key": "sk_live_abc", "Authorization": "Bearer x"})
        assert event["api_key"] == "[redacted]"
        assert event["Authorization"] == "[redacted]"

    def test_emails_masked_in_values(self):
        event = redact(None, "info", {"event": "email_sent", "recipient": "client@example.com"})
        assert event["recipient"] == "c***@example.com"

    def test_event_name_and_non_strings_untouched(self):
        event = redact(None, "info", {"event": "quote_ready", "count": 3})
        assert event == {"event": "quote_ready", "count": 3}


class TestMaskEmail:

    def test_inside_text(self):
        assert mask_email("Brevo rejected ana.silva@mail.example.org: bounced") == "Brevo rejected a***@mail.example.org: bounced"

    def test_no_email(self):
        assert mask_email("nothing here") == "nothing here"


class TestServiceContext:

    def test_component_and_release_added(self):
        event = service_context("worker")(None, "info", {"event": "job_done"})
        assert event["component"] == "worker"
        assert event["service"] == settings.APP_NAME
        assert event["version"] == settings.APP_VERSION

    def test_explicit_values_kept(self):
        event = service_context("worker")(None, "info", {"event": "x", "component": "cron"})
        assert event["component"] == "cron"
