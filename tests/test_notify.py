"""
Tests for the broken-link e-mail report.

The Resend API is never called: a mocked requests session stands in.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from regwatch.config.secrets import MissingAPIKeyError
from regwatch.ingest.notify import (
    RESEND_URL,
    NotificationError,
    broken_links_by_jurisdiction,
    build_broken_links_email,
    send_broken_links_email,
)
from regwatch.ingest.poller import FetchResult
from regwatch.ingest.registry import Source
from regwatch.ingest.report import build
from regwatch.ingest.scorer import aggregate, score


def _report(failures=True):
    def result(url, status, error=None):
        return FetchResult(
            source=Source(url, "regulation", url.split("//")[1][:2].upper()),
            http_status=status,
            reachable=status is not None and status < 400,
            latency_ms=10,
            error_message=error,
            observed_at=datetime.now(timezone.utc),
        )

    ar = [result("https://ar.example/ok", 200)]
    if failures:
        ar.append(result("https://ar.example/<gone>", 404, "HTTP 404"))
        ar.append(result("https://ar.example/slow", None, "timeout"))
    return build([aggregate("AR", [score(r) for r in ar])])


class TestBuildEmail:
    def test_groups_by_jurisdiction(self):
        grouped = broken_links_by_jurisdiction(_report())

        assert list(grouped) == ["AR"]
        assert [link["error"] for link in grouped["AR"]] == ["HTTP 404", "timeout"]

    def test_subject_counts_broken_links(self):
        email = build_broken_links_email(_report())

        assert email["subject"] == "2 Broken Regulation Source URLs Detected"
        assert "AR (2 broken links)" in email["html"]

    def test_urls_are_escaped(self):
        email = build_broken_links_email(_report())

        assert "&lt;gone&gt;" in email["html"]
        assert "<gone>" not in email["html"]

    def test_nothing_broken(self):
        assert build_broken_links_email(_report(failures=False)) is None


class TestSendEmail:
    def test_posts_to_resend(self, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_test_key")
        session = MagicMock()
        session.post.return_value.json.return_value = {"id": "msg_123"}

        message_id = send_broken_links_email(_report(), recipients=["ops@example.com"], session=session)

        assert message_id == "msg_123"
        args, kwargs = session.post.call_args
        assert args[0] == RESEND_URL
        assert kwargs["headers"]["Authorization"] == "Bearer re_test_key"
        assert kwargs["json"]["to"] == ["ops@example.com"]

    def test_skips_when_nothing_broken(self, monkeypatch):
        monkeypatch.delenv("RESEND_API_KEY", raising=False)
        session = MagicMock()

        assert send_broken_links_email(_report(failures=False), session=session) is None
        session.post.assert_not_called()

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("RESEND_API_KEY", raising=False)

        with pytest.raises(MissingAPIKeyError):
            send_broken_links_email(_report(), session=MagicMock())

    def test_provider_error(self, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_test_key")
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("422 Client Error")

        with pytest.raises(NotificationError, match="422"):
            send_broken_links_email(_report(), session=session)

    def test_unreadable_response(self, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_test_key")
        session = MagicMock()
        session.post.return_value.json.side_effect = ValueError("Expecting value")

        with pytest.raises(NotificationError, match="Unreadable response"):
            send_broken_links_email(_report(), session=session)
