"""Broken-link e-mail report sent through the Resend API."""

import html
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ..config.secrets import get_resend_key
from .report import Report

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
REQUEST_TIMEOUT = (10, 30)

DEFAULT_SENDER = "Regulation Tracker <noreply@regulationtracker.com>"
DEFAULT_RECIPIENTS = ["admin@regulationtracker.com"]

_CELL = 'style="padding: 8px; border: 1px solid #ddd;"'


class NotificationError(Exception):
    """Raised when the e-mail provider rejects the request."""
    pass


def broken_links_by_jurisdiction(report: Report) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for code, metrics in report.metrics_by_jurisdiction.items():
        for scored in metrics.sources:
            if scored.accessible:
                continue
            grouped.setdefault(code, []).append({
                "url": scored.result.source.url,
                "category": scored.result.source.category,
                "error": scored.result.error_message or "unknown error",
            })
    return grouped


def build_broken_links_email(report: Report) -> Optional[Dict[str, str]]:
    """
    Build subject and HTML body for the broken-link report.

    Returns:
        {"subject": ..., "html": ...}, or None if every source was accessible
    """
    grouped = broken_links_by_jurisdiction(report)
    total = sum(len(links) for links in grouped.values())
    if total == 0:
        return None

    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    parts = [
        "<h2>Broken Regulation Source URLs</h2>",
        f"<p><strong>Total broken links:</strong> {total}</p>",
        f"<p><strong>Date:</strong> {date}</p>",
        "<hr>",
    ]

    for code in sorted(grouped):
        links = grouped[code]
        parts.append(f"<h3>{html.escape(code)} ({len(links)} broken links)</h3>")
        parts.append('<table style="width:100%; border-collapse: collapse; margin-bottom: 20px;">')
        parts.append(f"<thead><tr><th {_CELL}>Category</th><th {_CELL}>URL</th><th {_CELL}>Error</th></tr></thead>")
        parts.append("<tbody>")
        for link in links:
            url = html.escape(link["url"])
            parts.append(
                f"<tr><td {_CELL}>{html.escape(link['category'])}</td>"
                f"<td {_CELL}><a href=\"{url}\">{url}</a></td>"
                f"<td {_CELL}>{html.escape(link['error'])}</td></tr>"
            )
        parts.append("</tbody></table>")

    parts.append('<hr><p style="color: #666; font-size: 12px;">'
                 "Automated report from the regulation source poller.</p>")

    return {
        "subject": f"{total} Broken Regulation Source URLs Detected",
        "html": "\n".join(parts),
    }


def send_broken_links_email(
    report: Report,
    recipients: Optional[List[str]] = None,
    sender: str = DEFAULT_SENDER,
    session: Optional[requests.Session] = None,
) -> Optional[str]:
    """
    Send the broken-link report.

    Returns:
        Provider message id, or None if there was nothing to send

    Raises:
        MissingAPIKeyError: RESEND_API_KEY is not configured
        NotificationError: The provider returned an error
    """
    email = build_broken_links_email(report)
    if email is None:
        logger.info("No broken links; skipping notification")
        return None

    api_key = get_resend_key()
    http = session or requests.Session()

    try:
        response = http.post(
            RESEND_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            json={
                "from": sender,
                "to": recipients or DEFAULT_RECIPIENTS,
                "subject": email["subject"],
                "html": email["html"],
            },
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        message_id = response.json().get("id")
    except requests.RequestException as e:
        raise NotificationError(f"Failed to send broken-link report: {e}") from e
    except ValueError as e:
        raise NotificationError(f"Unreadable response from e-mail provider: {e}") from e

    logger.info(f"Sent broken-link report ({email['subject']}), id={message_id}")
    return message_id
