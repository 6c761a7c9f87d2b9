"""Alert dispatcher — delivers stagnant-proposal notifications to operators.

An alert is raised when a guard has sized a trigger down to zero while
earlier proposals for the same gamer/side are still PENDING, i.e. the order
executor looks stuck.  Alerts are signals only; dispatching never writes state.

Usage::

    from agent_tools.alert_dispatcher import build_default_dispatcher

    dispatcher = build_default_dispatcher()
    dispatcher.dispatch("Unresolved BUY proposals for gamer 0x…", pending)

Environment variables:
    SLACK_WEBHOOK_URL — when set, alerts are also POSTed to Slack.
"""
from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any

LOGGER = logging.getLogger(__name__)


class AlertDispatcher:
    """Base class for alert delivery.  Sub-class and implement :meth:`dispatch`."""

    def dispatch(self, title: str, pending: list[dict[str, Any]]) -> None:
        """Send one alert about the *pending* proposals.

        Args:
            title: Short description, e.g. "Unresolved SELL proposals for gamer 0x…".
            pending: One dict per unresolved proposal (order_id, quantity, age_seconds, …).
        """
        raise NotImplementedError


class LogDispatcher(AlertDispatcher):
    """Emit the alert as ``CRITICAL`` log lines (always-available default)."""

    def dispatch(self, title: str, pending: list[dict[str, Any]]) -> None:
        LOGGER.critical("[GOFER ALERT] %s | %d pending proposal(s)", title, len(pending))
        for item in pending:
            LOGGER.critical(
                "[GOFER ALERT]   order=%s holder=%s qty=%s age=%ss claimed_by=%s rule=%s",
                item.get("order_id", "?"),
                item.get("holder", "-"),
                item.get("quantity", "?"),
                item.get("age_seconds", "?"),
                item.get("claimed_by", "-"),
                item.get("rule_id", "?"),
            )


class SlackDispatcher(AlertDispatcher):
    """POST alerts to a Slack Incoming Webhook (``SLACK_WEBHOOK_URL`` env var)."""

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL", "")

    def dispatch(self, title: str, pending: list[dict[str, Any]]) -> None:
        if not self.webhook_url:
            LOGGER.warning("SlackDispatcher: SLACK_WEBHOOK_URL is not configured — skipping Slack alert.")
            return

        lines = [f":hourglass: *{title}*"]
        for p in pending:
            lines.append(
                f"• order `{p.get('order_id', '?')}`: {p.get('quantity', '?')} bits, "
                f"holder `{p.get('holder', '-')}`, waiting {p.get('age_seconds', '?')}s"
            )

        data = json.dumps({"text": "\n".join(lines)}).encode("utf-8")
        req = urllib.request.Request(
            self.webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=5) as response:
                if response.status != 200:
                    LOGGER.warning("SlackDispatcher: non-200 response %s", response.status)
        except urllib.error.URLError as exc:
            LOGGER.error("SlackDispatcher: failed to deliver alert — %s", exc)


class CompositeDispatcher(AlertDispatcher):
    """Fan-out to multiple dispatchers; failures in one don't abort others."""

    def __init__(self, *dispatchers: AlertDispatcher) -> None:
        self.dispatchers: list[AlertDispatcher] = list(dispatchers)

    def dispatch(self, title: str, pending: list[dict[str, Any]]) -> None:
        for dispatcher in self.dispatchers:
            try:
                dispatcher.dispatch(title, pending)
            except Exception as exc:  # pragma: no cover
                LOGGER.error("AlertDispatcher error in %s: %s", type(dispatcher).__name__, exc)


def build_default_dispatcher(webhook_url: str | None = None) -> AlertDispatcher:
    """Log always; also post to Slack when a webhook URL is configured."""
    webhook_url = webhook_url if webhook_url is not None else os.getenv("SLACK_WEBHOOK_URL", "")
    if webhook_url:
        return CompositeDispatcher(LogDispatcher(), SlackDispatcher(webhook_url))
    return LogDispatcher()
