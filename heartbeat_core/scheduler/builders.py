"""
DYNAMIC BUILDERS
================

Directive builders resolved at fire time for dynamic scheduled events.

A builder is a zero-argument callable returning the directive text, or
``None`` when there is nothing worth reporting. Raising means the builder
itself failed; the engine records that separately from "nothing to report".

Factories in ``BUILDER_FACTORIES`` turn an event's ``options`` dict into a
builder:

    pending_requests_digest(path)      digest of pending entries in a JSON file
    http_alerts(url, headers, timeout) alerts from a JSON HTTP endpoint
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

EventBuilder = Callable[[], Optional[str]]

PENDING_STATUSES = ("pending", "awaiting_execution")
TASK_PREVIEW_CHARS = 150
MAX_ALERTS = 10


def _preview(text: str, limit: int = TASK_PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# ============================================================================
# PENDING REQUESTS DIGEST
# ============================================================================

def pending_requests_digest(path: str) -> EventBuilder:
    """
    Summarise queued requests awaiting a decision.

    The file holds a JSON list of objects with at least ``task`` and
    ``status`` (``priority`` optional). A missing file means nothing is
    queued; an unreadable one is a builder failure.
    """
    requests_file = Path(path)

    def build() -> Optional[str]:
        if not requests_file.exists():
            return None

        data = json.loads(requests_file.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{requests_file} must contain a JSON list")

        pending = [r for r in data if isinstance(r, dict) and r.get("status") in PENDING_STATUSES]
        if not pending:
            return None

        lines = [
            f"{i}. [{r.get('priority', 'normal')}] {_preview(str(r.get('task', '')))}"
            for i, r in enumerate(pending, 1)
        ]
        return (
            f"[SCHEDULER] Pending request digest: {len(pending)} request(s) waiting.\n\n"
            + "\n".join(lines)
            + "\n\nPresent this digest concisely. For each request give a short opinion "
            "(useful, redundant, already done, too ambitious) and ask which ones to run."
        )

    return build


# ============================================================================
# HTTP ALERTS
# ============================================================================

def _alert_text(alert: Any) -> str:
    if isinstance(alert, dict):
        for key in ("message", "title", "text", "summary"):
            if alert.get(key):
                source = alert.get("source")
                return f"{source}: {alert[key]}" if source else str(alert[key])
        return json.dumps(alert, ensure_ascii=False)
    return str(alert)


def http_alerts(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0,
    session: Optional[requests.Session] = None,
) -> EventBuilder:
    """
    Poll a JSON endpoint for proactive alerts.

    The endpoint returns either a list of alerts or ``{"alerts": [...]}``;
    each alert is a string or an object with a message/title/text field.
    An empty list means nothing to report. HTTP and decode errors propagate.
    """
    if not url:
        raise ValueError("http_alerts builder requires a 'url' option")
    http = session or requests.Session()

    def build() -> Optional[str]:
        response = http.get(url, headers=headers or {}, timeout=timeout)
        response.raise_for_status()
        payload = response.json()

        alerts: List[Any] = payload.get("alerts", []) if isinstance(payload, dict) else payload
        if not alerts:
            return None

        shown = [f"- {_alert_text(a)}" for a in alerts[:MAX_ALERTS]]
        extra = f" (+{len(alerts) - MAX_ALERTS} more)" if len(alerts) > MAX_ALERTS else ""
        logger.debug("http_alerts: %d alert(s) from %s", len(alerts), url)
        return (
            f"[SCHEDULER] Proactive heartbeat, {len(alerts)} notification(s){extra}:\n\n"
            + "\n".join(shown)
            + "\n\nNotify the user of these items concisely."
        )

    return build


# ============================================================================
# FACTORY REGISTRY
# ============================================================================

BUILDER_FACTORIES: Dict[str, Callable[..., EventBuilder]] = {
    "pending_requests_digest": pending_requests_digest,
    "http_alerts": http_alerts,
}


def create_builder(name: str, options: Optional[Dict[str, Any]] = None) -> EventBuilder:
    """
    Instantiate a named builder with its options.

    Raises:
        KeyError: Unknown builder name.
        TypeError/ValueError: Options do not fit the factory.
    """
    factory = BUILDER_FACTORIES[name]
    return factory(**(options or {}))
