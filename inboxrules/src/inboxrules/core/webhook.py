"""Outbound webhook calls for ``call_webhook`` actions.

What:
  Build the JSON payload describing the triggering email and post it to the
  action's URL.

Why:
  Webhooks let users plug rules into their own automation. The payload is
  deliberately metadata-only (ids, sender, subject, recipients) so a
  misconfigured endpoint never receives message bodies.

How:
  :class:`WebhookClient` uses a :class:`requests.Session`, sends an optional
  shared secret in ``X-Webhook-Secret``, and converts transport errors and
  non-2xx responses into :class:`~inboxrules.core.errors.ExecutionError`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

import requests

from .email import NormalizedEmail
from .errors import ExecutionError
from .resolver import ResolvedAction

SECRET_HEADER = "X-Webhook-Secret"


def webhook_payload(action: ResolvedAction, email: NormalizedEmail, executed_at: datetime) -> Dict[str, Any]:
    return {
        "email": {
            "thread_id": email.thread_id,
            "message_id": email.id,
            "subject": email.subject,
            "from": email.from_,
            "cc": list(email.cc),
            "bcc": list(email.bcc),
            "header_message_id": email.message_id_header,
        },
        "execution": {
            "rule_id": action.rule_id,
            "action_id": action.action_id,
            "executed_at": executed_at.isoformat(),
        },
    }


class WebhookClient:
    """POST JSON payloads to user-supplied endpoints."""

    def __init__(
        self,
        *,
        timeout_s: float = 10.0,
        secret: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._secret = secret
        self._session = session or requests.Session()

    def post(self, url: str, payload: Dict[str, Any]) -> int:
        """Send ``payload`` to ``url`` and return the HTTP status code.

        Raises:
          ExecutionError: The request failed or the endpoint did not answer 2xx.
        """

        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SECRET_HEADER] = self._secret
        try:
            response = self._session.post(url, json=payload, headers=headers, timeout=self._timeout_s)
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "unknown"
            raise ExecutionError(f"webhook {url} answered HTTP {status}") from exc
        except requests.RequestException as exc:
            raise ExecutionError(f"webhook {url} failed: {exc}") from exc
        return response.status_code
