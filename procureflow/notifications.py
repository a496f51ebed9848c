from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from typing import Any, Protocol
from urllib import request

from procureflow.config import WorkflowConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverrideAlert:
    case_id: str
    action: str
    entity_kind: str
    entity_id: str | None
    actor_id: str
    actor_role: str
    reason: str
    occurred_at: str

    def summary(self) -> str:
        return (
            f"User {self.actor_id} ({self.actor_role}) performed {self.action.upper()} on {self.entity_kind} "
            f"for Case {self.case_id}. Reason: {self.reason}"
        )


class OverrideNotifier(Protocol):
    def notify(self, alert: OverrideAlert) -> None: ...


class LoggingOverrideNotifier:
    def notify(self, alert: OverrideAlert) -> None:
        logger.warning("[ADMIN OVERRIDE ALERT] %s", alert.summary())


class WebhookOverrideNotifier:
    """POST each alert as JSON to a webhook, logging it locally as well."""

    def __init__(self, *, endpoint: str, timeout_s: float = 3.0) -> None:
        if not endpoint.strip():
            raise ValueError("webhook endpoint must not be empty")
        self._endpoint = endpoint.strip()
        self._timeout_s = timeout_s
        self._log = LoggingOverrideNotifier()

    @staticmethod
    def _post_json(*, endpoint: str, payload: dict[str, Any], timeout_s: float) -> None:
        body = json.dumps(payload, ensure_ascii=True, sort_keys=True).encode("utf-8")
        req = request.Request(
            endpoint,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with request.urlopen(req, timeout=timeout_s) as resp:
            resp.read()

    def notify(self, alert: OverrideAlert) -> None:
        self._log.notify(alert)
        payload = {"event": "admin_override", "summary": alert.summary(), **asdict(alert)}
        self._post_json(endpoint=self._endpoint, payload=payload, timeout_s=self._timeout_s)


def build_override_notifier(config: WorkflowConfig) -> OverrideNotifier:
    if config.override_alert_webhook:
        return WebhookOverrideNotifier(
            endpoint=config.override_alert_webhook,
            timeout_s=config.override_alert_timeout_s,
        )
    return LoggingOverrideNotifier()
