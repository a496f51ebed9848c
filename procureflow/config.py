from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from procureflow.legal import Regime, regime_rules


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class WorkflowConfig:
    regime: Regime = Regime.RA9184
    min_quotations: int = 3
    posting_min_days: int = 7
    idempotency_ttl_seconds: int = 300
    store_tx_timeout_ms: int = 5000
    override_alert_webhook: str = ""
    override_alert_timeout_s: float = 3.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "WorkflowConfig":
        """Read settings; ``MIN_QUOTATIONS`` and ``POSTING_MIN_DAYS`` default to the regime's rules."""
        env = os.environ if environ is None else environ
        raw_regime = env.get("PROCUREMENT_REGIME", "").strip().upper() or Regime.RA9184.value
        rules = regime_rules(raw_regime)
        regime = Regime(raw_regime)
        return cls(
            regime=regime,
            min_quotations=_env_int(env, "MIN_QUOTATIONS", default=rules.min_quotations, minimum=1),
            posting_min_days=_env_int(env, "POSTING_MIN_DAYS", default=rules.posting_days, minimum=0),
            idempotency_ttl_seconds=_env_int(env, "IDEMPOTENCY_TTL_SECONDS", default=300, minimum=1),
            store_tx_timeout_ms=_env_int(env, "STORE_TX_TIMEOUT_MS", default=5000, minimum=100),
            override_alert_webhook=env.get("OVERRIDE_ALERT_WEBHOOK", "").strip(),
            override_alert_timeout_s=_env_int(env, "OVERRIDE_ALERT_TIMEOUT_MS", default=3000, minimum=100) / 1000.0,
        )
