"""
Smoke tests for a deployed instance.

Runs lightweight HTTP checks against a running app instance:
- GET /health
- POST /webhooks/btcpay/{store_id} with an InvoiceCreated event
- GET /api/stores/{store_id}/settings (only when ADMIN_API_KEY is set)

InvoiceCreated is acknowledged without issuing a reward, so the check
never moves funds. The store must already have settings saved.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import httpx

# לאפשר הרצה מכל תיקיה (למשל `python scripts/smoke_webhooks.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.domain.services.webhook_verifier import compute_btcpay_signature  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _store_id() -> str:
    return os.environ.get("SMOKE_STORE_ID", "smoke-store")


def _btcpay_event() -> bytes:
    return json.dumps({
        "type": "InvoiceCreated",
        "invoiceId": "smoke-invoice",
        "storeId": "smoke",
    }).encode("utf-8")


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="bitcoin-rewards-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    store_id = _store_id()

    logger.info(
        "Starting smoke tests",
        extra_data={"base_url": base_url, "store_id": store_id, "timeout_seconds": timeout},
    )

    with httpx.Client(timeout=timeout) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        _check_status(client.get(health_url))

        # BTCPay webhook - חתימה רק כשהסוד מוגדר
        btcpay_url = f"{base_url}/webhooks/btcpay/{store_id}"
        body = _btcpay_event()
        headers = {"Content-Type": "application/json"}
        secret = os.environ.get("SMOKE_BTCPAY_SECRET")
        if secret:
            headers["BTCPay-Sig"] = compute_btcpay_signature(body, secret)
        logger.info("Posting BTCPay webhook event", extra_data={"url": btcpay_url, "signed": bool(secret)})
        resp = client.post(btcpay_url, content=body, headers=headers)
        _check_status(resp)
        if resp.json().get("status") != "ignored":
            raise RuntimeError(f"InvoiceCreated should be ignored, got {resp.text[:200]}")

        admin_key = os.environ.get("ADMIN_API_KEY")
        if admin_key:
            settings_url = f"{base_url}/api/stores/{store_id}/settings"
            logger.info("Reading store settings", extra_data={"url": settings_url})
            _check_status(client.get(settings_url, headers={"X-Admin-API-Key": admin_key}))

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
