import hmac
import logging
import uuid

import requests
from django.conf import settings

from core.exceptions import ExternalServiceError


logger = logging.getLogger(__name__)


class UnivaPayClient:
    def __init__(self, token: str, secret: str, base_url: str = "https://api.univapay.com", timeout: int = 15):
        self.token = token
        self.secret = secret
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "UnivaPayClient":
        return cls(
            settings.UNIVAPAY_TOKEN,
            settings.UNIVAPAY_SECRET,
            settings.UNIVAPAY_API_URL,
            settings.UNIVAPAY_TIMEOUT,
        )

    def _headers(self, idempotency_key: str | None = None) -> dict:
        if not self.token or not self.secret:
            raise ExternalServiceError("UnivaPay credentials are not configured (UNIVAPAY_TOKEN / UNIVAPAY_SECRET).")
        headers = {
            # App token auth: "Bearer {secret}.{jwt}"
            "Authorization": f"Bearer {self.secret}.{self.token}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _post(self, path: str, payload: dict, *, idempotency_key: str | None = None) -> dict:
        headers = self._headers(idempotency_key)
        try:
            r = requests.post(f"{self.base_url}{path}", json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ExternalServiceError(f"UnivaPay request failed: {exc}") from exc

        try:
            body = r.json()
        except ValueError:
            text = (r.text or "").strip()
            short = text[:700] if text else ""
            raise ExternalServiceError(
                f"UnivaPay {path} returned non-JSON response (HTTP {r.status_code}): {short or 'empty response'}"
            )

        if not r.ok:
            code = body.get("code") if isinstance(body, dict) else None
            raise ExternalServiceError(
                f"UnivaPay {path} HTTP {r.status_code}: {code or 'error'}",
                http_status=r.status_code,
                body=body,
            )
        if not isinstance(body, dict):
            raise ExternalServiceError(f"UnivaPay {path} returned unexpected payload")
        return body

    def create_charge(
        self,
        *,
        transaction_token_id: str,
        amount: int,
        currency: str,
        metadata: dict | None = None,
        redirect_endpoint: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        """Create and immediately capture a charge for a widget-issued token.

        Amount is in minor units (whole yen for JPY).
        """
        payload = {
            "transaction_token_id": transaction_token_id,
            "amount": int(amount),
            "currency": currency,
            "capture": True,
        }
        if metadata:
            payload["metadata"] = metadata
        if redirect_endpoint:
            payload["redirect"] = {"endpoint": redirect_endpoint}
            payload["three_ds"] = {"mode": "normal"}

        body = self._post("/charges", payload, idempotency_key=idempotency_key or str(uuid.uuid4()))
        logger.info("UnivaPay charge %s created, status=%s", body.get("id"), body.get("status"))
        return body


def validate_webhook_auth(auth_header: str) -> bool:
    """Check the webhook Authorization header against UNIVAPAY_WEBHOOK_AUTH.

    Returns True when no secret is configured.
    """
    expected_secret = (settings.UNIVAPAY_WEBHOOK_AUTH or "").strip()
    if not expected_secret:
        return True
    expected = f"Bearer {expected_secret}"
    return hmac.compare_digest((auth_header or "").strip(), expected)
