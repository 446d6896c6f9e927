"""
Cora Billing Gateway Client

Async client for the Cora API (boleto / PIX invoices).

Authentication is OAuth2 client_credentials over mutual TLS: the client
certificate and key are loaded into the httpx client and a bearer token is
requested from ``/token`` and cached until shortly before it expires.

Retries:
- Transport errors and 5xx responses are retried with exponential backoff
  (tenacity). Invoice creation always carries an ``Idempotency-Key`` so a
  retried POST cannot create a second boleto.
- A 401 forces one token renewal and a single replay of the request.

All amounts are integer cents.
"""

import logging
import ssl
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

# Renew the token this many seconds before it expires
TOKEN_EXPIRY_BUFFER_SECONDS = 300


class CoraConfigurationError(Exception):
    """Raised when Cora credentials or certificates are not configured."""


class CoraAPIError(Exception):
    """Raised when the Cora API rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class CoraServerError(CoraAPIError):
    """5xx from Cora; retried."""


@dataclass
class CoraInvoiceRequest:
    """Data needed to create one boleto."""

    code: str
    customer_name: str
    customer_document: str
    customer_email: str
    service_name: str
    amount_cents: int
    due_date: date
    fine_percent: float | None = None
    interest_percent: float | None = None
    notify_days_before: list[int] = field(default_factory=lambda: [3, 1])
    notify_days_after: list[int] = field(default_factory=lambda: [1, 3, 7])

    def to_payload(self) -> dict[str, Any]:
        notifications: list[dict[str, Any]] = [
            {"send_on": "before_due_date", "days_before": days} for days in self.notify_days_before
        ]
        notifications += [
            {"send_on": "after_due_date", "days_after": days} for days in self.notify_days_after
        ]

        payment_terms: dict[str, Any] = {"due_date": self.due_date.isoformat()}
        if self.fine_percent is not None:
            payment_terms["fine"] = {"percent": self.fine_percent}
        if self.interest_percent is not None:
            payment_terms["interest"] = {"percent": self.interest_percent}

        payload: dict[str, Any] = {
            "code": self.code,
            "customer": {
                "name": self.customer_name,
                "document": {
                    "identity": "".join(ch for ch in self.customer_document if ch.isdigit()),
                    "type": "CPF",
                },
                "email": self.customer_email,
            },
            "payment_forms": ["BANK_SLIP", "PIX"],
            "services": [{"name": self.service_name, "amount": self.amount_cents}],
            "payment_terms": payment_terms,
        }
        if notifications:
            payload["notifications"] = notifications
        return payload


class CoraInvoice(BaseModel):
    """The subset of a Cora invoice this service stores."""

    id: str
    status: str = "OPEN"
    code: str | None = None
    total_amount: int | None = None
    digitable_line: str | None = None
    barcode: str | None = None
    boleto_url: str | None = None
    pix_copy_paste: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "CoraInvoice":
        options = data.get("payment_options") or {}
        bank_slip = options.get("bank_slip") or {}
        pix = options.get("pix") or {}
        return cls(
            id=data["id"],
            status=data.get("status") or "OPEN",
            code=data.get("code"),
            total_amount=data.get("total_amount"),
            digitable_line=bank_slip.get("digitable_line"),
            barcode=bank_slip.get("barcode"),
            boleto_url=bank_slip.get("url"),
            pix_copy_paste=pix.get("emv"),
        )


class CoraClient:
    """
    HTTP client for the Cora invoices API.

    Uses one httpx.AsyncClient (with the mTLS certificate) for the lifetime
    of the process.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        cert: tuple[str, str] | None = None,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the Cora client.

        Args:
            base_url: Cora API base URL (stage or production)
            client_id: OAuth2 client id issued by Cora
            cert: (certificate path, private key path) for mutual TLS
            timeout: Request timeout in seconds
            max_retries: Attempts for retryable failures
            retry_backoff: Exponential backoff multiplier in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

        verify: ssl.SSLContext | bool = True
        if cert is not None:
            verify = ssl.create_default_context()
            verify.load_cert_chain(certfile=cert[0], keyfile=cert[1])

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            verify=verify,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._token: str | None = None
        self._token_expires_at: float = 0.0

    async def _get_token(self, force_renew: bool = False) -> str:
        now = time.time()
        if (
            not force_renew
            and self._token
            and self._token_expires_at > now + TOKEN_EXPIRY_BUFFER_SECONDS
        ):
            return self._token

        response = await self._client.post(
            "/token",
            data={"grant_type": "client_credentials", "client_id": self.client_id},
        )
        if response.status_code != 200:
            message = f"Cora token request failed: {response.status_code}"
            try:
                body = response.json()
                message = body.get("error_description") or body.get("error") or message
            except ValueError:
                pass
            raise CoraAPIError(message, status_code=response.status_code)

        payload = response.json()
        self._token = payload["access_token"]
        self._token_expires_at = now + payload.get("expires_in", 3600)
        return self._token

    def clear_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _send(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {await self._get_token()}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        response = await self._client.request(method, path, json=json, headers=headers)

        if response.status_code == 401:
            logger.info("Cora returned 401, renewing token and replaying request")
            headers["Authorization"] = f"Bearer {await self._get_token(force_renew=True)}"
            response = await self._client.request(method, path, json=json, headers=headers)

        if response.status_code >= 500:
            raise CoraServerError(
                f"Cora API error: {response.status_code}", status_code=response.status_code
            )
        return response

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=self.retry_backoff, max=10),
                retry=retry_if_exception_type((httpx.TransportError, CoraServerError)),
                reraise=True,
            ):
                with attempt:
                    response = await self._send(method, path, json, idempotency_key)
        except httpx.TransportError as e:
            raise CoraAPIError(f"Cora API request failed: {e}") from e

        if 200 <= response.status_code < 300:
            if not response.content:
                return None
            return response.json()

        message = f"Cora API error: {response.status_code}"
        try:
            message = response.json().get("message") or message
        except ValueError:
            pass
        logger.error(f"Cora API error response: status={response.status_code} path={path}")
        raise CoraAPIError(message, status_code=response.status_code)

    async def create_invoice(self, request: CoraInvoiceRequest) -> CoraInvoice:
        """
        Create a boleto/PIX invoice.

        The invoice ``code`` doubles as the idempotency key.
        """
        data = await self._request(
            "POST",
            "/v2/invoices/",
            json=request.to_payload(),
            idempotency_key=request.code,
        )
        invoice = CoraInvoice.from_api(data)
        logger.info(f"Cora invoice created: {invoice.id} (code={request.code})")
        return invoice

    async def get_invoice(self, invoice_id: str) -> CoraInvoice:
        data = await self._request("GET", f"/v2/invoices/{invoice_id}")
        return CoraInvoice.from_api(data)

    async def cancel_invoice(self, invoice_id: str) -> None:
        await self._request("DELETE", f"/v2/invoices/{invoice_id}")
        logger.info(f"Cora invoice cancelled: {invoice_id}")

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


_cora_client: CoraClient | None = None


def is_cora_configured() -> bool:
    return bool(
        settings.cora_client_id
        and settings.cora_certificate_path
        and settings.cora_private_key_path
    )


def get_cora_client() -> CoraClient:
    """
    Return the process-wide Cora client, creating it on first use.

    Raises:
        CoraConfigurationError: If credentials or certificates are missing
    """
    global _cora_client

    if _cora_client is None:
        if not is_cora_configured():
            raise CoraConfigurationError(
                "Cora is not configured: set CORA_CLIENT_ID, CORA_CERTIFICATE_PATH "
                "and CORA_PRIVATE_KEY_PATH"
            )
        _cora_client = CoraClient(
            base_url=settings.cora_base_url,
            client_id=settings.cora_client_id,
            cert=(settings.cora_certificate_path, settings.cora_private_key_path),
            timeout=settings.cora_timeout_seconds,
            max_retries=settings.cora_max_retries,
        )
    return _cora_client


async def close_cora_client() -> None:
    global _cora_client
    if _cora_client is not None:
        await _cora_client.close()
        _cora_client = None
