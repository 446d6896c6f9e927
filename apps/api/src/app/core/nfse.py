"""
Focus NFe Client

Async client for issuing municipal service tax invoices (NFSe) through
Focus NFe. Authentication is HTTP Basic with the API token as the username
and an empty password.

Issuance is asynchronous on the Focus side: ``submit`` usually answers with
``processando_autorizacao`` and the outcome is read later with ``consult``.
Only ``consult`` is retried automatically; a submission is never replayed
because the far side does not guarantee idempotency for it.
"""

import logging
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

# Normalized statuses exposed to callers
STATUS_PENDING = "pending"
STATUS_AUTHORIZED = "autorizado"
STATUS_ERROR = "erro"
STATUS_CANCELLED = "cancelled"

REMOTE_STATUS_MAP = {
    "processando_autorizacao": STATUS_PENDING,
    "autorizado": STATUS_AUTHORIZED,
    "erro_autorizacao": STATUS_ERROR,
    "cancelado": STATUS_CANCELLED,
}


class NfseConfigurationError(Exception):
    """Raised when NFSe issuance is disabled or the token is missing."""


class NfseAPIError(Exception):
    """Raised when Focus NFe rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NfseResponse(BaseModel):
    """Focus NFe answer for a submission or a status query."""

    ref: str
    status: str
    numero: str | None = None
    codigo_verificacao: str | None = None
    data_emissao: str | None = None
    url: str | None = None
    caminho_xml_nota_fiscal: str | None = None
    mensagem: str | None = None
    erros: list[dict[str, Any]] | None = None

    @property
    def normalized_status(self) -> str:
        """Map the Focus status onto pending / autorizado / erro / cancelled."""
        return REMOTE_STATUS_MAP.get(self.status, STATUS_PENDING)

    @property
    def error_message(self) -> str | None:
        if self.mensagem:
            return self.mensagem
        if self.erros:
            return "; ".join(str(err.get("mensagem", err)) for err in self.erros)
        return None


class FocusNfeClient:
    """HTTP client for the Focus NFe v2 NFSe endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 20.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(token, ""),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        raise NfseAPIError(
            f"Focus NFe {action} error {response.status_code}: {response.text}",
            status_code=response.status_code,
        )

    async def submit(self, ref: str, payload: dict[str, Any]) -> NfseResponse:
        """
        Submit an NFSe for issuance under the given reference.

        Raises:
            NfseAPIError: Non-2xx answer or network failure
        """
        try:
            response = await self._client.post("/v2/nfse", params={"ref": ref}, json=payload)
        except httpx.TransportError as e:
            raise NfseAPIError(f"Focus NFe request failed: {e}") from e

        self._raise_for_status(response, "submit")
        result = NfseResponse(**{**response.json(), "ref": ref})
        logger.info(f"NFSe {ref} submitted, status={result.status}")
        return result

    async def consult(self, ref: str) -> NfseResponse:
        """Query the current state of a submitted NFSe."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_exponential(multiplier=self.retry_backoff, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.get(f"/v2/nfse/{ref}")
        except httpx.TransportError as e:
            raise NfseAPIError(f"Focus NFe request failed: {e}") from e

        self._raise_for_status(response, "consult")
        return NfseResponse(**{**response.json(), "ref": ref})

    async def cancel(self, ref: str, justification: str) -> NfseResponse:
        """Cancel an authorized NFSe. The city requires at least 15 characters of justification."""
        if len(justification) < 15:
            raise ValueError("Justification must be at least 15 characters long")
        try:
            response = await self._client.request(
                "DELETE", f"/v2/nfse/{ref}", json={"justificativa": justification}
            )
        except httpx.TransportError as e:
            raise NfseAPIError(f"Focus NFe request failed: {e}") from e

        self._raise_for_status(response, "cancel")
        return NfseResponse(**{**response.json(), "ref": ref})

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


_nfse_client: FocusNfeClient | None = None


def is_nfse_enabled() -> bool:
    return settings.nfse_enabled and bool(settings.focus_nfe_token)


def get_nfse_client() -> FocusNfeClient:
    """
    Return the process-wide Focus NFe client, creating it on first use.

    Raises:
        NfseConfigurationError: If NFSe is disabled or the token is missing
    """
    global _nfse_client

    if _nfse_client is None:
        if not is_nfse_enabled():
            raise NfseConfigurationError("NFSe is disabled: set NFSE_ENABLED and FOCUS_NFE_TOKEN")
        _nfse_client = FocusNfeClient(
            base_url=settings.focus_nfe_base_url,
            token=settings.focus_nfe_token,
            timeout=settings.focus_nfe_timeout_seconds,
        )
    return _nfse_client


async def close_nfse_client() -> None:
    global _nfse_client
    if _nfse_client is not None:
        await _nfse_client.close()
        _nfse_client = None
