"""Purchase capability: fetch a provider's analysis over HTTP.

Providers expose ``GET {endpoint}/query?q=...``. In pay-per-call mode a
provider may answer ``402 Payment Required`` with payment requirements in the
JSON body; the client asks a PaymentSigner for a signed payload, retries once
with the ``PAYMENT-SIGNATURE`` header and reports the realized cost.

Any failure surfaces as ProviderUnavailableError, which the orchestrator
treats as "drop this provider for the run".
"""
from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

import httpx

from .constants import Timeouts
from .exceptions import ProviderUnavailableError

if TYPE_CHECKING:
    from .config import TwinkleSettings

logger = logging.getLogger(__name__)

X402_PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
UNKNOWN_COST = "unknown"


@dataclass(slots=True)
class PaymentRequirements:
    """First payment option advertised in a 402 response."""

    max_amount_required: Optional[str]
    pay_to: str = ""
    asset: str = ""
    network: str = ""
    scheme: str = "exact"
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PaymentPayload:
    """Client-constructed payment payload."""

    payer_address: str
    amount: str
    nonce: str
    signature: str
    authorization: dict[str, Any] = field(default_factory=dict)

    def to_header(self) -> dict[str, str]:
        data: dict[str, Any] = {
            "payer_address": self.payer_address,
            "amount": self.amount,
            "nonce": self.nonce,
            "signature": self.signature,
        }
        if self.authorization:
            data["authorization"] = self.authorization
        encoded = base64.b64encode(json.dumps(data, separators=(",", ":")).encode()).decode()
        return {X402_PAYMENT_SIGNATURE_HEADER: encoded}


@dataclass(frozen=True, slots=True)
class PurchaseResult:
    data: Any
    cost: str
    protocol_used: bool
    status_code: int = 200


class PaymentSigner(Protocol):
    """Builds the signed payment for a 402 challenge."""

    async def sign(self, requirements: PaymentRequirements, payer_credential: str) -> PaymentPayload:
        ...


class PurchaseCapability(Protocol):
    async def purchase(
        self,
        endpoint: str,
        query: str,
        payer_credential: Optional[str] = None,
    ) -> PurchaseResult:
        ...


def _first(value: Any) -> Optional[dict[str, Any]]:
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else None


def parse_payment_requirements(body: Any) -> Optional[PaymentRequirements]:
    """Read the first advertised payment option from a 402 body."""
    if not isinstance(body, dict):
        return None
    option = _first(body.get("paymentRequirements")) or _first(body.get("accepts"))
    if option is None:
        return None
    amount = option.get("maxAmountRequired")
    return PaymentRequirements(
        max_amount_required=str(amount) if amount else None,
        pay_to=str(option.get("payTo", "")),
        asset=str(option.get("asset", "")),
        network=str(option.get("network", "")),
        scheme=str(option.get("scheme", "exact")),
        raw=option,
    )


def realized_cost(body: Any) -> str:
    if not isinstance(body, dict):
        return UNKNOWN_COST
    for key in ("paymentRequirements", "accepts"):
        option = _first(body.get(key))
        if option and option.get("maxAmountRequired"):
            return str(option["maxAmountRequired"])
    return UNKNOWN_COST


class HttpPurchaseClient:
    """httpx-backed purchase client with optional pay-per-call support."""

    def __init__(
        self,
        signer: Optional[PaymentSigner] = None,
        timeout_seconds: float = Timeouts.PURCHASE_HTTP,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._signer = signer
        self._timeout = timeout_seconds
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: TwinkleSettings,
        signer: Optional[PaymentSigner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> HttpPurchaseClient:
        return cls(signer=signer, timeout_seconds=settings.purchase_timeout_seconds, transport=transport)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> HttpPurchaseClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def purchase(
        self,
        endpoint: str,
        query: str,
        payer_credential: Optional[str] = None,
    ) -> PurchaseResult:
        url = f"{endpoint.rstrip('/')}/query"
        params = {"q": query}
        client = await self._get_client()

        try:
            resp = await client.get(url, params=params)
            if payer_credential is None:
                if not resp.is_success:
                    raise ProviderUnavailableError(
                        f"Provider returned {resp.status_code}: {resp.text[:200]}",
                        endpoint=endpoint,
                        status_code=resp.status_code,
                    )
                return PurchaseResult(data=self._json(resp, endpoint), cost="0", protocol_used=False)

            if resp.status_code == 200:
                return PurchaseResult(data=self._json(resp, endpoint), cost="0", protocol_used=False)
            if resp.status_code != 402:
                raise ProviderUnavailableError(
                    f"Expected 402 or 200, got {resp.status_code}: {resp.text[:200]}",
                    endpoint=endpoint,
                    status_code=resp.status_code,
                )

            body = self._json(resp, endpoint)
            requirements = parse_payment_requirements(body)
            if requirements is None:
                raise ProviderUnavailableError(
                    "Could not parse payment requirements from 402 response",
                    endpoint=endpoint,
                    status_code=402,
                )
            if self._signer is None:
                raise ProviderUnavailableError(
                    "Provider requires payment but no payment signer is configured",
                    endpoint=endpoint,
                    status_code=402,
                )

            payload = await self._signer.sign(requirements, payer_credential)
            paid = await client.get(url, params=params, headers=payload.to_header())
            if paid.status_code != 200:
                raise ProviderUnavailableError(
                    f"Payment accepted but data fetch failed: {paid.status_code}: {paid.text[:200]}",
                    endpoint=endpoint,
                    status_code=paid.status_code,
                )
        except httpx.HTTPError as exc:
            logger.warning("Purchase transport error endpoint=%s error=%s", endpoint, exc)
            raise ProviderUnavailableError(
                f"Provider request failed: {exc}",
                endpoint=endpoint,
            ) from exc

        return PurchaseResult(
            data=self._json(paid, endpoint),
            cost=realized_cost(body),
            protocol_used=True,
        )

    @staticmethod
    def _json(resp: httpx.Response, endpoint: str) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                "Provider returned a non-JSON body",
                endpoint=endpoint,
                status_code=resp.status_code,
            ) from exc


__all__ = [
    "X402_PAYMENT_SIGNATURE_HEADER",
    "PaymentRequirements",
    "PaymentPayload",
    "PurchaseResult",
    "PaymentSigner",
    "PurchaseCapability",
    "HttpPurchaseClient",
    "parse_payment_requirements",
    "realized_cost",
]
