# Overview: Payment gateways: immediate tenders, deferred mobile-money push and the M-Pesa (Daraja) client.

"""
Payment gateway contract

Two settlement shapes:
- ImmediateGateway (CASH, CARD): the sale is PAID inside the commit.
- DeferredGateway (MOBILE_MONEY): initiate() asks the provider to push a
  payment prompt to the customer's phone and returns the provider's
  correlation ids. The outcome arrives later, out of band, as a callback
  (parse_callback) or through a status query (query_status).

Gateways never touch the database. The reconciliation state machine lives in
payment_service; gateways only speak the provider's wire format.
"""

from __future__ import annotations

import base64
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import httpx
from flask import current_app

from ..errors import PaymentError, PaymentInitiationError, ValidationError

METHOD_CASH = "CASH"
METHOD_CARD = "CARD"
METHOD_MOBILE_MONEY = "MOBILE_MONEY"
PAYMENT_METHODS = (METHOD_CASH, METHOD_CARD, METHOD_MOBILE_MONEY)

# Daraja result code for a push the customer has not answered yet
STK_STILL_PROCESSING = "500.001.1001"

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))

_MSISDN_RE = re.compile(r"^254\d{9}$")


@dataclass(frozen=True)
class GatewayAcceptance:
    checkout_request_id: str
    merchant_request_id: str | None = None
    response_description: str | None = None
    customer_message: str | None = None


@dataclass(frozen=True)
class GatewayResult:
    """Final outcome of a deferred payment, from a callback or a status query."""
    checkout_request_id: str
    merchant_request_id: str | None
    result_code: int
    result_desc: str | None = None
    receipt_number: str | None = None
    amount_cents: int | None = None
    phone_number: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


def normalize_msisdn(phone_number: str | None) -> str:
    """
    Normalize a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX.

    Accepts "0712 345 678", "+254712345678", "254712345678", "712345678".
    """
    if phone_number is None:
        raise ValidationError("phone_number is required for mobile money")
    digits = re.sub(r"[\s\-()+]", "", str(phone_number))
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    if not _MSISDN_RE.match(digits):
        raise ValidationError(
            "Invalid mobile money phone number",
            details={"phone_number": phone_number},
        )
    return digits


def cents_to_whole_units(amount_cents: int) -> int:
    """Provider amounts are whole currency units; half-up, never below 1."""
    return max(1, (amount_cents + 50) // 100)


def _units_to_cents(value) -> int | None:
    if value is None:
        return None
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        return None


def parse_stk_callback(payload: dict) -> GatewayResult:
    """
    Parse a Daraja STK callback body:

        {"Body": {"stkCallback": {"MerchantRequestID", "CheckoutRequestID",
          "ResultCode", "ResultDesc",
          "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1}, ...]}}}}
    """
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError) as exc:
        raise PaymentError("Malformed mobile money callback", details={"reason": str(exc)}) from exc

    metadata = {}
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    for item in items:
        name = item.get("Name")
        if name and item.get("Value") is not None:
            metadata[name] = item["Value"]

    phone = metadata.get("PhoneNumber")
    return GatewayResult(
        checkout_request_id=str(checkout_request_id),
        merchant_request_id=callback.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=callback.get("ResultDesc"),
        receipt_number=metadata.get("MpesaReceiptNumber"),
        amount_cents=_units_to_cents(metadata.get("Amount")),
        phone_number=str(phone) if phone is not None else None,
    )


class PaymentGateway:
    method: str = ""
    is_deferred: bool = False

    def __init__(self, method: str | None = None):
        if method:
            self.method = method


class ImmediateGateway(PaymentGateway):
    """Cash and card: tender is taken at the counter, the sale is PAID at commit."""

    def settle(self, *, sale) -> None:
        current_app.logger.info(
            "Sale %s settled by %s (%s cents)", sale.sale_number, self.method, sale.final_amount_cents
        )


class DeferredGateway(PaymentGateway):
    """Out-of-band settlement; subclasses speak a provider's protocol."""

    method = METHOD_MOBILE_MONEY
    is_deferred = True

    def initiate(
        self,
        *,
        amount_cents: int,
        phone_number: str,
        account_reference: str,
        description: str,
    ) -> GatewayAcceptance:
        raise NotImplementedError

    def query_status(self, checkout_request_id: str) -> GatewayResult | None:
        """Return the final result, or None while the customer has not answered."""
        raise NotImplementedError

    def parse_callback(self, payload: dict) -> GatewayResult:
        return parse_stk_callback(payload)


class MpesaGateway(DeferredGateway):
    """
    Safaricom Daraja STK push client.

    - OAuth: GET /oauth/v1/generate?grant_type=client_credentials (Basic auth)
    - Push:  POST /mpesa/stkpush/v1/processrequest
    - Query: POST /mpesa/stkpushquery/v1/query
    Password = base64(shortcode + passkey + timestamp), timestamp %Y%m%d%H%M%S (EAT).
    """

    OAUTH_PATH = "/oauth/v1/generate"
    STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
    STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

    def __init__(
        self,
        *,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        timeout_seconds: float = 15,
        transport: httpx.BaseTransport | None = None,
        clock=None,
    ):
        super().__init__(METHOD_MOBILE_MONEY)
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = str(shortcode)
        self.passkey = passkey
        self.callback_url = callback_url
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self._clock = clock or (lambda: datetime.now(EAT))
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, transport: httpx.BaseTransport | None = None) -> "MpesaGateway":
        return cls(
            base_url=config.get("MPESA_BASE_URL", ""),
            consumer_key=config.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET", ""),
            shortcode=config.get("MPESA_SHORTCODE", ""),
            passkey=config.get("MPESA_PASSKEY", ""),
            callback_url=config.get("MPESA_CALLBACK_URL", ""),
            timeout_seconds=config.get("MPESA_HTTP_TIMEOUT_SECONDS", 15),
            transport=transport,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    def timestamp(self) -> str:
        return self._clock().strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    def _access_token(self, client: httpx.Client) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            response = client.get(
                self.OAUTH_PATH,
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
            )
            response.raise_for_status()
            data = _safe_json(response)
            token = data.get("access_token")
            if not token:
                raise PaymentInitiationError(
                    "Mobile money gateway returned no access token",
                    details={
                        "status_code": response.status_code,
                        "content_type": response.headers.get("content-type"),
                    },
                )
            try:
                expires_in = int(data.get("expires_in", 3599))
            except (TypeError, ValueError):
                expires_in = 3599
            self._token = token
            # refresh a minute early
            self._token_expires_at = time.monotonic() + max(0, expires_in - 60)
            return token

    def _post(self, client: httpx.Client, path: str, body: dict) -> httpx.Response:
        token = self._access_token(client)
        return client.post(path, json=body, headers={"Authorization": f"Bearer {token}"})

    def initiate(
        self,
        *,
        amount_cents: int,
        phone_number: str,
        account_reference: str,
        description: str,
    ) -> GatewayAcceptance:
        msisdn = normalize_msisdn(phone_number)
        timestamp = self.timestamp()
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": cents_to_whole_units(amount_cents),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }

        try:
            with self._client() as client:
                response = self._post(client, self.STK_PUSH_PATH, body)
        except httpx.HTTPError as exc:
            raise PaymentInitiationError(
                "Mobile money gateway unreachable",
                details={"reason": str(exc)},
            ) from exc

        data = _safe_json(response)
        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            raise PaymentInitiationError(
                "Mobile money gateway rejected the payment request",
                details={
                    "status_code": response.status_code,
                    "response_code": data.get("ResponseCode") or data.get("errorCode"),
                    "response_description": data.get("ResponseDescription") or data.get("errorMessage"),
                },
            )

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise PaymentInitiationError("Mobile money gateway returned no CheckoutRequestID")

        return GatewayAcceptance(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    def query_status(self, checkout_request_id: str) -> GatewayResult | None:
        timestamp = self.timestamp()
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            with self._client() as client:
                response = self._post(client, self.STK_QUERY_PATH, body)
        except httpx.HTTPError as exc:
            raise PaymentError("Mobile money status query failed", details={"reason": str(exc)}) from exc
        except PaymentInitiationError as exc:
            raise PaymentError("Mobile money status query failed", details=exc.details) from exc

        data = _safe_json(response)
        if data.get("errorCode") == STK_STILL_PROCESSING:
            return None
        if "ResultCode" not in data:
            if response.status_code >= 400:
                raise PaymentError(
                    "Mobile money status query rejected",
                    details={
                        "status_code": response.status_code,
                        "error_code": data.get("errorCode"),
                        "error_message": data.get("errorMessage"),
                    },
                )
            return None

        try:
            result_code = int(data["ResultCode"])
        except (TypeError, ValueError):
            return None
        return GatewayResult(
            checkout_request_id=data.get("CheckoutRequestID") or checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            result_code=result_code,
            result_desc=data.get("ResultDesc"),
        )


def _safe_json(response: httpx.Response) -> dict:
    try:
        payload = response.json()
        return payload if isinstance(payload, dict) else {}
    except ValueError:
        return {"errorMessage": response.text}


def register_gateways(app, gateways: dict | None = None) -> None:
    """Install the method -> gateway registry on app.extensions."""
    registry = {
        METHOD_CASH: ImmediateGateway(METHOD_CASH),
        METHOD_CARD: ImmediateGateway(METHOD_CARD),
        METHOD_MOBILE_MONEY: MpesaGateway.from_config(app.config),
    }
    if gateways:
        registry.update(gateways)
    app.extensions["payment_gateways"] = registry


def get_gateway(method: str) -> PaymentGateway:
    registry = current_app.extensions.get("payment_gateways") or {}
    gateway = registry.get(method)
    if gateway is None:
        raise ValidationError(
            f"Unknown payment method: {method}",
            details={"payment_method": method, "allowed": sorted(registry)},
        )
    return gateway
