# Overview: Pytest coverage for the Daraja STK push client and callback parsing.

import base64
import json
from datetime import datetime

import httpx
import pytest

from salecore.errors import PaymentError, PaymentInitiationError, ValidationError
from salecore.services.payment_gateways import (
    EAT,
    MpesaGateway,
    cents_to_whole_units,
    normalize_msisdn,
    parse_stk_callback,
)
from conftest import stk_callback

FIXED_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=EAT)


class _Daraja:
    """Records requests and answers like the Daraja sandbox."""

    def __init__(self, push_response=None, query_response=None, push_status=200, query_status=200):
        self.requests = []
        self.push_response = push_response or {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        self.query_response = query_response or {}
        self.push_status = push_status
        self.query_status = query_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == MpesaGateway.OAUTH_PATH:
            return httpx.Response(200, json={"access_token": "sandbox-token", "expires_in": "3599"})
        if request.url.path == MpesaGateway.STK_PUSH_PATH:
            return httpx.Response(self.push_status, json=self.push_response)
        if request.url.path == MpesaGateway.STK_QUERY_PATH:
            return httpx.Response(self.query_status, json=self.query_response)
        return httpx.Response(404)

    def bodies(self, path):
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


def _gateway(handler) -> MpesaGateway:
    return MpesaGateway(
        base_url="https://sandbox.safaricom.co.ke",
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://pos.example.com/api/payments/mobile-money/callback",
        transport=httpx.MockTransport(handler),
        clock=lambda: FIXED_NOW,
    )


class TestHelpers:
    @pytest.mark.parametrize("raw", ["0712345678", "0712 345 678", "+254712345678", "254712345678", "712345678", "(0712)-345-678"])
    def test_msisdn_forms(self, raw):
        assert normalize_msisdn(raw) == "254712345678"

    def test_msisdn_airtel_prefix(self):
        assert normalize_msisdn("0110123456") == "254110123456"

    @pytest.mark.parametrize("raw", [None, "", "12345", "0812345678901", "not a phone"])
    def test_invalid_msisdn(self, raw):
        with pytest.raises(ValidationError):
            normalize_msisdn(raw)

    def test_whole_unit_amounts(self):
        assert cents_to_whole_units(2060) == 21
        assert cents_to_whole_units(2049) == 20
        assert cents_to_whole_units(10) == 1

    def test_password_and_timestamp(self):
        gateway = _gateway(_Daraja())
        assert gateway.timestamp() == "20260101120000"
        expected = base64.b64encode(b"174379passkey20260101120000").decode("ascii")
        assert gateway.password("20260101120000") == expected


class TestInitiate:
    def test_push_request(self):
        daraja = _Daraja()
        acceptance = _gateway(daraja).initiate(
            amount_cents=2060,
            phone_number="0712345678",
            account_reference="S-001-0001",
            description="Sale S-001-0001",
        )

        assert acceptance.checkout_request_id == "ws_CO_191220191020363925"
        assert acceptance.merchant_request_id == "29115-34620561-1"

        (body,) = daraja.bodies(MpesaGateway.STK_PUSH_PATH)
        assert body["Amount"] == 21
        assert body["PartyA"] == "254712345678"
        assert body["PhoneNumber"] == "254712345678"
        assert body["BusinessShortCode"] == "174379"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["Timestamp"] == "20260101120000"
        assert body["AccountReference"] == "S-001-0001"

        push = [r for r in daraja.requests if r.url.path == MpesaGateway.STK_PUSH_PATH][0]
        assert push.headers["Authorization"] == "Bearer sandbox-token"

    def test_token_is_cached(self):
        daraja = _Daraja()
        gateway = _gateway(daraja)
        for _ in range(2):
            gateway.initiate(amount_cents=100, phone_number="0712345678", account_reference="R", description="D")
        oauth_calls = [r for r in daraja.requests if r.url.path == MpesaGateway.OAUTH_PATH]
        assert len(oauth_calls) == 1

    def test_rejected_push(self):
        daraja = _Daraja(
            push_status=400,
            push_response={"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"},
        )
        with pytest.raises(PaymentInitiationError) as excinfo:
            _gateway(daraja).initiate(amount_cents=100, phone_number="0712345678", account_reference="R", description="D")
        assert excinfo.value.details["response_code"] == "400.002.02"
        assert excinfo.value.status_code == 502

    def test_non_zero_response_code(self):
        daraja = _Daraja(push_response={"ResponseCode": "1", "ResponseDescription": "Rejected"})
        with pytest.raises(PaymentInitiationError):
            _gateway(daraja).initiate(amount_cents=100, phone_number="0712345678", account_reference="R", description="D")

    def test_network_failure(self):
        def _offline(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PaymentInitiationError) as excinfo:
            _gateway(_offline).initiate(amount_cents=100, phone_number="0712345678", account_reference="R", description="D")
        assert "connection refused" in excinfo.value.details["reason"]

    def test_oauth_failure(self):
        def _unauthorized(request):
            return httpx.Response(401, json={"errorMessage": "Invalid credentials"})

        with pytest.raises(PaymentInitiationError):
            _gateway(_unauthorized).initiate(amount_cents=100, phone_number="0712345678", account_reference="R", description="D")

    def test_oauth_html_page(self):
        """A maintenance page served with 200 instead of a token."""
        def _maintenance(request):
            return httpx.Response(200, text="<html>Down for maintenance</html>", headers={"content-type": "text/html"})

        with pytest.raises(PaymentInitiationError) as excinfo:
            _gateway(_maintenance).initiate(amount_cents=100, phone_number="0712345678", account_reference="R", description="D")
        assert excinfo.value.details["content_type"] == "text/html"


class TestQueryStatus:
    def test_still_processing(self):
        daraja = _Daraja(
            query_status=500,
            query_response={"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )
        assert _gateway(daraja).query_status("ws_CO_1") is None

    def test_cancelled_by_user(self):
        daraja = _Daraja(query_response={
            "ResponseCode": "0",
            "MerchantRequestID": "MR-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "1032",
            "ResultDesc": "Request cancelled by user",
        })
        result = _gateway(daraja).query_status("ws_CO_1")
        assert result.result_code == 1032
        assert not result.succeeded
        assert result.merchant_request_id == "MR-1"

    def test_query_network_failure(self):
        def _offline(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(PaymentError):
            _gateway(_offline).query_status("ws_CO_1")

    def test_query_without_token(self):
        def _no_token(request):
            return httpx.Response(200, text="Service unavailable")

        with pytest.raises(PaymentError):
            _gateway(_no_token).query_status("ws_CO_1")


class TestCallbackParsing:
    def test_success_metadata(self):
        result = parse_stk_callback(stk_callback("ws_CO_1", merchant_request_id="MR-1", amount=21))
        assert result.succeeded
        assert result.checkout_request_id == "ws_CO_1"
        assert result.merchant_request_id == "MR-1"
        assert result.amount_cents == 2100
        assert result.receipt_number == "QKT1ABC2DE"
        assert result.phone_number == "254712345678"

    def test_failure_has_no_metadata(self):
        result = parse_stk_callback(stk_callback("ws_CO_1", result_code=2001))
        assert result.result_code == 2001
        assert result.receipt_number is None
        assert result.amount_cents is None

    @pytest.mark.parametrize("payload", [{}, {"Body": None}, {"Body": {"stkCallback": {"ResultCode": 0}}}, {"Body": {"stkCallback": {"CheckoutRequestID": "x", "ResultCode": "abc"}}}])
    def test_malformed(self, payload):
        with pytest.raises(PaymentError):
            parse_stk_callback(payload)
