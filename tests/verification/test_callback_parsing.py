"""Tests for Daraja callback parsing and classification."""

from decimal import Decimal

import pytest

from konfirmpay.verification.callbacks import (
    CallbackOutcome,
    acknowledgement,
    parse_callback,
)
from konfirmpay.verification.errors import CallbackParseError
from konfirmpay.verification.gateway import StubGateway

INTERIM = frozenset({"4999", "500.001.1001"})


class TestParseSuccess:
    """Completed payments."""

    def test_success_with_receipt(self):
        payload = StubGateway.success_callback(
            "ws_CO_1", "NLJ7RT61SV", amount=5, client_reference="abc"
        )
        callback = parse_callback(payload, interim_codes=INTERIM)

        assert callback.outcome == CallbackOutcome.SUCCESS
        assert callback.correlation_token == "ws_CO_1"
        assert callback.result_code == "0"
        assert callback.receipt_reference == "NLJ7RT61SV"
        assert callback.client_reference == "abc"
        assert callback.amount == Decimal("5")
        assert callback.metadata["PhoneNumber"] == 254700000000
        assert callback.is_terminal

    def test_success_without_receipt_is_interim(self):
        """A completed result with no receipt cannot settle anything."""
        payload = StubGateway.success_callback("ws_CO_1", "R1")
        payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [
            {"Name": "Amount", "Value": 5}
        ]
        callback = parse_callback(payload)

        assert callback.outcome == CallbackOutcome.INTERIM
        assert not callback.is_terminal

    def test_string_result_code(self):
        payload = StubGateway.success_callback("ws_CO_1", "R1")
        payload["Body"]["stkCallback"]["ResultCode"] = "0"
        assert parse_callback(payload).outcome == CallbackOutcome.SUCCESS

    def test_bill_ref_number_fallback(self):
        payload = StubGateway.success_callback("ws_CO_1", "R1")
        payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"].append(
            {"Name": "BillRefNumber", "Value": "ref-9"}
        )
        assert parse_callback(payload).client_reference == "ref-9"


class TestParseFailureAndInterim:
    """Failed and in-progress results."""

    def test_failure(self):
        callback = parse_callback(StubGateway.failure_callback("ws_CO_2", 1032, "Cancelled"))

        assert callback.outcome == CallbackOutcome.FAILURE
        assert callback.result_code == "1032"
        assert callback.result_description == "Cancelled"
        assert callback.receipt_reference is None

    @pytest.mark.parametrize("code", [4999, "500.001.1001"])
    def test_interim_codes(self, code):
        callback = parse_callback(StubGateway.interim_callback("ws_CO_3", code), interim_codes=INTERIM)
        assert callback.outcome == CallbackOutcome.INTERIM

    def test_interim_code_not_configured_is_failure(self):
        callback = parse_callback(StubGateway.interim_callback("ws_CO_3", 4999))
        assert callback.outcome == CallbackOutcome.FAILURE


class TestUnrecognisedShapes:
    """Envelopes the parser refuses."""

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "text",
            {},
            {"Body": "x"},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": True}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": 12, "ResultCode": 0}}},
            {
                "Body": {
                    "stkCallback": {
                        "CheckoutRequestID": "ws_CO_1",
                        "ResultCode": 0,
                        "CallbackMetadata": {"Item": "nope"},
                    }
                }
            },
        ],
    )
    def test_rejected(self, payload):
        with pytest.raises(CallbackParseError):
            parse_callback(payload)


def test_acknowledgement_is_a_fresh_copy():
    ack = acknowledgement()
    ack["ResultCode"] = 99
    assert acknowledgement() == {"ResultCode": 0, "ResultDesc": "Accepted"}
