"""Tests for 402 offer parsing and normalization."""

import json

import pytest

from autopay.errors import MissingPaymentDetails
from autopay.offers import PaymentInstruction, PaymentOffer, parse_payment_required


R1 = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"

LEGACY = {"chainId": "devnet", "tokenAddress": MINT, "amount": "250000", "receiverAddress": R1}
CURRENT = {"network": "solana-devnet", "asset": MINT, "maxAmountRequired": "250000", "payTo": R1}


class TestPaymentOffer:
    @pytest.mark.parametrize("raw", [LEGACY, CURRENT])
    def test_both_naming_schemes_normalize(self, raw):
        offer = PaymentOffer.from_wire(raw)
        assert offer.asset == MINT
        assert offer.amount == 250000
        assert offer.recipient == R1

    def test_current_name_wins_when_both_present(self):
        offer = PaymentOffer.from_wire({**LEGACY, "maxAmountRequired": "300000"})
        assert offer.amount == 300000

    def test_missing_fields(self):
        with pytest.raises(ValueError, match="recipient"):
            PaymentOffer.from_wire({"network": "devnet", "asset": MINT, "amount": "1"})

    @pytest.mark.parametrize("amount", ["0.25", 0.25, "-1", "0", "abc", True])
    def test_amount_must_be_positive_integer(self, amount):
        with pytest.raises(ValueError):
            PaymentOffer.from_wire({**CURRENT, "maxAmountRequired": amount})

    def test_integer_amount_accepted(self):
        assert PaymentOffer.from_wire({**CURRENT, "maxAmountRequired": 5000}).amount == 5000

    def test_instruction_round_trips_through_dict(self):
        instruction = PaymentInstruction(offer=PaymentOffer.from_wire(CURRENT), service_id="svc")
        assert PaymentInstruction.from_dict(instruction.to_dict()) == instruction


class TestParsePaymentRequired:
    def test_header_single_offer(self):
        offers = parse_payment_required({"X-Accept-Payment": json.dumps(LEGACY)})
        assert [o.network for o in offers] == ["devnet"]

    def test_header_is_case_insensitive(self):
        offers = parse_payment_required({"x-accept-payment": json.dumps([LEGACY, CURRENT])})
        assert len(offers) == 2

    def test_header_preferred_over_body(self):
        body = json.dumps({"accepts": [{**CURRENT, "maxAmountRequired": "1"}]})
        offers = parse_payment_required({"X-Accept-Payment": json.dumps(CURRENT)}, body)
        assert offers[0].amount == 250000

    def test_body_accepts_array(self):
        offers = parse_payment_required({}, json.dumps({"x402Version": 1, "accepts": [CURRENT]}).encode())
        assert offers[0].recipient == R1

    def test_body_used_when_header_unparseable(self):
        offers = parse_payment_required({"X-Accept-Payment": "not json"}, {"accepts": [LEGACY]})
        assert offers[0].amount == 250000

    def test_malformed_offers_are_skipped(self):
        offers = parse_payment_required({}, {"accepts": [{"network": "devnet"}, CURRENT]})
        assert len(offers) == 1

    @pytest.mark.parametrize("body", [None, b"", b"<html>402</html>", {"error": "pay"}, {"accepts": []}])
    def test_missing_details(self, body):
        with pytest.raises(MissingPaymentDetails):
            parse_payment_required({}, body)
