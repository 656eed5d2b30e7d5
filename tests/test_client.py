"""Tests for the health-gated autopay fetch flow."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from autopay.client import AutopayClient, FetchOutcome
from autopay.config import AutopayConfig
from autopay.coordinator import PaymentCoordinator
from autopay.errors import (
    ApprovalRequired,
    AutopayError,
    FulfillmentFailed,
    HealthCheckFailed,
    LimitExceeded,
    MaxPaymentExceeded,
    PaymentExecutionFailed,
    VerificationFailed,
)
from autopay.limits import SpendingGovernor
from autopay.networks import DEVNET
from autopay.proof import verify_payment_proof


URL = "https://api.example.com/data"
R1 = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
USDC = DEVNET.usdc_mint
SIG = "5" * 44 + "K" * 44
SECRET = "test-proof-secret-0123456789abcdef"

OFFER = {"network": "solana-devnet", "asset": USDC, "amount": "250000", "payTo": R1}


class FakeSigner:
    def __init__(self, signature=SIG, error=None, on_submit=None, delay=0.0):
        self.signature = signature
        self.error = error
        self.on_submit = on_submit
        self.delay = delay
        self.calls = []

    async def submit(self, recipient, amount, asset):
        self.calls.append((recipient, amount, asset))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_submit:
            self.on_submit()
        if self.error:
            raise self.error
        return self.signature


class FakeCoordinator(PaymentCoordinator):
    """Real offer handling and execution; canned verification."""

    def __init__(self, signer, verified=True):
        super().__init__("solana-devnet", signer=signer)
        self.verified = verified
        self.verify_calls = []

    async def verify_transaction(self, signature, expected_recipient, expected_amount, asset):
        self.verify_calls.append((signature, expected_recipient, expected_amount, asset))
        return self.verified


class PaidService:
    """Mock x402 resource: 402 until a payment proof is attached."""

    def __init__(self, head_status=200, offer_header=True, body=None, paid_status=200, unpaid_status=402):
        self.head_status = head_status
        self.offer_header = offer_header
        self.body = body
        self.paid_status = paid_status
        self.unpaid_status = unpaid_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "HEAD":
            if isinstance(self.head_status, Exception):
                raise self.head_status
            return httpx.Response(self.head_status)
        if "X-Payment" in request.headers:
            return httpx.Response(self.paid_status, json={"result": "paid content"})
        if self.unpaid_status != 402:
            return httpx.Response(self.unpaid_status, json={"result": "free content"})
        headers = {"X-Accept-Payment": json.dumps(OFFER)} if self.offer_header else {}
        return httpx.Response(402, headers=headers, json=self.body or {"error": "payment required"})

    @property
    def paid_requests(self):
        return [r for r in self.requests if "X-Payment" in r.headers]


def make_client(service, signer=None, verified=True, governor=None, **config):
    signer = signer or FakeSigner()
    coordinator = FakeCoordinator(signer, verified=verified)
    http = httpx.AsyncClient(transport=httpx.MockTransport(service))
    client = AutopayClient(
        coordinator,
        governor=governor,
        config=AutopayConfig(**config),
        http=http,
        proof_secret=SECRET,
    )
    return client, signer, coordinator


def fetch(client, **kwargs):
    return asyncio.run(client.fetch_with_autopay(URL, **kwargs))


class TestScenarios:
    def test_a_pays_verifies_and_retries_with_proof(self):
        service = PaidService()
        client, signer, coordinator = make_client(service)

        result = fetch(client, autopay_threshold="0.50")

        assert result.success
        assert result.outcome == FetchOutcome.SUCCESS
        assert result.payment_executed
        assert result.payment_amount == "0.25"
        assert result.payment_recipient == R1
        assert result.payment_signature == SIG
        assert result.data == {"result": "paid content"}
        assert signer.calls == [(R1, 250000, USDC)]
        assert coordinator.verify_calls == [(SIG, R1, 250000, USDC)]

        proof = service.paid_requests[0].headers["X-Payment"]
        claims = verify_payment_proof(proof, SECRET)
        assert claims["signature"] == SIG
        assert claims["recipient"] == R1
        assert claims["amount"] == "250000"
        assert claims["exp"] - claims["iat"] == 3600

    def test_b_above_threshold_needs_approval(self):
        service = PaidService()
        client, signer, _ = make_client(service)

        result = fetch(client, autopay_threshold="0.10")

        assert not result.success
        assert result.outcome == FetchOutcome.NEEDS_APPROVAL
        assert result.needs_user_approval
        assert result.payment_amount == "0.25"
        assert result.payment_offer.recipient == R1
        assert not result.payment_executed
        assert signer.calls == []

    def test_c_unreachable_endpoint_never_pays(self):
        service = PaidService(head_status=httpx.ConnectError("connection refused"))
        client, signer, _ = make_client(service)

        result = fetch(client)

        assert result.to_dict()["success"] is False
        assert result.health_check_passed is False
        assert result.payment_executed is False
        assert result.outcome == FetchOutcome.HEALTH_CHECK_FAILED
        assert signer.calls == []
        assert [r.method for r in service.requests] == ["HEAD"]

    def test_d_unverified_payment_is_distinct(self):
        service = PaidService()
        client, signer, _ = make_client(service, verified=False)

        result = fetch(client)

        assert not result.success
        assert result.payment_executed
        assert result.outcome == FetchOutcome.VERIFICATION_FAILED
        assert "verification" in result.error
        assert result.payment_signature == SIG
        assert service.paid_requests == []


class TestHealthGate:
    def test_server_error_probe_blocks_payment(self):
        service = PaidService(head_status=503)
        client, signer, _ = make_client(service)
        result = fetch(client)
        assert result.outcome == FetchOutcome.HEALTH_CHECK_FAILED
        assert result.status_code == 503
        assert signer.calls == []

    @pytest.mark.parametrize("status", [200, 401, 402, 404])
    def test_below_500_is_healthy(self, status):
        service = PaidService(head_status=status)
        client, _, _ = make_client(service)
        assert fetch(client).health_check_passed


class TestPrimaryResponse:
    def test_free_resource_needs_no_payment(self):
        service = PaidService(unpaid_status=200)
        client, signer, _ = make_client(service)
        result = fetch(client)
        assert result.success
        assert not result.payment_executed
        assert result.data == {"result": "free content"}
        assert signer.calls == []
        assert service.requests[1].headers["User-Agent"].startswith("x402-autopay")

    def test_other_status_passes_through(self):
        service = PaidService(unpaid_status=404)
        client, signer, _ = make_client(service)
        result = fetch(client)
        assert not result.success
        assert result.outcome == FetchOutcome.REQUEST_FAILED
        assert result.status_code == 404
        assert signer.calls == []

    def test_offer_from_body_when_header_absent(self):
        service = PaidService(offer_header=False, body={"accepts": [{
            "chainId": "devnet",
            "tokenAddress": USDC,
            "amount": "100000",
            "receiverAddress": R1,
        }]})
        client, signer, _ = make_client(service)
        result = fetch(client)
        assert result.success
        assert result.payment_amount == "0.10"
        assert signer.calls == [(R1, 100000, USDC)]

    def test_missing_payment_details(self):
        service = PaidService(offer_header=False, body={"error": "pay up"})
        client, signer, _ = make_client(service)
        result = fetch(client)
        assert result.outcome == FetchOutcome.MISSING_PAYMENT_DETAILS
        assert signer.calls == []

    def test_post_body_sent_as_json(self):
        service = PaidService()
        client, _, _ = make_client(service)
        fetch(client, method="post", data={"q": "weather"})
        posts = [r for r in service.requests if r.method == "POST"]
        assert len(posts) == 2
        assert all(json.loads(r.content) == {"q": "weather"} for r in posts)


class TestCeilings:
    def test_max_payment_exceeded(self):
        service = PaidService()
        client, signer, _ = make_client(service)
        result = fetch(client, max_payment="0.20", autopay_threshold="1.00")
        assert result.outcome == FetchOutcome.MAX_PAYMENT_EXCEEDED
        assert not result.payment_executed
        assert signer.calls == []

    def test_spending_limit_denial(self, tmp_path):
        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        governor.set_limits("agent-1", per_transaction="$0.10")
        service = PaidService()
        client, signer, _ = make_client(service, governor=governor)

        result = fetch(client, identity="agent-1")

        assert result.outcome == FetchOutcome.LIMIT_EXCEEDED
        assert "per-transaction limit $0.10" in result.error
        assert result.limit_check is not None
        assert signer.calls == []

    def test_verified_payment_is_recorded(self, tmp_path):
        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        service = PaidService()
        client, _, _ = make_client(service, governor=governor)

        assert fetch(client, identity="agent-1").success

        stats = governor.get_spending_stats("agent-1")
        assert stats.total_today == Decimal("0.25")
        charge = governor.list_charges("agent-1")[0]
        assert charge.signature == SIG
        assert charge.resource == URL

    def test_unverified_payment_recorded_separately(self, tmp_path):
        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        client, _, _ = make_client(PaidService(), verified=False, governor=governor)
        fetch(client, identity="agent-1")
        assert governor.get_spending_stats("agent-1").today_micros == 0
        assert governor.list_charges("agent-1")[0].status == "unverified"

    def test_concurrent_fetches_share_one_daily_budget(self, tmp_path):
        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        governor.set_limits("agent-1", per_transaction="$1.00", daily="$0.30")
        service = PaidService()
        client, signer, _ = make_client(service, signer=FakeSigner(delay=0.05), governor=governor)

        async def both():
            return await asyncio.gather(
                client.fetch_with_autopay(URL, identity="agent-1"),
                client.fetch_with_autopay(URL, identity="agent-1"),
            )

        results = asyncio.run(both())

        assert sorted(r.outcome.value for r in results) == ["limit_exceeded", "success"]
        assert len(signer.calls) == 1
        assert len(service.paid_requests) == 1
        assert governor.get_spending_stats("agent-1").today_micros == 250_000
        assert [c.status for c in governor.list_charges("agent-1")] == ["completed"]

    def test_declined_payments_release_their_reservation(self, tmp_path):
        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        governor.set_limits("agent-1", per_transaction="$1.00", daily="$0.30")
        client, signer, _ = make_client(PaidService(), governor=governor)
        failing, _, _ = make_client(
            PaidService(), signer=FakeSigner(error=PaymentExecutionFailed("exit 1")), governor=governor
        )

        assert fetch(client, identity="agent-1", autopay_threshold="0.10").outcome == FetchOutcome.NEEDS_APPROVAL
        assert fetch(client, identity="agent-1", max_payment="0.20").outcome == FetchOutcome.MAX_PAYMENT_EXCEEDED
        assert fetch(failing, identity="agent-1").outcome == FetchOutcome.PAYMENT_FAILED
        assert [c.status for c in governor.list_charges("agent-1")] == ["released"] * 3
        assert governor.get_spending_stats("agent-1").today_micros == 0

        assert fetch(client, identity="agent-1").success
        assert len(signer.calls) == 1


class TestFailures:
    def test_primary_request_timeout_is_a_failure_result(self):
        def handler(request):
            if request.method == "HEAD":
                return httpx.Response(200)
            raise httpx.ReadTimeout("read timed out", request=request)

        client, signer, _ = make_client(handler, request_timeout_seconds=2.0)
        result = fetch(client)

        assert result.outcome == FetchOutcome.REQUEST_FAILED
        assert result.health_check_passed
        assert not result.payment_executed
        assert result.error == "Request timed out after 2.0s"
        assert signer.calls == []

    def test_payment_execution_failure(self):
        signer = FakeSigner(error=PaymentExecutionFailed("exit 1", diagnostics="insufficient funds"))
        client, _, coordinator = make_client(PaidService(), signer=signer)
        result = fetch(client)
        assert result.outcome == FetchOutcome.PAYMENT_FAILED
        assert not result.payment_executed
        assert result.diagnostics == "insufficient funds"
        assert coordinator.verify_calls == []

    def test_fulfillment_failure_after_verified_payment(self):
        service = PaidService(paid_status=500)
        client, signer, _ = make_client(service)
        result = fetch(client)
        assert result.outcome == FetchOutcome.FULFILLMENT_FAILED
        assert result.payment_executed
        assert result.status_code == 500
        assert len(signer.calls) == 1
        assert len(service.paid_requests) == 1

    def test_audit_records_flow(self, tmp_path):
        from autopay.audit import AuditTrail

        trail = AuditTrail(tmp_path / "audit.jsonl", key_path=tmp_path / "keys" / "audit.key")
        client, _, _ = make_client(PaidService())
        client.audit = trail
        fetch(client, identity="agent-1")
        types = [e.event_type for e in trail.read_events(identity="agent-1")]
        assert types == [
            "payment_required",
            "payment_submitted",
            "payment_verified",
            "fetch_completed",
        ]


class TestCancellation:
    def test_cancelled_before_start(self):
        service = PaidService()
        client, signer, _ = make_client(service)
        cancel = asyncio.Event()
        cancel.set()
        result = fetch(client, cancel=cancel)
        assert result.outcome == FetchOutcome.CANCELLED
        assert service.requests == []
        assert signer.calls == []

    def test_cancel_after_submission_skips_verify_and_retry(self):
        service = PaidService()
        cancel = asyncio.Event()
        signer = FakeSigner(on_submit=cancel.set)
        client, _, coordinator = make_client(service, signer=signer)

        result = fetch(client, cancel=cancel)

        assert result.outcome == FetchOutcome.CANCELLED
        assert result.payment_executed
        assert result.payment_signature == SIG
        assert coordinator.verify_calls == []
        assert service.paid_requests == []

    def test_cancel_after_submission_keeps_charge_for_reconciliation(self, tmp_path):
        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        cancel = asyncio.Event()
        client, _, _ = make_client(PaidService(), signer=FakeSigner(on_submit=cancel.set), governor=governor)

        result = fetch(client, identity="agent-1", cancel=cancel)

        assert result.outcome == FetchOutcome.CANCELLED
        charge = governor.list_charges("agent-1")[0]
        assert charge.status == "unverified"
        assert charge.signature == SIG
        assert charge.resource == URL


class TestRaiseForOutcome:
    def test_success_does_not_raise(self):
        client, _, _ = make_client(PaidService())
        fetch(client).raise_for_outcome()

    def test_approval(self):
        client, _, _ = make_client(PaidService())
        with pytest.raises(ApprovalRequired) as exc:
            fetch(client, autopay_threshold="0.10").raise_for_outcome()
        assert exc.value.amount == "0.25"
        assert exc.value.recipient == R1

    def test_health(self):
        client, _, _ = make_client(PaidService(head_status=503))
        with pytest.raises(HealthCheckFailed) as exc:
            fetch(client).raise_for_outcome()
        assert exc.value.url == URL
        assert exc.value.status_code == 503

    def test_ceilings(self, tmp_path):
        client, _, _ = make_client(PaidService())
        with pytest.raises(MaxPaymentExceeded) as exc:
            fetch(client, max_payment="0.20").raise_for_outcome()
        assert exc.value.ceiling == "0.20"

        governor = SpendingGovernor(tmp_path / "spending.sqlite3")
        governor.set_limits("agent-1", per_transaction="$0.10")
        client, _, _ = make_client(PaidService(), governor=governor)
        with pytest.raises(LimitExceeded, match="per-transaction limit"):
            fetch(client, identity="agent-1").raise_for_outcome()

    def test_paid_failures_carry_signature(self):
        client, _, _ = make_client(PaidService(), verified=False)
        with pytest.raises(VerificationFailed) as exc:
            fetch(client).raise_for_outcome()
        assert exc.value.signature == SIG

        client, _, _ = make_client(PaidService(paid_status=500))
        with pytest.raises(FulfillmentFailed) as exc:
            fetch(client).raise_for_outcome()
        assert exc.value.status_code == 500
        assert exc.value.signature == SIG

    def test_request_failure_is_generic(self):
        client, _, _ = make_client(PaidService(unpaid_status=404))
        with pytest.raises(AutopayError, match="status 404"):
            fetch(client).raise_for_outcome()
