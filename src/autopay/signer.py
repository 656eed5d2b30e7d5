"""
Signers submit the actual ledger transfer.

The signing capability never lives in this process by default: the
SubprocessSigner hands recipient, amount and asset as discrete argv
entries to an external command that holds the key and prints the
transaction signature.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Mapping, Optional, Protocol, Sequence, runtime_checkable

from .errors import PaymentExecutionFailed
from .validation import is_valid_signature, validate_address, validate_amount, validate_asset

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    async def submit(self, recipient: str, amount: int, asset: str) -> str:
        """Submit a transfer and return its ledger signature."""
        ...


class SubprocessSigner:
    """Run an external transfer command without a shell."""

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        timeout: float = 120.0,
    ):
        if not command:
            raise ValueError("Signer command must not be empty")
        self.command = list(command)
        self.env = dict(env) if env is not None else None
        self.timeout = timeout

    async def submit(self, recipient: str, amount: int, asset: str) -> str:
        recipient = validate_address(recipient)
        asset = validate_asset(asset)
        amount = validate_amount(amount)

        proc_env = None
        if self.env is not None:
            proc_env = {**os.environ, **self.env}

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                recipient,
                str(amount),
                asset,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
            )
        except OSError as exc:
            raise PaymentExecutionFailed(
                f"Failed to start signer: {exc}", diagnostics=str(exc)
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise PaymentExecutionFailed(
                f"Signer timed out after {self.timeout:.0f}s; transfer state unknown",
                diagnostics="timeout",
            )

        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace").strip()
        if proc.returncode != 0:
            logger.warning("Signer exited with %s: %s", proc.returncode, err)
            raise PaymentExecutionFailed(
                f"Signer exited with status {proc.returncode}",
                diagnostics=err or out.strip(),
            )

        lines = [line.strip() for line in out.splitlines() if line.strip()]
        signature = lines[-1] if lines else ""
        if not is_valid_signature(signature):
            raise PaymentExecutionFailed(
                "Signer did not return a transaction signature",
                diagnostics=err or out.strip(),
            )
        logger.info("Signer submitted transfer: %s", signature)
        return signature
