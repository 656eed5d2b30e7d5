"""Async Solana JSON-RPC client for the few calls verification needs."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional

import httpx

from .errors import LedgerRpcError

logger = logging.getLogger(__name__)


class SolanaRpcClient:
    """Minimal JSON-RPC client over httpx."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        commitment: str = "confirmed",
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            resp = await self._http.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPError as exc:
            raise LedgerRpcError(method, str(exc)) from exc
        except ValueError as exc:
            raise LedgerRpcError(method, f"invalid JSON response: {exc}") from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            raise LedgerRpcError(method, error.get("message", str(error)), error.get("code"))
        if not isinstance(body, dict) or "result" not in body:
            raise LedgerRpcError(method, "response missing result")
        return body["result"]

    async def get_parsed_transaction(self, signature: str) -> Optional[dict]:
        """Return the jsonParsed transaction, or None if the ledger has no record."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_signature_status(self, signature: str) -> Optional[dict]:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or []
        return values[0] if values else None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "SolanaRpcClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
