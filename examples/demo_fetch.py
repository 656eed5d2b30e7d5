"""
End-to-end demo: a real devnet payment against demo_server.py.

Needs AUTOPAY_PROOF_SECRET (shared with the server) and
AUTOPAY_SIGNER_COMMAND pointing at a transfer command that prints the
transaction signature.
"""

import asyncio
import json
import threading
import time

import uvicorn

from autopay import AutopayClient, AutopayConfig, PaymentCoordinator, SolanaRpcClient, SubprocessSigner
from autopay.proof import load_proof_secret
from demo_server import app


def run_server():
    uvicorn.run(app, host="127.0.0.1", port=8402, log_level="error")


async def pay(config: AutopayConfig):
    async with SolanaRpcClient(config.resolved_rpc_url, commitment=config.commitment) as rpc:
        coordinator = PaymentCoordinator(
            config.network,
            rpc=rpc,
            signer=SubprocessSigner(config.signer_command),
        )
        client = AutopayClient(
            coordinator,
            config=config,
            proof_secret=load_proof_secret(config.secrets_dir / "proof.key"),
        )
        try:
            return await client.fetch_with_autopay(
                "http://127.0.0.1:8402/data",
                max_payment="0.01",
                autopay_threshold="0.01",
            )
        finally:
            await client.aclose()


def main():
    config = AutopayConfig.from_env()
    if not config.signer_command:
        raise SystemExit("Set AUTOPAY_SIGNER_COMMAND to a devnet transfer command first.")

    print("🚀 Autopay demo on", config.network)
    threading.Thread(target=run_server, daemon=True).start()
    time.sleep(2)

    result = asyncio.run(pay(config))
    print(json.dumps(result.to_dict(), indent=2, default=str))


if __name__ == "__main__":
    main()
