"""
Minimal x402-protected demo server on Solana devnet.

GET /data answers 402 with a USDC offer until the request carries an
X-Payment proof signed with AUTOPAY_PROOF_SECRET.
"""

import json
import os

import jwt
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from autopay.networks import DEVNET
from autopay.offers import ACCEPT_PAYMENT_HEADER, PAYMENT_HEADER
from autopay.proof import verify_payment_proof

app = FastAPI()

PAY_TO = os.getenv("DEMO_PAY_TO", "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin")
PRICE_BASE_UNITS = 1000  # 0.001 USDC

OFFER = {
    "scheme": "exact",
    "network": DEVNET.caip2,
    "asset": DEVNET.usdc_mint,
    "maxAmountRequired": str(PRICE_BASE_UNITS),
    "payTo": PAY_TO,
    "resource": "/data",
    "description": "Demo endpoint",
}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/data")
async def data(request: Request):
    token = request.headers.get(PAYMENT_HEADER)
    if token:
        try:
            claims = verify_payment_proof(token, os.environ["AUTOPAY_PROOF_SECRET"])
        except jwt.InvalidTokenError as exc:
            return JSONResponse({"error": f"Invalid payment proof: {exc}"}, status_code=402)
        if claims["recipient"] == PAY_TO and int(claims["amount"]) >= PRICE_BASE_UNITS:
            return {"message": "Payment accepted", "signature": claims["signature"]}

    return JSONResponse(
        {"x402Version": 1, "error": "Payment required", "accepts": [OFFER]},
        status_code=402,
        headers={ACCEPT_PAYMENT_HEADER: json.dumps(OFFER)},
    )


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8402)
