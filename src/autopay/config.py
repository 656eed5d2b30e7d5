"""Runtime configuration, read from AUTOPAY_* environment variables."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .networks import SolanaNetwork, resolve_network


def _default_home() -> Path:
    return Path.home() / ".autopay"


@dataclass
class AutopayConfig:
    network: str = "solana-devnet"
    rpc_url: Optional[str] = None
    commitment: str = "confirmed"
    health_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    max_payment: str = "10.00"
    autopay_threshold: str = "0.50"
    identity: str = "default"
    signer_command: list[str] = field(default_factory=list)
    home: Path = field(default_factory=_default_home)
    user_agent: str = "x402-autopay/0.1"
    session_ttl_seconds: float = 15 * 60
    session_cleanup_interval_seconds: float = 5 * 60

    @property
    def solana_network(self) -> SolanaNetwork:
        return resolve_network(self.network)

    @property
    def resolved_rpc_url(self) -> str:
        return self.rpc_url or self.solana_network.rpc_url

    @property
    def db_path(self) -> Path:
        return self.home / "spending.sqlite3"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def secrets_dir(self) -> Path:
        return self.home.parent / f"{self.home.name}-secrets"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AutopayConfig":
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("AUTOPAY_NETWORK"):
            config.network = env["AUTOPAY_NETWORK"]
        if env.get("AUTOPAY_RPC_URL"):
            config.rpc_url = env["AUTOPAY_RPC_URL"]
        if env.get("AUTOPAY_COMMITMENT"):
            config.commitment = env["AUTOPAY_COMMITMENT"]
        if env.get("AUTOPAY_HEALTH_TIMEOUT"):
            config.health_timeout_seconds = float(env["AUTOPAY_HEALTH_TIMEOUT"])
        if env.get("AUTOPAY_REQUEST_TIMEOUT"):
            config.request_timeout_seconds = float(env["AUTOPAY_REQUEST_TIMEOUT"])
        if env.get("AUTOPAY_MAX_PAYMENT"):
            config.max_payment = env["AUTOPAY_MAX_PAYMENT"]
        if env.get("AUTOPAY_THRESHOLD"):
            config.autopay_threshold = env["AUTOPAY_THRESHOLD"]
        if env.get("AUTOPAY_IDENTITY"):
            config.identity = env["AUTOPAY_IDENTITY"]
        if env.get("AUTOPAY_SIGNER_COMMAND"):
            config.signer_command = shlex.split(env["AUTOPAY_SIGNER_COMMAND"])
        if env.get("AUTOPAY_HOME"):
            config.home = Path(env["AUTOPAY_HOME"])
        resolve_network(config.network)
        return config
