"""Settlement configuration.

Loaded from the process environment, optionally seeded from a ``.env``
file. Polling defaults match the relayer's cadence: a poll every 5 seconds,
120 polls, i.e. a 10 minute ceiling before an attempt is reported as
needing manual reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

DEFAULT_FUSION_URL = "https://api.1inch.dev/fusion-plus"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True)
class SettlementConfig:
    api_url: str = DEFAULT_FUSION_URL
    api_key: str = ""
    poll_interval: float = 5.0
    max_polls: int = 120
    retries: int = 1
    retry_backoff: float = 2.0
    request_timeout: float = 30.0
    ledger_chain_id: int = 1
    ledger_address: str = ZERO_ADDRESS
    private_key: Optional[str] = None
    maker_address: Optional[str] = None

    def __post_init__(self) -> None:
        if self.poll_interval < 0:
            raise ValueError("poll_interval cannot be negative")
        if self.max_polls < 1:
            raise ValueError("max_polls must be at least 1")
        if self.retries < 0:
            raise ValueError("retries cannot be negative")

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> SettlementConfig:
        """Build from environment variables.

        ``env_file`` is loaded first without overriding variables already
        set. ``environ`` replaces ``os.environ`` (for tests).
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)
        env = os.environ if environ is None else environ
        return cls(
            api_url=env.get("FUSION_API_URL", DEFAULT_FUSION_URL).rstrip("/"),
            api_key=env.get("DEV_PORTAL_API_KEY", ""),
            poll_interval=float(env.get("SETTLE_POLL_INTERVAL", "5")),
            max_polls=int(env.get("SETTLE_MAX_POLLS", "120")),
            retries=int(env.get("SETTLE_RETRIES", "1")),
            retry_backoff=float(env.get("SETTLE_RETRY_BACKOFF", "2")),
            request_timeout=float(env.get("SETTLE_REQUEST_TIMEOUT", "30")),
            ledger_chain_id=int(env.get("LEDGER_CHAIN_ID", "1")),
            ledger_address=env.get("LEDGER_ADDRESS", ZERO_ADDRESS),
            private_key=env.get("PRIVATE_KEY") or None,
            maker_address=env.get("MAKER_ADDRESS") or None,
        )

    def __repr__(self) -> str:
        return (
            f"SettlementConfig(api_url={self.api_url!r}, poll_interval={self.poll_interval}, "
            f"max_polls={self.max_polls}, retries={self.retries}, "
            f"ledger_chain_id={self.ledger_chain_id})"
        )
