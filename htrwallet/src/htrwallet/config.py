"""
Wallet configuration.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from htrwallet.constants import DEFAULT_SERVER, GAP_LIMIT, LIMIT_ADDRESS_GENERATION
from htrwallet.wallet.models import NetworkType


class WalletConfig(BaseModel):
    network: NetworkType = NetworkType.MAINNET

    # Full node API base URL, e.g. https://node1.mainnet.hathor.network/v1a/
    server: str = DEFAULT_SERVER

    gap_limit: int = Field(
        default=GAP_LIMIT,
        ge=1,
        description="Unused addresses watched ahead of the last used one",
    )
    limit_address_generation: bool = LIMIT_ADDRESS_GENERATION

    # Where wallet data is persisted; None keeps everything in memory
    data_file: Path | None = None

    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    model_config = {"frozen": False}

    @model_validator(mode="after")
    def validate_config(self) -> WalletConfig:
        """Normalize the server URL so API paths can be joined to it."""
        if not self.server.startswith(("http://", "https://")):
            raise ValueError(f"server must be an http(s) URL, got {self.server}")
        if not self.server.endswith("/"):
            object.__setattr__(self, "server", self.server + "/")
        return self
