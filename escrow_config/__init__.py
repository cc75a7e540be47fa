"""
escrow_config -- single public entrypoint for escrow policy configuration.

Responsibility:
    ``get_active_config()`` returns the ``EscrowConfig`` the services run
    with: the packaged ``sets/default.yaml`` or the file named by the
    ``ESCROW_CONFIG`` environment variable.

Architecture position:
    Configuration.  Sits above ``escrow_kernel`` and below
    ``escrow_modules`` / ``escrow_batch``.  The kernel never imports from
    this package; modules receive plain values from it.

Failure modes:
    - ``FileNotFoundError`` -- ``ESCROW_CONFIG`` names a missing file.
    - ``ValueError`` -- unknown keys or out-of-range values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from escrow_config.loader import load_config
from escrow_config.schema import (
    ContractPolicy,
    EscrowConfig,
    FeePolicy,
    OfferPolicy,
    OutboxPolicy,
    PenaltyPolicy,
    ReconciliationPolicy,
    WithdrawalMethodDef,
)

_logger = logging.getLogger("escrow_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"
CONFIG_ENV_VAR = "ESCROW_CONFIG"


def get_active_config(path: Path | str | None = None) -> EscrowConfig:
    """Load the active configuration set.

    Resolution order: explicit ``path``, then ``$ESCROW_CONFIG``, then the
    packaged default set.
    """
    source = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    config = load_config(source)
    _logger.info(
        "escrow_config_loaded",
        extra={
            "config_id": config.config_id,
            "source": str(source),
            "platform_fee_rate": str(config.fees.platform_fee_rate),
            "withdrawal_method_count": len(config.withdrawal_methods),
        },
    )
    return config


__all__ = [
    "ContractPolicy",
    "EscrowConfig",
    "FeePolicy",
    "OfferPolicy",
    "OutboxPolicy",
    "PenaltyPolicy",
    "ReconciliationPolicy",
    "WithdrawalMethodDef",
    "get_active_config",
    "load_config",
]
