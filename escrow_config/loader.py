"""
YAML loader for ``EscrowConfig``.

Reads a configuration set with ``yaml.safe_load`` and converts it into the
frozen dataclasses of ``escrow_config.schema``.

Failure modes:
    - Malformed YAML: ``yaml.YAMLError`` propagates.
    - Unknown section or key: ``ValueError`` naming the offending key.
    - Out-of-range value: ``ValueError`` from the section's ``__post_init__``.
"""

from __future__ import annotations

from dataclasses import fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

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

_SECTIONS: dict[str, type] = {
    "fees": FeePolicy,
    "contracts": ContractPolicy,
    "penalties": PenaltyPolicy,
    "reconciliation": ReconciliationPolicy,
    "outbox": OutboxPolicy,
    "offers": OfferPolicy,
}

_DECIMAL_KEYS = frozenset({"platform_fee_rate", "min_amount", "max_amount", "processing_fee"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, key: str) -> Decimal:
    """Parse a YAML scalar into Decimal without float rounding artifacts."""
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{key}: not a decimal value: {value!r}") from exc


def _check_keys(data: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in {where}: {unknown}")


def _coerce(data: dict[str, Any]) -> dict[str, Any]:
    return {
        key: parse_decimal(value, key) if key in _DECIMAL_KEYS else value
        for key, value in data.items()
    }


def parse_section(name: str, data: dict[str, Any] | None) -> Any:
    cls = _SECTIONS[name]
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Section {name!r} must be a mapping")
    _check_keys(data, {f.name for f in fields(cls)}, name)
    return cls(**_coerce(data))


def parse_withdrawal_method(data: dict[str, Any]) -> WithdrawalMethodDef:
    _check_keys(data, {f.name for f in fields(WithdrawalMethodDef)}, "withdrawal_methods")
    values = _coerce(data)
    values["required_fields"] = tuple(values.get("required_fields") or ())
    return WithdrawalMethodDef(**values)


def parse_config(data: dict[str, Any]) -> EscrowConfig:
    """Build an ``EscrowConfig`` from an already-parsed YAML mapping."""
    _check_keys(data, set(_SECTIONS) | {"config_id", "withdrawal_methods"}, "root")
    kwargs: dict[str, Any] = {
        name: parse_section(name, data.get(name)) for name in _SECTIONS
    }
    kwargs["config_id"] = str(data.get("config_id", "default"))
    kwargs["withdrawal_methods"] = tuple(
        parse_withdrawal_method(m) for m in data.get("withdrawal_methods") or ()
    )
    return EscrowConfig(**kwargs)


def load_config(path: Path | str) -> EscrowConfig:
    return parse_config(load_yaml_file(Path(path)))
