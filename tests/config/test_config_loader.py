"""
Tests for the YAML configuration loader and active-config resolution.
"""

from decimal import Decimal

import pytest
import yaml

from escrow_config import CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH, get_active_config
from escrow_config.loader import load_config, parse_config
from escrow_config.schema import EscrowConfig, FeePolicy, WithdrawalMethodDef


def _write(tmp_path, data, name="escrow.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaultSet:
    def test_default_values(self):
        config = load_config(DEFAULT_CONFIG_PATH)

        assert config.config_id == "default"
        assert config.fees.platform_fee_rate == Decimal("0.05")
        assert config.contracts.max_revisions == 3
        assert config.penalties.suspension_threshold == 2
        assert config.outbox.max_attempts == 5
        assert config.offers.default_expiry_days == 7

    def test_default_withdrawal_methods(self):
        methods = {m.code: m for m in load_config(DEFAULT_CONFIG_PATH).withdrawal_methods}

        assert set(methods) == {"pix", "bank_transfer"}
        assert methods["pix"].min_amount == Decimal("10.00")
        assert methods["pix"].required_fields == ("pix_key",)
        assert methods["bank_transfer"].is_bank_transfer is True
        assert methods["bank_transfer"].max_amount == Decimal("50000.00")


class TestParseConfig:
    def test_empty_mapping_gives_defaults(self):
        assert parse_config({}) == EscrowConfig()

    def test_decimal_from_float_scalar(self):
        config = parse_config({"fees": {"platform_fee_rate": 0.1}})
        assert config.fees.platform_fee_rate == Decimal("0.1")

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in fees"):
            parse_config({"fees": {"platform_fee": "0.05"}})

    def test_unknown_root_key(self):
        with pytest.raises(ValueError, match="root"):
            parse_config({"feez": {}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            parse_config({"outbox": [1, 2]})

    @pytest.mark.parametrize(
        "data",
        [
            {"fees": {"platform_fee_rate": "1.5"}},
            {"contracts": {"default_estimated_days": 0}},
            {"penalties": {"penalty_days": 0}},
            {"outbox": {"max_attempts": 0}},
        ],
    )
    def test_out_of_range(self, data):
        with pytest.raises(ValueError):
            parse_config(data)

    def test_bad_decimal(self):
        with pytest.raises(ValueError, match="not a decimal"):
            parse_config({"fees": {"platform_fee_rate": "cinco"}})

    def test_duplicate_method_codes(self):
        method = {"code": "pix", "name": "PIX", "min_amount": "1", "max_amount": "2"}
        with pytest.raises(ValueError, match="Duplicate withdrawal method codes"):
            parse_config({"withdrawal_methods": [method, dict(method)]})

    def test_invalid_method_limits(self):
        with pytest.raises(ValueError, match="invalid limits"):
            WithdrawalMethodDef(code="pix", name="PIX", min_amount=Decimal("20"), max_amount=Decimal("10"))

    def test_zero_fee_rate_allowed(self):
        assert FeePolicy(platform_fee_rate=Decimal("0")).platform_fee_rate == Decimal("0")


class TestActiveConfig:
    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        env_file = _write(tmp_path, {"config_id": "from-env"}, "env.yaml")
        explicit = _write(tmp_path, {"config_id": "explicit"}, "explicit.yaml")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(env_file))

        assert get_active_config(explicit).config_id == "explicit"

    def test_env_var(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(_write(tmp_path, {"config_id": "staging"})))
        assert get_active_config().config_id == "staging"

    def test_packaged_default(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert get_active_config().config_id == "default"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml")

    def test_load_is_logged(self, captured_logs, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        get_active_config()
        [record] = [r for r in captured_logs() if r["message"] == "escrow_config_loaded"]
        assert record["config_id"] == "default"
        assert record["withdrawal_method_count"] == 2
