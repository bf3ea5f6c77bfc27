"""Tests for ledger settings validation."""

import pytest
from pydantic import ValidationError

from core.config.config import LedgerCfg

KEY = "0x" + "4f" * 32


@pytest.mark.parametrize("placeholder", ["your_private_key_here", "changeme", "CHANGE_ME"])
def test_placeholder_signer_key_is_rejected(placeholder) -> None:
    with pytest.raises(ValidationError, match="placeholder"):
        LedgerCfg(private_key=placeholder)


def test_blank_signer_key_means_no_signer() -> None:
    assert LedgerCfg(private_key="  ").private_key is None


def test_malformed_signer_key_is_rejected() -> None:
    with pytest.raises(ValidationError, match="32-byte hex"):
        LedgerCfg(private_key="0x1234")


def test_well_formed_signer_key_is_kept() -> None:
    cfg = LedgerCfg(private_key=KEY)
    assert cfg.private_key.get_secret_value() == KEY
