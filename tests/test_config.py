"""
tests/test_config.py -- Tests for core/config.py Settings validation.

Settings are built directly with keyword arguments; init values take
precedence over the DEBUG=true that conftest puts in the environment.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

SECRET = "s" * 32
KEY = "00" * 32


def test_cookies_secure_by_default_in_production() -> None:
    settings = Settings(debug=False, secret_key=SECRET, encryption_key=KEY)
    assert settings.secure_cookies is True


def test_cookies_not_secure_in_debug() -> None:
    assert Settings(debug=True).secure_cookies is False


def test_explicit_secure_cookies_wins() -> None:
    settings = Settings(debug=False, secret_key=SECRET, encryption_key=KEY, secure_cookies=False)
    assert settings.secure_cookies is False
    assert Settings(debug=True, secure_cookies=True).secure_cookies is True


def test_debug_generates_keys() -> None:
    settings = Settings(debug=True)
    assert len(settings.secret_key) >= 32
    assert len(bytes.fromhex(settings.encryption_key)) == 32


@pytest.mark.parametrize(
    "kwargs",
    [
        {"secret_key": "", "encryption_key": KEY},
        {"secret_key": "short", "encryption_key": KEY},
        {"secret_key": SECRET, "encryption_key": ""},
        {"secret_key": SECRET, "encryption_key": "zz" * 32},
        {"secret_key": SECRET, "encryption_key": "00" * 16},
    ],
)
def test_production_rejects_bad_keys(kwargs: dict) -> None:
    with pytest.raises(ValidationError):
        Settings(debug=False, **kwargs)
