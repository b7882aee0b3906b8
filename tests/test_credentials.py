"""
tests/test_credentials.py -- Unit tests for auth/credentials.py (CredentialVault).
"""

from __future__ import annotations

import pytest

from auth.credentials import CredentialVault
from auth.crypto import CredentialCipher, generate_key, is_sealed
from auth.models import Credential, CredentialKind, User
from auth.store import UserStore

PROTECT = CredentialKind.unifi_protect_key


@pytest.fixture
def alice(user_store: UserStore) -> int:
    return user_store.create_user(User(display_name="Alice", username="alice"))


@pytest.fixture
def vault(user_store: UserStore, cipher: CredentialCipher) -> CredentialVault:
    return CredentialVault(user_store, cipher)


def test_secret_sealed_at_rest(vault: CredentialVault, user_store: UserStore, alice: int) -> None:
    vault.store_secret(alice, PROTECT, "protect-key-123")
    raw = user_store.find_credential(alice, PROTECT).secret
    assert is_sealed(raw)
    assert "protect-key-123" not in raw
    assert vault.reveal_secret(alice, PROTECT) == "protect-key-123"


def test_store_replaces_existing(vault: CredentialVault, alice: int) -> None:
    vault.store_secret(alice, PROTECT, "old")
    vault.store_secret(alice, PROTECT, "new")
    assert vault.reveal_secret(alice, PROTECT) == "new"


def test_empty_secret_rejected(vault: CredentialVault, alice: int) -> None:
    with pytest.raises(ValueError):
        vault.store_secret(alice, PROTECT, "")


def test_kinds_are_independent(vault: CredentialVault, alice: int) -> None:
    vault.store_secret(alice, PROTECT, "protect")
    assert vault.has_secret(alice, PROTECT)
    assert not vault.has_secret(alice, CredentialKind.unifi_access_key)
    assert vault.reveal_secret(alice, CredentialKind.unifi_access_key) is None


def test_forget(vault: CredentialVault, alice: int) -> None:
    vault.store_secret(alice, PROTECT, "protect")
    assert vault.forget(alice, PROTECT)
    assert not vault.forget(alice, PROTECT)
    assert vault.reveal_secret(alice, PROTECT) is None


def test_wrong_key_reads_as_not_configured(user_store: UserStore, cipher: CredentialCipher, alice: int) -> None:
    CredentialVault(user_store, cipher).store_secret(alice, PROTECT, "protect")
    rotated = CredentialVault(user_store, CredentialCipher.from_hex(generate_key()))
    assert rotated.reveal_secret(alice, PROTECT) is None


def test_migrate_plaintext(vault: CredentialVault, user_store: UserStore, alice: int) -> None:
    user_store.upsert_credential(
        Credential(
            user_id=alice,
            kind=CredentialKind.home_assistant_token,
            secret="legacy-access",
            refresh_secret="legacy-refresh",
        )
    )
    vault.store_secret(alice, PROTECT, "already-sealed")

    assert vault.migrate_plaintext() == 1
    cred = user_store.find_credential(alice, CredentialKind.home_assistant_token)
    assert is_sealed(cred.secret)
    assert is_sealed(cred.refresh_secret)
    assert vault.reveal_secret(alice, CredentialKind.home_assistant_token) == "legacy-access"
    assert vault.migrate_plaintext() == 0


def test_legacy_plaintext_readable_before_migration(vault: CredentialVault, user_store: UserStore, alice: int) -> None:
    user_store.upsert_credential(Credential(user_id=alice, kind=PROTECT, secret="plain-key"))
    assert vault.reveal_secret(alice, PROTECT) == "plain-key"
