"""
auth/credentials.py -- Sealed storage for third-party API keys.

UniFi Protect and Access keys (and any other long-lived secret a user hands
the dashboard) go through CredentialVault: sealed with the credential cipher
before they reach the store, opened only on demand. A value that fails to
open reads as "not configured" -- the user re-enters it, the app keeps
running.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from auth.crypto import CredentialCipher
from auth.models import Credential, CredentialKind
from auth.store import UserStore

logger = logging.getLogger("homeboard.auth.credentials")


class CredentialVault:
    def __init__(self, store: UserStore, cipher: CredentialCipher) -> None:
        self._store = store
        self._cipher = cipher

    def store_secret(
        self,
        user_id: int,
        kind: CredentialKind,
        secret: str,
        expires_at: datetime | None = None,
    ) -> None:
        if not secret:
            raise ValueError("Refusing to store an empty secret.")
        self._store.upsert_credential(
            Credential(user_id=user_id, kind=kind, secret=self._cipher.seal(secret), expires_at=expires_at)
        )
        logger.info("Stored %s for user %s", kind.value, user_id)

    def reveal_secret(self, user_id: int, kind: CredentialKind) -> str | None:
        cred = self._store.find_credential(user_id, kind)
        if cred is None:
            return None
        return self._cipher.reveal(self._cipher.ensure_sealed(cred.secret))

    def has_secret(self, user_id: int, kind: CredentialKind) -> bool:
        return self._store.find_credential(user_id, kind) is not None

    def forget(self, user_id: int, kind: CredentialKind) -> bool:
        return self._store.delete_credential(user_id, kind)

    def migrate_plaintext(self) -> int:
        """Seal any legacy plaintext secrets left over from before encryption.

        Returns the number of rows rewritten.
        """
        migrated = 0
        for user in self._store.list_users():
            for kind in CredentialKind:
                cred = self._store.find_credential(user.id, kind)
                if cred is None:
                    continue
                sealed_secret = self._cipher.ensure_sealed(cred.secret)
                sealed_refresh = self._cipher.ensure_sealed(cred.refresh_secret) if cred.refresh_secret else None
                if sealed_secret != cred.secret or sealed_refresh != cred.refresh_secret:
                    cred.secret = sealed_secret
                    cred.refresh_secret = sealed_refresh
                    self._store.upsert_credential(cred)
                    migrated += 1
        if migrated:
            logger.info("Sealed %d legacy plaintext credential(s)", migrated)
        return migrated
