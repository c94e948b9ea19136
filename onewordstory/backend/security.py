"""Owner credentials for rooms and reconnect tokens for participants.

A room keeps only the salted hash of its owner token; the raw token is
handed to the creator once and must be presented to close the room.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

OWNER_TOKEN_BYTES = 24
RECONNECT_TOKEN_BYTES = 18


@dataclass(frozen=True)
class OwnerCredential:
    token: str
    token_hash: str


def hash_owner_token(token: str, server_salt: str) -> str:
    payload = f"{token}{server_salt}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def issue_owner_credential(server_salt: str) -> OwnerCredential:
    token = secrets.token_urlsafe(OWNER_TOKEN_BYTES)
    return OwnerCredential(token=token, token_hash=hash_owner_token(token, server_salt))


def owner_token_matches(raw_token: str, token_hash: str | None, server_salt: str) -> bool:
    """Rooms without an owner (created by a websocket join) match no token."""
    if token_hash is None or not raw_token:
        return False
    return hmac.compare_digest(hash_owner_token(raw_token, server_salt), token_hash)


def issue_reconnect_token() -> str:
    """Fresh participant identity for a join that did not present one."""
    return secrets.token_urlsafe(RECONNECT_TOKEN_BYTES)
