from __future__ import annotations

import hashlib
import hmac
import re

import bcrypt

from gwiplatform.core.config import get_settings


_LEGACY_SHA256 = re.compile(r"^[0-9a-f]{64}$")


def hash_password(password: str) -> str:
    rounds = get_settings().password_hash_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def is_legacy_hash(stored_hash: str) -> bool:
    return bool(_LEGACY_SHA256.match(stored_hash or ""))


def verify_password(password: str, stored_hash: str | None) -> bool:
    # Older accounts were provisioned with unsalted SHA-256 hex digests.
    if not stored_hash:
        return False
    if is_legacy_hash(stored_hash):
        candidate = hashlib.sha256(password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(candidate, stored_hash)
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash; treat as a failed match.
        return False
