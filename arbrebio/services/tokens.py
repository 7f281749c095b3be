"""HMAC-signed unsubscribe links and admin API key verification."""
import hashlib
import hmac
import logging

from arbrebio.config import get_settings
from arbrebio.errors import AdminAuthError

logger = logging.getLogger(__name__)

UNSUBSCRIBE_ACTION = "unsubscribe"


def generate_unsubscribe_token(email: str) -> str:
    """Return the per-subscriber token embedded in unsubscribe links.

    The email is lowercased before signing so the token survives case changes
    made by mail clients.
    """
    secret = get_settings().secret_key.encode()
    message = f"{email.strip().lower()}:{UNSUBSCRIBE_ACTION}".encode()
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def verify_unsubscribe_token(email: str, token: str) -> bool:
    expected = generate_unsubscribe_token(email)
    return hmac.compare_digest(expected.encode(), token.strip().encode())


def hash_admin_key(key: str) -> str:
    """SHA-256 hex digest stored in ``ADMIN_API_KEYS`` for a raw admin key."""
    return hashlib.sha256(key.encode()).hexdigest()


def authenticate_admin(token: str | None) -> str:
    """Resolve an admin API key to its key id.

    Raises AdminAuthError when the key is missing, unknown or revoked.
    """
    if not token:
        raise AdminAuthError()

    settings = get_settings()
    presented = hash_admin_key(token)
    matched_id = None
    # Compare against every key so timing does not reveal which one matched
    for key_id, digest in settings.admin_api_keys.items():
        if hmac.compare_digest(presented, digest.lower()):
            matched_id = key_id

    if matched_id is None:
        logger.warning("Rejected admin request with unknown API key")
        raise AdminAuthError()
    if matched_id in settings.admin_revoked_key_ids:
        logger.warning(f"Rejected admin request with revoked API key id={matched_id}")
        raise AdminAuthError()

    return matched_id
