"""Security utilities for webhook signatures and provider token encryption.

WHAT:
    - HMAC verification for Shopify and Meta webhooks.
    - Symmetric encryption for stored Instagram access tokens.

WHY:
    - Webhook endpoints are public; only signed payloads may trigger automation.
    - Token encryption keeps provider credentials out of plaintext storage.
"""

import base64
import hashlib
import hmac
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from dmtobuy.utils.env import load_env_file
    load_env_file()
    TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env (see backend/generate_keys.py)."
    )

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python backend/generate_keys.py"
    ) from exc


# =============================================================================
# TOKEN ENCRYPTION
# =============================================================================

def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Instagram access token).
        context:   Friendly label for logs (shop/account).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


# =============================================================================
# WEBHOOK SIGNATURES
# =============================================================================

def verify_shopify_hmac(request_body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify a Shopify webhook (base64 HMAC-SHA256 of the raw body).

    Args:
        request_body: Raw request body bytes
        hmac_header: X-Shopify-Hmac-SHA256 header value
        secret: Shopify app API secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not secret:
        logger.error("[SHOPIFY_WEBHOOK] SHOPIFY_API_SECRET not configured")
        return False

    if not hmac_header:
        logger.warning("[SHOPIFY_WEBHOOK] Missing HMAC header")
        return False

    computed_hmac = base64.b64encode(
        hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).digest()
    ).decode("utf-8")

    # Constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(computed_hmac, hmac_header)
    if not is_valid:
        logger.warning("[SHOPIFY_WEBHOOK] Invalid HMAC signature")
    return is_valid


def verify_meta_signature(request_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Verify a Meta webhook (`X-Hub-Signature-256: sha256=<hex digest>`)."""
    if not secret:
        logger.error("[META_WEBHOOK] META_APP_SECRET not configured")
        return False

    if not signature_header or not signature_header.startswith("sha256="):
        logger.warning("[META_WEBHOOK] Missing or malformed signature header")
        return False

    expected = hmac.new(secret.encode("utf-8"), request_body, hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(expected, signature_header[len("sha256="):])
    if not is_valid:
        logger.warning("[META_WEBHOOK] Invalid signature")
    return is_valid
