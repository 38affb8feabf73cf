"""Instagram Graph API client for outbound DMs.

WHAT:
    Sends a text DM from a shop's connected Instagram business account.
    Credentials come from `meta_auth` (Fernet-encrypted token).

WHY:
    Every send (immediate or from the queue worker) goes through one place,
    so provider errors have one shape: `ProviderError`.

REFERENCES:
    - https://developers.facebook.com/docs/instagram-platform/instagram-api-with-instagram-login/messaging-api
"""

import logging
from typing import Any, Dict, Optional, Protocol
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from dmtobuy.deps import get_settings
from dmtobuy.models import MetaAuth
from dmtobuy.security import decrypt_secret

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The messaging provider rejected or failed the send."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class NotConnectedError(ProviderError):
    """The shop has no usable Instagram credentials."""


class DmSender(Protocol):
    """Anything that can deliver a DM for a shop (real client or test fake)."""

    def send_dm(self, db: Session, shop_id: UUID, recipient_id: str, text: str) -> Optional[str]:
        ...


class InstagramClient:
    """Synchronous Graph API client.

    Usage:
        client = InstagramClient()
        message_id = client.send_dm(db, shop.id, "17841400000000000", "Hi!")

    Args:
        http_client: Optional pre-built httpx.Client (tests pass a MockTransport)
        api_base / api_version: Override settings
    """

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        api_base: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: float = 15.0,
    ):
        settings = get_settings()
        self.api_base = (api_base or settings.META_GRAPH_API_BASE).rstrip("/")
        self.api_version = api_version or settings.META_GRAPH_API_VERSION
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def _credentials(self, db: Session, shop_id: UUID) -> tuple[str, str]:
        auth = db.query(MetaAuth).filter(MetaAuth.shop_id == shop_id).first()
        if auth is None or not auth.access_token_enc or not auth.ig_business_id:
            raise NotConnectedError(f"Shop {shop_id} has no connected Instagram account")
        try:
            token = decrypt_secret(auth.access_token_enc, context=f"shop:{shop_id}")
        except ValueError as e:
            raise NotConnectedError(f"Stored Instagram token for shop {shop_id} is unreadable") from e
        return auth.ig_business_id, token

    def send_dm(self, db: Session, shop_id: UUID, recipient_id: str, text: str) -> Optional[str]:
        """Send one DM. Returns the provider message id.

        Raises:
            NotConnectedError: No credentials for the shop
            ProviderError: Network failure or non-2xx response
        """
        ig_business_id, token = self._credentials(db, shop_id)
        url = f"{self.api_base}/{self.api_version}/{ig_business_id}/messages"
        payload: Dict[str, Any] = {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
        }

        try:
            response = self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.RequestError as e:
            logger.error(f"[INSTAGRAM] Network error sending DM for shop {shop_id}: {e}")
            raise ProviderError(f"Network error sending DM: {e}") from e

        if response.status_code >= 400:
            error_code = None
            error_message = response.text
            try:
                error = response.json().get("error", {})
                error_code = error.get("code")
                error_message = error.get("message", error_message)
            except ValueError:
                pass
            logger.warning(
                f"[INSTAGRAM] Send failed ({response.status_code}): {error_message}",
                extra={"shop_id": str(shop_id), "recipient_id": recipient_id},
            )
            raise ProviderError(
                f"Instagram API error: {error_message}",
                status_code=response.status_code,
                error_code=error_code,
            )

        message_id = response.json().get("message_id")
        logger.info(
            "[INSTAGRAM] DM sent",
            extra={"shop_id": str(shop_id), "recipient_id": recipient_id, "message_id": message_id},
        )
        return message_id


def get_dm_sender() -> DmSender:
    """FastAPI dependency / worker factory for the production sender."""
    return InstagramClient()
