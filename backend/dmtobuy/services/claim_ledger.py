"""Claim ledger: at most one automated reply per inbound event.

WHAT:
    Decides, exactly once, whether the current process may send the automated
    reply for an inbound DM or comment, and records that decision in
    `links_sent` before anything is sent.

WHY:
    Meta retries webhooks and sometimes delivers the same event twice in
    parallel. Both deliveries can pass any "already replied?" read, so the
    decision is the single-row INSERT itself: the unique constraint on
    `links_sent.link_id` lets exactly one insert through.

FLOW:
    derive_claim_key(kind, external_id)  ->  "dm_reply_<id>" / "dm_reply_comment_<id>"
    INSERT links_sent(link_id=...)       ->  ok:             ClaimResult.claimed
                                             IntegrityError: ClaimResult.already_claimed
                                             other error:    ClaimError (caller must not send)

NOTE:
    A claim is kept even if the later send fails. There is no retry of the
    reply itself; the outbound queue retries delivery of the queued text.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dmtobuy.models import LinkSent

logger = logging.getLogger(__name__)


class ClaimKind(str, enum.Enum):
    message = "message"
    comment = "comment"


class ClaimResult(str, enum.Enum):
    claimed = "claimed"
    already_claimed = "already_claimed"


class ClaimError(Exception):
    """The store failed for a reason other than the uniqueness conflict.

    The outcome of the claim is unknown; callers must treat it as not claimed.
    """


def derive_claim_key(kind: ClaimKind | str, external_id: str) -> str:
    """Deterministic link id for an inbound event.

    The same provider event always maps to the same key, which is what makes
    duplicate deliveries collide on insert.
    """
    if external_id is None or str(external_id) == "":
        raise ValueError("external_id is required to derive a claim key")
    kind = ClaimKind(kind)
    if kind is ClaimKind.comment:
        return f"dm_reply_comment_{external_id}"
    return f"dm_reply_{external_id}"


class ClaimLedger:
    """Claim operations bound to one session.

    Args:
        db: SQLAlchemy session (one per webhook delivery / job run)
        key_fn: Claim key derivation, injectable for tests
    """

    def __init__(self, db: Session, key_fn: Callable[[ClaimKind | str, str], str] = derive_claim_key):
        self.db = db
        self.key_fn = key_fn

    # -------------------------------------------------------------------------
    # Advisory pre-checks (cheap, race-prone, never the decision)
    # -------------------------------------------------------------------------

    def has_replied_to_message(self, message_id: int) -> bool:
        return (
            self.db.query(LinkSent.id)
            .filter(LinkSent.message_id == message_id)
            .first()
            is not None
        )

    def has_replied_to_external(
        self,
        shop_id: UUID,
        external_id: str,
        kind: ClaimKind | str = ClaimKind.message,
    ) -> bool:
        """Check by derived key; survives duplicate Message rows for one event."""
        link_id = self.key_fn(kind, external_id)
        return (
            self.db.query(LinkSent.id)
            .filter(LinkSent.shop_id == shop_id, LinkSent.link_id == link_id)
            .first()
            is not None
        )

    # -------------------------------------------------------------------------
    # The claim
    # -------------------------------------------------------------------------

    def claim(
        self,
        shop_id: UUID,
        external_id: str,
        reply_text: Optional[str],
        message_id: Optional[int] = None,
        *,
        kind: ClaimKind | str = ClaimKind.message,
        url: Optional[str] = None,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        sent_at: Optional[datetime] = None,
    ) -> ClaimResult:
        """Attempt the claim insert.

        Returns:
            ClaimResult.claimed if this call inserted the row,
            ClaimResult.already_claimed if another caller already holds it.

        Raises:
            ClaimError: any other store failure (fail closed)
        """
        link_id = self.key_fn(kind, external_id)
        row = LinkSent(
            shop_id=shop_id,
            message_id=message_id,
            link_id=link_id,
            url=url,
            reply_text=reply_text,
            product_id=product_id,
            variant_id=variant_id,
        )
        if sent_at is not None:
            row.sent_at = sent_at
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "[CLAIM] Already claimed",
                extra={"shop_id": str(shop_id), "link_id": link_id, "message_id": message_id},
            )
            return ClaimResult.already_claimed
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"[CLAIM] Claim failed for {link_id}: {e}",
                extra={"shop_id": str(shop_id), "message_id": message_id},
            )
            raise ClaimError(f"Claim insert failed for {link_id}") from e

        logger.info(
            "[CLAIM] Claimed",
            extra={"shop_id": str(shop_id), "link_id": link_id, "message_id": message_id},
        )
        return ClaimResult.claimed
