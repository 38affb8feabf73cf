"""Attribution resolver: which link produced this purchase.

WHAT:
    Parses the order's landing/referring URLs for the `ref=link_<id>` marker
    and UTM fields, infers the channel, and appends an `attribution` row.

WHY:
    Checkout links sent in DMs carry `ref=link_<link_id>`. Shopify hands the
    landing URL back on the order webhook, which closes the loop from reply
    to revenue.

RULES:
    - Malformed input degrades to "no attribution", it never raises.
    - Landing site first; referring site only if the landing site had no link id.
    - Recording is best-effort: failures are logged and reported, and never
      change the webhook acknowledgment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmtobuy.models import Attribution, ChannelEnum
from dmtobuy.telemetry import capture_exception

logger = logging.getLogger(__name__)

LINK_REF_PREFIX = "link_"
SOCIAL_PROVIDER_SOURCE = "instagram"


@dataclass
class AttributionParams:
    link_id: Optional[str]
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


@dataclass
class OrderAttribution:
    order_id: Optional[str]
    amount: Optional[Decimal]
    currency: str
    link_id: Optional[str] = None
    channel: Optional[str] = None
    source_url: Optional[str] = None


def _first(params: dict[str, list[str]], key: str) -> Optional[str]:
    values = params.get(key)
    if not values:
        return None
    return values[0] or None


def parse_attribution_url(url: Any) -> Optional[AttributionParams]:
    """Extract link id and UTM fields from a landing/referring URL.

    Accepts absolute URLs and site-relative paths ("/cart?ref=link_x", as
    Shopify reports landing_site). Anything else returns None.

    Examples:
        >>> parse_attribution_url("https://shop.com/cart?ref=link_abc123&utm_medium=ig_dm").link_id
        'abc123'
        >>> parse_attribution_url("https://shop.com/").link_id is None
        True
        >>> parse_attribution_url("not a url") is None
        True
    """
    if not isinstance(url, str) or not url.strip():
        return None

    try:
        parsed = urlparse(url.strip())
        if not (parsed.scheme and parsed.netloc) and not parsed.path.startswith("/"):
            return None
        if parsed.scheme and parsed.scheme not in ("http", "https"):
            return None
        params = parse_qs(parsed.query)
    except ValueError as e:
        logger.warning(f"[ATTRIBUTION] Failed to parse URL {url!r}: {e}")
        return None

    link_id = None
    ref = _first(params, "ref")
    if ref and ref.startswith(LINK_REF_PREFIX) and len(ref) > len(LINK_REF_PREFIX):
        link_id = ref[len(LINK_REF_PREFIX):]

    return AttributionParams(
        link_id=link_id,
        utm_source=_first(params, "utm_source"),
        utm_medium=_first(params, "utm_medium"),
        utm_campaign=_first(params, "utm_campaign"),
    )


def infer_channel(utm_medium: Optional[str], utm_source: Optional[str]) -> Optional[str]:
    """Best-effort channel from UTM fields: "dm", "comment" or None.

    - medium containing "dm" -> dm, containing "comment" -> comment
    - no medium and source == instagram -> dm
    - anything else, including a medium matching both, -> None
    """
    medium = (utm_medium or "").strip().lower()
    source = (utm_source or "").strip().lower()

    if medium:
        is_dm = "dm" in medium
        is_comment = "comment" in medium
        if is_dm and not is_comment:
            return ChannelEnum.dm.value
        if is_comment and not is_dm:
            return ChannelEnum.comment.value
        return None

    if source == SOCIAL_PROVIDER_SOURCE:
        return ChannelEnum.dm.value

    return None


def _parse_amount(payload: dict) -> Optional[Decimal]:
    raw = payload.get("total_price") or payload.get("current_total_price")
    if raw is None:
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        logger.warning(f"[ATTRIBUTION] Unparseable order total: {raw!r}")
        return None


def resolve_order_attribution(payload: dict) -> OrderAttribution:
    """Normalize an order webhook payload into an attribution candidate."""
    order_id = payload.get("id") or payload.get("order_number")
    result = OrderAttribution(
        order_id=str(order_id) if order_id is not None else None,
        amount=_parse_amount(payload),
        currency=payload.get("currency") or payload.get("presentment_currency_code") or "USD",
    )

    for field in ("landing_site", "referring_site"):
        url = payload.get(field)
        if not url:
            continue
        params = parse_attribution_url(url)
        if params and params.link_id:
            result.link_id = params.link_id
            result.channel = infer_channel(params.utm_medium, params.utm_source)
            result.source_url = url
            break

    return result


def record_attribution(
    db: Session,
    shop_id: UUID,
    order_id: str,
    link_id: Optional[str],
    channel: Optional[str],
    amount: Optional[Decimal],
    currency: Optional[str] = "USD",
) -> Optional[Attribution]:
    """Append an attribution row. Returns None (after logging) on failure."""
    row = Attribution(
        shop_id=shop_id,
        order_id=order_id,
        link_id=link_id,
        channel=channel,
        amount=amount,
        currency=currency or "USD",
    )
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"[ATTRIBUTION] Failed to record attribution: {e}",
            extra={"shop_id": str(shop_id), "order_id": order_id, "link_id": link_id},
        )
        capture_exception(e, extra={
            "operation": "record_attribution",
            "shop_id": str(shop_id),
            "order_id": order_id,
            "link_id": link_id,
        })
        return None

    logger.info(
        "[ATTRIBUTION] Recorded",
        extra={"shop_id": str(shop_id), "order_id": order_id, "link_id": link_id, "channel": channel},
    )
    return row


def record_attribution_task(session_factory: Callable[[], Session], shop_id: UUID, attribution: OrderAttribution) -> None:
    """Background-task entry point: own session, errors only logged."""
    db = session_factory()
    try:
        record_attribution(
            db,
            shop_id=shop_id,
            order_id=attribution.order_id,
            link_id=attribution.link_id,
            channel=attribution.channel,
            amount=attribution.amount,
            currency=attribution.currency,
        )
    except Exception as e:
        logger.exception(f"[ATTRIBUTION] Background recording failed: {e}")
        capture_exception(e, extra={"operation": "record_attribution_task", "shop_id": str(shop_id)})
    finally:
        db.close()
