"""Click-tracking redirect: GET /c/{link_id}.

Looks up the link, records a click for browser-like user agents only (link
preview crawlers never send one), then 302s to the stored destination.
Click recording never blocks the redirect.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmtobuy.database import get_db
from dmtobuy.services.message_service import get_link_destination, log_click

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Links"])

# Browsers and in-app browsers (Instagram, Chrome, Safari, Firefox, Edge, Opera)
BROWSER_UA_PATTERNS = ("mozilla/", "opera", "opr/")


def looks_like_browser(user_agent: Optional[str]) -> bool:
    ua = (user_agent or "").strip().lower()
    if not ua:
        return False
    return any(pattern in ua for pattern in BROWSER_UA_PATTERNS)


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, or None."""
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return None
    return forwarded.split(",")[0].strip() or None


@router.get("/c/{link_id}")
def redirect_link(link_id: str, request: Request, db: Session = Depends(get_db)):
    url = get_link_destination(db, link_id)
    if not url:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    user_agent = request.headers.get("user-agent")
    if looks_like_browser(user_agent):
        try:
            log_click(db, link_id, user_agent=user_agent, ip=client_ip(request))
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"[LINKS] Click logging failed for {link_id}: {e}")

    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)
