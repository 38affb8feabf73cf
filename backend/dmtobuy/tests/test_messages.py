"""Message logging idempotency and click persistence."""

from dmtobuy.models import Message
from dmtobuy.services.message_service import (
    get_link_destination,
    log_click,
    log_message,
    update_message_ai,
)
from dmtobuy.services.claim_ledger import ClaimLedger


def test_duplicate_delivery_returns_existing_row(test_db_session, make_shop):
    shop = make_shop("GROWTH")

    first = log_message(test_db_session, shop.id, "dm", "mid.1", from_user_id="u1", text="how much?")
    second = log_message(test_db_session, shop.id, "dm", "mid.1", from_user_id="u1", text="how much?")

    assert first.id == second.id
    assert test_db_session.query(Message).count() == 1


def test_same_external_id_in_two_shops_is_two_messages(test_db_session, make_shop):
    a = make_shop("PRO")
    b = make_shop("PRO")

    log_message(test_db_session, a.id, "dm", "mid.shared")
    log_message(test_db_session, b.id, "dm", "mid.shared")

    assert test_db_session.query(Message).count() == 2


def test_ai_fields_are_stored(test_db_session, make_shop):
    shop = make_shop("PRO")
    message = log_message(test_db_session, shop.id, "comment", "c.1", text="love it, price?")

    update_message_ai(test_db_session, message.id, "price_request", 0.85, "positive")

    test_db_session.expire_all()
    stored = test_db_session.get(Message, message.id)
    assert (stored.ai_intent, stored.ai_confidence, stored.sentiment) == ("price_request", 0.85, "positive")


def test_link_destination_and_clicks(test_db_session, make_shop):
    shop = make_shop("PRO")
    ClaimLedger(test_db_session).claim(shop.id, "mid.9", "reply", url="https://s.example/cart/1:1")

    assert get_link_destination(test_db_session, "dm_reply_mid.9") == "https://s.example/cart/1:1"
    assert get_link_destination(test_db_session, "missing") is None

    click = log_click(test_db_session, "dm_reply_mid.9", user_agent="Mozilla/5.0", ip="203.0.113.7")
    assert click.id is not None
