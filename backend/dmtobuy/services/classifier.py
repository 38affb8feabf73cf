"""Default intent classifier.

AI classification is provided by an external service in production; any
object with `classify(text, channel) -> Classification` can be plugged in via
`dmtobuy.routers.meta_webhooks.get_classifier`. This keyword fallback covers
the common purchase phrasings so the pipeline works without one.
"""

import re

from dmtobuy.services.automation_service import Classification

_PRICE = re.compile(r"(how much|price|cost|\$)")
_VARIANT = re.compile(r"\b(size|sizes|color|colors|colour|colours|variant|variants|options)\b")
_PURCHASE = re.compile(r"(buy|purchase|checkout|add to cart|take it|i'll take|ill take|send the link|link\??$|want (it|this|one))")
_QUESTION = re.compile(r"(does it|is it|what is|how does|\?)")
_SPAM = re.compile(r"(follow back|check my (page|profile)|dm me for|promo code|crypto|giveaway)")
_STORE = re.compile(r"\b(return policy|returns|refunds?|exchanges?|shipping|deliver internationally|store hours|opening hours|polic(y|ies))\b")

_POSITIVE = re.compile(r"(love|amazing|great|awesome|beautiful|perfect|😍|❤️|🔥)")
_NEGATIVE = re.compile(r"(hate|terrible|awful|worst|scam|broken|refund)")


class KeywordClassifier:
    """Regex-based intent + sentiment. Confidence is fixed per rule."""

    def classify(self, text: str, channel: str) -> Classification:
        t = (text or "").strip().lower()
        sentiment = self._sentiment(t)

        if not t:
            return Classification(intent=None, confidence=0.0, sentiment=sentiment)
        if _SPAM.search(t):
            return Classification(intent="spam", confidence=0.9, sentiment=sentiment)
        if _STORE.search(t):
            return Classification(intent="store_question", confidence=0.8, sentiment=sentiment)
        if _PRICE.search(t):
            return Classification(intent="price_request", confidence=0.85, sentiment=sentiment)
        if _VARIANT.search(t):
            return Classification(intent="variant_inquiry", confidence=0.8, sentiment=sentiment)
        if _PURCHASE.search(t):
            return Classification(intent="purchase", confidence=0.8, sentiment=sentiment)
        if _QUESTION.search(t):
            return Classification(intent="product_question", confidence=0.6, sentiment=sentiment)
        return Classification(intent="other", confidence=0.5, sentiment=sentiment)

    @staticmethod
    def _sentiment(t: str) -> str:
        if _NEGATIVE.search(t):
            return "negative"
        if _POSITIVE.search(t):
            return "positive"
        return "neutral"
