"""Tone templates for automated replies and follow-ups.

Brand voice (tone + optional custom instruction) is configured per shop and
applies to link replies, clarifying questions, store answers and follow-ups.
Unknown or missing tones use "friendly".
"""

from typing import Optional

from dmtobuy.models import BrandVoice, ToneEnum


FOLLOWUP_TEMPLATES = {
    ToneEnum.friendly.value: "Hi! Just checking in - did you have any questions about the product? I'm here to help! 😊",
    ToneEnum.expert.value: "Hello, I wanted to follow up on your inquiry. Please let me know if you have any questions or need additional information.",
    ToneEnum.casual.value: "Hey! 👋 Just wanted to check in - any questions? Happy to help!",
}


def _tone(brand_voice: Optional[BrandVoice]) -> str:
    tone = getattr(brand_voice, "tone", None) or ToneEnum.friendly.value
    return tone if tone in FOLLOWUP_TEMPLATES else ToneEnum.friendly.value


def _with_instruction(brand_voice: Optional[BrandVoice], message: str) -> str:
    instruction = getattr(brand_voice, "custom_instruction", None)
    if instruction:
        return f"{instruction}\n\n{message}"
    return message


def generate_followup_message(brand_voice: Optional[BrandVoice]) -> str:
    """Follow-up DM text for the shop's tone, custom instruction first."""
    return _with_instruction(brand_voice, FOLLOWUP_TEMPLATES[_tone(brand_voice)])


def generate_reply_message(
    brand_voice: Optional[BrandVoice],
    link_url: Optional[str] = None,
    product_name: Optional[str] = None,
) -> str:
    """First automated reply. Without a link the reply just invites questions."""
    tone = _tone(brand_voice)

    if tone == ToneEnum.expert.value:
        opener = "Hello! Thank you for your inquiry. "
        product = f"Regarding {product_name}, " if product_name else ""
        body = f"{product}you can view the product here: {link_url}" if link_url else "We will be glad to help with your order."
        closing = "I'm here to answer any questions you may have."
    elif tone == ToneEnum.casual.value:
        opener = "Hey! 👋 "
        product = f"Love that you're interested in {product_name}! " if product_name else ""
        body = f"{product}Here's the link: {link_url}" if link_url else f"{product}Tell me what you're looking for!"
        closing = "Hit me up if you need anything!"
    else:
        opener = "Hi! Thanks for your interest! 🛍️\n\n"
        product = f"I'd love to help you with {product_name}! " if product_name else ""
        body = f"{product}Check it out here: {link_url}" if link_url else f"{product}What can I help you find?"
        closing = "Let me know if you have any questions!"

    return _with_instruction(brand_voice, f"{opener}{body}\n\n{closing}")


CLARIFYING_TEMPLATES = {
    ToneEnum.friendly.value: "Hi! Thanks for reaching out! 😊 Which product are you interested in?",
    ToneEnum.expert.value: "Hello! Could you please specify which product you're referring to?",
    ToneEnum.casual.value: "Hey! 👋 Which product are you talking about?",
}

STORE_ANSWER_TEMPLATES = {
    ToneEnum.friendly.value: "Hi! Thanks for your question! 😊 You'll find our shipping, returns and store policies here: {store_url}\n\nLet me know if there's anything else I can help with!",
    ToneEnum.expert.value: "Hello! Thank you for your question. Our shipping and return policies are available at {store_url}\n\nPlease let me know if you need further details.",
    ToneEnum.casual.value: "Hey! 👋 All the shipping and returns info is over here: {store_url}\n\nShout if you need anything else!",
}


def generate_clarifying_question(brand_voice: Optional[BrandVoice]) -> str:
    """Asked instead of a link when a DM names no product we can identify."""
    return _with_instruction(brand_voice, CLARIFYING_TEMPLATES[_tone(brand_voice)])


def generate_store_answer(brand_voice: Optional[BrandVoice], store_url: str) -> str:
    """General store question (shipping, returns, policies). No tracked link."""
    return _with_instruction(brand_voice, STORE_ANSWER_TEMPLATES[_tone(brand_voice)].format(store_url=store_url))
