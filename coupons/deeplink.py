from typing import Optional
from urllib.parse import quote

from .models import IssuedToken, Token

MESSAGE_PREFIX = "KUPON"


def build_whatsapp_text(code: str) -> str:
    return f"{MESSAGE_PREFIX} {code}"


def build_whatsapp_link(code: str, number: str) -> str:
    digits = "".join(ch for ch in number if ch.isdigit())
    return f"https://wa.me/{digits}?text={quote(build_whatsapp_text(code))}"


def with_deep_link(token: Token, number: Optional[str]) -> IssuedToken:
    if not number:
        return IssuedToken(token=token)
    return IssuedToken(
        token=token,
        wa_text=build_whatsapp_text(token.code),
        wa_url=build_whatsapp_link(token.code, number),
    )
