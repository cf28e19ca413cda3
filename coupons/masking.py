from typing import Optional


def mask_phone(phone: Optional[str]) -> str:
    """+905551234567 -> *********4567"""
    if not phone:
        return ""
    if len(phone) <= 4:
        return "*" * (len(phone) - 1) + phone[-1:]
    return "*" * (len(phone) - 4) + phone[-4:]


def mask_token(code: Optional[str]) -> str:
    """ABC123DEF456 -> ABC1****F456, ABCD1234 -> AB****34"""
    if not code:
        return ""
    if len(code) <= 4:
        return code
    if len(code) <= 8:
        return code[:2] + "*" * (len(code) - 4) + code[-2:]
    return code[:4] + "*" * (len(code) - 8) + code[-4:]
