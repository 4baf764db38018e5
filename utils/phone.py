import phonenumbers
from phonenumbers.phonenumberutil import NumberParseException


def normalize_phone(raw: str, default_region: str = "KE") -> str | None:
    """
    Brings a phone number to E.164 («+254712345678»).
    Returns None when the number is not valid.
    """
    if not raw:
        return None
    try:
        num = phonenumbers.parse(raw.strip(), default_region)
    except NumberParseException:
        return None

    if not phonenumbers.is_valid_number(num):
        return None

    return phonenumbers.format_number(num, phonenumbers.PhoneNumberFormat.E164)


def to_msisdn(raw: str, default_region: str = "KE") -> str:
    """
    M-Pesa wants the number without the plus sign: 2547XXXXXXXX.
    Falls back to prefix rewriting for numbers phonenumbers refuses to validate.
    """
    normalized = normalize_phone(raw, default_region)
    if normalized:
        return normalized.lstrip("+")

    phone = "".join(ch for ch in raw if ch.isdigit())
    if phone.startswith("254"):
        return phone
    if phone.startswith("0"):
        return "254" + phone[1:]
    return "254" + phone
