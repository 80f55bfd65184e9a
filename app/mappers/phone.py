import phonenumbers

from app.exceptions.custom import InvalidPhoneNumberError


def normalize_phone(raw: str | None, default_region: str = "US") -> str:
    """Validate a phone number and return it in E.164 ("+16503035820")."""
    if not raw or not raw.strip():
        raise InvalidPhoneNumberError("Phone number is required")

    try:
        parsed = phonenumbers.parse(raw.strip(), default_region)
    except phonenumbers.NumberParseException as exc:
        raise InvalidPhoneNumberError(f"Could not parse phone number '{raw}'") from exc

    if not phonenumbers.is_valid_number(parsed):
        region = phonenumbers.region_code_for_number(parsed) or default_region
        raise InvalidPhoneNumberError(f"Invalid phone number for {region}: '{raw}'")

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
