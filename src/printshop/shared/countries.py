"""Country code normalisation."""

import re

from protean.exceptions import ValidationError

_COUNTRY_CODE = re.compile(r"^[A-Z]{2}$")


def normalize_country_code(code, field_name="country_code"):
    """Upper-case a two-letter ISO country code; blank values become None."""
    if code is None or not str(code).strip():
        return None
    normalized = str(code).strip().upper()
    if not _COUNTRY_CODE.match(normalized):
        raise ValidationError({field_name: [f"Country code must be two letters, got '{code}'"]})
    return normalized
