"""
TIMBRADO-NOMINA — CFDI Utilities
Identifier validation and fixed-point formatting helpers.
"""

import re
from decimal import Decimal, ROUND_HALF_UP

# Personas morales use 3 letters, personas físicas 4. Ñ and & are legal.
_RFC_RE = re.compile(r"^[A-ZÑ&]{3,4}\d{6}[A-Z0-9]{3}$")
_CURP_RE = re.compile(r"^[A-Z]{4}\d{6}[HMX][A-Z]{5}[A-Z0-9]\d$")
_POSTAL_CODE_RE = re.compile(r"^\d{5}$")

CENTS = Decimal("0.01")


def validate_rfc(rfc: str) -> bool:
    """
    Basic RFC format validation.
    Expected: 3-4 letters + YYMMDD + 3 char homoclave (12 or 13 chars).
    """
    return bool(_RFC_RE.match(rfc or ""))


def validate_curp(curp: str) -> bool:
    """
    Basic CURP format validation (18 chars).
    Expected: 4 letters + YYMMDD + sex + 5 letters + differentiator + check digit.
    """
    return bool(_CURP_RE.match(curp or ""))


def validate_postal_code(code: str) -> bool:
    return bool(_POSTAL_CODE_RE.match(code or ""))


def to_cents(value: Decimal) -> Decimal:
    """Round to the centavo with the SAT rounding rule (half up)."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def format_decimal(value: Decimal, places: int) -> str:
    """
    Render a Decimal with exactly `places` fractional digits.
    Never uses scientific notation.
    """
    exponent = Decimal(1).scaleb(-places)
    return f"{value.quantize(exponent, rounding=ROUND_HALF_UP):f}"


def mask_rfc(rfc: str) -> str:
    """Shorten an RFC for log lines."""
    return f"{rfc[:4]}***" if rfc else "none"
