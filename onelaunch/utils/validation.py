"""
Input Validation - Sanitization of external inputs.

Provides validation for everything that arrives from bidders:
- Account addresses
- Integer base-unit amounts
- Decimal prices with fixed fractional precision
- Identifiers and free-form strings
"""

from decimal import ROUND_DOWN, Decimal, InvalidOperation, localcontext
from typing import Any, Tuple

from onelaunch.crypto import is_valid_address, to_checksum_address, ZERO_ADDRESS
from onelaunch.core.errors import InvalidInput

# =============================================================================
# Constants
# =============================================================================

# uint256 bound for anything that ends up in a signed message
MAX_UINT256 = 2**256 - 1

# Prices are carried with 6 fractional digits (settlement asset precision)
PRICE_DECIMALS = 6
PRICE_SCALE = 10**PRICE_DECIMALS

MAX_STRING_LENGTH = 1024
MAX_TOKEN_DECIMALS = 36


# =============================================================================
# Validation Functions
# =============================================================================


def validate_address(address: Any, name: str = "address", allow_zero: bool = False) -> Tuple[bool, str]:
    """
    Validate an account address.

    Args:
        address: Value to validate
        name: Field name for error messages
        allow_zero: Whether the null account is acceptable

    Returns:
        (is_valid, error_message)
    """
    if not is_valid_address(address):
        return False, f"{name} is not a valid address: {address!r}"

    if not allow_zero and to_checksum_address(address) == ZERO_ADDRESS:
        return False, f"{name} must not be the zero address"

    return True, ""


def validate_integer(
    value: Any,
    name: str,
    min_val: int = 0,
    max_val: int = MAX_UINT256,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        (is_valid, error_message)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_positive_amount(amount: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a strictly positive base-unit amount."""
    return validate_integer(amount, name, 1, MAX_UINT256)


def validate_string(value: Any, name: str, max_length: int = MAX_STRING_LENGTH) -> Tuple[bool, str]:
    """Validate a non-empty bounded string."""
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"
    if not value:
        return False, f"{name} must not be empty"
    if len(value) > max_length:
        return False, f"{name} exceeds max length {max_length}"
    return True, ""


def validate_decimals(decimals: Any) -> Tuple[bool, str]:
    """Validate a token's declared decimal precision."""
    return validate_integer(decimals, "decimals", 0, MAX_TOKEN_DECIMALS)


# =============================================================================
# Conversions
# =============================================================================


def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert user input to Decimal without passing through binary floats.

    Floats are converted through their shortest repr, so 0.1 becomes
    Decimal("0.1") rather than 0.1000000000000000055...

    Raises:
        InvalidInput: not a finite number
    """
    if isinstance(value, bool):
        raise InvalidInput(f"{name} must be numeric, got bool")
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(repr(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"{name} is not a number: {value!r}")

    if not result.is_finite():
        raise InvalidInput(f"{name} must be finite: {value!r}")
    return result


def to_base_units(value: Any, decimals: int, name: str = "amount") -> int:
    """
    Convert a decimal amount into integer base units.

    Digits beyond the token's precision are truncated.

    Raises:
        InvalidInput: bad precision or non-numeric value
    """
    valid, err = validate_decimals(decimals)
    if not valid:
        raise InvalidInput(err)
    amount = to_decimal(value, name)
    with localcontext() as ctx:
        ctx.prec = 96
        scaled = amount.scaleb(decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def price_to_micros(price: Any, name: str = "price") -> int:
    """Encode a price as an integer with 6 fixed fractional digits (truncated)."""
    return to_base_units(price, PRICE_DECIMALS, name)


def micros_to_price(micros: int) -> Decimal:
    """Inverse of price_to_micros."""
    return Decimal(micros).scaleb(-PRICE_DECIMALS)


def parse_uint(value: Any, name: str) -> int:
    """
    Parse an integer amount given as int or base-10 string.

    Raises:
        InvalidInput: not an integer or outside uint256
    """
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise InvalidInput(f"{name} must be an integer string, got {value!r}")
        value = int(text)
    valid, err = validate_integer(value, name)
    if not valid:
        raise InvalidInput(err)
    return value
