"""
Token Permits - Gasless spend authorizations for the settlement asset.

A permit (EIP-2612) lets the auction controller pull the bidder's payment
at settlement time without a prior approve transaction. It is signed
under the token contract's own domain, never the intent domain.
"""

import time
from dataclasses import dataclass
from decimal import ROUND_CEILING, localcontext
from typing import Any, Dict, Optional

from onelaunch.crypto import recover_address, sign, to_checksum_address
from onelaunch.crypto.eip712 import TypedDomain, typed_data_digest
from onelaunch.core.config import config as default_config
from onelaunch.core.errors import InvalidInput
from onelaunch.utils.validation import (
    to_decimal,
    validate_decimals,
    validate_integer,
    validate_positive_amount,
)

PERMIT_TYPE = "Permit"

PERMIT_TYPES = {
    PERMIT_TYPE: [
        ("owner", "address"),
        ("spender", "address"),
        ("value", "uint256"),
        ("nonce", "uint256"),
        ("deadline", "uint256"),
    ],
}

# 10% expressed in basis points
DEFAULT_BUFFER_BPS = 1000

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class PermitMessage:
    """A permit in canonical form: checksummed accounts, integer amounts."""
    owner: str
    spender: str
    value: int
    nonce: int
    deadline: int

    def to_message(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "spender": self.spender,
            "value": self.value,
            "nonce": self.nonce,
            "deadline": self.deadline,
        }


def build_permit_message(owner: str, spender: str, value: int, nonce: int, deadline: int) -> PermitMessage:
    """
    Normalize permit fields.

    Raises:
        InvalidAddress: malformed owner or spender
        InvalidInput: negative or non-integer amounts
    """
    for name, amount in (("value", value), ("nonce", nonce), ("deadline", deadline)):
        valid, err = validate_integer(amount, name)
        if not valid:
            raise InvalidInput(err)

    return PermitMessage(
        owner=to_checksum_address(owner),
        spender=to_checksum_address(spender),
        value=value,
        nonce=nonce,
        deadline=deadline,
    )


def permit_digest(permit: PermitMessage, domain: Optional[TypedDomain] = None) -> bytes:
    """EIP-712 digest of the permit under the token's domain."""
    domain = domain or default_config.usdc_domain
    return typed_data_digest(domain, PERMIT_TYPE, permit.to_message(), PERMIT_TYPES)


def sign_permit(permit: PermitMessage, private_key: bytes, domain: Optional[TypedDomain] = None) -> bytes:
    return sign(permit_digest(permit, domain), private_key)


def recover_permit_signer(
    permit: PermitMessage,
    signature: bytes,
    domain: Optional[TypedDomain] = None,
) -> Optional[str]:
    return recover_address(permit_digest(permit, domain), signature)


def calculate_max_authorized_amount(
    price,
    quantity: int,
    decimals: int = 6,
    buffer_bps: int = DEFAULT_BUFFER_BPS,
) -> int:
    """
    Settlement-asset amount a bidder should authorize for a bid.

    price * quantity plus a safety buffer for price drift between bid time
    and execution. The product is exact (Decimal) and converted to integer
    base units once, rounding up, so the authorization is never short.

    Args:
        price: Price per unit (decimal)
        quantity: Units bid for
        decimals: Settlement asset precision
        buffer_bps: Buffer in basis points (1000 = 10%)

    Returns:
        Amount in base units
    """
    valid, err = validate_positive_amount(quantity, "quantity")
    if not valid:
        raise InvalidInput(err)
    valid, err = validate_decimals(decimals)
    if not valid:
        raise InvalidInput(err)
    valid, err = validate_integer(buffer_bps, "buffer_bps")
    if not valid:
        raise InvalidInput(err)

    unit_price = to_decimal(price, "price")
    if unit_price <= 0:
        raise InvalidInput(f"price must be positive, got {price!r}")

    with localcontext() as ctx:
        ctx.prec = 96
        buffered = unit_price * quantity * (BPS_DENOMINATOR + buffer_bps) / BPS_DENOMINATOR
        return int(buffered.scaleb(decimals).to_integral_value(rounding=ROUND_CEILING))


def generate_deadline(now: Optional[int] = None, ttl: Optional[int] = None) -> int:
    """Unix timestamp one TTL (default one week) from now."""
    now = int(time.time()) if now is None else now
    ttl = default_config.intent_ttl_seconds if ttl is None else ttl
    return now + ttl
