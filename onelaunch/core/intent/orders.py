"""
Executor Swap Orders - The signed cross-asset leg of an intent bid.

When a bidder pays with a token other than the settlement asset, they
also sign a limit order for the external executor:

    Order(uint256 salt,address maker,address receiver,address makerAsset,
          address takerAsset,uint256 makingAmount,uint256 takingAmount,
          uint256 makerTraits)

The order must sell the intent's bid token for the settlement asset and
deliver the proceeds to the settlement receiver (the custody contract
that later distributes auction tokens), never to the bidder.

Order payloads arrive as JSON from wallets, so they are parsed with
pydantic models.
"""

import secrets
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from onelaunch.crypto import hex_to_bytes, recover_address, sign, to_checksum_address
from onelaunch.crypto.eip712 import TypedDomain, typed_data_digest
from onelaunch.core.config import LaunchConfig, config as default_config
from onelaunch.core.errors import Expired, InvalidAddress, InvalidInput
from onelaunch.core.intent.intent import BidIntent, intent_id, validate_bid_intent
from onelaunch.utils.logger import get_logger

logger = get_logger("orders")


ORDER_TYPE = "Order"

ORDER_TYPES = {
    ORDER_TYPE: [
        ("salt", "uint256"),
        ("maker", "address"),
        ("receiver", "address"),
        ("makerAsset", "address"),
        ("takerAsset", "address"),
        ("makingAmount", "uint256"),
        ("takingAmount", "uint256"),
        ("makerTraits", "uint256"),
    ],
}


def generate_salt() -> int:
    """Random 256-bit order salt. Must be unique system-wide."""
    return secrets.randbits(256)


# =============================================================================
# Models
# =============================================================================


class SwapOrder(BaseModel):
    """Executor limit order, canonicalized (checksummed accounts, int amounts)."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    salt: int = Field(ge=0)
    maker: str
    receiver: str
    maker_asset: str = Field(alias="makerAsset")
    taker_asset: str = Field(alias="takerAsset")
    making_amount: int = Field(alias="makingAmount", gt=0)
    taking_amount: int = Field(alias="takingAmount", gt=0)
    maker_traits: int = Field(default=0, alias="makerTraits", ge=0)

    @field_validator("maker", "receiver", "maker_asset", "taker_asset", mode="before")
    @classmethod
    def _checksum(cls, value: Any) -> str:
        try:
            return to_checksum_address(value)
        except InvalidAddress as e:
            raise ValueError(str(e))

    @field_validator("salt", "making_amount", "taking_amount", "maker_traits", mode="before")
    @classmethod
    def _parse_uint(cls, value: Any) -> Any:
        # Wallets send uint256 values as decimal or 0x-hex strings
        if isinstance(value, str):
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        return value

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class SignedSwapOrder(BaseModel):
    """An order together with the maker's 65-byte signature (hex)."""

    model_config = ConfigDict(frozen=True)

    order: SwapOrder
    signature: str

    @field_validator("signature")
    @classmethod
    def _signature_shape(cls, value: str) -> str:
        raw = hex_to_bytes(value)
        if len(raw) != 65:
            raise ValueError(f"signature must be 65 bytes, got {len(raw)}")
        return "0x" + raw.hex()

    @property
    def signature_bytes(self) -> bytes:
        return hex_to_bytes(self.signature)


def parse_signed_order(payload: Dict[str, Any]) -> SignedSwapOrder:
    """
    Parse an untrusted order payload.

    Raises:
        InvalidInput: any schema or field error
    """
    try:
        return SignedSwapOrder.model_validate(payload)
    except ValidationError as e:
        raise InvalidInput(f"invalid swap order: {e.errors()[0]['msg']}")


# =============================================================================
# Hashing and Signing
# =============================================================================


def order_hash(order: SwapOrder, domain: Optional[TypedDomain] = None) -> bytes:
    """EIP-712 digest of the order under the executor's domain."""
    domain = domain or default_config.executor_domain
    return typed_data_digest(domain, ORDER_TYPE, order.to_message(), ORDER_TYPES)


def sign_order(order: SwapOrder, private_key: bytes, domain: Optional[TypedDomain] = None) -> SignedSwapOrder:
    signature = sign(order_hash(order, domain), private_key)
    return SignedSwapOrder(order=order, signature="0x" + signature.hex())


def create_swap_order(
    intent: BidIntent,
    taking_amount: int,
    cfg: Optional[LaunchConfig] = None,
    salt: Optional[int] = None,
) -> SwapOrder:
    """
    Build the executor order that funds an intent bid.

    Sells the whole bid amount for at least taking_amount of the
    settlement asset, paid to the settlement receiver.
    """
    cfg = cfg or default_config
    return SwapOrder(
        salt=generate_salt() if salt is None else salt,
        maker=intent.bidder,
        receiver=cfg.settlement_receiver,
        maker_asset=intent.bid_token,
        taker_asset=cfg.usdc_address,
        making_amount=intent.bid_amount,
        taking_amount=taking_amount,
    )


# =============================================================================
# Acceptance
# =============================================================================


def check_intent_order(
    intent: BidIntent,
    signed: SignedSwapOrder,
    cfg: Optional[LaunchConfig] = None,
    now: Optional[int] = None,
) -> str:
    """
    Validate a submitted intent bid before it is persisted.

    Checks the intent itself, that the order routes the bid token into the
    settlement asset held by the settlement receiver, and that the maker
    signed it.

    Returns:
        Bid id (keccak256 of the order signature)

    Raises:
        Expired: the intent deadline has passed
        InvalidInput: on the first failed check
    """
    cfg = cfg or default_config
    order = signed.order

    if intent.is_expired(now):
        raise Expired(f"intent deadline {intent.deadline} has passed")

    if not validate_bid_intent(intent, now):
        raise InvalidInput("bid intent is malformed or expired")

    if order.receiver != to_checksum_address(cfg.settlement_receiver):
        raise InvalidInput("order receiver must be the settlement receiver")

    if order.taker_asset != to_checksum_address(cfg.usdc_address):
        raise InvalidInput("order must convert to the settlement asset")

    if order.maker_asset != intent.bid_token:
        raise InvalidInput("order maker asset must match bid token")

    if order.maker != intent.bidder:
        raise InvalidInput("order maker must be the bidder")

    if order.making_amount != intent.bid_amount:
        raise InvalidInput("order making amount must equal the bid amount")

    signer = recover_address(order_hash(order, cfg.executor_domain), signed.signature_bytes)
    if signer != intent.bidder:
        logger.warning(f"Order signature mismatch: expected {intent.bidder}, recovered {signer}")
        raise InvalidInput("invalid order signature")

    return intent_id(signed.signature_bytes)
