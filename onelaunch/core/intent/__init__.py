"""Bid intents, token permits and executor swap orders"""
from onelaunch.core.intent.intent import (
    BidIntent,
    BID_INTENT_TYPES,
    NonceSource,
    build_bid_intent,
    validate_bid_intent,
    intent_digest,
    sign_bid_intent,
    recover_intent_signer,
    verify_intent_signature,
    intent_id,
    next_nonce,
)
from onelaunch.core.intent.permit import (
    PermitMessage,
    PERMIT_TYPES,
    build_permit_message,
    permit_digest,
    sign_permit,
    recover_permit_signer,
    calculate_max_authorized_amount,
    generate_deadline,
)
from onelaunch.core.intent.orders import (
    SwapOrder,
    SignedSwapOrder,
    ORDER_TYPES,
    parse_signed_order,
    order_hash,
    sign_order,
    create_swap_order,
    check_intent_order,
    generate_salt,
)

__all__ = [
    "BidIntent",
    "BID_INTENT_TYPES",
    "NonceSource",
    "build_bid_intent",
    "validate_bid_intent",
    "intent_digest",
    "sign_bid_intent",
    "recover_intent_signer",
    "verify_intent_signature",
    "intent_id",
    "next_nonce",
    "PermitMessage",
    "PERMIT_TYPES",
    "build_permit_message",
    "permit_digest",
    "sign_permit",
    "recover_permit_signer",
    "calculate_max_authorized_amount",
    "generate_deadline",
    "SwapOrder",
    "SignedSwapOrder",
    "ORDER_TYPES",
    "parse_signed_order",
    "order_hash",
    "sign_order",
    "create_swap_order",
    "check_intent_order",
    "generate_salt",
]
