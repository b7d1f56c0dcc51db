"""
Commitment Module.

Deterministic, binding digests over bid terms:
- Packed encoding with a fixed type schema
- Commit and constant-time verify
- Commit/reveal pairs
"""

from onelaunch.core.commitment.codec import (
    COMMITMENT_SCHEMA,
    encode_packed,
    commit,
    verify,
    generate_commit_nonce,
    BidReveal,
    create_bid_commitment,
)

__all__ = [
    "COMMITMENT_SCHEMA",
    "encode_packed",
    "commit",
    "verify",
    "generate_commit_nonce",
    "BidReveal",
    "create_bid_commitment",
]
