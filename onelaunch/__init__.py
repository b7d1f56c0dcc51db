"""
onelaunch - Uniform-price token launch auctions.

A clearing and settlement core for crowdfunding-style token launches:
- Commit-reveal bid commitments
- Signed cross-asset bid intents and token permits (EIP-712)
- Uniform-price, price-time priority auction clearing
- Settlement tracking through an external swap executor
"""

__version__ = "0.1.0"
