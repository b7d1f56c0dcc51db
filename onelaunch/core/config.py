"""
Launch configuration parameters for onelaunch.

Defines signing domains, settlement assets, economic parameters and
operational limits. Values can be overridden from the environment
(ONELAUNCH_* variables) or a dotenv file.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from onelaunch.crypto.eip712 import TypedDomain


ENV_PREFIX = "ONELAUNCH_"


@dataclass
class LaunchConfig:
    """Deployment-wide configuration parameters"""

    # Network
    chain_id: int = 42161  # Arbitrum One

    # Settlement asset (permits are signed under the token's own domain)
    usdc_address: str = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"
    usdc_domain_name: str = "USD Coin"
    usdc_domain_version: str = "2"
    usdc_decimals: int = 6

    # Bid intents
    intent_domain_name: str = "1Launch Intent System"
    intent_domain_version: str = "1"
    intent_verifying_contract: str = "0x0000000000000000000000000000000000000000"
    intent_ttl_seconds: int = 7 * 24 * 60 * 60  # one week

    # Executor swap orders
    executor_domain_name: str = "1inch Limit Order Protocol"
    executor_domain_version: str = "4"
    executor_verifying_contract: str = "0x1111111254eeb25477b68fb85ed929f73a960582"
    settlement_receiver: str = "0xc3ce44b2e68c11ff7e80cc997dd28f79a2ea41ea"

    # Permits
    permit_buffer_bps: int = 1000  # 10% over price * quantity

    # Clearing
    clearing_max_retries: int = 3

    # Settlement
    max_concurrent_settlements: int = 8
    executor_poll_interval: float = 2.0   # seconds between status polls
    executor_max_polls: int = 30          # polls before an executor timeout

    # Logging
    log_level: str = "INFO"
    log_levels: str = ""  # per subsystem, e.g. "settlement=DEBUG,storage=WARNING"

    # Paths
    data_dir: Path = Path("data")
    log_dir: Path = Path("logs")
    db_name: str = "onelaunch.db"

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def intent_domain(self) -> TypedDomain:
        return TypedDomain(
            name=self.intent_domain_name,
            version=self.intent_domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.intent_verifying_contract,
        )

    @property
    def usdc_domain(self) -> TypedDomain:
        return TypedDomain(
            name=self.usdc_domain_name,
            version=self.usdc_domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.usdc_address,
        )

    @property
    def executor_domain(self) -> TypedDomain:
        return TypedDomain(
            name=self.executor_domain_name,
            version=self.executor_domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.executor_verifying_contract,
        )


# Global config instance (can be overridden)
config = LaunchConfig()


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, Path):
        return Path(raw).expanduser()
    return raw


def load_config(env_file: Optional[str] = None, **overrides) -> LaunchConfig:
    """
    Load configuration from environment variables and an optional dotenv file.

    Every field can be set as ONELAUNCH_<FIELD_NAME>, e.g.
    ONELAUNCH_CHAIN_ID=1. Explicit keyword overrides win over the
    environment.

    Args:
        env_file: Optional path to a dotenv file

    Returns:
        LaunchConfig instance
    """
    # Process environment wins over the dotenv file
    environ = dict(dotenv_values(env_file)) if env_file else {}
    environ.update(os.environ)

    cfg = LaunchConfig()
    for f in fields(cfg):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is not None:
            setattr(cfg, f.name, _coerce(raw, getattr(cfg, f.name)))

    for name, value in overrides.items():
        if not hasattr(cfg, name):
            raise AttributeError(f"Unknown config field: {name}")
        setattr(cfg, name, value)

    return cfg
