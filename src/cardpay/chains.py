"""EVM chain registry.

The registry is built once at startup from CHAIN_CONFIGS plus per-chain RPC
overrides, and is read-only afterwards.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .exceptions import InvalidAmountError, InvalidChainError

logger = logging.getLogger(__name__)


# Chain configurations
CHAIN_CONFIGS: Dict[str, dict] = {
    "ethereum": {
        "chain_id": 1,
        "name": "Ethereum Mainnet",
        "rpc_url": "https://eth.llamarpc.com",
        "symbol": "ETH",
        "explorer": "https://etherscan.io",
        "is_testnet": False,
    },
    "sepolia": {
        "chain_id": 11155111,
        "name": "Sepolia Testnet",
        "rpc_url": "https://rpc.sepolia.org",
        "symbol": "ETH",
        "explorer": "https://sepolia.etherscan.io",
        "is_testnet": True,
    },
    "polygon": {
        "chain_id": 137,
        "name": "Polygon Mainnet",
        "rpc_url": "https://polygon-rpc.com",
        "symbol": "MATIC",
        "explorer": "https://polygonscan.com",
        "is_testnet": False,
    },
    "mumbai": {
        "chain_id": 80001,
        "name": "Polygon Mumbai",
        "rpc_url": "https://rpc-mumbai.maticvigil.com",
        "symbol": "MATIC",
        "explorer": "https://mumbai.polygonscan.com",
        "is_testnet": True,
    },
    "bsc": {
        "chain_id": 56,
        "name": "BNB Smart Chain",
        "rpc_url": "https://bsc-dataseed.binance.org",
        "symbol": "BNB",
        "explorer": "https://bscscan.com",
        "is_testnet": False,
    },
    "bsc_testnet": {
        "chain_id": 97,
        "name": "BNB Smart Chain Testnet",
        "rpc_url": "https://data-seed-prebsc-1-s1.binance.org:8545",
        "symbol": "BNB",
        "explorer": "https://testnet.bscscan.com",
        "is_testnet": True,
    },
    "arbitrum": {
        "chain_id": 42161,
        "name": "Arbitrum One",
        "rpc_url": "https://arb1.arbitrum.io/rpc",
        "symbol": "ETH",
        "explorer": "https://arbiscan.io",
        "is_testnet": False,
    },
    "optimism": {
        "chain_id": 10,
        "name": "Optimism",
        "rpc_url": "https://mainnet.optimism.io",
        "symbol": "ETH",
        "explorer": "https://optimistic.etherscan.io",
        "is_testnet": False,
    },
    "avalanche": {
        "chain_id": 43114,
        "name": "Avalanche C-Chain",
        "rpc_url": "https://api.avax.network/ext/bc/C/rpc",
        "symbol": "AVAX",
        "explorer": "https://snowtrace.io",
        "is_testnet": False,
    },
    "fuji": {
        "chain_id": 43113,
        "name": "Avalanche Fuji Testnet",
        "rpc_url": "https://api.avax-test.network/ext/bc/C/rpc",
        "symbol": "AVAX",
        "explorer": "https://testnet.snowtrace.io",
        "is_testnet": True,
    },
    "u2u": {
        "chain_id": 39,
        "name": "U2U Solaris Mainnet",
        "rpc_url": "https://rpc-mainnet.uniultra.xyz",
        "symbol": "U2U",
        "explorer": "https://u2uscan.xyz",
        "is_testnet": False,
    },
    "u2u_testnet": {
        "chain_id": 2484,
        "name": "U2U Testnet",
        "rpc_url": "https://rpc-nebulas-testnet.uniultra.xyz",
        "symbol": "U2U",
        "explorer": "https://testnet.u2uscan.xyz",
        "is_testnet": True,
    },
}

DEFAULT_CHAIN = "u2u_testnet"


@dataclass(frozen=True)
class ChainConfig:
    """Static description of one EVM-compatible network."""

    key: str
    chain_id: int
    name: str
    rpc_url: str
    symbol: str
    explorer_url: str
    is_testnet: bool
    decimals: int = 18

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"

    def address_url(self, address: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/address/{address}"

    def to_minor_units(self, amount: Decimal | int | str) -> int:
        """Convert a native-unit amount to integer minor units (wei).

        Raises InvalidAmountError for non-positive amounts or amounts with more
        precision than the chain's decimals allow.
        """
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(amount, "Amount is not a number")
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(amount, "Amount must be positive")
        scaled = value.scaleb(self.decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmountError(
                amount,
                f"Amount has more than {self.decimals} decimal places",
            )
        return int(scaled)

    def from_minor_units(self, raw: int) -> Decimal:
        return Decimal(int(raw)).scaleb(-self.decimals)


class ChainRegistry:
    """Immutable lookup of supported chains keyed by chain key."""

    def __init__(
        self,
        chains: Iterable[ChainConfig],
        default_chain: str = DEFAULT_CHAIN,
    ) -> None:
        table = {chain.key: chain for chain in chains}
        if default_chain not in table:
            raise InvalidChainError(default_chain)
        self._chains: Mapping[str, ChainConfig] = MappingProxyType(table)
        self._default = default_chain

    @classmethod
    def from_settings(
        cls,
        rpc_overrides: Optional[Mapping[str, str]] = None,
        default_chain: str = DEFAULT_CHAIN,
    ) -> "ChainRegistry":
        """Build the registry from CHAIN_CONFIGS, applying RPC URL overrides."""
        overrides = {k.lower(): v for k, v in (rpc_overrides or {}).items()}
        unknown = set(overrides) - set(CHAIN_CONFIGS)
        if unknown:
            logger.warning("Ignoring RPC overrides for unknown chains: %s", sorted(unknown))

        chains = []
        for key, cfg in CHAIN_CONFIGS.items():
            chains.append(
                ChainConfig(
                    key=key,
                    chain_id=cfg["chain_id"],
                    name=cfg["name"],
                    rpc_url=overrides.get(key) or cfg["rpc_url"],
                    symbol=cfg["symbol"],
                    explorer_url=cfg["explorer"],
                    is_testnet=cfg["is_testnet"],
                    decimals=cfg.get("decimals", 18),
                )
            )
        return cls(chains, default_chain=default_chain)

    def resolve(self, key: Optional[str] = None) -> ChainConfig:
        """Return the chain for key (default chain when None)."""
        lookup = key or self._default
        chain = self._chains.get(lookup)
        if chain is None:
            raise InvalidChainError(lookup)
        return chain

    def get(self, key: str) -> Optional[ChainConfig]:
        return self._chains.get(key)

    @property
    def default(self) -> ChainConfig:
        return self._chains[self._default]

    def all(self) -> List[ChainConfig]:
        return list(self._chains.values())

    def testnets(self) -> List[ChainConfig]:
        return [c for c in self._chains.values() if c.is_testnet]

    def mainnets(self) -> List[ChainConfig]:
        return [c for c in self._chains.values() if not c.is_testnet]

    def by_chain_id(self, chain_id: int) -> Optional[ChainConfig]:
        for chain in self._chains.values():
            if chain.chain_id == chain_id:
                return chain
        return None

    def __contains__(self, key: object) -> bool:
        return key in self._chains

    def __len__(self) -> int:
        return len(self._chains)
