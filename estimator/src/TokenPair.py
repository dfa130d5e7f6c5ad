"""TokenPair: Canonical token identity and ordered (base, quote) pairs.

A TokenDescriptor is the resolved identity of a token on a chain. A TokenPair
is an ordered relationship whose price is expressed as "quote units per one
base unit". Identity (equality and hashing) only uses the chain id and the
normalized address of each side; symbol and decimals are metadata.

.. code-block:: python

    >>> weth = TokenDescriptor(1, "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18, "WETH")
    >>> usdc = TokenDescriptor(1, "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6, "USDC")
    >>> pair = TokenPair(weth, usdc)
    >>> str(pair)
    'WETH/USDC'
    >>> pair.inverted().base.symbol
    'USDC'
"""

from __future__ import annotations

from dataclasses import dataclass, field

from web3 import Web3

# Marker used for the native gas token of EVM chains.
NATIVE_TOKEN_ADDRESS = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"
NULL_ADDRESS = "0x0000000000000000000000000000000000000000"

# Chain ids of the networks the bundled adapters know about.
CHAIN_IDS: dict[str, int] = {
    "ethereum": 1,
    "optimism": 10,
    "bsc": 56,
    "base": 8453,
    "arbitrum": 42161,
}


def is_native_address(address: str) -> bool:
    """Check if an address is one of the native token markers.

    :param address: Token address in any casing.
    :returns: True for the 0xeeee... marker and the null address.
    """
    return address.lower() in (NATIVE_TOKEN_ADDRESS, NULL_ADDRESS)


def normalize_address(address: str) -> str:
    """Normalize a token address for identity comparisons.

    EVM hex addresses are lowercased and native aliases collapse to the
    native marker. Non-hex identifiers are returned stripped but unchanged.

    :param address: Raw token address.
    :returns: Normalized address string.
    """
    address = address.strip()
    if is_native_address(address):
        return NATIVE_TOKEN_ADDRESS
    if address.startswith("0x") or address.startswith("0X"):
        return "0x" + address[2:].lower()
    return address


@dataclass(frozen=True)
class TokenDescriptor:
    """Resolved identity of a token.

    :ivar chain_id: Numeric chain id (e.g., 1 for Ethereum).
    :ivar address: Contract address, or the native marker.
    :ivar decimals: Number of decimals of the token's smallest unit.
    :ivar symbol: Display symbol (e.g., "USDC").
    """

    chain_id: int
    address: str
    decimals: int = field(compare=False)
    symbol: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        """Validate and normalize the descriptor.

        :raises ValueError: If decimals are out of range or address is empty.
        """
        if not self.address:
            raise ValueError("address must not be empty")
        if not 0 <= self.decimals <= 77:
            raise ValueError(f"decimals out of range: {self.decimals}")
        object.__setattr__(self, "address", normalize_address(self.address))

    @property
    def is_native(self) -> bool:
        """Check if this descriptor denotes the chain's native token."""
        return self.address == NATIVE_TOKEN_ADDRESS

    @property
    def checksum_address(self) -> str:
        """Return the EIP-55 checksummed address."""
        return Web3.to_checksum_address(self.address)

    @property
    def key(self) -> str:
        """Return the "chain:address" identity string."""
        return f"{self.chain_id}:{self.address}"

    def __str__(self) -> str:
        return self.symbol or self.key


class TokenPair:
    """An ordered (base, quote) token pair.

    Prices for the pair are always expressed as quote units per one base unit.

    :ivar base: Token being priced.
    :ivar quote: Token the price is expressed in.
    """

    __slots__ = ("base", "quote")

    def __init__(self, base: TokenDescriptor, quote: TokenDescriptor) -> None:
        """Initialize a token pair.

        :param base: Base token descriptor.
        :param quote: Quote token descriptor.
        :raises ValueError: If base and quote are the same token.
        """
        if base == quote:
            raise ValueError(f"base and quote must differ, got {base.key} twice")
        self.base = base
        self.quote = quote

    @property
    def pair_id(self) -> str:
        """Return the identity string "chain:base/chain:quote"."""
        return f"{self.base.key}/{self.quote.key}"

    @property
    def is_cross_chain(self) -> bool:
        """Check if base and quote live on different chains."""
        return self.base.chain_id != self.quote.chain_id

    def inverted(self) -> TokenPair:
        """Return the same relationship with base and quote swapped."""
        return TokenPair(self.quote, self.base)

    def compute_pair_hash(self) -> bytes:
        """Compute a keccak256 hash identifying the pair.

        Used as a stable key when cache entries are exported to an external
        store.

        :returns: 32-byte keccak256 hash of :attr:`pair_id`.
        """
        return Web3.keccak(text=self.pair_id)

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}"

    def __repr__(self) -> str:
        return f"TokenPair({self.base.key!r}, {self.quote.key!r})"

    def __hash__(self) -> int:
        return hash((self.base, self.quote))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TokenPair):
            return NotImplemented
        return self.base == other.base and self.quote == other.quote
