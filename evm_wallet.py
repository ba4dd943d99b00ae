"""
EVM wallet capabilities: key loading, JSON-RPC reads, signing, broadcast,
and token price lookups.

Everything here is synchronous I/O; the MCP tool handlers call these
functions through asyncio.to_thread. Swap and bridge calldata is produced
elsewhere (a DEX or bridge quoting service) and passed through unchanged.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import requests
from bip_utils import (
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
)
from dotenv import load_dotenv
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_RPC_URL = "https://testnet-rpc.monad.xyz"
DEFAULT_CHAIN_ID = 10143
DEFAULT_NETWORK_NAME = "Monad Testnet"
DEFAULT_EXPLORER_URL = "https://testnet.monadexplorer.com"
DEFAULT_NATIVE_TOKEN = "MON"
ETH_DERIVATION_PATH = "m/44'/60'/0'/0"

RPC_TIMEOUT_SECONDS = 10
PRICE_TIMEOUT_SECONDS = 10

NATIVE_TOKEN_PLACEHOLDER = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

CHAIN_IDS = {
    "ethereum": 1,
    "optimism": 10,
    "bsc": 56,
    "polygon": 137,
    "monad-testnet": 10143,
    "arbitrum": 42161,
    "avalanche": 43114,
}

DEFAULT_GAS_LIMITS = {
    "eth_transfer": 21000,
    "erc20_transfer": 65000,
    "swap": 250000,
    "bridge": 300000,
}

UNISWAP_V3_SWAP_ROUTER = "0xE592427A0AEce92De3Edee1F18E0157C05861564"

BRIDGE_CONTRACTS = {
    "across": "0x4D9079Bb4165aeb4084c526a32695dCfd2F77381",
    "relay": "0xfCEAAf9792139BF714a694f868A215493461446D",
}

COINGECKO_IDS = {
    "ETH": "ethereum",
    "BTC": "bitcoin",
    "USDT": "tether",
    "USDC": "usd-coin",
    "DAI": "dai",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "AAVE": "aave",
    "MATIC": "matic-network",
    "SOL": "solana",
    "AVAX": "avalanche-2",
    "DOT": "polkadot",
    "ADA": "cardano",
    "MON": "monad",
}

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class EVMConfigError(Exception):
    """Configuration or key-material error for the EVM wallet."""

    pass


@dataclass
class EVMConfig:
    """
    Configuration for the EVM wallet.

    Values are sourced from environment variables or a .env file.

    Key material (first match wins):
    - MCP_PRIVATE_KEY: hex private key, with or without 0x.
    - MCP_MNEMONIC: BIP-39 seed phrase, derived at m/44'/60'/0'/0/<index>.
      MCP_MNEMONIC_PASSPHRASE and MCP_ACCOUNT_INDEX are optional.
    - MCP_ADDRESS: watch-only address; signing tools fail in this mode.

    Network:
    - MCP_RPC_URL, MCP_CHAIN_ID (defaults: Monad testnet, 10143).
    - MCP_NETWORK_NAME, MCP_EXPLORER_URL, MCP_NATIVE_TOKEN.
    - MCP_MAX_FEE: optional cap on maxFeePerGas, in gwei.
    """

    rpc_url: str
    chain_id: int
    address: str
    private_key: str | None = None
    network_name: str = DEFAULT_NETWORK_NAME
    explorer_url: str = DEFAULT_EXPLORER_URL
    native_token: str = DEFAULT_NATIVE_TOKEN
    derivation_path: str = ""
    max_fee_gwei: Decimal | None = None

    @property
    def read_only(self) -> bool:
        return self.private_key is None

    @classmethod
    def from_env(cls) -> EVMConfig:
        private_key = os.getenv("MCP_PRIVATE_KEY")
        mnemonic = os.getenv("MCP_MNEMONIC")
        watch_address = os.getenv("MCP_ADDRESS")

        if not private_key and not mnemonic and not watch_address:
            raise EVMConfigError(
                "No authentication method provided. Set MCP_PRIVATE_KEY, "
                "MCP_MNEMONIC, or MCP_ADDRESS in your environment or .env file."
            )

        raw_chain_id = os.getenv("MCP_CHAIN_ID", str(DEFAULT_CHAIN_ID))
        try:
            chain_id = int(raw_chain_id)
        except ValueError as exc:
            raise EVMConfigError(f"Invalid MCP_CHAIN_ID={raw_chain_id!r}. Expected an integer.") from exc

        derivation_path = ""
        if private_key:
            try:
                address = Account.from_key(private_key).address
            except (ValueError, TypeError) as exc:
                raise EVMConfigError("Invalid MCP_PRIVATE_KEY.") from exc
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
        elif mnemonic:
            raw_index = os.getenv("MCP_ACCOUNT_INDEX", "0")
            try:
                account_index = int(raw_index)
            except ValueError as exc:
                raise EVMConfigError(
                    f"Invalid MCP_ACCOUNT_INDEX={raw_index!r}. Expected a non-negative integer."
                ) from exc
            if account_index < 0:
                raise EVMConfigError(
                    f"Invalid MCP_ACCOUNT_INDEX={raw_index!r}. Expected a non-negative integer."
                )
            private_key, address = _derive_key_from_mnemonic(mnemonic, account_index)
            derivation_path = f"{ETH_DERIVATION_PATH}/{account_index}"
            # Scrub mnemonic from this frame once we've derived a key.
            del mnemonic
        else:
            private_key = None
            if not Web3.is_address(watch_address):
                raise EVMConfigError(f"Invalid MCP_ADDRESS={watch_address!r}.")
            address = Web3.to_checksum_address(watch_address)

        max_fee_raw = os.getenv("MCP_MAX_FEE")
        try:
            max_fee_gwei = Decimal(max_fee_raw) if max_fee_raw else None
        except InvalidOperation as exc:
            raise EVMConfigError(f"Invalid MCP_MAX_FEE={max_fee_raw!r}. Expected gwei.") from exc

        return cls(
            rpc_url=os.getenv("MCP_RPC_URL", DEFAULT_RPC_URL),
            chain_id=chain_id,
            address=address,
            private_key=private_key,
            network_name=os.getenv("MCP_NETWORK_NAME", DEFAULT_NETWORK_NAME),
            explorer_url=os.getenv("MCP_EXPLORER_URL", DEFAULT_EXPLORER_URL),
            native_token=os.getenv("MCP_NATIVE_TOKEN", DEFAULT_NATIVE_TOKEN),
            derivation_path=derivation_path,
            max_fee_gwei=max_fee_gwei,
        )


def _derive_key_from_mnemonic(mnemonic: str, account_index: int) -> tuple[str, str]:
    """Derive (private_key_hex, checksum_address) at m/44'/60'/0'/0/<index>."""
    if not Bip39MnemonicValidator().IsValid(mnemonic):
        raise EVMConfigError("Invalid MCP_MNEMONIC. Expected a BIP-39 seed phrase.")

    passphrase = os.getenv("MCP_MNEMONIC_PASSPHRASE", "")
    seed_bytes = Bip39SeedGenerator(mnemonic).Generate(passphrase)
    node = (
        Bip44.FromSeed(seed_bytes, Bip44Coins.ETHEREUM)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
        .AddressIndex(account_index)
    )
    private_key = "0x" + node.PrivateKey().Raw().ToHex()
    return private_key, node.PublicKey().ToAddress()


# ---------------------------------------------------------------------------
# RPC helpers
# ---------------------------------------------------------------------------


def _web3(cfg: EVMConfig) -> Web3:
    return Web3(Web3.HTTPProvider(cfg.rpc_url, request_kwargs={"timeout": RPC_TIMEOUT_SECONDS}))


def _require_key(cfg: EVMConfig) -> str:
    if cfg.private_key is None:
        raise EVMConfigError(
            "Wallet is in read-only mode (MCP_ADDRESS). Set MCP_PRIVATE_KEY or "
            "MCP_MNEMONIC to sign transactions."
        )
    return cfg.private_key


def _is_native(cfg: EVMConfig, token: str) -> bool:
    upper = token.upper()
    return upper in {cfg.native_token.upper(), "ETH", NATIVE_TOKEN_PLACEHOLDER.upper()}


def _fee_fields(cfg: EVMConfig, w3: Web3) -> dict[str, int]:
    """EIP-1559 fees when the chain reports a base fee, legacy gas price otherwise."""
    latest = w3.eth.get_block("latest")
    base_fee = latest.get("baseFeePerGas")
    if base_fee is None:
        return {"gasPrice": w3.eth.gas_price}

    max_priority = Web3.to_wei(Decimal("1.5"), "gwei")
    max_fee = base_fee * 2 + max_priority
    if cfg.max_fee_gwei is not None:
        max_fee = min(max_fee, Web3.to_wei(cfg.max_fee_gwei, "gwei"))
        max_priority = min(max_priority, max_fee)
    return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": max_priority}


def _build_transaction(
    cfg: EVMConfig,
    w3: Web3,
    to_address: str,
    value_wei: int,
    data: str | None = None,
    gas_limit: int | None = None,
) -> dict[str, Any]:
    tx: dict[str, Any] = {
        "from": cfg.address,
        "to": Web3.to_checksum_address(to_address),
        "value": int(value_wei),
        "nonce": w3.eth.get_transaction_count(cfg.address),
        "chainId": cfg.chain_id,
    }
    if data and data != "0x":
        tx["data"] = data
    tx.update(_fee_fields(cfg, w3))
    tx["gas"] = gas_limit if gas_limit is not None else w3.eth.estimate_gas(tx)
    return tx


def _sign_and_send(cfg: EVMConfig, w3: Web3, tx: dict[str, Any]) -> str:
    signed = Account.sign_transaction(tx, _require_key(cfg))
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    return Web3.to_hex(tx_hash)


def explorer_url(cfg: EVMConfig, tx_hash: str) -> str:
    return f"{cfg.explorer_url.rstrip('/')}/tx/{tx_hash}"


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------


def get_address(cfg: EVMConfig) -> str:
    return cfg.address


def get_balance(cfg: EVMConfig) -> str:
    """Native balance of the wallet, in wei."""
    w3 = _web3(cfg)
    return str(w3.eth.get_balance(cfg.address))


def get_token_balance(cfg: EVMConfig, token_address: str, decimals: int = 18) -> str:
    """ERC-20 balance of the wallet, scaled by `decimals`."""
    w3 = _web3(cfg)
    contract = w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
    raw = contract.functions.balanceOf(cfg.address).call()
    return format(Decimal(raw).scaleb(-int(decimals)).normalize(), "f")


# ---------------------------------------------------------------------------
# Signing (no broadcast)
# ---------------------------------------------------------------------------


def sign_transaction(cfg: EVMConfig, to_address: str, value_wei: int, data: str | None = None) -> str:
    """Build and sign a transaction; returns the raw signed transaction hex."""
    key = _require_key(cfg)
    w3 = _web3(cfg)
    tx = _build_transaction(cfg, w3, to_address, value_wei, data)
    signed = Account.sign_transaction(tx, key)
    return Web3.to_hex(signed.raw_transaction)


def sign_message(cfg: EVMConfig, message: str) -> str:
    """EIP-191 personal_sign signature over `message`."""
    key = _require_key(cfg)
    signed = Account.sign_message(encode_defunct(text=message), private_key=key)
    return Web3.to_hex(signed.signature)


# ---------------------------------------------------------------------------
# Transactions (broadcast)
# ---------------------------------------------------------------------------


def send_transaction(cfg: EVMConfig, to_address: str, value_wei: int, data: str | None = None) -> str:
    """Sign and broadcast a native transfer or contract call. Returns the tx hash."""
    _require_key(cfg)
    w3 = _web3(cfg)
    gas_limit = DEFAULT_GAS_LIMITS["eth_transfer"] if not data or data == "0x" else None
    tx = _build_transaction(cfg, w3, to_address, value_wei, data, gas_limit)
    return _sign_and_send(cfg, w3, tx)


def send_token(cfg: EVMConfig, token_address: str, to_address: str, amount: int) -> str:
    """ERC-20 transfer of `amount` base units. Returns the tx hash."""
    _require_key(cfg)
    w3 = _web3(cfg)
    contract = w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
    params: dict[str, Any] = {
        "from": cfg.address,
        "nonce": w3.eth.get_transaction_count(cfg.address),
        "chainId": cfg.chain_id,
        "gas": DEFAULT_GAS_LIMITS["erc20_transfer"],
    }
    params.update(_fee_fields(cfg, w3))
    tx = contract.functions.transfer(Web3.to_checksum_address(to_address), int(amount)).build_transaction(params)
    return _sign_and_send(cfg, w3, tx)


def swap(cfg: EVMConfig, from_token: str, to_token: str, amount: int, data: str | None = None) -> str:
    """
    Submit a pre-encoded swap to the Uniswap V3 router.

    Native input is attached as value; ERC-20 input must already be approved
    for the router.
    """
    if from_token.upper() == to_token.upper():
        raise ValueError("fromToken and toToken must differ.")
    _require_key(cfg)
    w3 = _web3(cfg)
    value = int(amount) if _is_native(cfg, from_token) else 0
    tx = _build_transaction(
        cfg, w3, UNISWAP_V3_SWAP_ROUTER, value, data, DEFAULT_GAS_LIMITS["swap"]
    )
    return _sign_and_send(cfg, w3, tx)


def bridge(
    cfg: EVMConfig,
    to_chain: str,
    token: str,
    amount: int,
    provider: str = "across",
    data: str | None = None,
) -> str:
    """Submit a pre-encoded bridge deposit to the provider's contract."""
    bridge_address = BRIDGE_CONTRACTS.get(provider.lower())
    if bridge_address is None:
        raise ValueError(f"Bridge provider {provider} not supported")
    destination = CHAIN_IDS.get(to_chain.lower())
    if destination is None:
        raise ValueError(f"Chain {to_chain} not supported")
    if destination == cfg.chain_id:
        raise ValueError("Destination chain must differ from the wallet's chain.")

    _require_key(cfg)
    w3 = _web3(cfg)
    value = int(amount) if _is_native(cfg, token) else 0
    tx = _build_transaction(cfg, w3, bridge_address, value, data, DEFAULT_GAS_LIMITS["bridge"])
    return _sign_and_send(cfg, w3, tx)


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------


def _fetch_coingecko_price(token: str, currency: str) -> Decimal | None:
    token_id = COINGECKO_IDS.get(token.upper(), token.lower())
    resp = requests.get(
        "https://api.coingecko.com/api/v3/simple/price",
        params={"ids": token_id, "vs_currencies": currency.lower()},
        timeout=PRICE_TIMEOUT_SECONDS,
    )
    resp.raise_for_status()
    price = resp.json().get(token_id, {}).get(currency.lower())
    return Decimal(str(price)) if price is not None else None


def _fetch_cryptocompare_price(token: str, currency: str) -> Decimal | None:
    resp = requests.get(
        "https://min-api.cryptocompare.com/data/price",
        params={"fsym": token.upper(), "tsyms": currency.upper()},
        timeout=PRICE_TIMEOUT_SECONDS,
    )
    resp.raise_for_status()
    price = resp.json().get(currency.upper())
    return Decimal(str(price)) if price is not None else None


def get_token_price(token: str, currency: str = "usd") -> Decimal:
    """
    Current price of `token` in `currency`.

    Tries CoinGecko first and CryptoCompare second. Raises RuntimeError if
    neither source has a price.
    """
    errors: list[str] = []
    for source in (_fetch_coingecko_price, _fetch_cryptocompare_price):
        try:
            price = source(token, currency)
        except (requests.RequestException, ValueError, InvalidOperation) as exc:
            errors.append(f"{source.__name__}: {exc}")
            continue
        if price is not None:
            return price

    detail = f" ({'; '.join(errors)})" if errors else ""
    raise RuntimeError(f"Price data not available for {token}{detail}")
