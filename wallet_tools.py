"""
Wallet tool catalogue.

Registers every wallet tool with its schemas, tier and async handler.
Listing order follows registration order: read, prepare, info, transaction.
Handlers load EVMConfig per call and run the blocking evm_wallet function in
a worker thread.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Iterable

import evm_wallet
from evm_wallet import BRIDGE_CONTRACTS, CHAIN_IDS, EVMConfig
from tool_registry import (
    ADDRESS_PATTERN,
    AMOUNT_PATTERN,
    HEX_DATA_PATTERN,
    TX_HASH_PATTERN,
    Tier,
    ToolDescriptor,
    ToolRegistry,
)

TOKEN_PATTERN = r"^(0x[a-fA-F0-9]{40}|[A-Za-z0-9]{1,11})$"

_ADDRESS = {"type": "string", "pattern": ADDRESS_PATTERN}
_AMOUNT = {"type": "string", "pattern": AMOUNT_PATTERN}
_DATA = {"type": "string", "pattern": HEX_DATA_PATTERN}
_TOKEN = {"type": "string", "pattern": TOKEN_PATTERN}

_TX_OUTPUT = {
    "type": "object",
    "properties": {
        "transactionHash": {
            "type": "string",
            "pattern": TX_HASH_PATTERN,
            "description": "Transaction hash",
        },
        "explorerUrl": {"type": "string", "description": "Block explorer link"},
    },
    "required": ["transactionHash"],
}


def _no_params() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": [], "additionalProperties": False}


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


def _field(base: dict[str, Any], description: str, **extra: Any) -> dict[str, Any]:
    return {**base, "description": description, **extra}


class WalletTools:
    """Async handlers bound to a config loader."""

    def __init__(self, load_config: Callable[[], EVMConfig] = EVMConfig.from_env) -> None:
        self._load_config = load_config

    async def _config(self) -> EVMConfig:
        return await asyncio.to_thread(self._load_config)

    def _transaction_result(self, cfg: EVMConfig, tx_hash: str) -> dict[str, str]:
        return {"transactionHash": tx_hash, "explorerUrl": evm_wallet.explorer_url(cfg, tx_hash)}

    # -- read --

    async def get_address(self, params: dict[str, Any]) -> str:
        cfg = await self._config()
        return evm_wallet.get_address(cfg)

    async def get_balance(self, params: dict[str, Any]) -> str:
        cfg = await self._config()
        return await asyncio.to_thread(evm_wallet.get_balance, cfg)

    # -- prepare --

    async def sign_transaction(self, params: dict[str, Any]) -> dict[str, str]:
        cfg = await self._config()
        signed = await asyncio.to_thread(
            evm_wallet.sign_transaction, cfg, params["to"], int(params["value"]), params.get("data")
        )
        return {"signedTransaction": signed}

    async def sign_message(self, params: dict[str, Any]) -> dict[str, str]:
        cfg = await self._config()
        signature = await asyncio.to_thread(evm_wallet.sign_message, cfg, params["message"])
        return {"signature": signature, "address": cfg.address}

    # -- info --

    async def get_token_balance(self, params: dict[str, Any]) -> str:
        cfg = await self._config()
        return await asyncio.to_thread(
            evm_wallet.get_token_balance, cfg, params["token"], params["decimals"]
        )

    async def get_token_price(self, params: dict[str, Any]) -> dict[str, str]:
        token = params["token"]
        currency = params["currency"]
        price = await asyncio.to_thread(evm_wallet.get_token_price, token, currency)
        return {"token": token.upper(), "currency": currency.upper(), "price": str(price)}

    # -- transaction --

    async def send_transaction(self, params: dict[str, Any]) -> dict[str, str]:
        cfg = await self._config()
        tx_hash = await asyncio.to_thread(
            evm_wallet.send_transaction, cfg, params["to"], int(params["value"]), params.get("data")
        )
        return self._transaction_result(cfg, tx_hash)

    async def send_token(self, params: dict[str, Any]) -> dict[str, str]:
        cfg = await self._config()
        tx_hash = await asyncio.to_thread(
            evm_wallet.send_token, cfg, params["token"], params["to"], int(params["amount"])
        )
        return self._transaction_result(cfg, tx_hash)

    async def swap(self, params: dict[str, Any]) -> dict[str, str]:
        cfg = await self._config()
        tx_hash = await asyncio.to_thread(
            evm_wallet.swap,
            cfg,
            params["fromToken"],
            params["toToken"],
            int(params["amount"]),
            params.get("data"),
        )
        return self._transaction_result(cfg, tx_hash)

    async def bridge(self, params: dict[str, Any]) -> dict[str, str]:
        cfg = await self._config()
        tx_hash = await asyncio.to_thread(
            evm_wallet.bridge,
            cfg,
            params["toChain"],
            params["token"],
            int(params["amount"]),
            params["provider"],
            params.get("data"),
        )
        return self._transaction_result(cfg, tx_hash)


def wallet_tool_descriptors(tools: WalletTools) -> list[ToolDescriptor]:
    return [
        # -- read --
        ToolDescriptor(
            name="wallet_getAddress",
            description="Get the wallet address.",
            input_schema=_no_params(),
            output_schema=_field(_ADDRESS, "Wallet address"),
            tier=Tier.READ,
            handler=tools.get_address,
        ),
        ToolDescriptor(
            name="wallet_getBalance",
            description="Get the native token balance of the wallet, in wei.",
            input_schema=_no_params(),
            output_schema=_field(_AMOUNT, "Balance in wei"),
            tier=Tier.READ,
            handler=tools.get_balance,
        ),
        # -- prepare --
        ToolDescriptor(
            name="wallet_signTransaction",
            description="Sign a transaction without broadcasting it.",
            input_schema=_object(
                {
                    "to": _field(_ADDRESS, "Recipient address"),
                    "value": _field(_AMOUNT, "Amount in wei"),
                    "data": _field(_DATA, "Transaction data"),
                },
                ["to", "value"],
            ),
            output_schema={
                "type": "object",
                "properties": {
                    "signedTransaction": {
                        "type": "string",
                        "description": "Signed transaction data",
                    }
                },
                "required": ["signedTransaction"],
            },
            tier=Tier.PREPARE,
            handler=tools.sign_transaction,
        ),
        ToolDescriptor(
            name="wallet_signMessage",
            description="Sign a text message (EIP-191 personal_sign).",
            input_schema=_object(
                {"message": {"type": "string", "description": "Message to sign"}},
                ["message"],
            ),
            output_schema={
                "type": "object",
                "properties": {
                    "signature": {"type": "string"},
                    "address": _ADDRESS,
                },
                "required": ["signature", "address"],
            },
            tier=Tier.PREPARE,
            handler=tools.sign_message,
        ),
        # -- info --
        ToolDescriptor(
            name="wallet_getTokenBalance",
            description="Get the wallet's balance of an ERC-20 token.",
            input_schema=_object(
                {
                    "token": _field(_ADDRESS, "Token contract address"),
                    "decimals": {
                        "type": "integer",
                        "description": "Token decimals",
                        "default": 18,
                        "minimum": 0,
                        "maximum": 36,
                    },
                },
                ["token"],
            ),
            output_schema={"type": "string", "description": "Token balance"},
            tier=Tier.INFO,
            handler=tools.get_token_balance,
        ),
        ToolDescriptor(
            name="wallet_getTokenPrice",
            description="Look up a token's current price.",
            input_schema=_object(
                {
                    "token": {
                        "type": "string",
                        "pattern": r"^[A-Za-z0-9-]{1,32}$",
                        "description": "Token symbol (e.g. ETH, BTC, USDT)",
                    },
                    "currency": {
                        "type": "string",
                        "pattern": r"^[A-Za-z]{3,5}$",
                        "description": "Quote currency (e.g. USD, EUR)",
                        "default": "usd",
                    },
                },
                ["token"],
            ),
            output_schema={
                "type": "object",
                "properties": {
                    "token": {"type": "string"},
                    "currency": {"type": "string"},
                    "price": {"type": "string"},
                },
                "required": ["token", "currency", "price"],
            },
            tier=Tier.INFO,
            handler=tools.get_token_price,
        ),
        # -- transaction --
        ToolDescriptor(
            name="wallet_sendTransaction",
            description="Send native tokens or a contract call (requires confirmation).",
            input_schema=_object(
                {
                    "to": _field(_ADDRESS, "Recipient address"),
                    "value": _field(_AMOUNT, "Amount in wei"),
                    "data": _field(_DATA, "Transaction data"),
                },
                ["to", "value"],
            ),
            output_schema=_TX_OUTPUT,
            tier=Tier.TRANSACTION,
            handler=tools.send_transaction,
        ),
        ToolDescriptor(
            name="wallet_sendToken",
            description="Transfer an ERC-20 token (requires confirmation).",
            input_schema=_object(
                {
                    "token": _field(_ADDRESS, "Token contract address"),
                    "to": _field(_ADDRESS, "Recipient address"),
                    "amount": _field(_AMOUNT, "Amount in the token's smallest unit"),
                },
                ["token", "to", "amount"],
            ),
            output_schema=_TX_OUTPUT,
            tier=Tier.TRANSACTION,
            handler=tools.send_token,
        ),
        ToolDescriptor(
            name="wallet_swap",
            description=(
                "Submit a swap to the Uniswap V3 router (requires confirmation). "
                "Pass router calldata from a quoting service in `data`."
            ),
            input_schema=_object(
                {
                    "fromToken": _field(_TOKEN, "Source token symbol or contract address"),
                    "toToken": _field(_TOKEN, "Target token symbol or contract address"),
                    "amount": _field(_AMOUNT, "Amount of fromToken in its smallest unit"),
                    "data": _field(_DATA, "Encoded router call"),
                },
                ["fromToken", "toToken", "amount"],
            ),
            output_schema=_TX_OUTPUT,
            tier=Tier.TRANSACTION,
            handler=tools.swap,
        ),
        ToolDescriptor(
            name="wallet_bridge",
            description=(
                "Bridge assets to another chain (requires confirmation). "
                "Pass deposit calldata from the bridge provider in `data`."
            ),
            input_schema=_object(
                {
                    "toChain": {
                        "type": "string",
                        "enum": sorted(CHAIN_IDS),
                        "description": "Destination chain",
                    },
                    "token": _field(_TOKEN, "Token symbol or contract address"),
                    "amount": _field(_AMOUNT, "Amount in the token's smallest unit"),
                    "provider": {
                        "type": "string",
                        "enum": sorted(BRIDGE_CONTRACTS),
                        "description": "Bridge provider",
                        "default": "across",
                    },
                    "data": _field(_DATA, "Encoded bridge deposit call"),
                },
                ["toChain", "token", "amount"],
            ),
            output_schema=_TX_OUTPUT,
            tier=Tier.TRANSACTION,
            handler=tools.bridge,
        ),
    ]


def build_wallet_registry(
    enabled_tiers: Iterable[Tier],
    load_config: Callable[[], EVMConfig] = EVMConfig.from_env,
) -> ToolRegistry:
    registry = ToolRegistry(enabled_tiers)
    for descriptor in wallet_tool_descriptors(WalletTools(load_config)):
        registry.register(descriptor)
    return registry
