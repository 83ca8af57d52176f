"""
Marketplace Contract ABI

Only the surface this layer consumes is declared here: the listing
enumeration view, the mint write and the listing-change event.
"""

from typing import Any

from web3 import Web3

MARKETPLACE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "getListings",
        "outputs": [
            {
                "components": [
                    {"name": "tokenId", "type": "uint256"},
                    {"name": "creator", "type": "address"},
                    {"name": "owner", "type": "address"},
                    {"name": "uri", "type": "string"},
                    {"name": "price", "type": "uint256"},
                    {"name": "isListed", "type": "bool"},
                    {"name": "createdAt", "type": "uint256"},
                ],
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "uri", "type": "string"},
            {"name": "priceWei", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "name": "tokenId", "type": "uint256"}],
        "name": "ListingChanged",
        "type": "event",
    },
]


def _canonical_type(param: dict[str, Any]) -> str:
    """Canonical ABI type string, expanding tuple components."""
    abi_type: str = param["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def event_signature(abi: list[dict[str, Any]], name: str) -> str:
    """
    Build the canonical signature of an event, e.g. ``ListingChanged(uint256)``.

    Raises:
        KeyError: If the ABI declares no event with that name
    """
    for entry in abi:
        if entry.get("type") == "event" and entry.get("name") == name:
            types = ",".join(_canonical_type(p) for p in entry.get("inputs", []))
            return f"{name}({types})"
    raise KeyError(f"Event {name!r} not declared in ABI")


def event_topic(abi: list[dict[str, Any]], name: str) -> str:
    """Return the 0x-prefixed topic0 hash for an event name."""
    return Web3.to_hex(Web3.keccak(text=event_signature(abi, name)))
