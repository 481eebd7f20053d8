"""Best-effort on-chain contract heuristics: risky selectors and owner supply share."""

from __future__ import annotations

import logging
from typing import Any

from web3 import Web3

from monitor.token_scorer import ContractFacts
from trading.provider_pool import ProviderPool

logger = logging.getLogger(__name__)

OWNABLE_ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "owner",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "totalSupply",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# flag name -> function signatures whose selectors mark an admin capability
RISKY_SIGNATURES: dict[str, tuple[str, ...]] = {
    "mint": ("mint(address,uint256)", "mint(uint256)"),
    "blacklist": ("blacklist(address)", "setBlacklist(address,bool)", "addToBlacklist(address)"),
    "settax": ("setTax(uint256)", "setTaxes(uint256,uint256)"),
    "setfee": ("setFee(uint256)", "setFees(uint256,uint256)", "updateFees(uint256,uint256)"),
    "maxtx": ("setMaxTxAmount(uint256)", "setMaxTxPercent(uint256)"),
    "maxwallet": ("setMaxWalletSize(uint256)", "setMaxWallet(uint256)"),
    "pause": ("pause()",),
    "trading": ("enableTrading()", "openTrading()", "setTrading(bool)"),
    "transferownership": ("transferOwnership(address)",),
    "excludefromfee": ("excludeFromFee(address)", "isExcludedFromFee(address)"),
}


def _selector(signature: str) -> str:
    return bytes(Web3.keccak(text=signature))[:4].hex()


_RISKY_SELECTORS: dict[str, tuple[str, ...]] = {
    name: tuple(_selector(sig) for sig in sigs) for name, sigs in RISKY_SIGNATURES.items()
}


def _code_hex(code: Any) -> str:
    if isinstance(code, (bytes, bytearray)):
        return bytes(code).hex()
    text = str(code or "").lower()
    return text[2:] if text.startswith("0x") else text


def bytecode_flags(code: Any) -> set[str]:
    """Advisory flags from selectors embedded in the dispatcher; empty code means no contract."""
    code_hex = _code_hex(code)
    if not code_hex:
        return {"no_bytecode"}
    flags: set[str] = set()
    for name, selectors in _RISKY_SELECTORS.items():
        # PUSH4 (0x63) precedes each selector in the function dispatcher.
        if any(f"63{sel}" in code_hex for sel in selectors):
            flags.add(f"bytecode_{name}")
    return flags


class ContractInspector:
    def __init__(self, pool: ProviderPool) -> None:
        self._pool = pool

    async def inspect(self, token: str) -> ContractFacts | None:
        try:
            address = Web3.to_checksum_address(token)
        except (TypeError, ValueError) as exc:
            logger.warning("CONTRACT_INSPECT bad address token=%s err=%s", token, exc)
            return None
        try:
            code = await self._pool.run(lambda w3: w3.eth.get_code(address))
        except Exception as exc:
            logger.warning("CONTRACT_INSPECT get_code failed token=%s err=%s", token, exc)
            return None
        code_hex = _code_hex(code)
        owner_share = await self._owner_share(address) if code_hex else None
        return ContractFacts(
            code_size=len(code_hex) // 2,
            bytecode_flags=tuple(sorted(bytecode_flags(code_hex))),
            owner_share=owner_share,
        )

    async def _owner_share(self, address: str) -> float | None:
        def _read(w3: Any) -> float | None:
            contract = w3.eth.contract(address=address, abi=OWNABLE_ERC20_ABI)
            total = int(contract.functions.totalSupply().call())
            if total <= 0:
                return None
            owner = contract.functions.owner().call()
            if not owner or int(owner, 16) == 0:
                return 0.0
            balance = int(contract.functions.balanceOf(owner).call())
            return balance / total

        try:
            return await self._pool.run(_read)
        except Exception as exc:
            # Tokens without owner() revert here; that is not a lookup failure.
            logger.debug("CONTRACT_INSPECT owner share unavailable token=%s err=%s", address, exc)
            return None
