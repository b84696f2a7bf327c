"""Helius enhanced-transactions client used for provenance checks."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from ..constants import BONKFUN_ACCOUNTS, BONKFUN_PROGRAMS, PLATFORM_CONFIG
from ..errors import MalformedResponse, SourceUnavailable
from ..health import SOURCE_HELIUS
from .base import ProviderFetcher

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "https://api.helius.xyz/v0"
_BASE_URL = (os.getenv("HELIUS_API_URL") or _DEFAULT_BASE_URL).rstrip("/")


@dataclass(frozen=True, slots=True)
class HeliusInstructionDTO:
    program_id: str
    accounts: tuple[str, ...]
    inner: tuple["HeliusInstructionDTO", ...] = ()

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "HeliusInstructionDTO":
        inner_raw = raw.get("innerInstructions") or ()
        return cls(
            program_id=str(raw.get("programId") or ""),
            accounts=_strings(raw.get("accounts")),
            inner=tuple(
                cls.from_payload(item) for item in inner_raw if isinstance(item, Mapping)
            ),
        )


@dataclass(frozen=True, slots=True)
class HeliusTransactionDTO:
    signature: str
    instructions: tuple[HeliusInstructionDTO, ...]
    account_data: tuple[str, ...]

    @classmethod
    def from_payload(cls, raw: Mapping[str, Any]) -> "HeliusTransactionDTO":
        instructions = raw.get("instructions") or ()
        if not isinstance(instructions, Sequence):
            raise MalformedResponse("helius 'instructions' is not a list")
        accounts = [
            entry.get("account")
            for entry in raw.get("accountData") or ()
            if isinstance(entry, Mapping)
        ]
        return cls(
            signature=str(raw.get("signature") or ""),
            instructions=tuple(
                HeliusInstructionDTO.from_payload(ix)
                for ix in instructions
                if isinstance(ix, Mapping)
            ),
            account_data=_strings(accounts),
        )


def _strings(values: Any) -> tuple[str, ...]:
    if not isinstance(values, Sequence) or isinstance(values, str):
        return ()
    return tuple(v for v in values if isinstance(v, str))


def parse_transactions(payload: Any) -> list[HeliusTransactionDTO]:
    if not isinstance(payload, list):
        raise MalformedResponse(
            f"helius transactions payload is {type(payload).__name__}, expected list"
        )
    return [
        HeliusTransactionDTO.from_payload(tx) for tx in payload if isinstance(tx, Mapping)
    ]


@dataclass(frozen=True, slots=True)
class ProgramScan:
    """Outcome of inspecting a window of transactions for BonkFun programs."""

    found: bool
    platform_config: bool
    inspected: int
    signature: str | None = None


def _walk(instructions: Iterable[HeliusInstructionDTO]) -> Iterable[HeliusInstructionDTO]:
    for ix in instructions:
        yield ix
        yield from _walk(ix.inner)


def scan_transactions(transactions: Sequence[HeliusTransactionDTO]) -> ProgramScan:
    """Look for the launch/graduate programs in top-level and inner instructions.

    ``accountData`` referencing the programs or the platform config also
    counts. ``platform_config`` is set when the config account appears in the
    matching transaction.
    """

    for tx in transactions:
        found = False
        platform = PLATFORM_CONFIG in tx.account_data
        for ix in _walk(tx.instructions):
            if ix.program_id in BONKFUN_PROGRAMS:
                found = True
            if PLATFORM_CONFIG in ix.accounts:
                platform = True
        if not found and any(acc in BONKFUN_ACCOUNTS for acc in tx.account_data):
            found = True
        if found:
            return ProgramScan(True, platform, len(transactions), tx.signature or None)
    return ProgramScan(False, False, len(transactions))


class HeliusClient(ProviderFetcher):
    source = SOURCE_HELIUS

    def __init__(
        self,
        health,
        api_key: str | None,
        *,
        fetch=None,
        timeout: float | None = 10.0,
        base_url: str = _BASE_URL,
    ) -> None:
        super().__init__(health, fetch=fetch, timeout=timeout)
        self._api_key = (api_key or "").strip()
        self._base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def address_transactions(
        self, address: str, *, limit: int = 10
    ) -> list[HeliusTransactionDTO]:
        """Return up to ``limit`` recent parsed transactions touching ``address``."""

        if not self._api_key:
            raise SourceUnavailable("HELIUS_API_KEY is not configured")
        url = (
            f"{self._base_url}/addresses/{address}/transactions"
            f"?api-key={self._api_key}&limit={max(1, int(limit))}"
        )
        return parse_transactions(await self._get(url))

    async def scan_address(self, address: str, *, limit: int = 10) -> ProgramScan:
        transactions = await self.address_transactions(address, limit=limit)
        scan = scan_transactions(transactions)
        logger.debug(
            "helius scan %s: found=%s inspected=%d", address, scan.found, scan.inspected
        )
        return scan


__all__ = [
    "HeliusClient",
    "HeliusInstructionDTO",
    "HeliusTransactionDTO",
    "ProgramScan",
    "parse_transactions",
    "scan_transactions",
]
