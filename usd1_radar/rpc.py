"""Weighted multi-endpoint Solana RPC access with per-endpoint health."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Sequence, TypeVar

from solana.rpc.async_api import AsyncClient
from solana.rpc.types import MemcmpOpts
from solders.pubkey import Pubkey

from .errors import MalformedResponse, SourceUnavailable
from .health import ApiHealthMonitor

logger = logging.getLogger(__name__)

T = TypeVar("T")

PUBLIC_RPC_URL = "https://api.mainnet-beta.solana.com"


@dataclass(frozen=True, slots=True)
class RpcEndpoint:
    name: str
    url: str
    weight: int


@dataclass(frozen=True, slots=True)
class ProgramAccount:
    pubkey: str
    data: bytes


def build_endpoints(
    *,
    helius_api_key: str | None = None,
    alchemy_api_key: str | None = None,
    chainstack_api_key: str | None = None,
    quicknode_url: str | None = None,
    public_url: str | None = None,
) -> list[RpcEndpoint]:
    """Return the configured endpoints, highest weight first.

    The public endpoint is always included as the last resort.
    """

    endpoints: list[RpcEndpoint] = []
    if helius_api_key:
        endpoints.append(
            RpcEndpoint("helius", f"https://mainnet.helius-rpc.com/?api-key={helius_api_key}", 4)
        )
    if alchemy_api_key:
        endpoints.append(
            RpcEndpoint("alchemy", f"https://solana-mainnet.g.alchemy.com/v2/{alchemy_api_key}", 3)
        )
    if chainstack_api_key:
        endpoints.append(
            RpcEndpoint(
                "chainstack", f"https://solana-mainnet.core.chainstack.com/{chainstack_api_key}", 2
            )
        )
    if quicknode_url:
        endpoints.append(RpcEndpoint("quicknode", quicknode_url, 2))
    endpoints.append(RpcEndpoint("public", public_url or PUBLIC_RPC_URL, 1))
    return endpoints


ClientFactory = Callable[[str], AsyncClient]


class RpcManager:
    """Rotate between RPC providers by weight, skipping ones in backoff."""

    def __init__(
        self,
        endpoints: Sequence[RpcEndpoint],
        *,
        health: ApiHealthMonitor | None = None,
        client_factory: ClientFactory | None = None,
        timeout: float = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        if not endpoints:
            endpoints = [RpcEndpoint("public", PUBLIC_RPC_URL, 1)]
        self._endpoints = list(endpoints)
        self._health = health or ApiHealthMonitor([e.name for e in self._endpoints])
        self._factory = client_factory or (lambda url: AsyncClient(url, timeout=timeout))
        self._clients: Dict[str, AsyncClient] = {}
        self._requests: Dict[str, int] = {e.name: 0 for e in self._endpoints}
        self._rng = rng or random.Random()
        logger.info(
            "RPC manager initialised with %d endpoint(s): %s",
            len(self._endpoints),
            ", ".join(e.name for e in self._endpoints),
        )

    @property
    def endpoints(self) -> list[RpcEndpoint]:
        return list(self._endpoints)

    def next_endpoint(self, exclude: Iterable[str] = ()) -> RpcEndpoint | None:
        """Weighted random choice among healthy endpoints not in ``exclude``.

        When every endpoint is in backoff and nothing has been tried yet, all
        are reset and the first one is returned. ``None`` means exhausted.
        """

        skip = set(exclude)
        available = [
            e for e in self._endpoints if e.name not in skip and self._health.is_healthy(e.name)
        ]
        if not available:
            if skip:
                return None
            logger.warning("All RPC endpoints unhealthy; resetting health")
            for endpoint in self._endpoints:
                self._health.reset_health(endpoint.name)
            return self._endpoints[0]
        total = sum(max(1, e.weight) for e in available)
        pick = self._rng.uniform(0, total)
        for endpoint in available:
            pick -= max(1, endpoint.weight)
            if pick <= 0:
                return endpoint
        return available[-1]

    def _client(self, endpoint: RpcEndpoint) -> AsyncClient:
        client = self._clients.get(endpoint.name)
        if client is None:
            client = self._factory(endpoint.url)
            self._clients[endpoint.name] = client
        return client

    async def execute_with_fallback(
        self,
        fn: Callable[[AsyncClient, RpcEndpoint], Awaitable[T]],
        *,
        max_retries: int = 3,
    ) -> T:
        """Run ``fn`` against up to ``max_retries`` distinct endpoints."""

        tried: list[str] = []
        last_error: Exception | None = None
        for _ in range(max(1, min(max_retries, len(self._endpoints)))):
            endpoint = self.next_endpoint(exclude=tried)
            if endpoint is None:
                break
            tried.append(endpoint.name)
            try:
                result = await fn(self._client(endpoint), endpoint)
            except Exception as exc:
                last_error = exc
                self._health.mark_error(endpoint.name, exc)
                continue
            self._health.reset_health(endpoint.name)
            self._requests[endpoint.name] = self._requests.get(endpoint.name, 0) + 1
            return result
        raise SourceUnavailable(
            f"all RPC endpoints failed ({', '.join(tried)}): {last_error}"
        ) from last_error

    async def get_program_accounts(
        self,
        program_id: str,
        *,
        data_size: int | None = None,
        memcmp: Sequence[tuple[int, str]] = (),
    ) -> list[ProgramAccount]:
        """``getProgramAccounts`` with base64 encoding and the given filters."""

        program = Pubkey.from_string(program_id)
        filters: list[int | MemcmpOpts] = []
        if data_size is not None:
            filters.append(data_size)
        filters.extend(MemcmpOpts(offset=offset, bytes=value) for offset, value in memcmp)

        async def _call(client: AsyncClient, endpoint: RpcEndpoint) -> list[ProgramAccount]:
            resp = await client.get_program_accounts(
                program, encoding="base64", filters=filters or None
            )
            value = getattr(resp, "value", None)
            if value is None:
                raise MalformedResponse(f"{endpoint.name} getProgramAccounts returned no value")
            return [ProgramAccount(str(item.pubkey), bytes(item.account.data)) for item in value]

        return await self.execute_with_fallback(_call)

    def stats(self) -> Dict[str, Dict[str, object]]:
        health = self._health.snapshot()
        return {
            e.name: {
                "weight": e.weight,
                "requests": self._requests.get(e.name, 0),
                **health.get(e.name, {}),
            }
            for e in self._endpoints
        }

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()


__all__ = [
    "ProgramAccount",
    "RpcEndpoint",
    "RpcManager",
    "build_endpoints",
    "PUBLIC_RPC_URL",
]
