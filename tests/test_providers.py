import pytest

from usd1_radar.constants import (
    GRADUATE_PROGRAM,
    LAUNCHLAB_PROGRAM,
    PLATFORM_CONFIG,
    USD1_MINT,
)
from usd1_radar.errors import (
    MalformedResponse,
    NetworkTimeout,
    RateLimited,
    SourceBackingOff,
    SourceUnavailable,
)
from usd1_radar.health import (
    SOURCE_DEXSCREENER,
    SOURCE_HELIUS,
    ApiHealthMonitor,
)
from usd1_radar.providers.dexscreener import DexScreenerFetcher
from usd1_radar.providers.geckoterminal import GeckoTerminalFetcher, parse_ohlcv
from usd1_radar.providers.helius import HeliusClient, parse_transactions, scan_transactions
from usd1_radar.providers.raydium import RaydiumFetcher

MINT_A = "BonkA1111111111111111111111111111111111111"
MINT_B = "BonkB2222222222222222222222222222222222222"


class FakeFetch:
    """Route URLs to canned payloads by substring; exceptions are raised."""

    def __init__(self, routes):
        self.routes = routes
        self.urls = []

    async def __call__(self, url, timeout=None, **kwargs):
        self.urls.append(url)
        for fragment, payload in self.routes.items():
            if fragment in url:
                if isinstance(payload, BaseException):
                    raise payload
                return payload
        raise AssertionError(f"unexpected url {url}")


def _dex_pair(base, quote, *, volume, chain="solana", price="0.5", native="0.5", **extra):
    pair = {
        "chainId": chain,
        "dexId": "raydium",
        "url": f"https://dexscreener.com/solana/{base}",
        "pairAddress": f"pair-{base[:5]}-{volume}",
        "baseToken": {"address": base, "symbol": "BASE", "name": "Base"},
        "quoteToken": {"address": quote, "symbol": "QUOTE", "name": "Quote"},
        "priceUsd": price,
        "priceNative": native,
        "liquidity": {"usd": 12_000},
        "fdv": 240_000,
        "volume": {"h24": volume},
        "priceChange": {"h24": 3.5, "h1": -1.0},
        "txns": {"h24": {"buys": 40, "sells": 35}},
        "pairCreatedAt": 1_700_000_000_000,
        "info": {
            "imageUrl": "https://img.test/a.png",
            "socials": [{"type": "twitter", "url": "https://x.com/a"}],
            "websites": [{"url": "https://a.test"}],
        },
    }
    pair.update(extra)
    return pair


# ---------------------------------------------------------------------------
# Dexscreener
# ---------------------------------------------------------------------------


@pytest.mark.anyio("asyncio")
async def test_dexscreener_keeps_highest_volume_pair_per_mint():
    fetch = FakeFetch(
        {
            "/latest/dex/tokens/": {
                "pairs": [
                    _dex_pair(MINT_A, USD1_MINT, volume=1_000),
                    _dex_pair(MINT_A, USD1_MINT, volume=9_000),
                    _dex_pair(MINT_A, USD1_MINT, volume=99_000, chain="ethereum"),
                    _dex_pair(USD1_MINT, MINT_B, volume=500, price="1.0", native="1000"),
                ]
            }
        }
    )
    fetcher = DexScreenerFetcher(ApiHealthMonitor(), fetch=fetch, batch_delay=0)

    records = await fetcher.fetch_tokens([MINT_A, MINT_B, USD1_MINT])

    assert set(records) == {MINT_A, MINT_B}
    assert records[MINT_A].volume_24h == 9_000
    assert records[MINT_A].price_usd == 0.5
    assert records[MINT_A].buys_24h == 40
    assert [s.kind for s in records[MINT_A].socials] == ["twitter", "website"]
    assert records[MINT_B].symbol == "QUOTE"
    assert records[MINT_B].price_usd == pytest.approx(0.001)
    assert len(fetch.urls) == 1


@pytest.mark.anyio("asyncio")
async def test_dexscreener_batches_and_skips_failed_batch():
    fetch = FakeFetch(
        {
            MINT_A: {"pairs": [_dex_pair(MINT_A, USD1_MINT, volume=10)]},
            MINT_B: MalformedResponse("garbage"),
        }
    )
    health = ApiHealthMonitor()
    fetcher = DexScreenerFetcher(health, fetch=fetch, batch_size=1, batch_delay=0)

    records = await fetcher.fetch_tokens([MINT_A, MINT_B])

    assert list(records) == [MINT_A]
    assert len(fetch.urls) == 2
    assert health.is_healthy(SOURCE_DEXSCREENER)


@pytest.mark.anyio("asyncio")
async def test_dexscreener_rate_limit_marks_source_unhealthy(clock):
    health = ApiHealthMonitor(clock=clock)
    fetch = FakeFetch({"/latest/dex/tokens/": RateLimited("429")})
    fetcher = DexScreenerFetcher(health, fetch=fetch, batch_delay=0)

    with pytest.raises(SourceUnavailable):
        await fetcher.fetch_tokens([MINT_A])
    assert not health.is_healthy(SOURCE_DEXSCREENER)

    with pytest.raises(SourceBackingOff):
        await fetcher.fetch_tokens([MINT_A])
    assert len(fetch.urls) == 1


@pytest.mark.anyio("asyncio")
async def test_dexscreener_every_batch_failing_raises():
    fetch = FakeFetch({"/latest/dex/tokens/": MalformedResponse("garbage")})
    fetcher = DexScreenerFetcher(ApiHealthMonitor(), fetch=fetch, batch_size=1, batch_delay=0)

    with pytest.raises(SourceUnavailable, match="all 2 batches failed"):
        await fetcher.fetch_tokens([MINT_A, MINT_B])
    assert await fetcher.fetch_tokens([]) == {}


@pytest.mark.anyio("asyncio")
async def test_dexscreener_usd1_pair_listing():
    fetch = FakeFetch({"/token-pairs/v1/solana/": [_dex_pair(MINT_A, USD1_MINT, volume=5)]})
    fetcher = DexScreenerFetcher(ApiHealthMonitor(), fetch=fetch)
    records = await fetcher.fetch_usd1_pairs()
    assert list(records) == [MINT_A]


# ---------------------------------------------------------------------------
# GeckoTerminal
# ---------------------------------------------------------------------------


def _gecko_page(*pools):
    data = []
    included = [
        {"id": "solana_usd1", "type": "token", "attributes": {"address": USD1_MINT, "symbol": "USD1"}},
    ]
    for mint, volume, base_is_token in pools:
        token_id = f"solana_{mint}"
        included.append(
            {
                "id": token_id,
                "type": "token",
                "attributes": {"address": mint, "symbol": "GK", "name": "Gecko", "image_url": None},
            }
        )
        base, quote = (token_id, "solana_usd1") if base_is_token else ("solana_usd1", token_id)
        data.append(
            {
                "id": f"solana_pool_{mint}_{volume}",
                "type": "pool",
                "attributes": {
                    "address": f"pool-{mint[:5]}-{volume}",
                    "reserve_in_usd": "25000.5",
                    "base_token_price_usd": "0.02" if base_is_token else "1.0",
                    "quote_token_price_usd": "1.0" if base_is_token else "0.02",
                    "fdv_usd": "200000",
                    "pool_created_at": "2024-06-01T00:00:00Z",
                    "volume_usd": {"h24": str(volume)},
                    "price_change_percentage": {"h1": "0.5", "h24": "-2"},
                    "transactions": {"h24": {"buys": 12, "sells": 8}},
                },
                "relationships": {
                    "base_token": {"data": {"id": base}},
                    "quote_token": {"data": {"id": quote}},
                },
            }
        )
    return {"data": data, "included": included}


@pytest.mark.anyio("asyncio")
async def test_geckoterminal_merges_pages_by_volume():
    pages = {
        "page=1&": _gecko_page((MINT_A, 100, True)),
        "page=2&": _gecko_page((MINT_A, 700, True), (MINT_B, 50, False)),
    }
    fetch = FakeFetch(pages)
    fetcher = GeckoTerminalFetcher(ApiHealthMonitor(), fetch=fetch, max_pages=2)

    records = await fetcher.fetch_pools()

    assert set(records) == {MINT_A, MINT_B}
    assert records[MINT_A].volume_24h == 700
    assert records[MINT_A].price_usd == 0.02
    assert records[MINT_B].price_usd == 0.02
    assert records[MINT_A].liquidity_usd == 25000.5
    assert records[MINT_A].created_at == 1_717_200_000_000


@pytest.mark.anyio("asyncio")
async def test_geckoterminal_keeps_partial_pages_but_raises_when_all_fail():
    partial = GeckoTerminalFetcher(
        ApiHealthMonitor(),
        fetch=FakeFetch({"page=1&": _gecko_page((MINT_A, 100, True)), "page=2&": NetworkTimeout("slow")}),
        max_pages=2,
    )
    assert list(await partial.fetch_pools()) == [MINT_A]

    down = GeckoTerminalFetcher(
        ApiHealthMonitor(), fetch=FakeFetch({"/pools": SourceUnavailable("offline")}), max_pages=2
    )
    with pytest.raises(SourceUnavailable, match="all 2 pages failed"):
        await down.fetch_pools()


@pytest.mark.anyio("asyncio")
async def test_geckoterminal_ohlcv_rejects_unknown_timeframe():
    fetcher = GeckoTerminalFetcher(ApiHealthMonitor(), fetch=FakeFetch({}))
    with pytest.raises(ValueError):
        await fetcher.fetch_ohlcv("pool", timeframe="week")


def test_parse_ohlcv_skips_short_rows():
    payload = {
        "data": {
            "attributes": {
                "ohlcv_list": [
                    [1_700_000_000, 1, 2, 0.5, 1.5, 1234.5],
                    [1_700_086_400, 1, 2],
                ]
            }
        }
    }
    candles = parse_ohlcv(payload)
    assert len(candles) == 1
    assert candles[0].timestamp == 1_700_000_000_000
    assert candles[0].volume == 1234.5


# ---------------------------------------------------------------------------
# Raydium
# ---------------------------------------------------------------------------


def _raydium_pool(pool_id, mint_a, mint_b, *, tvl, price, symbol="RDM", volume=1_000):
    def mint(address, sym):
        return {"address": address, "symbol": sym, "name": sym.title(), "decimals": 6}

    return {
        "id": pool_id,
        "type": "Standard",
        "mintA": mint(mint_a, symbol if mint_a != USD1_MINT else "USD1"),
        "mintB": mint(mint_b, symbol if mint_b != USD1_MINT else "USD1"),
        "tvl": tvl,
        "price": price,
        "day": {"volume": volume, "priceChange": 1.5},
        "openTime": "1700000000",
    }


@pytest.mark.anyio("asyncio")
async def test_raydium_paginates_and_builds_candidates():
    page1 = {
        "success": True,
        "data": {"count": 2, "data": [_raydium_pool("pool1", MINT_A, USD1_MINT, tvl=5_000, price=0.25)]},
    }
    page2 = {
        "success": True,
        "data": {
            "count": 2,
            "data": [_raydium_pool("pool2", USD1_MINT, MINT_B, tvl=9_000, price=50.0)],
        },
    }
    fetch = FakeFetch({"page=1": page1, "page=2": page2})
    fetcher = RaydiumFetcher(ApiHealthMonitor(), fetch=fetch, page_size=1)

    candidates = await fetcher.fetch_pool_candidates()
    market = await fetcher.fetch_market()

    assert [c.pool_address for c in candidates] == ["pool1", "pool2"]
    assert candidates[0].token_mint == MINT_A
    assert candidates[0].open_time == 1_700_000_000_000
    assert market[MINT_A].price_usd == 0.25
    assert market[MINT_B].price_usd == pytest.approx(0.02)
    # The listing is reused within one refresh cycle.
    assert len(fetch.urls) == 2


@pytest.mark.anyio("asyncio")
async def test_raydium_excludes_majors_and_reports_failure():
    page = {
        "success": True,
        "data": {
            "count": 1,
            "data": [_raydium_pool("pool-wsol", MINT_A, USD1_MINT, tvl=1e6, price=150.0, symbol="WSOL")],
        },
    }
    fetcher = RaydiumFetcher(ApiHealthMonitor(), fetch=FakeFetch({"page=1": page}))
    assert await fetcher.fetch_pool_candidates() == []

    failing = RaydiumFetcher(
        ApiHealthMonitor(), fetch=FakeFetch({"page=1": {"success": False, "msg": "down"}})
    )
    with pytest.raises(MalformedResponse):
        await failing.fetch_pool_pages()
    with pytest.raises(SourceUnavailable):
        await failing.fetch_market()


# ---------------------------------------------------------------------------
# Helius
# ---------------------------------------------------------------------------


def test_scan_finds_program_in_inner_instruction():
    txs = parse_transactions(
        [
            {"signature": "sig0", "instructions": [{"programId": "Other", "accounts": []}]},
            {
                "signature": "sig1",
                "instructions": [
                    {
                        "programId": "ComputeBudget111111111111111111111111111111",
                        "innerInstructions": [{"programId": GRADUATE_PROGRAM, "accounts": [MINT_A]}],
                    }
                ],
                "accountData": [{"account": PLATFORM_CONFIG}],
            },
        ]
    )
    scan = scan_transactions(txs)
    assert scan.found
    assert scan.platform_config
    assert scan.signature == "sig1"
    assert scan.inspected == 2


def test_scan_counts_account_data_reference():
    txs = parse_transactions(
        [{"signature": "s", "instructions": [], "accountData": [{"account": LAUNCHLAB_PROGRAM}]}]
    )
    scan = scan_transactions(txs)
    assert scan.found
    assert not scan.platform_config


def test_scan_of_clean_history_is_negative():
    scan = scan_transactions(parse_transactions([{"signature": "s", "instructions": []}]))
    assert not scan.found
    assert scan.inspected == 1


def test_parse_transactions_rejects_non_list():
    with pytest.raises(MalformedResponse):
        parse_transactions({"error": "bad"})


@pytest.mark.anyio("asyncio")
async def test_helius_without_key_is_unavailable():
    fetch = FakeFetch({})
    client = HeliusClient(ApiHealthMonitor(), None, fetch=fetch)
    assert not client.configured
    with pytest.raises(SourceUnavailable):
        await client.scan_address(MINT_A)
    assert fetch.urls == []


@pytest.mark.anyio("asyncio")
async def test_helius_scan_address_requests_window(clock):
    health = ApiHealthMonitor(clock=clock)
    fetch = FakeFetch({"/addresses/": [{"signature": "s", "instructions": [{"programId": LAUNCHLAB_PROGRAM}]}]})
    client = HeliusClient(health, "key", fetch=fetch)

    scan = await client.scan_address(MINT_A, limit=7)

    assert scan.found
    assert "limit=7" in fetch.urls[0]
    assert health.is_healthy(SOURCE_HELIUS)
