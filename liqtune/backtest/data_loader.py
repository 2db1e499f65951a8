"""
Historical data providers for the optimizer.

- Liquidation history comes from a local store (CSV export or memory)
- 1m candles and leverage brackets can come from the exchange REST API
- Everything for a symbol is fetched once, before its search starts

Price and bracket failures degrade (liquidation prices stand in for candles,
a conservative single bracket stands in for tiers); missing liquidation
history makes the symbol unavailable.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import httpx
import pandas as pd

from liqtune.config.settings import settings
from liqtune.core.enums import LiquidationSide
from liqtune.core.exceptions import DataUnavailableError, ExternalServiceError
from liqtune.core.models import LeverageBracket, LiquidationEvent, PriceBar, SymbolDataset

logger = logging.getLogger(__name__)

MAX_KLINE_LIMIT = 1500
DEFAULT_BRACKET_LEVERAGE = 10.0
DEFAULT_INTERVAL = "1m"

_EVENT_ALIASES = {
    "event_time": "timestamp",
    "time": "timestamp",
    "volume_usdt": "volume",
    "qty_usdt": "volume",
}


class HistoricalDataProvider(Protocol):
    """Source of everything one symbol's search needs."""

    async def get_liquidation_events(self, symbol: str) -> Sequence[LiquidationEvent]:
        ...

    async def get_price_bars(
        self, symbol: str, interval: str = DEFAULT_INTERVAL, count: Optional[int] = None
    ) -> Sequence[PriceBar]:
        """Most recent `count` candles of `interval`; the provider's full history when count is None."""
        ...

    async def get_leverage_brackets(self, symbol: str) -> Optional[Sequence[LeverageBracket]]:
        ...


def bracket_from_dict(raw: Mapping) -> LeverageBracket:
    """Parse an exchange bracket entry (notionalFloor / notionalCap / initialLeverage)."""
    floor = raw.get("notionalFloor", raw.get("notional_floor")) or 0.0
    cap = raw.get("notionalCap", raw.get("notional_cap")) or math.inf
    leverage = raw.get("initialLeverage", raw.get("initial_leverage")) or DEFAULT_BRACKET_LEVERAGE
    return LeverageBracket(notional_floor=float(floor), notional_cap=float(cap), initial_leverage=float(leverage))


def brackets_by_symbol(payload: Union[list, dict]) -> Dict[str, List[LeverageBracket]]:
    """Accept either the exchange list shape or a {symbol: [brackets]} mapping."""
    result: Dict[str, List[LeverageBracket]] = {}
    if isinstance(payload, dict):
        items = [{"symbol": k, "brackets": v} for k, v in payload.items()]
    else:
        items = payload or []
    for item in items:
        symbol = item.get("symbol")
        raw = item.get("brackets")
        if symbol and isinstance(raw, list):
            result[symbol] = [bracket_from_dict(b) for b in raw]
    return result


def events_from_frame(df: pd.DataFrame, symbol: Optional[str] = None) -> List[LiquidationEvent]:
    if df is None or df.empty:
        return []
    df = df.rename(columns={k: v for k, v in _EVENT_ALIASES.items() if k in df.columns})
    if symbol is not None:
        df = df[df["symbol"] == symbol]
    df = df.dropna(subset=["timestamp", "volume", "price"])
    return [
        LiquidationEvent(
            symbol=str(row.symbol),
            side=LiquidationSide(str(row.side).upper()),
            timestamp=int(row.timestamp),
            volume=float(row.volume),
            price=float(row.price),
        )
        for row in df.itertuples(index=False)
    ]


def bars_from_frame(df: pd.DataFrame) -> List[PriceBar]:
    if df is None or df.empty:
        return []
    df = df.dropna(subset=["timestamp", "open", "high", "low", "close"])
    has_volume = "volume" in df.columns
    return [
        PriceBar(
            timestamp=int(row.timestamp),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume) if has_volume else 0.0,
        )
        for row in df.itertuples(index=False)
    ]


def _latest(bars: Sequence[PriceBar], count: Optional[int]) -> List[PriceBar]:
    if count is None:
        return list(bars)
    if count <= 0:
        return []
    return list(bars[-count:])


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class InMemoryDataProvider:
    """Provider over pre-built objects. Used by tests and by callers that already hold data."""

    def __init__(
        self,
        events: Iterable[LiquidationEvent] = (),
        bars: Optional[Mapping[str, Sequence[PriceBar]]] = None,
        brackets: Optional[Mapping[str, Sequence[LeverageBracket]]] = None,
    ):
        self._events: Dict[str, List[LiquidationEvent]] = {}
        for event in events:
            self._events.setdefault(event.symbol, []).append(event)
        self._bars = {k: list(v) for k, v in (bars or {}).items()}
        self._brackets = {k: list(v) for k, v in (brackets or {}).items()}

    @classmethod
    def from_datasets(
        cls,
        datasets: Iterable[SymbolDataset],
        brackets: Optional[Mapping[str, Sequence[LeverageBracket]]] = None,
    ) -> "InMemoryDataProvider":
        datasets = list(datasets)
        return cls(
            events=[e for ds in datasets for e in ds.events],
            bars={ds.symbol: ds.bars for ds in datasets if ds.bars},
            brackets=brackets,
        )

    @property
    def symbols(self) -> List[str]:
        return sorted(self._events)

    async def get_liquidation_events(self, symbol: str) -> Sequence[LiquidationEvent]:
        return list(self._events.get(symbol, []))

    async def get_price_bars(
        self, symbol: str, interval: str = DEFAULT_INTERVAL, count: Optional[int] = None
    ) -> Sequence[PriceBar]:
        # Bars are held at whatever resolution they were given
        return _latest(self._bars.get(symbol, []), count)

    async def get_leverage_brackets(self, symbol: str) -> Optional[Sequence[LeverageBracket]]:
        return self._brackets.get(symbol)


class CsvDataProvider:
    """
    Provider over exported files:

        <data_dir>/liquidations.csv     symbol, side, event_time|timestamp, volume_usdt|volume, price
        <data_dir>/candles/<SYMBOL>.csv timestamp, open, high, low, close[, volume]
        <data_dir>/candles/<SYMBOL>_<interval>.csv  same columns, for intervals other than 1m
        <data_dir>/brackets.json        exchange bracket payload or {symbol: [...]}
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self.data_dir = Path(data_dir or settings.data_dir)
        self._liquidations: Optional[pd.DataFrame] = None
        self._brackets: Optional[Dict[str, List[LeverageBracket]]] = None

    @property
    def liquidations_path(self) -> Path:
        return self.data_dir / "liquidations.csv"

    def candles_path(self, symbol: str, interval: str = DEFAULT_INTERVAL) -> Path:
        name = symbol if interval == DEFAULT_INTERVAL else f"{symbol}_{interval}"
        return self.data_dir / "candles" / f"{name}.csv"

    @property
    def brackets_path(self) -> Path:
        return self.data_dir / "brackets.json"

    def _load_liquidations(self) -> pd.DataFrame:
        if self._liquidations is None:
            if not self.liquidations_path.exists():
                logger.warning(f"No liquidation history at {self.liquidations_path}")
                self._liquidations = pd.DataFrame(columns=["symbol", "side", "timestamp", "volume", "price"])
            else:
                self._liquidations = pd.read_csv(self.liquidations_path)
        return self._liquidations

    async def get_liquidation_events(self, symbol: str) -> Sequence[LiquidationEvent]:
        return events_from_frame(self._load_liquidations(), symbol)

    async def get_price_bars(
        self, symbol: str, interval: str = DEFAULT_INTERVAL, count: Optional[int] = None
    ) -> Sequence[PriceBar]:
        path = self.candles_path(symbol, interval)
        if not path.exists():
            return []
        try:
            bars = bars_from_frame(pd.read_csv(path))
        except (ValueError, KeyError) as e:
            raise ExternalServiceError(f"Unreadable candle file {path}: {e}") from e
        bars.sort(key=lambda b: b.timestamp)
        return _latest(bars, count)

    async def get_leverage_brackets(self, symbol: str) -> Optional[Sequence[LeverageBracket]]:
        if self._brackets is None:
            if not self.brackets_path.exists():
                self._brackets = {}
            else:
                try:
                    self._brackets = brackets_by_symbol(json.loads(self.brackets_path.read_text(encoding="utf-8")))
                except (ValueError, AttributeError) as e:
                    raise ExternalServiceError(f"Unreadable bracket file {self.brackets_path}: {e}") from e
        return self._brackets.get(symbol)


class ExchangeDataProvider:
    """
    Candles and leverage brackets from the exchange REST API; liquidations
    from a local provider (the exchange does not serve liquidation history).

    Candles are paged backwards in chunks of 1500 until `count` bars
    (default `candle_history`) are collected. Brackets need a signed request and are fetched
    once for all symbols.
    """

    def __init__(
        self,
        liquidations: HistoricalDataProvider,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        candle_history: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.liquidations = liquidations
        self.base_url = (base_url or settings.exchange_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.exchange_api_key
        self.api_secret = api_secret if api_secret is not None else settings.exchange_api_secret
        self.candle_history = candle_history or settings.candle_history
        self.timeout = timeout or settings.exchange_timeout_sec
        self.max_retries = max(1, max_retries)
        self.transport = transport
        self._bars: Dict[Tuple[str, str, int], List[PriceBar]] = {}
        self._brackets: Optional[Dict[str, List[LeverageBracket]]] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _signed(self, params: Dict[str, Union[str, int]]) -> Dict[str, Union[str, int]]:
        params = {**params, "timestamp": int(time.time() * 1000)}
        query = "&".join(f"{k}={v}" for k, v in params.items())
        signature = hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()
        return {**params, "signature": signature}

    async def _get_json(self, client: httpx.AsyncClient, path: str, params: dict, headers: Optional[dict] = None):
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.get(path, params=params, headers=headers)
                if resp.status_code == 429:
                    last_error = httpx.HTTPStatusError(
                        "rate limited (HTTP 429)", request=resp.request, response=resp
                    )
                    logger.info(f"Exchange rate limit hit on {path} (attempt {attempt}/{self.max_retries})")
                    if attempt < self.max_retries:
                        await asyncio.sleep(attempt)
                    continue
                resp.raise_for_status()
                return resp.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Exchange request {path} failed (attempt {attempt}/{self.max_retries}): {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(0.5 * attempt)
        raise ExternalServiceError(f"{path} failed after {self.max_retries} attempts: {last_error}")

    async def get_liquidation_events(self, symbol: str) -> Sequence[LiquidationEvent]:
        return await self.liquidations.get_liquidation_events(symbol)

    async def get_price_bars(
        self, symbol: str, interval: str = DEFAULT_INTERVAL, count: Optional[int] = None
    ) -> Sequence[PriceBar]:
        wanted = self.candle_history if count is None else max(0, count)
        key = (symbol, interval, wanted)
        if key in self._bars:
            return self._bars[key]

        collected: List[PriceBar] = []
        end_time: Optional[int] = None
        async with self._client() as client:
            while len(collected) < wanted:
                limit = min(wanted - len(collected), MAX_KLINE_LIMIT)
                params = {"symbol": symbol, "interval": interval, "limit": limit}
                if end_time is not None:
                    params["endTime"] = end_time
                klines = await self._get_json(client, "/fapi/v1/klines", params)
                if not isinstance(klines, list) or not klines:
                    break
                chunk = [
                    PriceBar(
                        timestamp=int(k[0]),
                        open=float(k[1]),
                        high=float(k[2]),
                        low=float(k[3]),
                        close=float(k[4]),
                        volume=float(k[5]),
                    )
                    for k in klines
                ]
                # Older pages go in front so the series stays chronological
                collected = chunk + collected
                end_time = chunk[0].timestamp - 1
                if len(klines) < limit:
                    break

        bars = _latest(collected, wanted)
        self._bars[key] = bars
        logger.info(f"{symbol}: loaded {len(bars)} {interval} candles")
        return bars

    async def get_leverage_brackets(self, symbol: str) -> Optional[Sequence[LeverageBracket]]:
        if self._brackets is None:
            if not (self.api_key and self.api_secret):
                logger.warning("No exchange credentials, leverage tiers unavailable")
                self._brackets = {}
            else:
                async with self._client() as client:
                    payload = await self._get_json(
                        client,
                        "/fapi/v1/leverageBracket",
                        self._signed({}),
                        headers={"X-MBX-APIKEY": self.api_key},
                    )
                self._brackets = brackets_by_symbol(payload)
        return self._brackets.get(symbol)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


@dataclass
class LoadedSymbol:
    dataset: SymbolDataset
    brackets: Optional[List[LeverageBracket]] = None
    warnings: List[str] = field(default_factory=list)


async def load_symbol_dataset(provider: HistoricalDataProvider, symbol: str) -> LoadedSymbol:
    """Fetch one symbol's history once.

    Raises DataUnavailableError when there is no liquidation history; candle
    and bracket failures are logged and recorded as warnings instead.
    """
    try:
        events = await provider.get_liquidation_events(symbol)
    except ExternalServiceError as e:
        raise DataUnavailableError(f"{symbol}: liquidation history unavailable: {e}") from e

    events = [e for e in events if e.symbol == symbol]
    if not events:
        raise DataUnavailableError(f"{symbol}: no liquidation history")

    warnings: List[str] = []
    try:
        bars = list(await provider.get_price_bars(symbol))
    except ExternalServiceError as e:
        logger.warning(f"{symbol}: price history unavailable, falling back to liquidation prices: {e}")
        warnings.append(f"prices: {e}")
        bars = []
    if not bars:
        logger.warning(f"{symbol}: no candles, simulating on liquidation prices")

    try:
        raw_brackets = await provider.get_leverage_brackets(symbol)
    except ExternalServiceError as e:
        logger.warning(f"{symbol}: leverage brackets unavailable, using conservative defaults: {e}")
        warnings.append(f"brackets: {e}")
        raw_brackets = None

    dataset = SymbolDataset(symbol=symbol, events=tuple(events), bars=tuple(bars))
    return LoadedSymbol(
        dataset=dataset,
        brackets=list(raw_brackets) if raw_brackets else None,
        warnings=warnings,
    )
