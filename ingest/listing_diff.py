"""Symbol-set diffing shared by the push feed and the polling fallback."""
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from config.settings import DEFAULT_STABLECOINS


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class ListingEvent:
    symbol: str
    price: float
    volume: float
    quote_volume: float
    price_change: float
    price_change_percent: float
    detected_at: float
    source: str = 'stream'

    @classmethod
    def from_ticker(cls, symbol: str, ticker: Mapping[str, Any], source: str = 'stream',
                    detected_at: Optional[float] = None) -> 'ListingEvent':
        # 24hr ticker keys first, then mini ticker keys, then a bare listing payload
        price = _to_float(ticker.get('lastPrice', ticker.get('c', ticker.get('price'))))
        volume = _to_float(ticker.get('volume', ticker.get('v')))
        quote_volume = _to_float(ticker.get('quoteVolume', ticker.get('q')))
        if 'priceChange' in ticker or 'priceChangePercent' in ticker:
            change = _to_float(ticker.get('priceChange'))
            change_pct = _to_float(ticker.get('priceChangePercent'))
        else:
            open_price = _to_float(ticker.get('o'))
            change = price - open_price if open_price else 0.0
            change_pct = (change / open_price * 100.0) if open_price else 0.0
        return cls(
            symbol=symbol,
            price=price,
            volume=volume,
            quote_volume=quote_volume,
            price_change=change,
            price_change_percent=change_pct,
            detected_at=detected_at if detected_at is not None else time.time(),
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SymbolFilter:
    """Decides which symbols are tradable candidates for the configured quote asset."""

    def __init__(
        self,
        quote_asset: str = 'USDT',
        exclude_stablecoins: bool = True,
        exclude_tokens: Iterable[str] = (),
        stablecoins: Iterable[str] = DEFAULT_STABLECOINS,
    ):
        self.quote_asset = quote_asset.upper()
        self.exclude_stablecoins = exclude_stablecoins
        self.exclude_tokens = {t.upper() for t in exclude_tokens}
        self.stablecoins = {s.upper() for s in stablecoins}

    @classmethod
    def from_settings(cls, settings) -> 'SymbolFilter':
        return cls(
            quote_asset=settings.trading.quote_asset,
            exclude_stablecoins=settings.filters.exclude_stablecoins,
            exclude_tokens=settings.filters.exclude_tokens,
            stablecoins=settings.filters.stablecoins,
        )

    def base_asset(self, symbol: str) -> str:
        if symbol.endswith(self.quote_asset):
            return symbol[:-len(self.quote_asset)]
        return ''

    def accepts(self, symbol: str, base_asset: Optional[str] = None,
                status: Optional[str] = None) -> bool:
        if not symbol or not symbol.endswith(self.quote_asset):
            return False
        if status is not None and status != 'TRADING':
            return False
        base = (base_asset or self.base_asset(symbol)).upper()
        if not base:
            return False
        if self.exclude_stablecoins and base in self.stablecoins:
            return False
        if base in self.exclude_tokens:
            return False
        return True

    def tradable_symbols(self, exchange_info: Mapping[str, Any]) -> Set[str]:
        """TRADING symbols from an exchangeInfo payload that pass the filter."""
        symbols: Set[str] = set()
        for item in exchange_info.get('symbols') or []:
            symbol = item.get('symbol')
            if item.get('quoteAsset') and item.get('quoteAsset') != self.quote_asset:
                continue
            if self.accepts(symbol, item.get('baseAsset'), item.get('status')):
                symbols.add(symbol)
        return symbols

    def filter_tickers(self, tickers: Mapping[str, Mapping[str, Any]]) -> Dict[str, Mapping[str, Any]]:
        return {symbol: t for symbol, t in tickers.items() if self.accepts(symbol)}


@dataclass
class ListingDiff:
    new: Dict[str, Mapping[str, Any]] = field(default_factory=dict)
    delisted: Set[str] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.new or self.delisted)


def compute_listing_diff(
    known: Set[str],
    snapshot: Mapping[str, Mapping[str, Any]],
    complete: bool = True,
) -> ListingDiff:
    """Compare a snapshot of symbol -> ticker against the known set.

    ``complete`` marks a snapshot that lists every live symbol. Partial
    snapshots, such as a mini ticker batch that only carries symbols which
    changed in the last second, can reveal new symbols but never delistings.
    """
    new = {symbol: ticker for symbol, ticker in snapshot.items() if symbol not in known}
    delisted: Set[str] = set()
    if complete:
        delisted = {symbol for symbol in known if symbol not in snapshot}
    return ListingDiff(new=new, delisted=delisted)
