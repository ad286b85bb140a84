"""
Activity filtering – the dashboard's filter panel as a pure predicate.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from snoopflow.models import (
    ALL_OPTION_TYPES,
    ALL_SENTIMENTS,
    ALL_TRADE_LOCATIONS,
    OptionsActivity,
    OptionType,
    Sentiment,
    TradeLocation,
)


@dataclass(frozen=True)
class FilterOptions:
    min_volume: int = 100
    min_premium: float = 1000
    max_days_to_expiration: int = 60
    option_types: frozenset[OptionType] = frozenset(ALL_OPTION_TYPES)
    sentiment: frozenset[Sentiment] = frozenset(ALL_SENTIMENTS)
    trade_locations: frozenset[TradeLocation] = frozenset(ALL_TRADE_LOCATIONS)
    block_trades_only: bool = False
    min_open_interest: int = 0
    symbols: frozenset[str] = field(default_factory=frozenset)
    search_symbol: str = ""
    show_favorites_only: bool = False

    def matches(
        self,
        activity: OptionsActivity,
        today: Optional[date] = None,
        favorites: Iterable[str] = (),
    ) -> bool:
        today = today or date.today()
        if self.search_symbol and self.search_symbol.lower() not in activity.symbol.lower():
            return False
        if activity.volume < self.min_volume:
            return False
        if activity.premium < self.min_premium:
            return False
        if activity.type not in self.option_types:
            return False
        if activity.sentiment not in self.sentiment:
            return False
        if activity.trade_location not in self.trade_locations:
            return False
        if self.block_trades_only and not activity.block_trade:
            return False
        if activity.open_interest < self.min_open_interest:
            return False
        if (activity.expiration - today).days > self.max_days_to_expiration:
            return False
        if self.symbols and activity.symbol not in self.symbols:
            return False
        if self.show_favorites_only and activity.symbol not in set(favorites):
            return False
        return True


def apply_filters(
    activities: Iterable[OptionsActivity],
    filters: FilterOptions,
    today: Optional[date] = None,
    favorites: Iterable[str] = (),
) -> list[OptionsActivity]:
    """New list of the activities that pass `filters`, input order preserved."""
    favorites = frozenset(favorites)
    return [a for a in activities if filters.matches(a, today=today, favorites=favorites)]
