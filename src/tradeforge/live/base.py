"""Interfaces for the exchange and candle collaborators used by the live engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol

from tradeforge.market import Candle

OrderSide = Literal["BUY", "SELL"]


@dataclass(slots=True)
class OrderResult:
    order_id: str
    status: str
    symbol: str
    side: OrderSide
    quantity: float
    avg_price: float
    raw: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "avg_price": self.avg_price,
        }


class ExchangeClient(Protocol):
    """Order placement and account queries."""

    async def get_balance(self) -> float:
        ...

    async def place_market_order(self, symbol: str, side: OrderSide, quantity: float, leverage: float) -> OrderResult:
        ...

    async def place_protective_orders(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        stop_loss: float,
        take_profit: float,
    ) -> None:
        ...

    async def close_position(self, symbol: str, side: OrderSide, quantity: float) -> OrderResult:
        ...


class CandleSource(Protocol):
    """Async candle fetcher; returns closed candles oldest first."""

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        ...
