"""Pure domain values: currency registry, money, exchange rates and clocks."""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from billing_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from billing_kernel.domain.values import Currency, ExchangeRate, Money

__all__ = [
    "Clock",
    "Currency",
    "CurrencyInfo",
    "CurrencyRegistry",
    "DeterministicClock",
    "ExchangeRate",
    "Money",
    "SystemClock",
]
