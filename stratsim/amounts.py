"""
Order sizing: turns an AmountRule into concrete dollars and shares.
"""
import logging
import math
from typing import NamedTuple, Optional

from stratsim.strategy import AmountRule

__all__ = ["OrderSize", "resolve_amount", "FALLBACK_DOLLARS"]

log = logging.getLogger(__name__)

FALLBACK_DOLLARS = 100.0
FALLBACK_PERCENTAGE = 5.0


class OrderSize(NamedTuple):
    dollars: float
    shares: float


def _shares_for(dollars: float, price: float) -> float:
    return dollars / price if price > 0 else 0.0


def resolve_amount(
    rule: Optional[AmountRule], portfolio_value: float, current_price: float
) -> OrderSize:
    """
    Resolves an order size at the given price.

    - fixed_amount (or legacy 'fixed', or any unknown type): dollars = value.
    - percentage: dollars = portfolio_value * value / 100.
    - shares: shares = value, dollars = shares * price.

    A missing rule becomes a fixed $100 order; a missing or non-numeric value
    becomes 5 for percentage rules and 100 otherwise. If either side of the
    result is not strictly positive the order is replaced by a fixed $100
    order sized at the current price, so a trigger never produces a no-op
    trade.
    """
    if rule is None:
        log.debug(f"No amount rule; using a fixed ${FALLBACK_DOLLARS:.2f} order")
        return OrderSize(FALLBACK_DOLLARS, _shares_for(FALLBACK_DOLLARS, current_price))

    value = rule.value
    if value is None or isinstance(value, bool) or math.isnan(value):
        value = FALLBACK_PERCENTAGE if rule.type == "percentage" else FALLBACK_DOLLARS

    if rule.type == "percentage":
        dollars = portfolio_value * value / 100
        shares = _shares_for(dollars, current_price)
    elif rule.type == "shares":
        shares = value
        dollars = shares * current_price
    else:
        dollars = value
        shares = _shares_for(dollars, current_price)

    if dollars <= 0 or shares <= 0:
        log.debug(
            f"Amount rule {rule.type} resolved to ${dollars:.4f} / {shares:.4f} shares; "
            f"using a fixed ${FALLBACK_DOLLARS:.2f} order"
        )
        return OrderSize(FALLBACK_DOLLARS, _shares_for(FALLBACK_DOLLARS, current_price))

    return OrderSize(dollars, shares)
