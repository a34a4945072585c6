"""Constant-product pricing helpers for the confidential pool.

Reserves are encrypted on chain, so quotes are computed client-side from
plaintext reserves the caller already decrypted. All arithmetic is integer
arithmetic on base units.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000
DEFAULT_DECIMALS = 9


class QuoteError(RuntimeError):
    """Raised when a quote cannot be produced from the given reserves."""


@dataclass(frozen=True)
class SwapQuote:
    """Container for a single exact-in quote."""

    amount_in: int
    fee_amount: int
    net_input: int
    amount_out: int
    reserve_in: int
    reserve_out: int
    fee_bps: int

    @property
    def price_impact_bps(self) -> int:
        """Deviation of the execution price from the spot price, in basis points."""

        if self.net_input == 0 or self.reserve_in == 0:
            return 0
        spot_out = self.net_input * self.reserve_out // self.reserve_in
        if spot_out == 0:
            return 0
        return (spot_out - self.amount_out) * BPS_DENOMINATOR // spot_out

    def min_amount_out(self, slippage_bps: int) -> int:
        if not 0 <= slippage_bps < BPS_DENOMINATOR:
            raise QuoteError(f"slippage_bps must be within [0, {BPS_DENOMINATOR}); got {slippage_bps}")
        return self.amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def calculate_fee(amount_in: int, fee_bps: int) -> int:
    """Return the floor'd fee in base units for ``amount_in``."""

    return amount_in * fee_bps // BPS_DENOMINATOR


def quote_exact_in(amount_in: int, reserve_in: int, reserve_out: int, fee_bps: int) -> SwapQuote:
    """Quote a swap of exactly ``amount_in`` against ``reserve_in``/``reserve_out``.

    ``out = reserve_out * net / (reserve_in + net)`` with the fee taken from
    the input first.
    """

    if amount_in <= 0:
        raise QuoteError(f"amount_in must be positive; got {amount_in}")
    if reserve_in <= 0 or reserve_out <= 0:
        raise QuoteError(f"Pool reserves must be positive; got {reserve_in}/{reserve_out}")
    if not 0 <= fee_bps < BPS_DENOMINATOR:
        raise QuoteError(f"fee_bps must be within [0, {BPS_DENOMINATOR}); got {fee_bps}")

    fee_amount = calculate_fee(amount_in, fee_bps)
    net_input = amount_in - fee_amount
    amount_out = reserve_out * net_input // (reserve_in + net_input)
    quote = SwapQuote(
        amount_in=amount_in,
        fee_amount=fee_amount,
        net_input=net_input,
        amount_out=amount_out,
        reserve_in=reserve_in,
        reserve_out=reserve_out,
        fee_bps=fee_bps,
    )
    logger.debug("Quote: %s", quote)
    return quote


def to_base_units(amount: str | int | float | Decimal, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a UI amount to integer base units, rejecting sub-unit precision."""

    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value():
        raise QuoteError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


def format_token_amount(base_units: int | str, decimals: int = DEFAULT_DECIMALS) -> str:
    """Render ``base_units`` (e.g. a decrypted plaintext) as a decimal string.

    Strings that are not integers, such as the ``DECRYPT_FAILED`` sentinel,
    are returned unchanged.
    """

    if isinstance(base_units, str):
        text = base_units.strip()
        if not (text[1:] if text.startswith("-") else text).isdigit():
            return base_units
        base_units = int(text)
    sign = "-" if base_units < 0 else ""
    whole, frac = divmod(abs(base_units), 10**decimals)
    if frac == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{str(frac).zfill(decimals).rstrip('0')}"
