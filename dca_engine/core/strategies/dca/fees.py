"""
Fee and swap-size arithmetic.

All amounts are integer base units. Division rounds down, so the fee and the
net amount always add back up to the gross amount exactly.
"""

from typing import Optional, Tuple

BPS_DENOMINATOR = 10_000


def calculate_fee(amount: int, fee_bps: int) -> int:
    if amount < 0:
        raise ValueError("Amount must be non-negative")
    return amount * fee_bps // BPS_DENOMINATOR


def calculate_amount_after_fee(amount: int, fee_bps: int) -> int:
    return amount - calculate_fee(amount, fee_bps)


def calculate_swap_amount(balance: int, percentage_bps: int, cap: Optional[int] = None) -> int:
    """Share of ``balance`` at basis-point precision, optionally capped."""
    if balance < 0:
        raise ValueError("Balance must be non-negative")
    amount = balance * percentage_bps // BPS_DENOMINATOR
    if cap is not None and amount > cap:
        amount = cap
    return amount


def split_swap(
    balance: int,
    percentage_bps: int,
    fee_bps: int,
    cap: Optional[int] = None,
) -> Tuple[int, int, int]:
    """Return (swap_amount, fee_amount, net_amount)."""
    swap_amount = calculate_swap_amount(balance, percentage_bps, cap)
    return swap_amount, calculate_fee(swap_amount, fee_bps), calculate_amount_after_fee(swap_amount, fee_bps)


def fee_in_output_asset(fee_amount: int, net_amount: int, min_amount_out: int) -> int:
    """
    Convert an input-denominated fee into the swap's output asset.

    Uses the guaranteed minimum output rate, so the converted fee never
    exceeds what the swap is certain to have produced.
    """
    if net_amount <= 0:
        return 0
    return fee_amount * min_amount_out // net_amount
