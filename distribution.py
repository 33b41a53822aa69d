"""
distribution.py - integer proportional arithmetic

Every stake or score amount that has to be divided by weight goes through
these helpers so that the result is deterministic and free of float rounding.
Python integers do not overflow, so `amount * weight` is always exact.
"""

from typing import List, Sequence


def proportional(amount: int, numerator: int, denominator: int) -> int:
    """Floor of amount * numerator / denominator."""
    if denominator == 0:
        raise ValueError("proportional() called with a zero denominator")
    if amount < 0 or numerator < 0 or denominator < 0:
        raise ValueError(f"proportional() expects non-negative values, got ({amount}, {numerator}, {denominator})")
    return amount * numerator // denominator


def exact_proportional_split(amount: int, weights: Sequence[int]) -> List[int]:
    """
    Split `amount` across `weights` so that the parts sum to `amount` exactly.

    Each part is the floor of its proportional share of what is still left,
    so rounding remainders are pushed towards the end of the list:

        exact_proportional_split(100, [1, 1, 1]) == [33, 33, 34]
        exact_proportional_split(1, [100, 100, 100]) == [0, 0, 1]
    """
    if amount < 0:
        raise ValueError(f"Cannot split a negative amount: {amount}")
    if any(w < 0 for w in weights):
        raise ValueError("Weights must not be negative")

    remaining_weight = sum(weights)
    if remaining_weight == 0:
        raise ValueError("Sum of weights is 0!")

    remaining_amount = amount
    parts = []
    for weight in weights:
        # trailing zero weights would otherwise divide by an exhausted remaining_weight
        part = remaining_amount * weight // remaining_weight if weight else 0
        remaining_amount -= part
        remaining_weight -= weight
        parts.append(part)

    return parts
