"""Price quoting for text generation jobs.

Price = max(floor, ceil(estimated_tokens / 1000 * rate)). Tokens are
estimated from prompt length since the bill must be known before execution
(the invoice is issued up front).
"""
from __future__ import annotations

import math
from typing import Optional

from paygate.config import PRICING


def estimate_tokens(text: str, chars_per_token: Optional[int] = None) -> int:
    cpt = int(chars_per_token or PRICING["chars_per_token"])
    return max(1, math.ceil(len(text) / cpt))


def quote_price(prompt: str, *, max_tokens: Optional[int] = None, min_price: Optional[int] = None, price_per_1k: Optional[float] = None) -> int:
    """Quote the job price in integer units.

    ``max_tokens`` (requested completion budget) is added to the prompt
    estimate when supplied.
    """
    floor = int(min_price if min_price is not None else PRICING["min_price_units"])
    rate = float(price_per_1k if price_per_1k is not None else PRICING["price_per_1k_tokens"])
    tokens = estimate_tokens(prompt) + max(0, int(max_tokens or 0))
    return max(floor, math.ceil(tokens / 1000 * rate))


__all__ = ["estimate_tokens", "quote_price"]
