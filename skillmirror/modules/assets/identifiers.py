"""
Asset identifier checks.
"""

from __future__ import annotations

import re
from typing import Optional

# Base58 alphabet (no 0, O, I, l); ledger addresses are 32 bytes -> 32-44 chars
_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

MOCK_ID_PREFIX = "cnft-"


def is_plausible_asset_id(value: Optional[str]) -> bool:
    """
    True if ``value`` looks like a real on-chain asset address.

    Rejects placeholders handed out by development mints (``cnft-...``).

    >>> is_plausible_asset_id("cnft-1234")
    False
    """
    if not value or not isinstance(value, str):
        return False
    if value.startswith(MOCK_ID_PREFIX):
        return False
    return bool(_BASE58_ADDRESS.match(value))
