"""Human readable names for App Store territory codes."""

from __future__ import annotations

import logging
from functools import lru_cache

import pycountry

logger = logging.getLogger(__name__)

# Storefront codes that have no ISO 3166 counterpart.
_VENDOR_TERRITORY_NAMES = {
    "XKS": "Kosovo",
}


@lru_cache(maxsize=512)
def territory_name(code: str) -> str:
    """Return the English name for a territory code, or the code itself.

    App Store Connect identifies storefronts by ISO 3166 alpha-3 codes for the
    most part, but alpha-2 codes appear in user input as well.
    """
    normalized = (code or "").strip().upper()
    if not normalized:
        return code
    if normalized in _VENDOR_TERRITORY_NAMES:
        return _VENDOR_TERRITORY_NAMES[normalized]

    if len(normalized) == 3:
        country = pycountry.countries.get(alpha_3=normalized)
    elif len(normalized) == 2:
        country = pycountry.countries.get(alpha_2=normalized)
    else:
        country = None

    if country is None:
        logger.debug("No display name known for territory %s", normalized)
        return normalized
    return getattr(country, "common_name", None) or country.name
