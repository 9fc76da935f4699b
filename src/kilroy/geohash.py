"""geohash.py

Geohash encoding used as the key of the shared backend store.

A geohash interleaves longitude and latitude bisection bits (longitude
first) and emits one base-32 character per five bits.  Points sharing a
prefix are close to each other, but close points do not necessarily
share a prefix, so a hash lookup is only ever a candidate pre-filter.
"""

from __future__ import annotations

from typing import List, Tuple

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

# Sorts after every BASE32 symbol; upper bound of a prefix range query.
RANGE_SENTINEL = "~"

DEFAULT_PRECISION = 6


def encode(latitude: float, longitude: float, precision: int = DEFAULT_PRECISION) -> str:
    """Encode a position as a geohash of exactly *precision* characters.

    Coordinates are not range-checked here; validate them upstream
    (e.g. via :class:`~kilroy.models.GeoPoint`).

    Raises:
        ValueError: If *precision* is smaller than 1.
    """
    if precision < 1:
        raise ValueError("geohash precision must be >= 1")

    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars = []
    bit = 0
    ch = 0
    even = True

    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2
            if longitude >= mid:
                ch |= 1 << (4 - bit)
                lon_lo = mid
            else:
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if latitude >= mid:
                ch |= 1 << (4 - bit)
                lat_lo = mid
            else:
                lat_hi = mid
        even = not even

        if bit < 4:
            bit += 1
        else:
            chars.append(BASE32[ch])
            bit = 0
            ch = 0

    return "".join(chars)


def neighbors(geohash: str) -> List[str]:
    """Return the lexical neighbours of *geohash*.

    Only the final symbol is stepped one position down and up the base-32
    alphabet (``"9q8yy"`` -> ``["9q8yx", "9q8yz"]``).  These are *not* the
    geographically adjacent cells: a true neighbour under a different
    higher-order prefix is never produced, and the lexical neighbour may
    lie in a non-adjacent cell.  Backend queries rely on exactly this
    set, so it must stay as is.

    Symbols at either end of the alphabet have a single neighbour; an
    empty or non-geohash string has none.
    """
    if not geohash:
        return []
    idx = BASE32.find(geohash[-1])
    if idx < 0:
        return []

    prefix = geohash[:-1]
    out = []
    if idx > 0:
        out.append(prefix + BASE32[idx - 1])
    if idx < len(BASE32) - 1:
        out.append(prefix + BASE32[idx + 1])
    return out


def prefix_range(geohash: str) -> Tuple[str, str]:
    """Return ``(lower_inclusive, upper_exclusive)`` keys matching *geohash* as prefix."""
    return geohash, geohash + RANGE_SENTINEL
