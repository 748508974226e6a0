"""Linkage triples and the two-decimal weight formatter.

A **linkage triple** relates two vocabulary terms with a non-negative
association weight (a similarity or co-occurrence score).  Triples are
computed upstream and handed to :mod:`linkage.ingestion` as an ordered
sequence; this module owns their in-memory shape and the canonical weight
representation shared by ingestion and normalization.

Records persisted to the store come in two shapes:

- **structured** -- ``{"concept_A": A, "concept_B": B, "weight": w}``, which
  supports per-anchor aggregation and normalization.
- **flat** -- ``{"keywords": "A,B", "weight": w}``, for pairs that never need
  to be queried independently.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Any, Mapping

# ---------------------------------------------------------------------------
# Record field names
# ---------------------------------------------------------------------------

CONCEPT_A = "concept_A"
CONCEPT_B = "concept_B"
KEYWORDS = "keywords"
WEIGHT = "weight"

_TWO_PLACES = Decimal("0.01")


# ---------------------------------------------------------------------------
# Weight formatting
# ---------------------------------------------------------------------------


def format_weight(value: Any) -> float:
    """Round *value* to two decimal places, half away from zero.

    The rounding goes through :class:`~decimal.Decimal` on the shortest
    ``repr`` of the float, so ``3.145`` becomes ``3.15`` regardless of its
    binary approximation, and the result never depends on the locale.
    Large magnitudes are kept at full size.

    NaN, infinities and non-numeric input yield ``0.0``.  Negative zero
    collapses to ``0.0``.
    """
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    if not math.isfinite(number):
        return 0.0

    exact = Decimal(repr(number))
    with localcontext() as ctx:
        # Enough digits for the integer part plus the two decimals.
        ctx.prec = max(ctx.prec, exact.adjusted() + 3)
        rounded = float(exact.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))
    if rounded == 0.0:
        return 0.0
    return rounded


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def structured_record(key_a: str, key_b: str, weight: float) -> dict[str, Any]:
    """Build a structured record; *weight* is stored as given."""
    return {CONCEPT_A: key_a, CONCEPT_B: key_b, WEIGHT: weight}


def flat_record(key_a: str, key_b: str, weight: float) -> dict[str, Any]:
    """Build a flat ``keywords`` record; *weight* is stored as given."""
    return {KEYWORDS: f"{key_a},{key_b}", WEIGHT: weight}


# ---------------------------------------------------------------------------
# LinkageTriple dataclass
# ---------------------------------------------------------------------------


@dataclass
class LinkageTriple:
    """A weighted relationship between term A (the anchor) and term B.

    Parameters
    ----------
    key_a:
        Label of the anchor term.
    key_b:
        Label of the related term.
    weight:
        Association strength.  Not bounded to ``[0, 1]`` until the
        collection is normalized.
    key_a_id, key_b_id:
        Optional integer identifiers of the two terms.  Carried as metadata
        only; persistence never reads them.
    """

    key_a: str
    key_b: str
    weight: float
    key_a_id: int | None = None
    key_b_id: int | None = None

    def __str__(self) -> str:
        return f"{self.key_a},{self.key_b}:{self.weight}"

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LinkageTriple:
        """Create a triple from a mapping.

        Accepts both ``key_a``/``keyA`` spellings so that JSON exported by
        other tools loads unchanged.  An unparsable weight becomes NaN,
        which is written as ``0.0``.

        Raises
        ------
        ValueError
            If either term label is missing or empty.
        """
        key_a = data.get("key_a", data.get("keyA"))
        key_b = data.get("key_b", data.get("keyB"))
        if not key_a or not key_b:
            raise ValueError(f"Triple needs both term labels, got {dict(data)!r}")

        try:
            weight = float(data.get("weight", 0.0))
        except (TypeError, ValueError):
            weight = math.nan

        key_a_id = data.get("key_a_id", data.get("keyAId"))
        key_b_id = data.get("key_b_id", data.get("keyBId"))
        return cls(
            key_a=str(key_a),
            key_b=str(key_b),
            weight=weight,
            key_a_id=int(key_a_id) if key_a_id not in (None, "") else None,
            key_b_id=int(key_b_id) if key_b_id not in (None, "") else None,
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_a": self.key_a,
            "key_b": self.key_b,
            "weight": self.weight,
            "key_a_id": self.key_a_id,
            "key_b_id": self.key_b_id,
        }

    def to_records(self, structured: bool, symmetric: bool = False) -> list[dict[str, Any]]:
        """Return the store records this triple expands to.

        One record in the requested shape, plus its mirror (A and B swapped)
        when both *structured* and *symmetric* are set.  Every record
        carries the formatted weight.
        """
        weight = format_weight(self.weight)
        if not structured:
            return [flat_record(self.key_a, self.key_b, weight)]

        records = [structured_record(self.key_a, self.key_b, weight)]
        if symmetric:
            records.append(structured_record(self.key_b, self.key_a, weight))
        return records
