"""
Conversion Matching
Decides whether a draft voucher that vanished from Tally was finalized
into another voucher or really deleted.

This is a heuristic, not a guarantee. Tally keeps no link between a
"Pending Sales Bill" and the Sales voucher it later becomes, so a
successor is recognized only by same party, amount within tolerance
and a date on or after the draft's. Exactly one such candidate counts
as a conversion; none or several fall back to "deleted".
"""

from typing import Iterable, Optional

from ..models.results import ConversionMatch
from ..models.voucher import Voucher


def amounts_match(draft_amount: float, candidate_amount: float, tolerance: float) -> bool:
    """Compare absolute amounts with a relative tolerance (0.05 = 5%)"""
    expected = abs(draft_amount)
    actual = abs(candidate_amount)
    if expected == 0:
        return actual == 0
    return abs(actual - expected) <= expected * tolerance


def match_conversion_target(
    draft: Voucher,
    candidates: Iterable[Voucher],
    tolerance: float = 0.05,
    conversion_kinds: Optional[Iterable[str]] = None,
) -> ConversionMatch:
    """Look for the single voucher the draft was converted into

    ``candidates`` are the vouchers still present in Tally. With
    ``conversion_kinds`` empty, any kind other than the draft's own
    qualifies.
    """
    kinds = set(conversion_kinds or [])
    matches = []
    for candidate in candidates:
        if candidate.global_id == draft.global_id:
            continue
        if kinds and candidate.kind not in kinds:
            continue
        if not kinds and candidate.kind == draft.kind:
            continue
        if candidate.counterparty_name != draft.counterparty_name:
            continue
        if draft.date and candidate.date < draft.date:
            continue
        if not amounts_match(draft.amount, candidate.amount, tolerance):
            continue
        matches.append(candidate)

    if len(matches) == 1:
        return ConversionMatch(matched=True, candidate=matches[0], reason="unique match")
    if not matches:
        return ConversionMatch(matched=False, reason="no candidate")
    return ConversionMatch(matched=False, reason=f"{len(matches)} candidates")
