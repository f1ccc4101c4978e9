"""
Response classification.

classify() maps a RequestOutcome to exactly one OutcomeCategory using a
fixed precedence:

1. status 0 (no response) or status >= 500  -> SYSTEM_ERROR
2. status 200 or 202                        -> SUCCESS, or SYSTEM_ERROR when
                                               a required body field is missing
3. status 409                               -> BIZ_DUPLICATE
4. status 400                               -> keyword match on the rejection
                                               text for the scenario's domain,
                                               BIZ_UNKNOWN when nothing matches
5. anything else                            -> SYSTEM_ERROR

The function is total and pure: every (status, body) pair yields a category
and nothing is recorded here. Recording is the caller's job.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Sequence, Tuple

from surge.models import Domain, OutcomeCategory, RequestOutcome

SUCCESS_STATUSES = frozenset({200, 202})
DUPLICATE_STATUS = 409
REJECTION_STATUS = 400

BALANCE_KEYWORDS = (
    "insufficient balance",
    "insufficient funds",
    "balance",
    "funds",
    "pay001",
    "잔액",
)
STOCK_KEYWORDS = (
    "insufficient stock",
    "out of stock",
    "out_of_stock",
    "stock",
    "inventory",
    "p002",
    "재고",
)
SOLD_OUT_KEYWORDS = (
    "sold out",
    "sold_out",
    "soldout",
    "exhausted",
    "c001",
    "품절",
    "소진",
)
# Bare shortage words; only the order domain reads them, as a balance problem.
SHORTAGE_KEYWORDS = ("insufficient", "부족")

KeywordTable = Sequence[Tuple[OutcomeCategory, Sequence[str]]]

DOMAIN_KEYWORDS: Dict[Domain, KeywordTable] = {
    Domain.COUPON: (
        (OutcomeCategory.BIZ_SOLD_OUT, SOLD_OUT_KEYWORDS + STOCK_KEYWORDS),
    ),
    Domain.ORDER: (
        (OutcomeCategory.BIZ_INSUFFICIENT_BALANCE, BALANCE_KEYWORDS),
        (OutcomeCategory.BIZ_INSUFFICIENT_STOCK, STOCK_KEYWORDS),
        (OutcomeCategory.BIZ_SOLD_OUT, SOLD_OUT_KEYWORDS),
        (OutcomeCategory.BIZ_INSUFFICIENT_BALANCE, SHORTAGE_KEYWORDS),
    ),
    Domain.GENERIC: (
        (OutcomeCategory.BIZ_INSUFFICIENT_BALANCE, BALANCE_KEYWORDS),
        (OutcomeCategory.BIZ_INSUFFICIENT_STOCK, STOCK_KEYWORDS),
        (OutcomeCategory.BIZ_SOLD_OUT, SOLD_OUT_KEYWORDS),
    ),
}

# Fields of a JSON error body that carry the rejection reason.
REJECTION_FIELDS = ("code", "message", "error", "detail")


def _parse_body(body: str) -> Optional[Any]:
    if not body:
        return None
    try:
        return json.loads(body)
    except (ValueError, RecursionError):
        # Not JSON, or nested deeper than the decoder allows.
        return None


def extract_field(body: str, name: str) -> Optional[str]:
    """
    Read a field from a JSON response body.

    Dotted names walk nested objects ("error.message"). Returns None when
    the body is not JSON or the field is missing; non-string values are
    returned as their JSON text.
    """
    node = _parse_body(body)
    for part in name.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    if node is None:
        return None
    if isinstance(node, str):
        return node
    return json.dumps(node, ensure_ascii=False)


def rejection_text(body: str) -> str:
    """
    Lowercased text the keyword tables are matched against.

    Uses the code/message style fields of a JSON error body when present,
    otherwise the raw body.
    """
    parts = [extract_field(body, name) for name in REJECTION_FIELDS]
    found = [part for part in parts if part]
    if found:
        return " ".join(found).lower()
    return (body or "").lower()


def classify_rejection(body: str, domain: Domain = Domain.GENERIC) -> OutcomeCategory:
    """Category of a 400 response, BIZ_UNKNOWN when no keyword matches."""
    text = rejection_text(body)
    for category, keywords in DOMAIN_KEYWORDS[domain]:
        if any(keyword in text for keyword in keywords):
            return category
    return OutcomeCategory.BIZ_UNKNOWN


def classify(
    outcome: RequestOutcome,
    domain: Domain = Domain.GENERIC,
    *,
    require_field: Optional[str] = None,
) -> OutcomeCategory:
    """
    Assign an OutcomeCategory to a request outcome.

    Args:
        outcome: Result of one request.
        domain: Keyword vocabulary for 400 bodies.
        require_field: JSON field a 2xx body must carry to count as success
            (e.g. "orderId"); a success without it is a SYSTEM_ERROR.

    Returns:
        Exactly one category; the same input always yields the same result.
    """
    status = outcome.status
    if status == 0 or status >= 500:
        return OutcomeCategory.SYSTEM_ERROR
    if status in SUCCESS_STATUSES:
        if require_field and extract_field(outcome.body, require_field) is None:
            return OutcomeCategory.SYSTEM_ERROR
        return OutcomeCategory.SUCCESS
    if status == DUPLICATE_STATUS:
        return OutcomeCategory.BIZ_DUPLICATE
    if status == REJECTION_STATUS:
        return classify_rejection(outcome.body, domain)
    return OutcomeCategory.SYSTEM_ERROR
