"""
Compliance gate for regulated listing categories.

Pure decision logic only: no IO, no clock. Address lookups that need the
payment provider happen in the application layer and feed their result
into ``resolve_buyer_state``.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional, Union


class ComplianceDecision(str, Enum):
    PASS = "pass"
    BLOCK = "block"
    DEFER = "defer"


class ListingCategory(str, Enum):
    WHITETAIL_BREEDER = "whitetail_breeder"
    WILDLIFE_EXOTICS = "wildlife_exotics"
    CATTLE_LIVESTOCK = "cattle_livestock"
    FARM_ANIMALS = "farm_animals"
    HORSE_EQUESTRIAN = "horse_equestrian"
    SPORTING_WORKING_DOGS = "sporting_working_dogs"
    HUNTING_OUTFITTER_ASSETS = "hunting_outfitter_assets"
    RANCH_EQUIPMENT = "ranch_equipment"
    RANCH_VEHICLES = "ranch_vehicles"


# Animal categories may only be sold to buyers in the allowed region.
RESTRICTED_CATEGORIES = frozenset({
    ListingCategory.WHITETAIL_BREEDER,
    ListingCategory.WILDLIFE_EXOTICS,
    ListingCategory.CATTLE_LIVESTOCK,
    ListingCategory.FARM_ANIMALS,
    ListingCategory.HORSE_EQUESTRIAN,
    ListingCategory.SPORTING_WORKING_DOGS,
})

# Categories whose transfer needs a state permit after the sale.
TRANSFER_PERMIT_CATEGORIES = frozenset({ListingCategory.WHITETAIL_BREEDER})

DEFAULT_ALLOWED_STATE = "TX"


def normalize_category(raw: Optional[str]) -> Optional[ListingCategory]:
    if not raw:
        return None
    try:
        return ListingCategory(raw.strip().lower())
    except ValueError:
        return None


def normalize_state(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    value = str(raw).strip().upper()
    return value or None


def resolve_buyer_state(*candidates: Optional[str]) -> Optional[str]:
    """Return the first usable state code, in the caller's priority order.

    Callers pass: checkout billing, checkout shipping, payment-intent
    shipping, payment-intent billing.
    """
    for candidate in candidates:
        state = normalize_state(candidate)
        if state:
            return state
    return None


def is_restricted(category: Union[ListingCategory, str, None]) -> bool:
    normalized = category if isinstance(category, ListingCategory) else normalize_category(category)
    # Unknown categories are treated as restricted so the gate fails closed.
    return normalized is None or normalized in RESTRICTED_CATEGORIES


def requires_transfer_permit(category: Union[ListingCategory, str, None]) -> bool:
    normalized = category if isinstance(category, ListingCategory) else normalize_category(category)
    return normalized in TRANSFER_PERMIT_CATEGORIES


def evaluate(
    listing_category: Union[ListingCategory, str, None],
    buyer_state: Optional[str],
    is_async_payment_rail: bool,
    *,
    allowed_state: str = DEFAULT_ALLOWED_STATE,
) -> ComplianceDecision:
    """Decide whether a sale may complete.

    Unrestricted categories always pass. Restricted categories on a rail
    whose funds are not yet confirmed are deferred: refunding an
    unsettled charge is not possible, so the check runs again when the
    funds arrive. Otherwise the buyer must resolve to ``allowed_state``;
    an unresolved address blocks.
    """
    if not is_restricted(listing_category):
        return ComplianceDecision.PASS
    if is_async_payment_rail:
        return ComplianceDecision.DEFER
    state = normalize_state(buyer_state)
    if state is not None and state == normalize_state(allowed_state):
        return ComplianceDecision.PASS
    return ComplianceDecision.BLOCK
