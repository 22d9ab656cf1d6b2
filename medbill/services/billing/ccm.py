"""
Chronic Care Management code determination.

    complex tier, >= 60 min   99487 + one 99489 per additional full 30 min
    >= 20 min                 99490 + one 99439 per additional full 20 min (max 2)
    < 20 min                  nothing billable
"""

import logging
from typing import Optional

from medbill.core.enums import CCMTier, CodeSource, CodeSystem
from medbill.services.billing.records import CandidateCode

logger = logging.getLogger(__name__)

COMPLEX_BASE_CODE = "99487"
COMPLEX_ADDON_CODE = "99489"
STANDARD_BASE_CODE = "99490"
STANDARD_ADDON_CODE = "99439"

COMPLEX_BASE_MINUTES = 60
COMPLEX_ADDON_MINUTES = 30
STANDARD_BASE_MINUTES = 20
STANDARD_ADDON_MINUTES = 20
STANDARD_ADDON_MAX_UNITS = 2

CCM_CONFIDENCE = 90


def determine_ccm_codes(minutes: Optional[int], tier: Optional[CCMTier] = None) -> list[CandidateCode]:
    """CCM lines for the period's care-management minutes; add-ons carry units."""
    if not minutes or minutes < STANDARD_BASE_MINUTES:
        return []

    if tier == CCMTier.COMPLEX and minutes >= COMPLEX_BASE_MINUTES:
        base, addon = COMPLEX_BASE_CODE, COMPLEX_ADDON_CODE
        addon_units = (minutes - COMPLEX_BASE_MINUTES) // COMPLEX_ADDON_MINUTES
        label = "Complex CCM"
    else:
        base, addon = STANDARD_BASE_CODE, STANDARD_ADDON_CODE
        addon_units = min(
            (minutes - STANDARD_BASE_MINUTES) // STANDARD_ADDON_MINUTES,
            STANDARD_ADDON_MAX_UNITS,
        )
        label = "CCM"

    lines = [_line(base, f"{label}, first period", f"{minutes} minutes of care management")]
    if addon_units:
        lines.append(_line(addon, f"{label}, each additional period", f"{addon_units} additional periods", addon_units))
    logger.info(f"CCM {minutes} minutes ({tier.value if tier else 'no tier'}): {[c.code for c in lines]}")
    return lines


def _line(code: str, description: str, rationale: str, units: int = 1) -> CandidateCode:
    return CandidateCode(
        system=CodeSystem.CPT,
        code=code,
        description=description,
        confidence=CCM_CONFIDENCE,
        source=CodeSource.DEFAULT,
        rationale=rationale,
        units=units,
    )
