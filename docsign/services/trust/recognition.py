from __future__ import annotations

from dataclasses import dataclass, field


# EU member states plus the EEA states that apply the eIDAS regulation.
EIDAS_TERRITORIES = frozenset(
    {
        "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "EL", "ES", "FI", "FR", "HR", "HU",
        "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PL", "PT", "RO", "SE", "SI", "SK",
        "IS", "LI", "NO", "EU",
    }
)
# ISO 3166 code for Greece maps onto the EU "EL" code used in trusted lists.
_ALIASES = {"GR": "EL", "UK": "GB"}

RECOGNITION_LEVELS = ("basic", "advanced", "qualified")


@dataclass(frozen=True)
class Recognition:
    recognized: bool
    basis: str
    limitations: list[str] = field(default_factory=list)


def _normalize(territory: str | None) -> str:
    code = (territory or "").strip().upper()
    return _ALIASES.get(code, code)


def recognize_cross_border(issuing_territory: str | None, consuming_territory: str | None, level: str) -> Recognition:
    issuing = _normalize(issuing_territory)
    consuming = _normalize(consuming_territory)
    if level not in RECOGNITION_LEVELS:
        return Recognition(False, "unknown_level", [f"unsupported_level:{level}"])
    if not issuing:
        return Recognition(False, "unknown_territory", ["issuing_territory_unknown"])
    if issuing == consuming:
        return Recognition(True, "domestic")
    if issuing in EIDAS_TERRITORIES and consuming in EIDAS_TERRITORIES:
        # Only qualified signatures carry automatic equivalence across member states.
        limitations: list[str] = []
        if level == "advanced":
            limitations.append("recognized_formats_only")
        elif level == "basic":
            limitations.append("admissibility_only")
        return Recognition(True, "eidas_regulation", limitations)
    return Recognition(False, "no_mutual_recognition", ["requires_international_agreement"])
