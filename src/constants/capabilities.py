#!/usr/bin/env python3
"""
Calculation system capability catalog.
Single source of truth for which artifact types each ayanamsa system supports.

The expected catalog of a system is what a complete profile holds for one
client: divisional charts, static special charts, period systems and
presence analyses (yogas, doshas). Time-varying outputs (transits,
muhurat, dated reports) and outputs needing extra input (numerology,
horary, remedies, panchanga) never count as missing.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Ordered list of systems processed by a full profile run
PROFILE_SYSTEMS = ("lahiri", "raman", "kp")

# Prefixes of analysis artifact types
YOGA_PREFIX = "yoga:"
DOSHA_PREFIX = "dosha:"
REMEDY_PREFIX = "remedy:"
PANCHANGA_PREFIX = "panchanga:"
DASHA_PREFIX = "dasha_"

VIMSHOTTARI_TYPE = "dasha_vimshottari"


@dataclass(frozen=True)
class SystemCapabilities:
    """Artifact families supported by one calculation system"""

    charts: tuple[str, ...]
    special_charts: tuple[str, ...] = ()
    dashas: tuple[str, ...] = ()
    yogas: tuple[str, ...] = ()
    doshas: tuple[str, ...] = ()
    remedies: tuple[str, ...] = ()
    panchanga: tuple[str, ...] = ()
    features: tuple[str, ...] = ()
    has_divisional: bool = False
    has_ashtakavarga: bool = False
    has_numerology: bool = False
    has_horary: bool = False
    excluded: frozenset[str] = field(default_factory=frozenset)


_VARGAS = (
    "D1", "D2", "D3", "D4", "D7", "D9", "D10", "D12",
    "D16", "D20", "D24", "D27", "D30", "D40", "D45", "D60",
)

SYSTEM_CAPABILITIES: dict[str, SystemCapabilities] = {
    "lahiri": SystemCapabilities(
        charts=_VARGAS + ("D6", "D150"),
        special_charts=(
            "moon", "sun", "sudarshan", "transit", "mandi", "gulika",
            "ashtakavarga_sarva", "ashtakavarga_bhinna", "ashtakavarga_shodasha",
            "arudha_lagna", "bhava_lagna", "hora_lagna",
            "sripathi_bhava", "kp_bhava", "equal_bhava",
            "karkamsha_d1", "karkamsha_d9",
            "numerology_chaldean", "numerology_loshu", "person_numerology",
            "dasha_summary",
        ),
        dashas=(
            "vimshottari", "chara", "tribhagi", "tribhagi_40", "shodashottari",
            "dwadashottari", "panchottari", "chaturshitisama", "satabdika",
            "dwisaptati", "shastihayani", "shattrimshatsama",
            "dasha_3months", "dasha_6months",
            "dasha_report_1year", "dasha_report_2years", "dasha_report_3years",
        ),
        yogas=(
            "gaja_kesari", "guru_mangal", "budha_aditya", "chandra_mangal",
            "raj_yoga", "pancha_mahapurusha", "daridra", "dhan", "malefic",
            "special", "spiritual", "shubh", "viparitha_raja", "kalpadruma", "rare",
        ),
        doshas=("kala_sarpa", "angarak", "guru_chandal", "shrapit", "sade_sati", "pitra"),
        remedies=("yantra", "mantra", "general", "gemstone", "lal_kitab"),
        panchanga=("panchanga", "choghadiya", "hora", "lagna_times", "muhurat"),
        features=("natal", "transit", "dasha", "ashtakavarga", "numerology"),
        has_divisional=True,
        has_ashtakavarga=True,
        has_numerology=True,
    ),
    "raman": SystemCapabilities(
        charts=_VARGAS,
        special_charts=(
            "moon", "sun", "sripathi_bhava", "sudarshan", "transit",
            "ashtakavarga_sarva", "ashtakavarga_bhinna", "ashtakavarga_shodasha",
            "arudha_lagna", "kp_bhava", "equal_bhava",
            "karkamsha_d1", "karkamsha_d9", "bhava_lagna", "hora_lagna",
        ),
        dashas=("vimshottari",),
        features=("natal", "transit", "dasha", "ashtakavarga"),
        has_divisional=True,
        has_ashtakavarga=True,
    ),
    "kp": SystemCapabilities(
        charts=("D1",),
        special_charts=(
            "kp_planets_cusps", "kp_ruling_planets", "kp_bhava_details", "kp_significations",
            "kp_horary", "muhurat",
        ),
        dashas=("vimshottari",),
        features=("natal", "dasha", "horary", "significations", "ruling_planets", "bhava_details"),
        has_horary=True,
    ),
    "yukteswar": SystemCapabilities(
        charts=_VARGAS,
        special_charts=(
            "sun_chart", "moon_chart", "equal_chart", "sripathi_bhava", "kp_bhava",
            "arudha_lagna", "karkamsha_d9", "bhava_lagna", "hora_lagna",
            "ashtakavarga_sarva", "ashtakavarga_bhinna",
        ),
        dashas=("vimshottari",),
        features=("natal", "dasha", "ashtakavarga"),
        has_divisional=True,
        has_ashtakavarga=True,
    ),
    "western": SystemCapabilities(
        charts=(),
        features=("progressed", "synastry", "composite"),
    ),
}

# Artifact types never generated as part of a profile
EXCLUDED_TYPES = frozenset(
    {
        "transit",
        "muhurat",
        "kp_horary",
        "numerology_chaldean",
        "numerology_loshu",
        "person_numerology",
        "dasha_summary",
        "dasha_dasha_3months",
        "dasha_dasha_6months",
        "dasha_dasha_report_1year",
        "dasha_dasha_report_2years",
        "dasha_dasha_report_3years",
    }
)


def normalize_artifact_type(artifact_type: str) -> str:
    """Comparison key for artifact types: case, underscores, hyphens and spaces ignored"""
    key = artifact_type.strip().lower()
    for char in ("_", "-", " "):
        key = key.replace(char, "")
    return key


def get_system_capabilities(system: str) -> SystemCapabilities | None:
    return SYSTEM_CAPABILITIES.get(system.lower()) if system else None


def is_supported_system(system: str) -> bool:
    return get_system_capabilities(system) is not None


def expected_catalog(system: str) -> list[str]:
    """
    Artifact types a complete profile holds for ``system``.

    Args:
        system: Ayanamsa system name

    Returns:
        Ordered, de-duplicated list of artifact type names (empty for
        unknown systems)
    """
    caps = get_system_capabilities(system)
    if caps is None:
        return []

    excluded = {normalize_artifact_type(t) for t in EXCLUDED_TYPES | caps.excluded}
    candidates: list[str] = []
    candidates.extend(caps.charts)
    candidates.extend(caps.special_charts)
    candidates.extend(f"{DASHA_PREFIX}{d}" for d in caps.dashas)
    candidates.extend(f"{YOGA_PREFIX}{y}" for y in caps.yogas)
    candidates.extend(f"{DOSHA_PREFIX}{d}" for d in caps.doshas)

    catalog = []
    seen = set()
    for artifact_type in candidates:
        key = normalize_artifact_type(artifact_type)
        if key in excluded or key in seen:
            continue
        seen.add(key)
        catalog.append(artifact_type)
    return catalog


def missing_artifacts(expected: list[str], existing) -> list[str]:
    """Entries of ``expected`` with no normalized counterpart in ``existing``"""
    present = {normalize_artifact_type(t) for t in existing if t}
    return [t for t in expected if normalize_artifact_type(t) not in present]


def canonical_artifact_type(system: str, artifact_type: str) -> str | None:
    """
    Catalog spelling of ``artifact_type`` for ``system``.

    Returns:
        The capability entry matching under normalization, or None when
        the system does not offer the artifact
    """
    caps = get_system_capabilities(system)
    if caps is None:
        return None

    key = normalize_artifact_type(artifact_type)
    families = [
        caps.charts,
        caps.special_charts,
        [f"{DASHA_PREFIX}{d}" for d in caps.dashas],
        [f"{YOGA_PREFIX}{y}" for y in caps.yogas],
        [f"{DOSHA_PREFIX}{d}" for d in caps.doshas],
        [f"{REMEDY_PREFIX}{r}" for r in caps.remedies],
        [f"{PANCHANGA_PREFIX}{p}" for p in caps.panchanga],
    ]
    for family in families:
        for candidate in family:
            if normalize_artifact_type(candidate) == key:
                return candidate
    return None
