"""
Administrative resolver
Turns raw (city, county, state, country) fields into canonical forms

Every step is a pure function returning a StepResult. process_place_names
composes them and never raises for malformed input: unresolvable values
come back as best-effort forms plus diagnostics, noise comes back as None.
"""
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, NamedTuple, Optional, Pattern, Tuple

from .reference import (
    ALT_COUNTRY_FORMS,
    LONG_STATES,
    STATE_ABBREVIATIONS,
    US_TERRITORIES,
    ReferenceData,
)
from .transformers.names import (
    fix_rearranged_name,
    plain_ascii_upper,
    simplify,
    strip_diacritics,
)

logger = logging.getLogger(__name__)


# =========================
# Step Results
# =========================
class Resolution(Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class StepResult:
    """Tagged outcome of one resolution step"""
    status: Resolution
    value: Any = None
    reason: str = ""

    @classmethod
    def resolved(cls, value: Any) -> "StepResult":
        return cls(Resolution.RESOLVED, value)

    @classmethod
    def unresolved(cls, value: Any, reason: str) -> "StepResult":
        return cls(Resolution.UNRESOLVED, value, reason)

    @classmethod
    def rejected(cls, reason: str) -> "StepResult":
        return cls(Resolution.REJECTED, None, reason)

    @property
    def is_rejected(self) -> bool:
        return self.status is Resolution.REJECTED


class CountryCodes(NamedTuple):
    code2: str
    code3: str
    long_country: str


@dataclass(frozen=True)
class ProcessedNames:
    city: str
    variant: str
    county: Optional[str]
    state: str
    long_state: str
    country: str
    long_country: str
    diagnostics: Tuple[str, ...] = ()


# =========================
# Rule Tables
# =========================
Rule = Tuple[Pattern, str]

NOISE_PATTERNS: List[Tuple[str, Pattern]] = [
    ("house_number", re.compile(r"\b\d+[a-z]", re.I)),
    ("housing", re.compile(
        r"\b((mobile|trailer|vehicle)\s+(acre|city|community|corral|court|estate|garden|grove|harbor|haven|"
        r"home|inn|lodge|lot|manor|park|plaza|ranch|resort|terrace|town|villa|village)s?)|"
        r"((apartment|condominium|\(subdivision\))s?)\b",
        re.I,
    )),
    ("ignored_place", re.compile(
        r"bloomingtonmn|census designated place|colonia \(|colonia number|condominium|"
        r"circonscription electorale d|election precinct|\(historical\)|mobilehome|"
        r"subdivision|unorganized territory|\{|\}",
        re.I,
    )),
    ("district_number", re.compile(r"\bParis \d\d\b", re.I)),
]

ADMIN_PREFIX_RULES: List[Rule] = [
    (re.compile(
        r"^((County(\s+of)?)|((Provincia|Província|Province|Región Metropolitana|Distrito|Región)"
        r"\s+(de|del|de la|des|di)))",
        re.I,
    ), ""),
]

# Case-sensitive: "Northern Territory" and "Komi Republic" keep their names
ADMIN_SUFFIX_RULES: List[Rule] = [
    (re.compile(
        r"\s+(province|administrative region|national capital region|prefecture|oblast'|oblast|"
        r"kray|county|district|department|governorate|metropolitan area|territory)$"
    ), ""),
    (re.compile(r"\s+(region|republic)$"), ""),
]

COUNTY_RULES: List[Rule] = [
    (re.compile(r" \(.*\)"), ""),
    (re.compile(r"\s+"), " "),
    (re.compile(r"\s*?-\s*?\b"), "-"),
    (re.compile(r"City and (Borough|County) of ", re.I), ""),
    (re.compile(r" (Borough|Census Area|County|Division|Municipality|Parish|City and Borough)", re.I), ""),
    (re.compile(r"Aleutian Islands", re.I), "Aleutians West"),
    (re.compile(r"Juneau City and", re.I), "Juneau"),
    (re.compile(r"De Kalb", re.I), "DeKalb"),
    (re.compile(r"De Soto", re.I), "DeSoto"),
    (re.compile(r"De Witt", re.I), "DeWitt"),
    (re.compile(r"Du Page", re.I), "DuPage"),
    (re.compile(r"^La(Crosse|Moure|Paz|Plate|Porte|Salle)", re.I), r"La \1"),
    (re.compile(r"Skagway-Yakutat-Angoon", re.I), "Skagway-Hoonah-Angoon"),
    (re.compile(r"Grays Harbor", re.I), "Gray's Harbor"),
    (re.compile(r"OBrien", re.I), "O'Brien"),
    (re.compile(r"Prince Georges", re.I), "Prince George's"),
    (re.compile(r"Queen Annes", re.I), "Queen Anne's"),
    (re.compile(r"Scotts Bluff", re.I), "Scott's Bluff"),
    (re.compile(r"^(St\. |St )", re.I), "Saint "),
    (re.compile(r"Saint Johns", re.I), "Saint John's"),
    (re.compile(r"Saint Marys", re.I), "Saint Mary's"),
    (re.compile(r"BronxCounty", re.I), "Bronx"),
]

INDEPENDENT_CITY_RULES: List[Rule] = [
    (re.compile(r"^City of ", re.I), ""),
    (re.compile(r"\s(Indep\. City|Independent City|Independent|City|Division|Municipality)$", re.I), ""),
]

GENERIC_LEADING_WORD_RX = re.compile(r"^(lake|mount|(mt\.?)|the|la|las|el|le|los)\b(.+)", re.I)
MC_RX = re.compile(r"^Mc([a-z])(.*)")
STATE_WORD_RX = re.compile(r" (state|province)$", re.I)
SUB_MUNICIPALITY_RX = re.compile(r"city|division|municipality", re.I)
ADMIN_CODE_PREFIX_RX = re.compile(r"^([A-Za-z0-9]+)\.(\S.*)$")

CENSUS_AREAS_RX = re.compile(
    r"(Aleutians West|Bethel|Dillingham|Nome|Prince of Wales-Outer Ketchikan|"
    r"Skagway-Hoonah-Angoon|Southeast Fairbanks|Valdez-Cordova|Wade Hampton|"
    r"Wrangell-Petersburg|Yukon-Koyukuk)",
    re.I,
)
LONG_COUNTY_RX = re.compile(r" (Division|Census Area|Borough|Parish|County)$", re.I)


def apply_rules(text: str, rules: List[Rule]) -> str:
    """Apply (pattern, replacement) rules in order"""
    for pattern, replacement in rules:
        text = pattern.sub(replacement, text)
    return text


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


# =========================
# Resolution Steps
# =========================
def check_noise(city: str) -> StepResult:
    """Reject lot numbers, housing developments and similar non-places"""
    if not city:
        return StepResult.rejected("empty")

    for reason, pattern in NOISE_PATTERNS:
        if pattern.search(city):
            return StepResult.rejected(reason)

    return StepResult.resolved(city)


def resolve_country(ref: ReferenceData, country: str) -> StepResult:
    """
    Normalize a country code or name to ISO alpha-3

    Unrecognized countries resolve to their first two characters plus '?'
    so storage never receives an empty country.
    """
    raw = _as_text(country)
    code2 = raw
    code3 = None

    if len(raw) == 2 and raw in ref.code2_to_code3:
        code3 = ref.code2_to_code3[raw]
    elif len(raw) == 3 and raw in ref.code3_to_code2:
        code3 = raw
        code2 = ref.code3_to_code2[raw]
    elif raw:
        code3 = ref.code3_for_country_name(ALT_COUNTRY_FORMS.get(simplify(raw), raw))
        if code3:
            code2 = ref.code3_to_code2.get(code3, code2)

    if code3:
        return StepResult.resolved(CountryCodes(code2, code3, ref.code3_to_name.get(code3, raw)))

    reason = f'unrecognized country "{raw}"' if raw else "no country"
    return StepResult.unresolved(CountryCodes(code2, raw[:2] + "?", raw), reason)


def resolve_admin_codes(ref: ReferenceData, code2: str, state: str, county: str) -> StepResult:
    """
    Replace admin1/admin2 codes ("29", "510") with names

    Returns:
        StepResult with value (state, county). Numeric codes missing from
        the tables pass through unchanged as UNRESOLVED.
    """
    state_code = state
    reasons = []

    m = ADMIN_CODE_PREFIX_RX.match(county)
    if m and state_code and m.group(1).upper() == state_code.upper():
        county = m.group(2).strip()

    if state:
        name = ref.states.get(f"{code2}.{state}")
        if name:
            state = name
        elif state.isdigit():
            reasons.append(f"unknown admin1 code {code2}.{state_code}")

    if state_code and county:
        name = ref.counties.get(f"{code2}.{state_code}.{county}")
        if name:
            county = name
        elif county.isdigit():
            reasons.append(f"unknown admin2 code {code2}.{state_code}.{county}")

    if reasons:
        return StepResult.unresolved((state, county), "; ".join(reasons))

    return StepResult.resolved((state, county))


def split_variant(city: str) -> StepResult:
    """
    Un-invert "Name, The" style names and split off a leading generic word

    Returns:
        StepResult with value (city, variant)
    """
    city, article = fix_rearranged_name(city)
    variant = ""

    if article:
        variant = city[len(article):].strip()
    else:
        m = GENERIC_LEADING_WORD_RX.match(city)
        if m:
            variant = m.group(3).strip(" .")

    if "," in city:
        return StepResult.unresolved((city, variant), f'city name "{city}" contains a comma')

    return StepResult.resolved((city, variant))


def clean_admin_name(name: str) -> str:
    """Strip "County of", "Provincia de", " province", " region" and the like"""
    if not name:
        return ""
    name = apply_rules(name, ADMIN_PREFIX_RULES)
    return apply_rules(name, ADMIN_SUFFIX_RULES).strip()


def resolve_state(state: str) -> StepResult:
    """
    Map a US state or Canadian province to its two-letter code

    Returns:
        StepResult with value (state, long_state)
    """
    if not state:
        return StepResult.resolved(("", ""))

    if state in LONG_STATES:
        return StepResult.resolved((state, LONG_STATES[state]))

    code = (
        STATE_ABBREVIATIONS.get(state)
        or STATE_ABBREVIATIONS.get(plain_ascii_upper(state))
        or STATE_ABBREVIATIONS.get(plain_ascii_upper(STATE_WORD_RX.sub("", state)))
    )

    if code:
        return StepResult.resolved((code, LONG_STATES[code]))

    return StepResult.unresolved((state, state), f'unrecognized state/province "{state}"')


def standardize_short_county_name(county: str) -> str:
    """
    Canonical short form of a US county name

    "De Kalb County" -> "DeKalb", "St. Louis" -> "Saint Louis",
    "Mcdonald" -> "McDonald"
    """
    if not county:
        return county

    county = apply_rules(strip_diacritics(county.strip()), COUNTY_RULES)

    m = MC_RX.match(county)
    if m:
        county = "Mc" + m.group(1).upper() + m.group(2)

    return county


def resolve_us_county(ref: ReferenceData, city: str, county: str, state: str) -> StepResult:
    """
    Canonicalize a US county against the recognized-county list

    Independent cities listed as their own county lose the county
    (value None). Neighborhoods of an independent city keep it, with
    "City of" restored where the place name suggests a sub-municipality.
    """
    if not county or state in US_TERRITORIES:
        return StepResult.resolved(county or None)

    standardized = standardize_short_county_name(county)
    if ref.is_recognized_us_county(standardized, state):
        return StepResult.resolved(standardized)

    fallback = "Washington" if county == "District of Columbia" else county
    fallback = apply_rules(fallback, INDEPENDENT_CITY_RULES)

    if fallback == county:
        return StepResult.unresolved(county, f'unrecognized US county "{county}" for {city}, {state}')

    if simplify(county) == simplify(city) or simplify(fallback) == simplify(city):
        return StepResult.resolved(None)

    if SUB_MUNICIPALITY_RX.search(city):
        return StepResult.resolved("City of " + fallback)

    return StepResult.resolved(fallback)


# =========================
# Composition
# =========================
def process_place_names(
    ref: ReferenceData,
    city: Any,
    county: Any = None,
    state: Any = None,
    country: Any = None
) -> Optional[ProcessedNames]:
    """
    Resolve raw place fields into canonical forms

    Args:
        ref: Reference tables
        city, county, state, country: Raw fields; admin fields may be
            numeric codes, country may be a code or a name

    Returns:
        ProcessedNames, or None when the city is noise
    """
    city = _as_text(city)
    county = _as_text(county)
    state = _as_text(state)
    diagnostics: List[str] = []

    def note(step: StepResult) -> Any:
        if step.status is Resolution.UNRESOLVED:
            diagnostics.append(step.reason)
        return step.value

    noise = check_noise(city)
    if noise.is_rejected:
        logger.debug(f'Rejected "{city}": {noise.reason}')
        return None

    codes: CountryCodes = note(resolve_country(ref, country))
    state, county = note(resolve_admin_codes(ref, codes.code2, state, county))
    city, variant = note(split_variant(city))

    state = clean_admin_name(state)
    county = clean_admin_name(county)

    if state.lower().endswith(" state"):
        state = state[:-6]

    long_state = state

    if codes.code3 in ("USA", "CAN"):
        state, long_state = note(resolve_state(state))

        if codes.code3 == "USA":
            county = note(resolve_us_county(ref, city, county, state))

    for message in diagnostics:
        logger.debug(message)

    return ProcessedNames(
        city=city,
        variant=variant,
        county=county or None,
        state=state,
        long_state=long_state,
        country=codes.code3,
        long_country=codes.long_country,
        diagnostics=tuple(diagnostics),
    )


# =========================
# Display & Matching Helpers
# =========================
def _starts_with(testee: Optional[str], test: Optional[str]) -> bool:
    if not testee or not test:
        return False
    return simplify(testee).startswith(simplify(test))


def close_match_for_state(ref: ReferenceData, target: str, state: str, country: str) -> bool:
    """
    Does a state/country hint (e.g. "mo", "Miss", "Eng") fit a place?

    An empty hint matches everything.
    """
    if not target:
        return True

    return (
        _starts_with(state, target)
        or _starts_with(country, target)
        or _starts_with(LONG_STATES.get(state), target)
        or _starts_with(ref.code3_to_name.get(country), target)
        or (country == "GBR" and _starts_with("Great Britain", target))
        or (country == "GBR" and _starts_with("England", target))
        or _starts_with(ref.code3_to_code2.get(country), target)
        or _starts_with(ref.new3_to_old2.get(country), target)
    )


def adjust_us_county_name(county: str, state: str) -> str:
    """Long display form: "Cook County", "Orleans Parish", "Nome Census Area"..."""
    if not county:
        return county

    if LONG_COUNTY_RX.search(county) or re.search(r"City and County of ", county, re.I):
        return county

    if state == "AK":
        if re.search(r"Anchorage|Juneau", county, re.I):
            return county + " Division"
        if CENSUS_AREAS_RX.search(county):
            return county + " Census Area"
        return county + " Borough"

    if state == "CA" and re.fullmatch(r"San Francisco", county, re.I):
        return "City and County of " + county

    if state == "LA":
        return county + " Parish"

    return county + " County"
