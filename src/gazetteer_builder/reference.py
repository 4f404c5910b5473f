"""
Reference tables for the Gazetteer Builder
Countries, admin1/admin2 code maps, US/Canada state tables and allow-lists

A ReferenceData value is built once by the entry point (ReferenceData.load)
and passed to every resolver call. It is read-only after construction.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

import pandas as pd

from . import config
from .transformers.names import canonical_key, plain_ascii_upper, simplify
from .utils import ReferenceDataError, read_lines, read_tsv, to_int

logger = logging.getLogger(__name__)


# =========================
# Feed Layouts
# =========================
COUNTRY_INFO_COLUMNS = [
    "iso", "iso3", "iso_numeric", "fips", "name", "capital", "area",
    "population", "continent", "tld", "currency_code", "currency_name",
    "phone", "postal_format", "postal_regex", "languages", "geonameid",
    "neighbours", "equivalent_fips",
]

ADMIN_CODE_COLUMNS = ["code", "name", "ascii_name", "geonameid"]


# =========================
# US States & Canadian Provinces
# =========================
# (name, code); where a code has several names the preferred form is last
US_STATES = [
    ("Alabama", "AL"), ("Alaska", "AK"), ("American Samoa", "AS"),
    ("Arizona", "AZ"), ("Arkansas", "AR"), ("California", "CA"),
    ("Colorado", "CO"), ("Connecticut", "CT"), ("Delaware", "DE"),
    ("Washington, D.C.", "DC"), ("District of Columbia", "DC"),
    ("Federated States of Micronesia", "FM"),
    ("Florida", "FL"), ("Georgia", "GA"), ("Guam", "GU"), ("Hawaii", "HI"),
    ("Idaho", "ID"), ("Illinois", "IL"), ("Indiana", "IN"), ("Iowa", "IA"),
    ("Kansas", "KS"), ("Kentucky", "KY"), ("Louisiana", "LA"), ("Maine", "ME"),
    ("Marshall Islands", "MH"), ("Maryland", "MD"), ("Massachusetts", "MA"),
    ("Michigan", "MI"), ("Minnesota", "MN"), ("Mississippi", "MS"),
    ("Missouri", "MO"), ("Montana", "MT"), ("Nebraska", "NE"), ("Nevada", "NV"),
    ("New Hampshire", "NH"), ("New Jersey", "NJ"), ("New Mexico", "NM"),
    ("New York", "NY"), ("North Carolina", "NC"), ("North Dakota", "ND"),
    ("Northern Mariana Islands", "MP"), ("Ohio", "OH"), ("Oklahoma", "OK"),
    ("Oregon", "OR"), ("Palau", "PW"), ("Pennsylvania", "PA"),
    ("Puerto Rico", "PR"), ("Rhode Island", "RI"), ("South Carolina", "SC"),
    ("South Dakota", "SD"), ("Tennessee", "TN"), ("Texas", "TX"), ("Utah", "UT"),
    ("Vermont", "VT"), ("Virgin Islands", "VI"), ("Virginia", "VA"),
    ("Washington", "WA"), ("West Virginia", "WV"), ("Wisconsin", "WI"),
    ("Wyoming", "WY"),

    ("Alberta", "AB"), ("British Columbia", "BC"), ("Manitoba", "MB"),
    ("New Brunswick", "NB"), ("Newfoundland", "NF"),
    ("Newfoundland and Labrador", "NF"), ("Northwest Territories", "NT"),
    ("Nova Scotia", "NS"), ("Territory of Nunavut", "NU"), ("Nunavut", "NU"),
    ("Ontario", "ON"), ("Prince Edward Isle", "PE"),
    ("Prince Edward Island", "PE"), ("Quebec", "QC"), ("Saskatchewan", "SK"),
    ("Yukon Territory", "YT"), ("Yukon", "YT"),
]

LONG_STATES: Mapping[str, str] = MappingProxyType(
    {code: name for name, code in US_STATES}
)

STATE_ABBREVIATIONS: Mapping[str, str] = MappingProxyType(
    {
        **{name: code for name, code in US_STATES},
        **{plain_ascii_upper(name): code for name, code in US_STATES},
    }
)

US_TERRITORIES = frozenset({"AS", "FM", "GU", "MH", "MP", "PW", "VI"})

# Informal country names, keyed by simplify(name)
ALT_COUNTRY_FORMS: Mapping[str, str] = MappingProxyType({
    "GREATBRITAIN": "United Kingdom",
    "UK": "United Kingdom",
    "UNITEDSTATESOFAMERICA": "United States",
    "HOLLAND": "Netherlands",
    "BURMA": "Myanmar",
    "CZECHREPUBLIC": "Czechia",
    "RUSSIANFEDERATION": "Russia",
})


# =========================
# Reference Entities
# =========================
@dataclass(frozen=True)
class ReferenceEntity:
    """Country, admin1 or admin2 row keyed by its external id"""
    name: str
    key: str
    code: str
    external_id: Optional[int]
    source: str = config.AUTHORITATIVE_SOURCE

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "key": self.key,
            "code": self.code,
            "external_id": self.external_id,
            "source": self.source,
        }


@dataclass(frozen=True)
class Country(ReferenceEntity):
    """Country row; code is the ISO 3166 alpha-3 code"""
    iso2: str = ""
    iso3: str = ""
    old_code2: str = ""
    postal_regex: str = ""

    def to_dict(self) -> Dict:
        data = super().to_dict()
        data.update({
            "iso2": self.iso2,
            "iso3": self.iso3,
            "old_code2": self.old_code2,
            "postal_regex": self.postal_regex,
        })
        return data


def _frozen(mapping: Dict) -> Mapping:
    return MappingProxyType(dict(mapping))


# =========================
# Reference Data
# =========================
@dataclass(frozen=True)
class ReferenceData:
    """
    Immutable lookup tables used by the administrative resolver

    Attributes:
        countries / admin1s / admin2s: Entities keyed by external id
        code2_to_code3 / code3_to_code2: ISO alpha-2 <-> alpha-3
        code3_to_name: ISO alpha-3 -> country name
        name_to_code3: simplify(country name)[:20] -> ISO alpha-3
        new3_to_old2: ISO alpha-3 -> legacy (FIPS) two-letter code
        states: "US.MO" -> "Missouri"
        counties: "US.MO.510" -> "City of Saint Louis"
        us_counties: Recognized "<county>, <state>" strings
        celestial_names: Uppercase ASCII names of planets, moons and stars
    """
    countries: Mapping[int, Country] = field(default_factory=dict)
    admin1s: Mapping[int, ReferenceEntity] = field(default_factory=dict)
    admin2s: Mapping[int, ReferenceEntity] = field(default_factory=dict)
    code2_to_code3: Mapping[str, str] = field(default_factory=dict)
    code3_to_code2: Mapping[str, str] = field(default_factory=dict)
    code3_to_name: Mapping[str, str] = field(default_factory=dict)
    name_to_code3: Mapping[str, str] = field(default_factory=dict)
    new3_to_old2: Mapping[str, str] = field(default_factory=dict)
    states: Mapping[str, str] = field(default_factory=dict)
    counties: Mapping[str, str] = field(default_factory=dict)
    us_counties: FrozenSet[str] = frozenset()
    celestial_names: FrozenSet[str] = frozenset()

    # =========================
    # Construction
    # =========================
    @classmethod
    def load(
        cls,
        country_file: Path,
        admin1_file: Path,
        admin2_file: Path,
        us_counties_file: Optional[Path] = None,
        celestial_file: Optional[Path] = None
    ) -> "ReferenceData":
        """
        Load reference tables from GeoNames feeds and local lists

        Args:
            country_file: countryInfo.txt
            admin1_file: admin1CodesASCII.txt
            admin2_file: admin2Codes.txt
            us_counties_file: Recognized US counties, one "<county>, <state>"
                per line (derived from admin2 when missing)
            celestial_file: Celestial body names, one per line

        Returns:
            ReferenceData

        Raises:
            ReferenceDataError: If a required feed is missing or unusable
        """
        for path in (country_file, admin1_file, admin2_file):
            if not Path(path).exists():
                raise ReferenceDataError(f"Reference feed not found: {path}")

        try:
            country_df = read_tsv(Path(country_file), COUNTRY_INFO_COLUMNS, skip_comments=True)
            admin1_df = read_tsv(Path(admin1_file), ADMIN_CODE_COLUMNS)
            admin2_df = read_tsv(Path(admin2_file), ADMIN_CODE_COLUMNS)
        except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ReferenceDataError(f"Failed to read reference feeds: {e}")

        us_counties = None
        if us_counties_file and Path(us_counties_file).exists():
            us_counties = read_lines(Path(us_counties_file))
        else:
            logger.info("No US county list found, deriving it from admin2 codes")

        celestial = []
        if celestial_file and Path(celestial_file).exists():
            celestial = read_lines(Path(celestial_file))

        ref = cls.from_frames(country_df, admin1_df, admin2_df, us_counties, celestial)

        if not ref.countries:
            raise ReferenceDataError(f"No countries parsed from {country_file}")

        logger.info(
            f"Reference data: {len(ref.countries)} countries, "
            f"{len(ref.admin1s)} admin1, {len(ref.admin2s)} admin2, "
            f"{len(ref.us_counties)} US counties"
        )

        return ref

    @classmethod
    def from_frames(
        cls,
        country_df: pd.DataFrame,
        admin1_df: pd.DataFrame,
        admin2_df: pd.DataFrame,
        us_counties: Optional[Iterable[str]] = None,
        celestial_names: Iterable[str] = ()
    ) -> "ReferenceData":
        """
        Build reference tables from parsed feed frames

        Frames use COUNTRY_INFO_COLUMNS and ADMIN_CODE_COLUMNS; every cell is a str.
        """
        countries: Dict[int, Country] = {}
        code2_to_code3: Dict[str, str] = {}
        code3_to_code2: Dict[str, str] = {}
        code3_to_name: Dict[str, str] = {}
        name_to_code3: Dict[str, str] = {}
        new3_to_old2: Dict[str, str] = {}

        for row in country_df.to_dict("records"):
            iso2 = str(row.get("iso", "")).strip()
            iso3 = str(row.get("iso3", "")).strip()
            name = str(row.get("name", "")).strip()
            old_code2 = str(row.get("fips", "")).strip()
            external_id = to_int(row.get("geonameid"))

            if not iso3 or not name or external_id is None:
                continue

            countries[external_id] = Country(
                name=name,
                key=canonical_key(name),
                code=iso3,
                external_id=external_id,
                iso2=iso2,
                iso3=iso3,
                old_code2=old_code2,
                postal_regex=str(row.get("postal_regex", "")).strip(),
            )

            name_to_code3[simplify(name)[:20]] = iso3
            code3_to_name[iso3] = name

            if iso2:
                code2_to_code3[iso2] = iso3
                code3_to_code2[iso3] = iso2

            if old_code2:
                new3_to_old2[iso3] = old_code2

        admin1s, states = cls._admin_tables(admin1_df, code2_to_code3, last_segment=False)
        admin2s, counties = cls._admin_tables(admin2_df, code2_to_code3, last_segment=True)

        if us_counties is None:
            us_county_set = cls._derive_us_counties(counties)
        else:
            us_county_set = {line.strip() for line in us_counties if line.strip()}

        # Suppresses warnings when DC shows up at the county level
        us_county_set.add("Washington, DC")

        return cls(
            countries=_frozen(countries),
            admin1s=_frozen(admin1s),
            admin2s=_frozen(admin2s),
            code2_to_code3=_frozen(code2_to_code3),
            code3_to_code2=_frozen(code3_to_code2),
            code3_to_name=_frozen(code3_to_name),
            name_to_code3=_frozen(name_to_code3),
            new3_to_old2=_frozen(new3_to_old2),
            states=_frozen(states),
            counties=_frozen(counties),
            us_counties=frozenset(us_county_set),
            celestial_names=frozenset(
                plain_ascii_upper(name.strip()) for name in celestial_names if name.strip()
            ),
        )

    @staticmethod
    def _admin_tables(df: pd.DataFrame, code2_to_code3: Dict[str, str], last_segment: bool):
        entities: Dict[int, ReferenceEntity] = {}
        names: Dict[str, str] = {}

        for row in df.to_dict("records"):
            code0 = str(row.get("code", "")).strip()
            name = str(row.get("name", "")).strip()
            external_id = to_int(row.get("geonameid"))

            if "." not in code0 or not name:
                continue

            code2 = code0[:2]
            code = code0.rsplit(".", 1)[1] if last_segment else code0[3:]

            if external_id is not None:
                entities[external_id] = ReferenceEntity(
                    name=name,
                    key=code2_to_code3.get(code2, code2) + code0[2:],
                    code=code,
                    external_id=external_id,
                )

            names[code0] = name

        return entities, names

    @staticmethod
    def _derive_us_counties(counties: Dict[str, str]) -> set:
        from .resolver import standardize_short_county_name

        derived = set()
        for code0, name in counties.items():
            parts = code0.split(".")
            # DC is handled as a county-equivalent of itself
            if len(parts) != 3 or parts[0] != "US" or parts[1] == "DC":
                continue
            derived.add(f"{standardize_short_county_name(name)}, {parts[1]}")

        return derived

    # =========================
    # Lookups
    # =========================
    def code3_for_country_name(self, name: str) -> Optional[str]:
        """Resolve a country name (any case, diacritics ignored) to ISO alpha-3"""
        if not name:
            return None
        return self.name_to_code3.get(simplify(name)[:20])

    def is_recognized_us_county(self, county: str, state: str) -> bool:
        return f"{county}, {state}" in self.us_counties

    def is_celestial_name(self, name: str) -> bool:
        """True when name is also a planet, moon or star name ("Mars", "Vega")"""
        return bool(name) and plain_ascii_upper(name.strip()) in self.celestial_names
