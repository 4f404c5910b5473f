# src/gazetteer_builder/transformers/ranking.py
# search rank scoring for canonical places
from __future__ import annotations

CAPITAL_CODES = frozenset({"PPLC"})
ADMIN_CAPITAL_CODES = frozenset({"PPLA"})

LARGE_CITY_POPULATION = 1_000_000
LARGE_CAPITAL_POPULATION = 2_500_000


def rank_place(
    feature_class: str,
    feature_code: str,
    population: int | None,
    first_pass: bool = True,
) -> int:
    """
    Integer relevance score used to order same-named places in search.

    Terrain features start at 0. Populated places start at 2 when read from
    the first-pass cities file and 1 from broader files, then:
      +2 national capital, +1 admin capital, -1 no population,
      +1 large city (capitals need a higher population for this bump).

    Ties are expected.
    """
    if feature_class != "P":
        return 0

    rank = 2 if first_pass else 1
    population = population or 0
    is_capital = feature_code in CAPITAL_CODES

    if is_capital:
        rank += 2
    elif feature_code in ADMIN_CAPITAL_CODES:
        rank += 1

    if population == 0:
        rank -= 1

    threshold = LARGE_CAPITAL_POPULATION if is_capital else LARGE_CITY_POPULATION
    if population >= threshold:
        rank += 1

    return rank
