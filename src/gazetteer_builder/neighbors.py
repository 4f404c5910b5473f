"""
Close-neighbor review for legacy or hand-maintained place lists
Flags same-key places of the same feature class within a few kilometers.
Report only: nothing is merged.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from . import config
from .transformers.names import canonical_key
from .utils import rough_distance_km

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NeighborPair:
    key: str
    first_id: object
    first_name: str
    second_id: object
    second_name: str
    distance_km: float

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "first_id": self.first_id,
            "first_name": self.first_name,
            "second_id": self.second_id,
            "second_name": self.second_name,
            "distance_km": round(self.distance_km, 3),
        }


def find_close_neighbors(places: pd.DataFrame, radius_km: Optional[float] = None) -> List[NeighborPair]:
    """
    Pairs sharing a key and the leading letter of their feature code that
    lie within radius_km of each other

    Args:
        places: DataFrame with id, name, latitude, longitude, feature_code
            and optionally key_name (derived from name when absent)
        radius_km: Review radius (uses config if None)

    Returns:
        List of NeighborPair, ordered by key
    """
    radius_km = config.DEDUP_CONFIG["close_neighbor_km"] if radius_km is None else radius_km
    groups = defaultdict(list)

    for row in places.to_dict("records"):
        if pd.isna(row.get("latitude")) or pd.isna(row.get("longitude")):
            continue
        key = row.get("key_name") or canonical_key(row.get("name"))
        feature = str(row.get("feature_code") or "")[:1]
        groups[(key, feature)].append(row)

    pairs = []
    for (key, _), rows in sorted(groups.items()):
        for i, first in enumerate(rows):
            for second in rows[i + 1:]:
                distance = rough_distance_km(
                    first["latitude"], first["longitude"], second["latitude"], second["longitude"]
                )
                if distance <= radius_km:
                    pairs.append(NeighborPair(
                        key=key,
                        first_id=first.get("id"),
                        first_name=first.get("name"),
                        second_id=second.get("id"),
                        second_name=second.get("name"),
                        distance_km=distance,
                    ))

    logger.info(f"Found {len(pairs)} close-neighbor pairs within {radius_km} km")
    return pairs


def write_neighbor_report(pairs: List[NeighborPair], output_path: Path) -> int:
    """Write pairs to CSV for manual review"""
    df = pd.DataFrame(
        [p.to_dict() for p in pairs],
        columns=["key", "first_id", "first_name", "second_id", "second_name", "distance_km"],
    )
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False)
    logger.info(f"Wrote {len(df)} neighbor pairs to {output_path}")
    return len(df)
