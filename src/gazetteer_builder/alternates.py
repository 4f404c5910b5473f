"""
Alternate-name ingestion
Attaches other names and languages to places, admin areas and countries
"""
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import duckdb

from .database.models import AlternateName
from .ingest import IngestStats, KnownNameIndex, ProgressCallback
from .transformers.names import canonical_key
from .utils import create_progress_bar, iter_tsv_chunks, to_int
from . import config

logger = logging.getLogger(__name__)

ALTERNATE_NAME_COLUMNS = [
    "alternate_name_id", "geonameid", "isolanguage", "alternate_name",
    "is_preferred", "is_short", "is_colloquial", "is_historic", "from", "to",
]

# isolanguage values that are not languages (links, codes, postal codes...)
PSEUDO_LANGUAGES = frozenset({
    "link", "post", "iata", "icao", "faac", "abbr", "wkdt", "unlc", "fr_1793",
})


def _flag(value: Any) -> bool:
    return str(value).strip() == "1"


class AlternateNameIngestor:
    """
    Streams alternateNamesV2 rows onto known owners

    Rows whose key equals the owner's own key add nothing and are skipped.
    """

    def __init__(
        self,
        db,
        known_names: KnownNameIndex,
        progress_callback: Optional[ProgressCallback] = None,
        progress_interval: Optional[int] = None
    ):
        self.db = db
        self.known_names = known_names
        self.progress_callback = progress_callback
        self.progress_interval = progress_interval or config.PIPELINE_CONFIG["progress_interval"]
        self.stats = IngestStats()

    def build_alternate_name(self, row: Dict[str, Any]) -> Optional[AlternateName]:
        """AlternateName for one feed row, or None (reason counted in stats)"""
        lang = str(row.get("isolanguage", "") or "").strip()
        if lang in PSEUDO_LANGUAGES:
            self.stats.reject("pseudo_language")
            return None

        owner = self.known_names.lookup(to_int(row.get("geonameid")))
        if owner is None:
            self.stats.reject("no_owner")
            return None

        name = str(row.get("alternate_name", "") or "").strip()
        key = canonical_key(name)
        if not key:
            self.stats.reject("empty_key")
            return None

        if key == owner.key:
            self.stats.reject("same_key")
            return None

        return AlternateName(
            name=name,
            key=key,
            owner_type=owner.owner_type,
            owner_id=owner.owner_id,
            lang=lang,
            is_preferred=_flag(row.get("is_preferred")),
            is_short=_flag(row.get("is_short")),
            is_colloquial=_flag(row.get("is_colloquial")),
            is_historic=_flag(row.get("is_historic")),
            external_id=to_int(row.get("alternate_name_id")),
        )

    def ingest_row(self, row: Dict[str, Any]):
        self.stats.read += 1
        alt = self.build_alternate_name(row)

        if alt is not None:
            self.stats.accepted += 1
            try:
                self.db.upsert_alternate_name(alt)
                self.stats.alternate_names += 1
            except duckdb.Error as e:
                self.stats.errors += 1
                logger.error(
                    f"Store error for alternate name {alt.external_id} \"{alt.name}\" "
                    f"({alt.owner_type}{alt.owner_id}, {alt.lang or '-'}): {e}"
                )

        if self.progress_callback and self.stats.read % self.progress_interval == 0:
            self.progress_callback(self.stats)

    def ingest_file(self, file_path: Path, chunk_size: Optional[int] = None, show_progress: bool = True) -> IngestStats:
        """Stream an alternate-names file"""
        logger.info(f"Ingesting alternate names from {file_path.name}")
        progress = create_progress_bar(desc="Alternate names", disable=not show_progress)

        try:
            for chunk in iter_tsv_chunks(file_path, ALTERNATE_NAME_COLUMNS, chunk_size):
                for row in chunk.to_dict("records"):
                    self.ingest_row(row)
                progress.update(len(chunk))
        finally:
            progress.close()

        logger.info(
            f"Alternate names: {self.stats.alternate_names} stored, "
            f"{self.stats.total_rejected} skipped, {self.stats.errors} errors"
        )
        return self.stats
