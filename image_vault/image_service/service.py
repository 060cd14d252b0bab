from typing import Iterable, List
import logging

from image_vault.image_service.models import ImageRecord

log = logging.getLogger(__name__)

def matches_query(record: ImageRecord, query: str) -> bool:
    """
        A record matches when one of its tags equals the query, or when its
        description contains the query. Both comparisons ignore case.

        This is the server-side rule only. Partial tag words and file names do
        not match here; a client filtering already-fetched records may be looser.
    """
    needle = query.strip().lower()
    if not needle:
        return False
    if any(tag.lower() == needle for tag in record.tags):
        return True
    return needle in (record.description or "").lower()

def search_records(records: Iterable[ImageRecord], query: str) -> List[ImageRecord]:
    """Filters records by `matches_query`, newest first."""
    matched = [r for r in records if matches_query(r, query)]
    matched.sort(key=lambda r: r.created_at, reverse=True)
    log.debug("Search for %r matched %d records", query, len(matched))
    return matched
