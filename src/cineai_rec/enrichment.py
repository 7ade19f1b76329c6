"""
Resolve AI-suggested titles to canonical movie records.

Every suggestion is resolved independently and concurrently:

1. canonical store (case-insensitive title match, first hit)
2. external search (TMDB), only when the store has no match
3. otherwise unresolved, and dropped from the result

A failure while resolving one suggestion (network error, bad row) drops
that suggestion only; the batch always completes with whatever resolved.
Output order is the input order with the dropped entries removed.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol

from .config import DB_MATCH_CONFIDENCE, EXTERNAL_MATCH_CONFIDENCE
from .database import MovieRecord
from .dedup import RequestDeduplicator, generate_key

logger = logging.getLogger(__name__)


class Provenance(str, Enum):
    DATABASE = "database"
    EXTERNAL = "external"
    UNRESOLVED = "unresolved"


class CanonicalStore(Protocol):
    async def find(self, title_query: str, year: int | None = None) -> MovieRecord | None: ...

    async def upsert(self, record: MovieRecord) -> int: ...


class SearchProvider(Protocol):
    async def search(self, title: str, year: int | None = None, limit: int = 1) -> list[MovieRecord]: ...


def _coerce_year(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        year = int(str(value).strip()[:4])
    except ValueError:
        return None
    return year if 1870 <= year <= 2100 else None


def _coerce_confidence(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(confidence):
        return None
    return min(1.0, max(0.0, confidence))


@dataclass
class Suggestion:
    """One raw AI suggestion."""

    title: str
    year: int | None = None
    reason: str | None = None
    raw_confidence: float | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Suggestion":
        """
        Accept the shapes the AI returns: `reason` or `reasoning`,
        `confidence` or `confidence_score`, years as int or string.
        """
        title = payload.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValueError(f"Suggestion has no title: {payload!r}")

        reason = payload.get("reason") or payload.get("reasoning")
        confidence = payload.get("confidence")
        if confidence is None:
            confidence = payload.get("confidence_score")

        return cls(
            title=title.strip(),
            year=_coerce_year(payload.get("year")),
            reason=str(reason).strip() if reason else None,
            raw_confidence=_coerce_confidence(confidence),
        )


@dataclass
class EnrichedRecommendation:
    canonical_record: MovieRecord | None
    title: str
    year: int | None
    reason: str | None
    match_confidence: float
    provenance: Provenance

    def __post_init__(self) -> None:
        if self.provenance is Provenance.UNRESOLVED and self.canonical_record is not None:
            raise ValueError("Unresolved recommendations cannot carry a canonical record")
        if self.provenance is not Provenance.UNRESOLVED and self.canonical_record is None:
            raise ValueError(f"{self.provenance.value} recommendations need a canonical record")

    @property
    def resolved(self) -> bool:
        return self.provenance is not Provenance.UNRESOLVED

    def to_dict(self) -> dict:
        return {
            "movie": self.canonical_record.to_dict() if self.canonical_record else None,
            "title": self.title,
            "year": self.year,
            "reason": self.reason,
            "match_confidence": self.match_confidence,
            "provenance": self.provenance.value,
        }


class TitleResolver:
    """
    DB-first, external-fallback title resolution with confidence attribution.

    Store and search lookups are routed through the given deduplicators, so
    the same title requested twice (in one batch or in overlapping batches)
    costs one lookup.
    """

    def __init__(
        self,
        store: CanonicalStore,
        search: SearchProvider | None = None,
        movie_dedup: RequestDeduplicator | None = None,
        search_dedup: RequestDeduplicator | None = None,
        persist_external: bool = False,
        db_confidence: float = DB_MATCH_CONFIDENCE,
        external_confidence: float = EXTERNAL_MATCH_CONFIDENCE,
    ):
        self.store = store
        self.search = search
        self.movie_dedup = movie_dedup
        self.search_dedup = search_dedup
        self.persist_external = persist_external
        self.db_confidence = db_confidence
        self.external_confidence = external_confidence

    @staticmethod
    def _through(
        dedup: RequestDeduplicator | None,
        key: str,
        operation: Callable[[], Awaitable[Any]],
    ) -> Awaitable[Any]:
        if dedup is None:
            return operation()
        return dedup.deduplicate(key, operation)

    async def _find_in_store(self, suggestion: Suggestion) -> MovieRecord | None:
        key = generate_key({"op": "find", "title": suggestion.title.lower(), "year": suggestion.year})
        return await self._through(
            self.movie_dedup, key, lambda: self.store.find(suggestion.title, suggestion.year)
        )

    async def _search_external(self, suggestion: Suggestion) -> MovieRecord | None:
        key = generate_key({"op": "search", "title": suggestion.title.lower(), "year": suggestion.year, "limit": 1})
        results = await self._through(
            self.search_dedup, key, lambda: self.search.search(suggestion.title, year=suggestion.year, limit=1)
        )
        return results[0] if results else None

    async def _persist(self, record: MovieRecord) -> None:
        try:
            await self.store.upsert(record)
        except Exception as exc:
            logger.warning(f"Could not save external match '{record.title}' to the store: {exc}")

    async def resolve(self, suggestion: Suggestion) -> EnrichedRecommendation:
        """Resolve one suggestion. Lookup errors propagate to the caller."""
        record = await self._find_in_store(suggestion)
        if record is not None:
            confidence = suggestion.raw_confidence
            return EnrichedRecommendation(
                canonical_record=record,
                title=record.title,
                year=record.year,
                reason=suggestion.reason,
                match_confidence=self.db_confidence if confidence is None else confidence,
                provenance=Provenance.DATABASE,
            )

        if self.search is not None:
            record = await self._search_external(suggestion)
            if record is not None:
                if self.persist_external:
                    await self._persist(record)
                confidence = suggestion.raw_confidence
                return EnrichedRecommendation(
                    canonical_record=record,
                    title=record.title,
                    year=record.year,
                    reason=suggestion.reason,
                    match_confidence=self.external_confidence if confidence is None else confidence,
                    provenance=Provenance.EXTERNAL,
                )

        return EnrichedRecommendation(
            canonical_record=None,
            title=suggestion.title,
            year=suggestion.year,
            reason=suggestion.reason,
            match_confidence=0.0,
            provenance=Provenance.UNRESOLVED,
        )

    async def enrich(self, suggestions: list[Suggestion]) -> list[EnrichedRecommendation]:
        """
        Resolve a batch concurrently.

        Results are collected positionally, so resolved entries keep their
        input order. Unresolved entries and per-suggestion failures are
        logged and dropped.
        """
        if not suggestions:
            return []

        results = await asyncio.gather(
            *(self.resolve(s) for s in suggestions), return_exceptions=True
        )

        enriched = []
        unresolved = []
        error_summary: dict[str, int] = {}

        for suggestion, result in zip(suggestions, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                error_type = type(result).__name__
                logger.error(f"Failed to resolve '{suggestion.title}': {error_type}: {result}")
                error_summary[error_type] = error_summary.get(error_type, 0) + 1
                unresolved.append(suggestion.title)
            elif not result.resolved:
                logger.warning(f"Movie not found: {suggestion.title} ({suggestion.year})")
                unresolved.append(suggestion.title)
            else:
                enriched.append(result)

        if unresolved:
            logger.warning(
                f"Enrichment complete: {len(enriched)}/{len(suggestions)} resolved, {len(unresolved)} dropped"
            )
            if error_summary:
                logger.info(f"Error breakdown: {error_summary}")
        else:
            logger.info(f"Enrichment complete: {len(enriched)}/{len(suggestions)} resolved")

        return enriched
