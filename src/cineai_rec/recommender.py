from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from .ai_client import AIProviderUnavailable
from .config import (
    AI_DEDUP_TIMEOUT,
    AI_MAX_RETRIES,
    AI_RETRY_DELAY,
    DEFAULT_RECOMMENDATION_COUNT,
    HIGH_RATING_THRESHOLD,
    POPULAR_THRESHOLD,
    POPULARITY_SATURATION,
    TOP_GENRES_CONSIDERED,
)
from .dedup import RequestDeduplicator, generate_key
from .enrichment import EnrichedRecommendation, Provenance, Suggestion, TitleResolver
from .signal_weights import (
    Signals,
    WeightConfig,
    compute_score,
    genre_affinity_boost,
    load_weight_config,
    memory_affinity_boost,
    temporal_affinity_boost,
)
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)

CompletionFn = Callable[[str, dict], Awaitable[str]]
LearningSink = Callable[[str, list[str]], Awaitable[Any]]

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.S)
_WORD = re.compile(r"[a-z0-9']+")
_STOPWORDS = {
    "a", "an", "and", "the", "of", "for", "with", "about", "something", "movie",
    "movies", "film", "films", "like", "want", "some", "that", "this", "me", "i",
}


class AIResponseError(ValueError):
    """The AI output did not contain a usable recommendations payload."""


def parse_ai_response(text: str) -> dict:
    """
    Extract the JSON payload from free-form AI output.

    Tries the whole text, then a fenced ```json block, then the outermost
    braces. The payload must hold a `recommendations` list.
    """
    if not text or not text.strip():
        raise AIResponseError("Empty AI response")

    candidates = [text.strip()]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict) and isinstance(payload.get("recommendations"), list):
            return payload

    raise AIResponseError(f"No recommendations JSON found in AI response: {text[:200]!r}")


def build_prompt(intent: str, query: str, count: int) -> str:
    return (
        f"The user is asking for movie recommendations.\n"
        f"Intent: {intent or 'general'}\n"
        f"Request: \"{query}\"\n\n"
        f"Return exactly {count} recommendations as JSON:\n"
        "{\n"
        '  "recommendations": [\n'
        '    {"title": "Movie Title", "year": 2020, "reason": "Why it fits", "confidence": 0.9}\n'
        "  ],\n"
        '  "learning_notes": ["Short observations about this user\'s taste"]\n'
        "}\n"
        "Only recommend movies that actually exist."
    )


@dataclass
class TimeSlotPreference:
    preferred_genres: list[str] = field(default_factory=list)
    confidence: float = 0.0
    watch_count: int = 0


@dataclass
class TemporalPreferences:
    """Genre preferences by hour (0-23) and weekday (Monday=0)."""

    time_of_day: dict[int, TimeSlotPreference] = field(default_factory=dict)
    day_of_week: dict[int, TimeSlotPreference] = field(default_factory=dict)


@dataclass
class UserAffinity:
    """Per-user affinity inputs for the secondary boosts."""

    genre_affinity: dict[str, float] = field(default_factory=dict)
    memory_affinity: dict[str, float] = field(default_factory=dict)
    temporal: TemporalPreferences | None = None

    def top_genres(self, n: int = TOP_GENRES_CONSIDERED) -> set[str]:
        ranked = sorted(self.genre_affinity.items(), key=lambda kv: -kv[1])
        return {genre.lower() for genre, weight in ranked[:n] if weight > 0}


@dataclass
class ScoredRecommendation:
    recommendation: EnrichedRecommendation
    score: float
    signals: Signals
    reasons: list[str]

    def to_dict(self) -> dict:
        return {
            **self.recommendation.to_dict(),
            "score": round(self.score, 4),
            "signals": self.signals.to_dict(),
            "reasons": self.reasons,
        }


def _terms(text: str | None) -> set[str]:
    if not text:
        return set()
    return {w for w in _WORD.findall(text.lower()) if len(w) > 2 and w not in _STOPWORDS}


def signals_for(
    rec: EnrichedRecommendation,
    query: str = "",
    affinity: UserAffinity | None = None,
    now: datetime | None = None,
) -> Signals:
    """Derive the signals this subsystem can observe for one resolved movie."""
    movie = rec.canonical_record
    genres = movie.genres if movie else []
    affinity = affinity or UserAffinity()

    query_terms = _terms(query)
    storyline = 0.0
    if query_terms and movie:
        text_terms = _terms(f"{movie.title} {movie.overview or ''}")
        storyline = len(query_terms & text_terms) / len(query_terms)

    genre = 0.0
    top = affinity.top_genres()
    if genres and top:
        genre = sum(1 for g in genres if g.lower() in top) / len(genres)

    sentiment = 0.0
    if movie and movie.rating is not None:
        sentiment = min(1.0, max(0.0, movie.rating / 10.0))

    social = 0.0
    if movie and movie.popularity:
        social = min(1.0, max(0.0, movie.popularity / POPULARITY_SATURATION))

    return Signals(
        semantic=min(1.0, max(0.0, rec.match_confidence)),
        storyline=storyline,
        genre=genre,
        sentiment=sentiment,
        social=social,
        genre_boost=genre_affinity_boost(genres, affinity.genre_affinity),
        temporal_boost=temporal_affinity_boost(genres, affinity.temporal, now),
        memory=memory_affinity_boost(genres, affinity.memory_affinity),
    )


def _reasons(rec: EnrichedRecommendation, affinity: UserAffinity | None) -> list[str]:
    reasons = []
    movie = rec.canonical_record
    if rec.reason:
        reasons.append(rec.reason)

    if movie and affinity:
        top = affinity.top_genres()
        matching = [g for g in movie.genres if g.lower() in top]
        if matching:
            reasons.append(f"Matches your favorite genres: {', '.join(matching)}")

    if movie and movie.rating is not None and movie.rating >= HIGH_RATING_THRESHOLD:
        reasons.append(f"Highly rated ({movie.rating:.1f}/10)")
    if movie and movie.popularity and movie.popularity > POPULAR_THRESHOLD:
        reasons.append("Popular choice")

    if rec.provenance is Provenance.EXTERNAL:
        reasons.append("Found on TMDB")
    return reasons


class RecommendationService:
    """
    AI recommendations for a request fingerprint.

    Identical concurrent requests (same user, intent, query, count) share
    one AI call and one enrichment pass through the AI deduplicator.
    Only exceptions in `retry_on` are retried; a rejected request (bad
    key, bad payload) fails on the first attempt.
    """

    def __init__(
        self,
        complete: CompletionFn,
        resolver: TitleResolver,
        weight_config: WeightConfig | None = None,
        ai_dedup: RequestDeduplicator | None = None,
        learning_sink: LearningSink | None = None,
        ai_max_retries: int = AI_MAX_RETRIES,
        ai_retry_delay: float = AI_RETRY_DELAY,
        retry_on: tuple = (AIProviderUnavailable,),
    ):
        self.resolver = resolver
        self.weight_config = weight_config or load_weight_config()
        self.ai_dedup = ai_dedup or RequestDeduplicator(AI_DEDUP_TIMEOUT, name="ai")
        self.learning_sink = learning_sink
        self._complete = async_retry_with_backoff(
            max_retries=ai_max_retries, initial_delay=ai_retry_delay, exceptions=retry_on
        )(complete)
        self._background: set[asyncio.Task] = set()

    def reload_weights(self, path: str | Path | None = None) -> WeightConfig:
        self.weight_config = load_weight_config(path)
        return self.weight_config

    async def recommend(
        self,
        user_id: str,
        query: str,
        intent: str = "general",
        count: int = DEFAULT_RECOMMENDATION_COUNT,
        affinity: UserAffinity | None = None,
    ) -> list[ScoredRecommendation]:
        """
        Ranked recommendations for one request.

        AI provider failures propagate (to every caller sharing the request).
        Malformed AI output yields an empty list.
        """
        key = generate_key({"user_id": user_id, "intent": intent, "query": query, "count": count})
        return await self.ai_dedup.deduplicate(
            key, lambda: self._generate(user_id, query, intent, count, affinity)
        )

    async def _generate(
        self,
        user_id: str,
        query: str,
        intent: str,
        count: int,
        affinity: UserAffinity | None,
    ) -> list[ScoredRecommendation]:
        prompt = build_prompt(intent, query, count)
        text = await self._complete(prompt, {"user_id": user_id, "intent": intent})

        try:
            payload = parse_ai_response(text)
        except AIResponseError as exc:
            logger.warning(f"Falling back to empty recommendations: {exc}")
            return []

        suggestions = []
        for item in payload["recommendations"][:count]:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed suggestion: {item!r}")
                continue
            try:
                suggestions.append(Suggestion.from_dict(item))
            except ValueError as exc:
                logger.warning(f"Skipping malformed suggestion: {exc}")

        notes = payload.get("learning_notes")
        if isinstance(notes, list) and notes:
            self._record_learning_detached(user_id, [str(n) for n in notes])

        enriched = await self.resolver.enrich(suggestions)
        ranked = self.rank(enriched, query=query, affinity=affinity)
        logger.info(f"Generated {len(ranked)} recommendations for intent '{intent}'")
        return ranked

    def rank(
        self,
        recommendations: list[EnrichedRecommendation],
        query: str = "",
        affinity: UserAffinity | None = None,
        now: datetime | None = None,
    ) -> list[ScoredRecommendation]:
        """Score and sort (stable, highest first). Scores are unclamped."""
        scored = []
        for rec in recommendations:
            signals = signals_for(rec, query=query, affinity=affinity, now=now)
            scored.append(ScoredRecommendation(
                recommendation=rec,
                score=compute_score(signals, self.weight_config),
                signals=signals,
                reasons=_reasons(rec, affinity),
            ))
        scored.sort(key=lambda s: -s.score)
        return scored

    def _record_learning_detached(self, user_id: str, notes: list[str]) -> None:
        """Hand learning notes to the sink without holding up the response."""
        if self.learning_sink is None:
            return
        task = asyncio.create_task(self._record_learning(user_id, notes))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_learning(self, user_id: str, notes: list[str]) -> None:
        try:
            await self.learning_sink(user_id, notes)
            logger.debug(f"Recorded {len(notes)} learning note(s)")
        except Exception as exc:
            logger.warning(f"Dropping learning notes after sink failure: {type(exc).__name__}: {exc}")

    async def drain(self) -> None:
        """Wait for outstanding background learning tasks (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
