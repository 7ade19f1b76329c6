"""
Async TMDB search client, the external fallback for title resolution.

Follows the same request discipline as the rest of the package:
bounded concurrency via a semaphore, coordinated pausing on 429 so every
task waits out a rate limit together, exponential backoff on timeouts.
"""
import asyncio
import logging
import random

import httpx

from .config import (
    DEFAULT_RETRY_AFTER,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    TMDB_BASE_URL,
    TMDB_IMAGE_BASE_URL,
    TMDB_MAX_CONCURRENT,
)
from .database import MovieRecord

logger = logging.getLogger(__name__)

# TMDB movie genre ids (stable, from /genre/movie/list)
TMDB_GENRES = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Science Fiction",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
}


class TMDBError(Exception):
    """Raised when TMDB cannot answer a request."""


def _parse_year(release_date: str | None) -> int | None:
    if not release_date or len(release_date) < 4:
        return None
    try:
        return int(release_date[:4])
    except ValueError:
        return None


def parse_search_result(item: dict) -> MovieRecord:
    """Convert one TMDB /search/movie result into a MovieRecord."""
    genres = item.get("genres")
    if isinstance(genres, list) and genres and isinstance(genres[0], dict):
        genre_names = [g.get("name") for g in genres if g.get("name")]
    else:
        genre_names = [TMDB_GENRES[g] for g in item.get("genre_ids", []) if g in TMDB_GENRES]

    poster_path = item.get("poster_path")
    return MovieRecord(
        tmdb_id=item.get("id"),
        title=item.get("title") or item.get("original_title") or "",
        year=_parse_year(item.get("release_date")),
        genres=genre_names,
        overview=item.get("overview") or None,
        poster_url=f"{TMDB_IMAGE_BASE_URL}{poster_path}" if poster_path else None,
        rating=item.get("vote_average"),
        popularity=item.get("popularity"),
        runtime=item.get("runtime"),
        source="tmdb",
    )


class AsyncTMDBClient:
    """Async TMDB client with coordinated rate limiting."""

    def __init__(
        self,
        api_key: str,
        base_url: str = TMDB_BASE_URL,
        timeout: float = HTTP_TIMEOUT,
        max_concurrent: int = TMDB_MAX_CONCURRENT,
        client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            raise ValueError("TMDB API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = client
        self._owns_client = client is None
        # Coordinated rate limiting: when one task hits 429, all tasks pause
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": "cineai-rec/1.0", "Accept": "application/json"},
                timeout=self.timeout,
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self):
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def _get_json(self, path: str, params: dict) -> dict | None:
        """
        GET a TMDB endpoint with retry logic.

        Returns None on 404; raises TMDBError for other failures once
        retries are exhausted.
        """
        if self.client is None:
            raise RuntimeError("AsyncTMDBClient must be used as an async context manager")

        url = f"{self.base_url}{path}"
        query = {"api_key": self.api_key, **params}

        async with self.semaphore:
            for attempt in range(MAX_HTTP_RETRIES):
                await self._rate_limit_event.wait()

                try:
                    resp = await self.client.get(url, params=query)

                    if resp.status_code == 404:
                        return None

                    if resp.status_code == 429:
                        try:
                            retry_after = float(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
                        except ValueError:
                            retry_after = DEFAULT_RETRY_AFTER
                        logger.warning(
                            f"Rate limited on {path}, pausing ALL tasks for {retry_after}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        self._rate_limit_event.clear()
                        await asyncio.sleep(retry_after)
                        self._rate_limit_event.set()
                        await asyncio.sleep(random.uniform(0, 0.5))
                        continue

                    resp.raise_for_status()
                    return resp.json()

                except httpx.TimeoutException:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Timeout on {path}, retrying in {wait_time}s (attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                    )
                    await asyncio.sleep(wait_time)

                except httpx.HTTPStatusError as exc:
                    raise TMDBError(f"HTTP {exc.response.status_code} on {path}") from exc

                except httpx.HTTPError as exc:
                    raise TMDBError(f"Request error on {path}: {type(exc).__name__}: {exc}") from exc

                except ValueError as exc:
                    raise TMDBError(f"Malformed JSON from {path}: {exc}") from exc

        raise TMDBError(f"Max retries exceeded for {path}")

    async def search(self, title: str, year: int | None = None, limit: int = 1) -> list[MovieRecord]:
        """Search movies by title (optionally year); at most `limit` results."""
        if not title or not title.strip():
            return []

        params = {"query": title.strip(), "include_adult": "false", "page": 1}
        if year:
            params["year"] = year

        data = await self._get_json("/search/movie", params)
        if not data:
            return []

        results = data.get("results") or []
        movies = [parse_search_result(item) for item in results[:max(0, limit)]]
        logger.debug(f"TMDB search '{title}' ({year}): {len(results)} hits, kept {len(movies)}")
        return movies
