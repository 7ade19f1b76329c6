import argparse
import asyncio
import atexit
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import replace
from pathlib import Path

from tqdm import tqdm

from .config import ANTHROPIC_API_KEY, TMDB_API_KEY, DEFAULT_RECOMMENDATION_COUNT
from .database import MovieRecord, MovieStore, close_pool, count_movies, init_db, upsert_movie
from .dedup import create_deduplicators
from .enrichment import Suggestion, TitleResolver
from .signal_weights import (
    PRIMARY_SIGNALS,
    UnknownSignalError,
    WeightConfig,
    compute_score,
    load_weight_config,
    save_weight_config,
)
from .tmdb import AsyncTMDBClient

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _load_movie_file(path: Path) -> list[MovieRecord]:
    """Read a JSON list of movie objects; invalid entries are skipped."""
    payload = json.loads(path.read_text())
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a JSON list of movies")

    records = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("title"):
            logger.warning(f"Skipping movie entry without a title: {item!r}")
            continue
        genres = item.get("genres") or item.get("genre") or []
        if isinstance(genres, str):
            genres = [g.strip() for g in genres.split(",") if g.strip()]
        records.append(MovieRecord(
            title=str(item["title"]).strip(),
            year=item.get("year"),
            genres=list(genres),
            overview=item.get("overview") or item.get("plot"),
            poster_url=item.get("poster_url"),
            rating=item.get("rating"),
            popularity=item.get("popularity"),
            runtime=item.get("runtime"),
            tmdb_id=item.get("tmdb_id"),
            source=item.get("source", "import"),
        ))
    return records


def _parse_assignments(pairs: list[str]) -> dict[str, str]:
    values = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected name=value, got '{pair}'")
        name, value = pair.split("=", 1)
        values[name.strip()] = value.strip()
    return values


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database schema."""
    init_db()
    logger.info(f"Database ready ({count_movies()} movies)")


def cmd_import_movies(args: argparse.Namespace) -> None:
    """Load movies from a JSON file into the canonical store."""
    init_db()
    records = _load_movie_file(Path(args.file))
    for record in tqdm(records, desc="Importing movies", unit="movie"):
        upsert_movie(record)
    logger.info(f"Imported {len(records)} movies ({count_movies()} total)")


async def _resolve_titles(titles: list[str], year: int | None, save: bool) -> list[dict]:
    dedups = create_deduplicators()
    suggestions = [Suggestion(title=t, year=year) for t in titles]

    if not TMDB_API_KEY:
        logger.info("TMDB_API_KEY not set; resolving against the local database only")
        resolver = TitleResolver(MovieStore(), movie_dedup=dedups.movie)
        return [r.to_dict() for r in await resolver.enrich(suggestions)]

    async with AsyncTMDBClient(TMDB_API_KEY) as tmdb:
        resolver = TitleResolver(
            MovieStore(),
            search=tmdb,
            movie_dedup=dedups.movie,
            search_dedup=dedups.search,
            persist_external=save,
        )
        return [r.to_dict() for r in await resolver.enrich(suggestions)]


def cmd_resolve(args: argparse.Namespace) -> None:
    """Resolve free-text titles to canonical movies."""
    init_db()
    resolved = asyncio.run(_resolve_titles(args.titles, args.year, args.save))
    if not resolved:
        logger.info("No titles could be resolved")
        return
    for item in resolved:
        movie = item["movie"]
        logger.info(
            f"  {movie['title']} ({movie['year']}) "
            f"[{item['provenance']}, confidence {item['match_confidence']:.2f}]"
        )


def cmd_score(args: argparse.Namespace) -> None:
    """Score one set of signals under the effective weight configuration."""
    try:
        signals = json.loads(args.signals)
        if not isinstance(signals, dict):
            raise ValueError("signals must be a JSON object")
        score = compute_score(signals, load_weight_config(args.weights_file))
    except UnknownSignalError as exc:
        raise SystemExit(f"Error: {exc}")
    except ValueError as exc:
        raise SystemExit(f"Error: invalid signals: {exc}")
    logger.info(f"Score: {score:.4f}")


def cmd_weights(args: argparse.Namespace) -> None:
    """Show, adjust and optionally persist signal weights."""
    config = load_weight_config(args.weights_file)

    if args.set:
        try:
            updates = _parse_assignments(args.set)
        except ValueError as exc:
            raise SystemExit(f"Error: {exc}")
        unknown = sorted(set(updates) - set(PRIMARY_SIGNALS))
        if unknown:
            raise SystemExit(f"Error: unknown weight(s): {', '.join(unknown)}")
        merged = {**config.to_dict()["weights"], **updates}
        config = WeightConfig.from_dict({
            "weights": merged,
            "boosts": config.to_dict()["boosts"],
            "metadata": config.metadata,
        })

    if args.normalize:
        try:
            config = replace(config, weights=config.weights.normalized())
        except ValueError as exc:
            raise SystemExit(f"Error: {exc}")

    data = config.to_dict()
    logger.info("Signal weights:")
    for name, value in data["weights"].items():
        logger.info(f"  {name:<10} {value:.3f}")
    logger.info(f"  {'total':<10} {config.weights.total():.3f}")
    logger.info("Boost ceilings:")
    for name, value in data["boosts"].items():
        logger.info(f"  {name:<10} {value:.3f}")

    if args.save:
        path = save_weight_config(config, args.save)
        logger.info(f"Saved weights to {path}")


async def _recommend(args: argparse.Namespace) -> list[dict]:
    from .ai_client import AnthropicCompletion
    from .recommender import RecommendationService

    dedups = create_deduplicators()
    store = MovieStore()
    complete = AnthropicCompletion(ANTHROPIC_API_KEY)
    tmdb = AsyncTMDBClient(TMDB_API_KEY) if TMDB_API_KEY else None
    if tmdb is None:
        logger.info("TMDB_API_KEY not set; resolving against the local database only")

    async with AsyncExitStack() as stack:
        if tmdb is not None:
            await stack.enter_async_context(tmdb)
        stack.push_async_callback(complete.aclose)
        resolver = TitleResolver(
            store,
            search=tmdb,
            movie_dedup=dedups.movie,
            search_dedup=dedups.search,
            persist_external=True,
        )
        service = RecommendationService(
            complete,
            resolver,
            load_weight_config(args.weights_file),
            ai_dedup=dedups.ai,
            learning_sink=store.save_learning_notes,
        )
        results = await service.recommend(args.user_id, args.query, args.intent, args.count)
        await service.drain()
    return [r.to_dict() for r in results]


def cmd_recommend(args: argparse.Namespace) -> None:
    """Ask the AI for recommendations and resolve them against the catalog."""
    if not ANTHROPIC_API_KEY:
        raise SystemExit("Error: ANTHROPIC_API_KEY is not set")
    init_db()
    results = asyncio.run(_recommend(args))

    if args.json:
        print(json.dumps(results, indent=2))
        return

    if not results:
        logger.info("No recommendations could be resolved")
        return
    logger.info(f"\nTop {len(results)} recommendations:")
    for i, item in enumerate(results, 1):
        logger.info(f"{i}. {item['title']} ({item['year']}) score {item['score']:.3f}")
        for reason in item["reasons"]:
            logger.info(f"     - {reason}")


def main():
    parser = argparse.ArgumentParser(description="CineAI recommendation toolkit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--weights-file", help="JSON weights file (default: CINEAI_WEIGHTS_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    import_parser = subparsers.add_parser("import-movies", help="Import movies from a JSON file")
    import_parser.add_argument("file", help="JSON list of movie objects")
    import_parser.set_defaults(func=cmd_import_movies)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve titles to canonical movies")
    resolve_parser.add_argument("titles", nargs="+", help="Movie titles")
    resolve_parser.add_argument("--year", type=int, help="Release year hint")
    resolve_parser.add_argument("--save", action="store_true",
                                help="Store TMDB matches in the local database")
    resolve_parser.set_defaults(func=cmd_resolve)

    score_parser = subparsers.add_parser("score", help="Score a JSON object of signals")
    score_parser.add_argument("--signals", required=True,
                              help='e.g. \'{"semantic": 1.0, "storyline": 0.5}\'')
    score_parser.set_defaults(func=cmd_score)

    weights_parser = subparsers.add_parser("weights", help="Show or tune signal weights")
    weights_parser.add_argument("--set", nargs="+", metavar="NAME=VALUE", help="Override weights")
    weights_parser.add_argument("--normalize", action="store_true",
                                help="Rescale weights so they sum to 1")
    weights_parser.add_argument("--save", metavar="PATH", help="Write the result to a weights file")
    weights_parser.set_defaults(func=cmd_weights)

    rec_parser = subparsers.add_parser("recommend", help="Generate AI recommendations")
    rec_parser.add_argument("user_id", help="User identifier")
    rec_parser.add_argument("--query", required=True, help="What the user is looking for")
    rec_parser.add_argument("--intent", default="general", help="Request intent (mood, similar, ...)")
    rec_parser.add_argument("--count", type=int, default=DEFAULT_RECOMMENDATION_COUNT,
                            help="Number of recommendations")
    rec_parser.add_argument("--json", action="store_true", help="Print results as JSON")
    rec_parser.set_defaults(func=cmd_recommend)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    args.func(args)


if __name__ == "__main__":
    main()
