import logging
import time
from functools import lru_cache
from typing import List, Optional

import cloudscraper
import requests
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from koware.catalog import AnimeCatalog, ProviderError
from koware.config import Settings
from koware.models import Anime, ContentStatus, Episode, SearchFilters, SearchSort, StreamLink, match_genre
from koware.scrapers.allanime_scraper import AllAnimeScraper
from koware.scrapers.hianime import HiAnimeScraper
from koware.scrapers.multi_source import MultiSourceAnimeCatalog
from koware.transport import HttpTransport


@lru_cache
def get_settings() -> Settings:
    return Settings()


def build_catalog(settings: Settings) -> MultiSourceAnimeCatalog:
    """AllAnime first, HiAnime as the fallback."""
    allanime = AllAnimeScraper(settings.allanime, HttpTransport(
        requests.Session(), attempts=settings.http_attempts, backoff=settings.http_backoff))
    hianime = HiAnimeScraper(settings.hianime, HttpTransport(
        cloudscraper.create_scraper(), attempts=settings.http_attempts, backoff=settings.http_backoff,
        timeout=settings.hianime.timeout))
    return MultiSourceAnimeCatalog(allanime, hianime, settings.providers)


@lru_cache
def get_catalog() -> AnimeCatalog:
    return build_catalog(get_settings())


logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)

app = FastAPI(
    title="Koware Catalog API",
    description="Search anime, list episodes and resolve playable streams across providers",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AnimeListResponse(BaseModel):
    totalResults: int
    page: int
    limit: int
    query: Optional[str] = None
    results: List[Anime]
    executionTimeMs: int


class EpisodesResponse(BaseModel):
    animeId: str
    totalEpisodes: int
    episodes: List[Episode]
    executionTimeMs: int


class StreamsResponse(BaseModel):
    episodeId: str
    streams: List[StreamLink]
    executionTimeMs: int


def paginate_results(results: list, page: int, limit: int) -> list:
    """Paginate results based on page and limit parameters."""
    start_idx = (page - 1) * limit
    if start_idx >= len(results):
        return []
    return results[start_idx:start_idx + limit]


def parse_filters(genre: Optional[List[str]], year: Optional[int], status: Optional[str],
                  sort: Optional[str], country: Optional[str], min_score: Optional[int]) -> SearchFilters:
    genres = []
    for raw in genre or []:
        matched = match_genre(raw)
        if matched is None:
            raise HTTPException(status_code=400, detail=f"Unknown genre: {raw}")
        genres.append(matched)

    try:
        return SearchFilters(
            genres=tuple(genres) or None,
            year=year,
            status=ContentStatus((status or "any").lower()),
            sort=SearchSort((sort or "default").lower()),
            country_origin=country,
            min_score=min_score,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid filters: {e}")


def elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


@app.get("/")
def root():
    return {
        "message": "Welcome to the Koware Catalog API",
        "documentation": "/docs",
        "version": "1.0.0"
    }


@app.get("/api/anime/search", response_model=AnimeListResponse)
def search_anime(
    q: str = Query("", description="Search query; empty browses popular titles"),
    genre: Optional[List[str]] = Query(None, description="Genre filter, repeatable"),
    year: Optional[int] = Query(None, description="Release year"),
    status: Optional[str] = Query(None, description="any, ongoing, completed, upcoming"),
    sort: Optional[str] = Query(None, description="default, popularity, score, recent, title"),
    country: Optional[str] = Query(None, description="Country of origin (JP, KR, CN)"),
    min_score: Optional[int] = Query(None, description="Minimum score, 1-10"),
    page: int = Query(1, description="Page number", ge=1),
    limit: int = Query(20, description="Results per page", ge=1, le=100),
    catalog: AnimeCatalog = Depends(get_catalog),
):
    start_time = time.time()
    filters = parse_filters(genre, year, status, sort, country, min_score)

    try:
        results = catalog.search(q, filters)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "totalResults": len(results),
        "page": page,
        "limit": limit,
        "query": q,
        "results": paginate_results(results, page, limit),
        "executionTimeMs": elapsed_ms(start_time),
    }


@app.get("/api/anime/popular", response_model=AnimeListResponse)
def popular_anime(
    page: int = Query(1, description="Page number", ge=1),
    limit: int = Query(20, description="Results per page", ge=1, le=100),
    catalog: AnimeCatalog = Depends(get_catalog),
):
    start_time = time.time()
    try:
        results = catalog.browse_popular()
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "totalResults": len(results),
        "page": page,
        "limit": limit,
        "results": paginate_results(results, page, limit),
        "executionTimeMs": elapsed_ms(start_time),
    }


@app.get("/api/anime/episodes", response_model=EpisodesResponse)
def get_episodes(
    id: str = Query(..., description="Anime id as returned by search"),
    title: Optional[str] = Query(None, description="Anime title, used for display only"),
    catalog: AnimeCatalog = Depends(get_catalog),
):
    """
    List episodes for an anime

    - **id**: Anime id from a search result (provider prefix included)
    """
    start_time = time.time()
    anime = Anime(id=id, title=title or id, detail_page="")
    try:
        episodes = catalog.get_episodes(anime)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "animeId": id,
        "totalEpisodes": len(episodes),
        "episodes": episodes,
        "executionTimeMs": elapsed_ms(start_time),
    }


@app.get("/api/anime/streams", response_model=StreamsResponse)
def get_streams(
    episode_id: str = Query(..., description="Episode id as returned by the episodes endpoint"),
    number: int = Query(..., description="Episode number", ge=1),
    page_url: str = Query("", description="Episode page URL as returned by the episodes endpoint"),
    catalog: AnimeCatalog = Depends(get_catalog),
):
    """
    Resolve playable streams for an episode, best quality first
    """
    start_time = time.time()
    episode = Episode(id=episode_id, number=number, page_url=page_url)
    try:
        streams = catalog.get_streams(episode)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "episodeId": episode_id,
        "streams": streams,
        "executionTimeMs": elapsed_ms(start_time),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=5000, reload=True)
