import re
from enum import Enum
from typing import NewType, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

AnimeId = NewType("AnimeId", str)
EpisodeId = NewType("EpisodeId", str)

KNOWN_GENRES: Tuple[str, ...] = (
    "Action", "Adventure", "Comedy", "Drama", "Fantasy", "Horror", "Isekai",
    "Mecha", "Music", "Mystery", "Psychological", "Romance", "Sci-Fi",
    "Slice of Life", "Sports", "Supernatural", "Thriller",
)


def _normalize_genre(text: str) -> str:
    return text.lower().replace("-", "").replace(" ", "")


def match_genre(text: str) -> Optional[str]:
    """Map loose user input ("sci fi", "slice") onto a known genre name."""
    if not text or not text.strip():
        return None
    needle = _normalize_genre(text.strip())
    for genre in KNOWN_GENRES:
        if _normalize_genre(genre) == needle:
            return genre
    for genre in KNOWN_GENRES:
        if genre.lower().startswith(text.strip().lower()):
            return genre
    return None


class SubtitleTrack(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    url: str
    language: Optional[str] = None


class StreamLink(BaseModel):
    """A playable URL plus everything a player needs to open it."""
    model_config = ConfigDict(frozen=True)

    url: str
    quality: str
    provider: str
    referrer: Optional[str] = None
    subtitles: Tuple[SubtitleTrack, ...] = ()
    host_priority: int = 0
    source: Optional[str] = None

    @computed_field
    @property
    def requires_soft_subs(self) -> bool:
        return len(self.subtitles) > 0

    def __str__(self):
        return f"{self.quality} - {self.provider}"


class Episode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    number: int = Field(gt=0)
    page_url: str

    @model_validator(mode="before")
    @classmethod
    def _default_title(cls, data):
        if isinstance(data, dict) and not str(data.get("title") or "").strip():
            data = {**data, "title": f"Episode {data.get('number')}"}
        return data


class Anime(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    synopsis: Optional[str] = None
    cover_image: Optional[str] = None
    detail_page: str
    episodes: Tuple[Episode, ...] = ()

    @field_validator("title")
    @classmethod
    def _title_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value

    def with_episodes(self, episodes) -> "Anime":
        return self.model_copy(update={"episodes": tuple(episodes)})


class ContentStatus(str, Enum):
    ANY = "any"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    UPCOMING = "upcoming"


class SearchSort(str, Enum):
    DEFAULT = "default"
    POPULARITY = "popularity"
    SCORE = "score"
    RECENT = "recent"
    TITLE = "title"


class SearchFilters(BaseModel):
    """Optional narrowing of a search. The all-default value means "no filter"."""
    model_config = ConfigDict(frozen=True)

    genres: Optional[Tuple[str, ...]] = None
    year: Optional[int] = Field(default=None, ge=1900, le=2100)
    status: ContentStatus = ContentStatus.ANY
    min_score: Optional[int] = Field(default=None, ge=1, le=10)
    sort: SearchSort = SearchSort.DEFAULT
    country_origin: Optional[str] = None

    @field_validator("genres")
    @classmethod
    def _drop_blank_genres(cls, value):
        if value is None:
            return None
        cleaned = tuple(g.strip() for g in value if g and g.strip())
        return cleaned or None

    @field_validator("country_origin")
    @classmethod
    def _upper_country(cls, value):
        if value is None or not value.strip():
            return None
        if not re.fullmatch(r"[A-Za-z]{2,3}", value.strip()):
            raise ValueError(f"invalid country code: {value!r}")
        return value.strip().upper()

    @property
    def has_filters(self) -> bool:
        return (
            bool(self.genres)
            or self.year is not None
            or self.status != ContentStatus.ANY
            or self.min_score is not None
            or self.sort != SearchSort.DEFAULT
            or self.country_origin is not None
        )

    @classmethod
    def empty(cls) -> "SearchFilters":
        return cls()
