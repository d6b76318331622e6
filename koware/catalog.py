import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from koware.models import Anime, Episode, SearchFilters, StreamLink


class CatalogError(Exception):
    """Base class for catalog failures."""


class ProviderError(CatalogError):
    """A provider's top-level request failed or returned an unusable answer."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class AnimeCatalog(ABC):
    """
    Everything a provider must offer: search, browse, list episodes and
    resolve an episode to playable streams.

    ``cancel`` is an optional event; once set, the operation raises
    ``OperationCancelled`` instead of returning.
    """

    name: str = ""
    namespace: Optional[str] = None

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    def search(self, query: str, filters: Optional[SearchFilters] = None,
               cancel: Optional[threading.Event] = None) -> List[Anime]:
        ...

    @abstractmethod
    def browse_popular(self, filters: Optional[SearchFilters] = None,
                       cancel: Optional[threading.Event] = None) -> List[Anime]:
        ...

    @abstractmethod
    def get_episodes(self, anime: Anime, cancel: Optional[threading.Event] = None) -> List[Episode]:
        ...

    @abstractmethod
    def get_streams(self, episode: Episode, cancel: Optional[threading.Event] = None) -> List[StreamLink]:
        ...


def unique_episodes(episodes) -> List[Episode]:
    """Sort by number and keep the first episode seen for each number."""
    seen = set()
    result = []
    for episode in episodes:
        if episode.number in seen:
            continue
        seen.add(episode.number)
        result.append(episode)
    result.sort(key=lambda e: e.number)
    return result
