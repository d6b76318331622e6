import logging
import threading
from typing import Callable, List, Optional, TypeVar

from koware.catalog import AnimeCatalog
from koware.config import ProviderToggleOptions
from koware.ids import belongs_to
from koware.models import Anime, Episode, SearchFilters, StreamLink
from koware.transport import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MultiSourceAnimeCatalog(AnimeCatalog):
    """
    Primary catalog with a secondary fallback.

    Anything the primary fails at or comes back empty for is retried on the
    secondary. Ids tagged with a provider's namespace skip the fallback and
    go straight to that provider.
    """

    name = "multi"

    def __init__(self, primary: AnimeCatalog, secondary: AnimeCatalog,
                 toggles: Optional[ProviderToggleOptions] = None):
        self.primary = primary
        self.secondary = secondary
        self.toggles = toggles or ProviderToggleOptions()

    @property
    def providers(self) -> List[AnimeCatalog]:
        return [self.primary, self.secondary]

    @property
    def is_configured(self) -> bool:
        return any(p.is_configured for p in self.providers if self.toggles.is_enabled(p.name))

    def search(self, query: str, filters: Optional[SearchFilters] = None,
               cancel: Optional[threading.Event] = None) -> List[Anime]:
        return self._first_non_empty(self.providers, lambda p: p.search(query, filters, cancel), "search")

    def browse_popular(self, filters: Optional[SearchFilters] = None,
                       cancel: Optional[threading.Event] = None) -> List[Anime]:
        return self._first_non_empty(self.providers, lambda p: p.browse_popular(filters, cancel), "browse")

    def get_episodes(self, anime: Anime, cancel: Optional[threading.Event] = None) -> List[Episode]:
        return self._first_non_empty(self._route(anime.id), lambda p: p.get_episodes(anime, cancel), "episodes")

    def get_streams(self, episode: Episode, cancel: Optional[threading.Event] = None) -> List[StreamLink]:
        return self._first_non_empty(self._route(episode.id), lambda p: p.get_streams(episode, cancel), "streams")

    def _route(self, item_id: str) -> List[AnimeCatalog]:
        for provider in self.providers:
            if provider.namespace and belongs_to(item_id, provider.namespace):
                return [provider]
        return self.providers

    def _first_non_empty(self, candidates: List[AnimeCatalog], call: Callable[[AnimeCatalog], List[T]],
                         operation: str) -> List[T]:
        enabled = [p for p in candidates if self.toggles.is_enabled(p.name)]
        if not enabled:
            logger.warning(f"No enabled provider for {operation}: {', '.join(p.name for p in candidates)} disabled")
            return []

        for provider in enabled:
            try:
                result = call(provider)
            except OperationCancelled:
                raise
            except Exception as e:
                logger.warning(f"{provider.name} {operation} failed: {e}")
                continue
            if result:
                return result
            logger.debug(f"{provider.name} returned nothing for {operation}")
        return []
