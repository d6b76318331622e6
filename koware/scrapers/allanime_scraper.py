import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urljoin, urlparse

import requests

from koware.catalog import AnimeCatalog, ProviderError, unique_episodes
from koware.config import AllAnimeOptions
from koware.models import Anime, ContentStatus, Episode, SearchFilters, SearchSort, StreamLink, SubtitleTrack
from koware.ranking import rank_streams
from koware.scrapers.allanime_decoder import decode_source_url
from koware.scrapers.playlist_utils import PlaylistUtils, is_coarse, is_m3u8
from koware.transport import HttpTransport, OperationCancelled, TransportError, check_cancelled

logger = logging.getLogger(__name__)


def host_priority(url: str) -> int:
    host = (urlparse(url).hostname or "").lower()
    if "wixmp" in host or "hianime" in host:
        return 20
    if "akamai" in host:
        return 10
    if "sharepoint" in host or "haildrop" in host:
        return -20
    return 0


def _dig(data: Any, *keys: str) -> Any:
    """data[k1][k2]... or None as soon as a level is not an object."""
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class AllAnimeScraper(AnimeCatalog):
    name = "allanime"
    namespace = None

    # GraphQL Query Constants (the API expects these exact strings)
    SEARCH_QUERY = "query( $search: SearchInput $limit: Int $page: Int $translationType: VaildTranslationTypeEnumType $countryOrigin: VaildCountryOriginEnumType ) { shows( search: $search limit: $limit page: $page translationType: $translationType countryOrigin: $countryOrigin ) { edges { _id name availableEpisodes __typename } }}"

    EPISODES_QUERY = "query ($showId: String!) { show( _id: $showId ) { _id availableEpisodesDetail }}"

    STREAMS_QUERY = "query ($showId: String!, $translationType: VaildTranslationTypeEnumType!, $episodeString: String!) { episode( showId: $showId translationType: $translationType episodeString: $episodeString ) { episodeString sourceUrls }}"

    STATUS_NAMES = {
        ContentStatus.ONGOING: "Releasing",
        ContentStatus.COMPLETED: "Finished",
        ContentStatus.UPCOMING: "Not Yet Aired",
    }
    COUNTRIES = ("JP", "KR", "CN")
    EPISODE_MARKER = ":ep-"

    def __init__(self, options: AllAnimeOptions, transport: Optional[HttpTransport] = None):
        self.options = options
        self.transport = transport or HttpTransport(requests.Session())
        self.playlist_utils = PlaylistUtils(self.transport, options.user_agent, options.manifest_timeout)

    @property
    def is_configured(self) -> bool:
        return self.options.is_configured

    def _warn_not_configured(self):
        logger.warning("AllAnime source not configured; set KOWARE_ALLANIME__* to enable it.")

    # --- Search ---

    def search(self, query: str, filters: Optional[SearchFilters] = None,
               cancel: Optional[threading.Event] = None) -> List[Anime]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        filters = filters or SearchFilters.empty()
        if not (query or "").strip() and not filters.has_filters:
            return self.browse_popular(cancel=cancel)
        return self._search(query, filters, cancel)

    def browse_popular(self, filters: Optional[SearchFilters] = None,
                       cancel: Optional[threading.Event] = None) -> List[Anime]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        browse_filters = (filters or SearchFilters.empty()).model_copy(update={"sort": SearchSort.POPULARITY})
        return self._search("", browse_filters, cancel)

    def _search(self, query: str, filters: SearchFilters, cancel) -> List[Anime]:
        search_input: Dict[str, Any] = {"allowAdult": False, "allowUnknown": False}
        if query and query.strip():
            search_input["query"] = query.strip()
        if filters.genres:
            search_input["genres"] = list(filters.genres)
        if filters.year is not None:
            search_input["year"] = filters.year
        if filters.status in self.STATUS_NAMES:
            search_input["status"] = self.STATUS_NAMES[filters.status]
        # The shows endpoint has no sort or score input; popularity is its default order.

        variables = {
            "search": search_input,
            "limit": self.options.search_limit,
            "page": 1,
            "translationType": self.options.translation_type,
            "countryOrigin": filters.country_origin if filters.country_origin in self.COUNTRIES else "ALL",
        }

        data = self._query(self.SEARCH_QUERY, variables, cancel)
        edges = _dig(data, "data", "shows", "edges")
        if not isinstance(edges, list):
            logger.warning("Search response missing data.shows.edges")
            return []

        results = []
        for edge in edges:
            if not isinstance(edge, dict) or edge.get("_id") is None:
                continue
            show_id = str(edge["_id"]).strip()
            if not show_id:
                continue
            title = edge.get("name") if isinstance(edge.get("name"), str) and edge["name"].strip() else show_id
            results.append(Anime(id=show_id, title=title, detail_page=self._detail_url(show_id)))
            if len(results) >= self.options.search_limit:
                break
        return results

    # --- Episodes ---

    def get_episodes(self, anime: Anime, cancel: Optional[threading.Event] = None) -> List[Episode]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        data = self._query(self.EPISODES_QUERY, {"showId": anime.id}, cancel)
        available = _dig(data, "data", "show", "availableEpisodesDetail")
        if not isinstance(available, dict):
            logger.warning(f"Episode response missing expected fields for anime {anime.id}")
            return []

        key = self.options.translation_type or "sub"
        entries = available.get(key)
        if entries is None:
            entries = next((v for k, v in available.items() if k.lower() == key.lower()), None)
        if not isinstance(entries, list):
            logger.warning(f"Translation type '{key}' not found for anime {anime.id}")
            return []

        referer = (self.options.referer or "").rstrip("/")
        episodes = []
        for raw in entries:
            try:
                number = int(str(raw).strip())
            except ValueError:
                logger.debug(f"Skipping invalid episode '{raw}' for anime {anime.id}")
                continue
            if number < 1:
                continue
            episodes.append(Episode(
                id=f"{anime.id}{self.EPISODE_MARKER}{number}",
                title=f"Episode {number}",
                number=number,
                page_url=f"{referer}/anime/{anime.id}/episode-{number}",
            ))

        return unique_episodes(episodes)

    # --- Streams ---

    def get_streams(self, episode: Episode, cancel: Optional[threading.Event] = None) -> List[StreamLink]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        show_id, number = self._parse_episode_id(episode)
        variables = {
            "showId": show_id,
            "translationType": self.options.translation_type,
            "episodeString": str(number),
        }
        data = self._query(self.STREAMS_QUERY, variables, cancel)
        source_urls = _dig(data, "data", "episode", "sourceUrls")
        if not isinstance(source_urls, list):
            logger.warning(f"Stream response missing sourceUrls for {episode.id}")
            return []

        sources = [
            (str(item.get("sourceName") or "unknown"), item["sourceUrl"])
            for item in source_urls
            if isinstance(item, dict) and isinstance(item.get("sourceUrl"), str)
        ]

        links, attempts = self._resolve_sources(sources, cancel)
        resolved = rank_streams(links)

        if attempts:
            logger.info(f"Stream resolution summary: {'; '.join(attempts)}")
        if not resolved and attempts:
            logger.warning(f"No playable streams resolved. Tried: {'; '.join(attempts)}")
        return resolved

    def _resolve_sources(self, sources: List[Tuple[str, str]],
                         cancel: Optional[threading.Event]) -> Tuple[List[StreamLink], List[str]]:
        """
        Resolve every source on its own thread. Each source gets its own
        deadline; the join never waits past it, so a hung source can't hold
        up the rest.
        """
        if not sources:
            return [], []

        collected: List[StreamLink] = []
        attempts: List[str] = []
        lock = threading.Lock()
        stop = threading.Event()

        def record(entry: str, links=()):
            with lock:
                collected.extend(links)
                attempts.append(entry)

        deadline = time.monotonic() + self.options.source_timeout
        executor = ThreadPoolExecutor(max_workers=len(sources), thread_name_prefix="allanime-source")
        futures = {
            executor.submit(self._resolve_source, name, url, deadline, stop, record): name
            for name, url in sources
        }
        try:
            pending = set(futures)
            while pending:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                _, pending = wait(pending, timeout=min(remaining, 0.1))
        finally:
            stop.set()
            executor.shutdown(wait=False, cancel_futures=True)

        with lock:
            links = list(collected)
            summary = list(attempts)
        summary.extend(f"{futures[f]}: timeout" for f in pending if not f.done())
        return links, summary

    def _resolve_source(self, name: str, encoded_url: str, deadline: float,
                        stop: threading.Event, record):
        host = "unknown"
        try:
            decoded = decode_source_url(encoded_url)
            if not decoded:
                record(f"{name}: undecodable")
                return
            url = self._ensure_absolute(decoded)
            host = urlparse(url).hostname or "unknown"

            response = self.transport.get(url, headers=self._headers(), timeout=self.options.source_timeout,
                                          cancel=stop, deadline=deadline)
            if not response.ok:
                logger.debug(f"Source {name} returned HTTP {response.status_code}")
                record(f"{name}@{host}: http {response.status_code}")
                return

            links = self._extract_links(response.text, url, name, stop, deadline)
            record(f"{name}@{host}: ok ({len(links)} links)", links)
        except OperationCancelled:
            record(f"{name}@{host}: cancelled")
        except Exception as e:
            logger.debug(f"Failed to resolve source {name}: {e}", exc_info=True)
            record(f"{name}@{host}: error {type(e).__name__}")

    def _extract_links(self, payload: str, source_url: str, provider: str,
                       cancel: Optional[threading.Event] = None,
                       deadline: Optional[float] = None) -> List[StreamLink]:
        links: List[StreamLink] = []
        referrer = None
        subtitles: List[SubtitleTrack] = []
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug(f"Source payload for {provider} was not JSON")
        else:
            referrer = self._find_referer(data)
            subtitles = self._find_subtitles(data, source_url)
            self._walk(data, provider, links, referrer, subtitles)

        effective_referrer = referrer or self.options.referer
        if not links and is_m3u8(source_url):
            manifest = self._make_link(source_url, "auto", provider, effective_referrer, subtitles)
            if manifest is not None:
                links.extend(self._with_host_priority(self.playlist_utils.parse_hls(payload, manifest, subtitles)))
            return links

        if not links:
            return links
        return self._expand_manifests(links, effective_referrer, subtitles, cancel, deadline)

    def _expand_manifests(self, links: List[StreamLink], fallback_referrer: Optional[str],
                          fallback_subtitles: List[SubtitleTrack], cancel, deadline) -> List[StreamLink]:
        expanded = []
        for link in links:
            if is_m3u8(link.url) and is_coarse(link.quality):
                manifest = link
                if not link.referrer and fallback_referrer:
                    manifest = link.model_copy(update={"referrer": fallback_referrer})
                subtitles = link.subtitles or tuple(fallback_subtitles)
                variants = self.playlist_utils.extract_from_hls(manifest, subtitles, cancel=cancel, deadline=deadline)
                if variants:
                    expanded.extend(self._with_host_priority(variants))
                    continue
            expanded.append(link)
        return expanded

    def _with_host_priority(self, links: List[StreamLink]) -> List[StreamLink]:
        return [link.model_copy(update={"host_priority": host_priority(link.url)}) for link in links]

    def _walk(self, node: Any, provider: str, links: List[StreamLink],
              referrer: Optional[str], subtitles: List[SubtitleTrack]):
        if isinstance(node, dict):
            if isinstance(node.get("link"), str):
                quality = node.get("resolutionStr")
                if not isinstance(quality, str):
                    quality = "auto"
                self._add_link(links, node["link"], quality, provider, referrer, subtitles)
            if isinstance(node.get("url"), str):
                self._add_link(links, node["url"], "hls", provider, referrer, subtitles)
            for value in node.values():
                self._walk(value, provider, links, referrer, subtitles)
        elif isinstance(node, list):
            for item in node:
                self._walk(item, provider, links, referrer, subtitles)

    def _add_link(self, links: List[StreamLink], url: str, quality: str, provider: str,
                  referrer: Optional[str], subtitles: List[SubtitleTrack]):
        link = self._make_link(url, quality, provider, referrer, subtitles)
        if link is not None:
            links.append(link)

    def _make_link(self, url: str, quality: str, provider: str, referrer: Optional[str],
                   subtitles: List[SubtitleTrack]) -> Optional[StreamLink]:
        if not url or not url.strip():
            return None
        url = url.strip()
        if not urlparse(url).scheme:
            if not self.options.referer:
                return None
            url = urljoin(self.options.referer, url)

        return StreamLink(
            url=url,
            quality=quality,
            provider=provider,
            referrer=referrer or self.options.referer,
            subtitles=tuple(subtitles or ()),
            host_priority=host_priority(url),
            source=provider,
        )

    def _find_referer(self, node: Any) -> Optional[str]:
        if isinstance(node, dict):
            value = node.get("Referer")
            if isinstance(value, str) and value.strip():
                return value
            children = node.values()
        elif isinstance(node, list):
            children = node
        else:
            return None

        for child in children:
            found = self._find_referer(child)
            if found:
                return found
        return None

    def _find_subtitles(self, node: Any, source_url: str) -> List[SubtitleTrack]:
        """First non-empty ``subtitles`` array anywhere in the payload."""
        if isinstance(node, dict):
            for key, value in node.items():
                if key == "subtitles" and isinstance(value, list):
                    tracks = self._parse_subtitle_items(value, source_url)
                    if tracks:
                        return tracks
                nested = self._find_subtitles(value, source_url)
                if nested:
                    return nested
        elif isinstance(node, list):
            for item in node:
                nested = self._find_subtitles(item, source_url)
                if nested:
                    return nested
        return []

    def _parse_subtitle_items(self, items: list, source_url: str) -> List[SubtitleTrack]:
        tracks = []
        for item in items:
            if not isinstance(item, dict):
                continue
            src = item.get("src")
            if not isinstance(src, str) or not src.strip():
                continue
            label = item.get("label")
            lang = item.get("lang")
            tracks.append(SubtitleTrack(
                label=label if isinstance(label, str) and label else "Subtitles",
                url=urljoin(source_url, src.strip()),
                language=lang if isinstance(lang, str) else None,
            ))
        return tracks

    # --- Helpers ---

    def _parse_episode_id(self, episode: Episode) -> Tuple[str, int]:
        value = episode.id
        idx = value.lower().rfind(self.EPISODE_MARKER)
        show_id = value[:idx] if idx > 0 else value
        number = episode.number

        if idx >= 0:
            suffix = value[idx + len(self.EPISODE_MARKER):]
            if suffix.isdigit() and int(suffix) > 0:
                number = int(suffix)
        return show_id, number

    def _headers(self) -> Dict[str, str]:
        referer = self.options.referer or ""
        return {
            "Referer": referer,
            "Origin": referer.rstrip("/"),
            "User-Agent": self.options.user_agent,
            "Accept": "application/json, */*",
            "Accept-Language": "en-US,en;q=0.9",
        }

    def _api_url(self, gql: str, variables: Dict[str, Any]) -> str:
        encoded_variables = json.dumps(variables, separators=(",", ":"))
        return (f"{self.options.api_base.rstrip('/')}/api"
                f"?query={quote(gql, safe='')}&variables={quote(encoded_variables, safe='')}")

    def _detail_url(self, show_id: str) -> str:
        return f"https://{self.options.base_host}/anime/{show_id}"

    def _ensure_absolute(self, path: str) -> str:
        if urlparse(path).scheme in ("http", "https"):
            return path
        base = f"https://{self.options.base_host}"
        return f"{base}{path}" if path.startswith("/") else f"{base}/{path}"

    def _query(self, gql: str, variables: Dict[str, Any], cancel) -> Dict[str, Any]:
        """Run one GraphQL GET. Failures raise ProviderError for the caller to handle."""
        check_cancelled(cancel)
        url = self._api_url(gql, variables)
        try:
            response = self.transport.get(url, headers=self._headers(), cancel=cancel)
        except TransportError as e:
            raise ProviderError(self.name, str(e)) from e

        if not response.ok:
            raise ProviderError(self.name, f"HTTP {response.status_code} from {self.options.api_base}")
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"invalid JSON from {self.options.api_base}") from e
        if not isinstance(data, dict):
            raise ProviderError(self.name, "unexpected response shape")
        return data
