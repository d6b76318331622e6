import json
import logging
import re
import threading
from typing import List, NamedTuple, Optional
from urllib.parse import quote, urlparse, parse_qs

import cloudscraper
from bs4 import BeautifulSoup

from koware.catalog import AnimeCatalog, unique_episodes
from koware.config import HiAnimeOptions
from koware.ids import strip_namespace, tag_id
from koware.models import Anime, Episode, SearchFilters, StreamLink
from koware.ranking import rank_streams
from koware.scrapers.megacloud_utils import (
    MegaCloudExtractor, MegaCloudKeyCache, host_priority, links_from_sources, parse_tracks,
)
from koware.transport import HttpTransport, OperationCancelled

logger = logging.getLogger(__name__)

HOME_LINK_REGEX = re.compile(r'href=\\?"/watch/([a-z0-9\-]+)\\?"', re.IGNORECASE)
TRAILING_NUMBER_REGEX = re.compile(r'(\d+)(?!.*\d)')

# preferred server name -> data-server-id
SERVER_IDS = {"hd-1": 4, "hd-2": 1, "hd-3": 6}


class ServerEntry(NamedTuple):
    data_id: str
    type: str
    server_id: int
    label: str


def trailing_number(value: str) -> Optional[int]:
    match = TRAILING_NUMBER_REGEX.search(value or "")
    return int(match.group(1)) if match else None


def unescape_json_html(value: str) -> str:
    """Undo JSON string escaping left in HTML that arrived as a raw payload."""
    return (value.replace('\\/', '/')
            .replace('\\"', '"')
            .replace('\\u003C', '<').replace('\\u003c', '<')
            .replace('\\u003E', '>').replace('\\u003e', '>')
            .replace('\\u0026', '&')
            .replace('\\n', '\n'))


def html_field(payload: str) -> str:
    """The ``html`` field of a JSON-wrapped AJAX answer, or the payload itself."""
    try:
        data = json.loads(payload)
    except ValueError:
        return unescape_json_html(payload)
    if isinstance(data, dict) and isinstance(data.get('html'), str):
        return data['html']
    return payload


def title_from_slug(slug: str) -> str:
    if not slug:
        return "Unknown"
    return slug.replace('-', ' ').lower().title()


def select_server(servers: List[ServerEntry], preferred: str) -> Optional[ServerEntry]:
    """Preferred sub server, else the first sub server, else whatever comes first."""
    preferred_id = SERVER_IDS.get(preferred)
    for server in servers:
        if server.type == "sub" and (
                (preferred_id is not None and server.server_id == preferred_id) or server.label == preferred):
            return server
    for server in servers:
        if server.type == "sub":
            return server
    return servers[0] if servers else None


class HiAnimeScraper(AnimeCatalog):
    name = "hianime"
    namespace = "hianime"

    def __init__(self, options: HiAnimeOptions, transport: Optional[HttpTransport] = None,
                 key_cache: Optional[MegaCloudKeyCache] = None):
        self.options = options
        self.base_url = (options.base_url or "").rstrip('/')
        self.referer = options.effective_referer.rstrip('/')
        # cloudscraper gets past the site's anti-bot interstitial
        self.transport = transport or HttpTransport(cloudscraper.create_scraper(), timeout=options.timeout)
        self.megacloud = MegaCloudExtractor(
            self.transport,
            user_agent=options.user_agent,
            provider=self.name,
            host=options.megacloud_host,
            key_url=options.megacloud_key_url,
            key_cache=key_cache,
            referer=options.effective_referer or None,
        )

    @property
    def is_configured(self) -> bool:
        return self.options.is_configured

    def _warn_not_configured(self):
        logger.warning("HiAnime source not configured; set KOWARE_HIANIME__* to enable it.")

    # --- Requests ---

    def _headers(self, referer: str, accept: str, ajax: bool = False):
        headers = {
            'User-Agent': self.options.user_agent,
            'Accept': accept,
            'Accept-Language': 'en-US,en;q=0.9',
        }
        parsed = urlparse(referer or "")
        if parsed.scheme and parsed.hostname:
            headers['Referer'] = referer
            headers['Origin'] = f"{parsed.scheme}://{parsed.hostname}"
        if ajax:
            headers['X-Requested-With'] = 'XMLHttpRequest'
        return headers

    def _make_request(self, url: str, referer: str, cancel: Optional[threading.Event],
                      ajax: bool = True) -> Optional[str]:
        """GET returning the body, or None on any transport or HTTP failure."""
        accept = 'application/json, text/plain, */*' if ajax else \
            'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8'
        try:
            response = self.transport.get(url, headers=self._headers(referer, accept, ajax), cancel=cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            logger.debug(f"hianime request failed for {url}: {e}")
            return None
        if not response.ok:
            logger.debug(f"hianime request to {url} failed with HTTP {response.status_code}")
            return None
        return response.text

    # --- Slugs and URLs ---

    def _normalize_slug(self, raw: str) -> str:
        cleaned = unescape_json_html(strip_namespace((raw or "").strip(), self.namespace)).lstrip('/').strip()
        if cleaned.lower().startswith('watch/'):
            cleaned = cleaned[len('watch/'):]
        return cleaned.split('?', 1)[0]

    def _watch_url(self, slug: str) -> str:
        return f"{self.base_url}/watch/{slug}"

    def _make_anime(self, slug: str, title: str) -> Anime:
        return Anime(
            id=tag_id(self.namespace, slug),
            title=title or title_from_slug(slug),
            detail_page=self._watch_url(slug),
        )

    # --- Search ---

    def search(self, query: str, filters: Optional[SearchFilters] = None,
               cancel: Optional[threading.Event] = None) -> List[Anime]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        query = (query or "").strip()
        if not query:
            return self.browse_popular(filters, cancel)

        payload = self._make_request(f"{self.base_url}/ajax/search/suggest?keyword={quote(query, safe='')}",
                                     f"{self.base_url}/", cancel)
        if payload is None:
            return []
        return self._parse_search_results(html_field(payload))[:self.options.search_limit]

    def _parse_search_results(self, html: str) -> List[Anime]:
        soup = BeautifulSoup(html or "", 'html.parser')
        seen = set()
        results = []
        for item in soup.select('a.nav-item'):
            href = item.get('href', '').strip()
            if not href.startswith('/'):
                continue
            slug = self._normalize_slug(href)
            if not slug or slug.lower() in seen:
                continue
            seen.add(slug.lower())

            title_elem = item.select_one('h3.film-name')
            title = title_elem.get_text(strip=True) if title_elem else ""
            results.append(self._make_anime(slug, title))
        return results

    def browse_popular(self, filters: Optional[SearchFilters] = None,
                       cancel: Optional[threading.Event] = None) -> List[Anime]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        payload = self._make_request(f"{self.base_url}/home", f"{self.base_url}/", cancel, ajax=False)
        if not payload:
            return []

        seen = set()
        results = []
        for match in HOME_LINK_REGEX.finditer(payload):
            slug = self._normalize_slug(match.group(1))
            if not slug or slug.lower() in seen:
                continue
            seen.add(slug.lower())
            results.append(self._make_anime(slug, ""))
            if len(results) >= self.options.search_limit:
                break
        return results

    # --- Episodes ---

    def get_episodes(self, anime: Anime, cancel: Optional[threading.Event] = None) -> List[Episode]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        slug = self._normalize_slug(anime.id)
        anime_number = trailing_number(slug)
        if anime_number is None:
            logger.warning(f"Could not parse anime numeric id from slug '{slug}'")
            return []

        payload = self._make_request(f"{self.base_url}/ajax/v2/episode/list/{anime_number}",
                                     self._watch_url(slug), cancel)
        if payload is None:
            return []
        return unique_episodes(self._parse_episode_items(html_field(payload), slug))

    def _parse_episode_items(self, html: str, slug: str) -> List[Episode]:
        soup = BeautifulSoup(html or "", 'html.parser')
        episodes = []
        for item in soup.select('a[class*="ep-item"]'):
            data_id = (item.get('data-id') or "").strip()
            if not data_id:
                continue
            try:
                number = int((item.get('data-number') or "").strip())
            except ValueError:
                continue
            if number <= 0:
                continue

            episodes.append(Episode(
                id=tag_id(self.namespace, data_id),
                title=(item.get('title') or "").strip(),
                number=number,
                page_url=self._episode_url(item.get('href'), slug, data_id),
            ))
        return episodes

    def _episode_url(self, href: Optional[str], slug: str, data_id: str) -> str:
        href = (href or "").strip()
        if href.lower().startswith('http'):
            return href
        if href.startswith('/watch/'):
            return f"{self.base_url}{href}"
        if href.startswith('/'):
            return f"{self.base_url}/watch{href}"
        return f"{self._watch_url(slug)}?ep={data_id}"

    # --- Streams ---

    def get_streams(self, episode: Episode, cancel: Optional[threading.Event] = None) -> List[StreamLink]:
        if not self.is_configured:
            self._warn_not_configured()
            return []

        episode_number_id = trailing_number(strip_namespace(episode.id, self.namespace))
        if episode_number_id is None:
            ep_values = parse_qs(urlparse(episode.page_url).query).get('ep', [])
            if ep_values and ep_values[0].isdigit():
                episode_number_id = int(ep_values[0])
        if episode_number_id is None:
            logger.warning(f"Could not parse episode id '{episode.id}'")
            return []

        watch_referer = episode.page_url
        server = self._resolve_server(episode_number_id, watch_referer, cancel)
        if server is None:
            return []

        payload = self._make_request(f"{self.base_url}/ajax/v2/episode/sources?id={server.data_id}",
                                     watch_referer, cancel)
        if not payload or not payload.strip():
            return []
        return rank_streams(self._streams_from_sources_payload(payload, watch_referer, cancel))

    def _resolve_server(self, episode_number_id: int, watch_referer: str,
                        cancel: Optional[threading.Event]) -> Optional[ServerEntry]:
        payload = self._make_request(f"{self.base_url}/ajax/v2/episode/servers?episodeId={episode_number_id}",
                                     watch_referer, cancel)
        if payload is None:
            return None
        servers = self._parse_server_items(html_field(payload))
        return select_server(servers, self.options.preferred_server)

    def _parse_server_items(self, html: str) -> List[ServerEntry]:
        soup = BeautifulSoup(html or "", 'html.parser')
        servers = []
        for item in soup.select('div.server-item'):
            data_id = (item.get('data-id') or "").strip()
            if not data_id:
                continue
            try:
                server_id = int(item.get('data-server-id') or 0)
            except ValueError:
                server_id = 0
            label_elem = item.find('a')
            servers.append(ServerEntry(
                data_id=data_id,
                type=((item.get('data-type') or "").strip() or "sub").lower(),
                server_id=server_id,
                label=label_elem.get_text(strip=True).lower() if label_elem else "",
            ))
        return servers

    def _streams_from_sources_payload(self, payload: str, watch_referer: str,
                                      cancel: Optional[threading.Event]) -> List[StreamLink]:
        try:
            data = json.loads(payload)
        except ValueError:
            return []
        if not isinstance(data, dict):
            return []

        subtitles = parse_tracks(data)
        if isinstance(data.get('sources'), list):
            streams = links_from_sources(data['sources'], subtitles, watch_referer, self.name)
            if streams:
                return streams

        link = data.get('link')
        if not isinstance(link, str) or not link.strip():
            return []
        parsed = urlparse(link.strip())
        if not (parsed.scheme and parsed.netloc):
            return []

        if 'megacloud' in (parsed.hostname or '').lower():
            streams = self.megacloud.get_streams(link.strip(), watch_referer, cancel)
            if streams:
                return streams

        return [StreamLink(
            url=link.strip(),
            quality="auto",
            provider=self.name,
            referrer=watch_referer,
            subtitles=tuple(subtitles),
            host_priority=host_priority(link.strip()),
            source=self.name,
        )]
