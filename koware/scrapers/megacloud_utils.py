import base64
import binascii
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlparse

from koware.config import MEGACLOUD_HOST, MEGACLOUD_KEY_URL
from koware.models import StreamLink, SubtitleTrack
from koware.transport import HttpTransport, OperationCancelled

logger = logging.getLogger(__name__)

PRINTABLE = [chr(i) for i in range(32, 127)]
LAYERS = 3

SOURCE_ID_REGEX = re.compile(r'/([^/?]+)\?')
LENGTH_PREFIX_REGEX = re.compile(r'^\s*[+-]?\d+\s*$', re.ASCII)

LK_DB_REGEX = re.compile(r'window\._lk_db\s*=\s*\{([^}]*)\}', re.IGNORECASE)
LK_DB_VALUE_REGEX = re.compile(r'[xyz]\s*:\s*[\'"]([a-zA-Z0-9]+)[\'"]', re.IGNORECASE)
CLIENT_KEY_REGEXES = [
    re.compile(r'<meta\s+name="_gg_fb"\s+content="([a-zA-Z0-9]+)">', re.IGNORECASE),
    re.compile(r'<!--\s*_is_th:([a-zA-Z0-9]+)\s*-->', re.IGNORECASE),
    re.compile(r'data-dpi="([a-zA-Z0-9]+)"', re.IGNORECASE),
    re.compile(r'<script\s+nonce="([a-zA-Z0-9]+)"', re.IGNORECASE),
    re.compile(r'window\._xy_ws\s*=\s*[\'"`]([a-zA-Z0-9]+)[\'"`]', re.IGNORECASE),
]


# --- Cipher ---

class _SeededRandom:
    """The LCG used by the player script; reproduces its sequence exactly."""

    def __init__(self, seed: int):
        self.seed = seed

    def next(self, modulo: int) -> int:
        self.seed = (self.seed * 1103515245 + 12345) & 0x7fffffff
        return self.seed % modulo


def hash32(text: str) -> int:
    value = 0
    for ch in text:
        value = (value * 31 + ord(ch)) & 0xffffffff
    return value


def keygen(megacloud_key: str, client_key: str) -> str:
    temp_key = megacloud_key + client_key
    if not temp_key:
        return ""

    # arbitrary precision, never masked
    value = 0
    for ch in temp_key:
        value = ord(ch) + value * 31 + (value << 7) - value
    l_hash = abs(value) % 0x7fffffffffffffff

    obfuscated = "".join(chr(ord(c) ^ 247) for c in temp_key)
    pivot = l_hash % len(obfuscated) + 5
    obfuscated = obfuscated[pivot:] + obfuscated[:pivot]

    reversed_client = client_key[::-1]
    merged = []
    for i in range(max(len(obfuscated), len(reversed_client))):
        if i < len(obfuscated):
            merged.append(obfuscated[i])
        if i < len(reversed_client):
            merged.append(reversed_client[i])

    take = min(len(merged), 96 + l_hash % 33)
    return "".join(chr(ord(c) % 95 + 32) for c in merged[:take])


def _random_shift(text: str, rng: _SeededRandom) -> str:
    output = []
    for ch in text:
        idx = ord(ch) - 32
        if not 0 <= idx < 95:
            output.append(ch)
            continue
        output.append(PRINTABLE[(idx - rng.next(95) + 95) % 95])
    return "".join(output)


def _columnar_decipher(text: str, key: str) -> str:
    columns = len(key)
    if columns == 0:
        return text

    rows = -(-len(text) // columns)
    grid = [[" "] * columns for _ in range(rows)]
    position = 0
    for column in sorted(range(columns), key=lambda i: (key[i], i)):
        for row in range(rows):
            grid[row][column] = text[position] if position < len(text) else " "
            position += 1
    return "".join("".join(row) for row in grid)


def _seed_shuffle(chars: List[str], key: str) -> List[str]:
    result = list(chars)
    rng = _SeededRandom(hash32(key))
    for i in range(len(result) - 1, 0, -1):
        j = rng.next(i + 1)
        result[i], result[j] = result[j], result[i]
    return result


def decrypt_sources(src: str, client_key: str, megacloud_key: str) -> str:
    """
    Undo the three cipher layers on an encrypted ``sources`` string.
    Returns "" for malformed input instead of raising.
    """
    generated_key = keygen(megacloud_key, client_key)
    try:
        text = base64.b64decode(src, validate=True).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""

    for iteration in range(LAYERS, 0, -1):
        layer_key = generated_key + str(iteration)
        text = _random_shift(text, _SeededRandom(hash32(layer_key)))
        text = _columnar_decipher(text, layer_key)
        mapping = dict(zip(_seed_shuffle(PRINTABLE, layer_key), PRINTABLE))
        text = "".join(mapping.get(c, c) for c in text)

    if len(text) < 4 or not LENGTH_PREFIX_REGEX.match(text[:4]):
        return ""
    length = int(text[:4])
    if length < 0 or 4 + length > len(text):
        return ""
    return text[4:4 + length]


# --- Embed page parsing ---

def extract_source_id(embed_url: str) -> Optional[str]:
    match = SOURCE_ID_REGEX.search(embed_url or "")
    return match.group(1) if match else None


def extract_client_key(html: str) -> Optional[str]:
    if not html:
        return None

    lk_db = LK_DB_REGEX.search(html)
    if lk_db:
        values = [v for v in LK_DB_VALUE_REGEX.findall(lk_db.group(1)) if v][:3]
        if len(values) == 3:
            return "".join(values)

    for regex in CLIENT_KEY_REGEXES:
        match = regex.search(html)
        if match and match.group(1):
            return match.group(1)
    return None


# --- Sources payload helpers (shared with the HiAnime scraper) ---

def host_priority(url: str) -> int:
    host = (urlparse(url).hostname or "").lower()
    if "lightning" in host or "megacloud" in host:
        return 8
    if "m3u8" in host or "hls" in host:
        return 4
    return 0


def guess_quality(file: str, type_: Optional[str], label: Optional[str]) -> str:
    haystack = f"{file} {type_ or ''} {label or ''}"
    for quality in ("1080", "720", "480", "360"):
        if quality in haystack:
            return f"{quality}p"
    return "auto"


def _string(item: Dict[str, Any], name: str) -> Optional[str]:
    value = item.get(name)
    return value if isinstance(value, str) else None


def _is_absolute(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    return bool(parsed.scheme and parsed.netloc)


def parse_tracks(root: Any) -> List[SubtitleTrack]:
    """Subtitle tracks from a payload's root ``tracks`` array."""
    if not isinstance(root, dict) or not isinstance(root.get("tracks"), list):
        return []

    subtitles = []
    for track in root["tracks"]:
        if not isinstance(track, dict):
            continue
        file = _string(track, "file") or _string(track, "url")
        if not _is_absolute(file):
            continue
        subtitles.append(SubtitleTrack(
            label=_string(track, "label") or _string(track, "kind") or "Subtitle",
            url=file,
            language=_string(track, "language") or _string(track, "srclang") or "und",
        ))
    return subtitles


def links_from_sources(sources: list, subtitles: List[SubtitleTrack], referrer: str,
                       provider: str) -> List[StreamLink]:
    links = []
    for source in sources:
        if not isinstance(source, dict):
            continue
        file = _string(source, "file") or _string(source, "url")
        if not _is_absolute(file):
            continue
        links.append(StreamLink(
            url=file,
            quality=guess_quality(file, _string(source, "type"), _string(source, "label")),
            provider=provider,
            referrer=referrer,
            subtitles=tuple(subtitles),
            host_priority=host_priority(file),
            source=provider,
        ))
    return links


# --- Key cache ---

class MegaCloudKeyCache:
    """
    Process-wide cache of the shared MegaCloud key. Only one refresh runs
    at a time; a failed refresh hands back the previous (stale) key.
    """

    def __init__(self, ttl: float = 6 * 60 * 60, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._value: Optional[str] = None
        self._fetched_at = 0.0

    def _is_fresh(self) -> bool:
        return bool(self._value) and self.clock() - self._fetched_at < self.ttl

    def get_or_refresh(self, fetch: Callable[[], Optional[str]]) -> Optional[str]:
        if self._is_fresh():
            return self._value

        with self._lock:
            if self._is_fresh():
                return self._value
            try:
                key = fetch()
            except OperationCancelled:
                raise
            except Exception as e:
                logger.debug(f"Failed to fetch MegaCloud key: {e}")
                return self._value

            if key:
                self._value = key
                self._fetched_at = self.clock()
            return self._value


default_key_cache = MegaCloudKeyCache()


# --- Extractor ---

class MegaCloudExtractor:
    def __init__(self, transport: HttpTransport, user_agent: str = "", provider: str = "hianime",
                 host: str = MEGACLOUD_HOST, key_url: str = MEGACLOUD_KEY_URL,
                 key_cache: Optional[MegaCloudKeyCache] = None, referer: Optional[str] = None):
        self.transport = transport
        self.user_agent = user_agent
        self.provider = provider
        self.host = host.rstrip('/')
        self.key_url = key_url
        self.key_cache = key_cache or default_key_cache
        self.referer = referer
        self.log = logging.getLogger(__name__)

    def get_streams(self, embed_url: str, watch_referer: str,
                    cancel: Optional[threading.Event] = None) -> List[StreamLink]:
        """Resolve a MegaCloud embed URL into stream links (unranked)."""
        source_id = extract_source_id(embed_url)
        if not source_id:
            self.log.debug(f"Could not extract MegaCloud source id from '{embed_url}'")
            return []

        client_key = self._get_client_key(source_id, watch_referer, cancel)
        if not client_key:
            return []

        api_url = f"{self.host}/embed-2/v3/e-1/getSources?id={source_id}&_k={quote(client_key, safe='')}"
        payload = self._get_text(api_url, embed_url, 'application/json, text/plain, */*', cancel, xhr=True)
        if not payload:
            return []

        try:
            data = json.loads(payload)
        except ValueError:
            self.log.debug("MegaCloud payload was not valid JSON")
            return []
        if not isinstance(data, dict):
            return []

        parsed = urlparse(embed_url)
        referrer = f"{parsed.scheme}://{parsed.hostname}/"
        subtitles = parse_tracks(data)

        sources = data.get('sources')
        if data.get('encrypted') is False and isinstance(sources, list):
            return links_from_sources(sources, subtitles, referrer, self.provider)

        if not isinstance(sources, str) or not sources.strip():
            return []

        megacloud_key = self.key_cache.get_or_refresh(lambda: self._fetch_megacloud_key(cancel))
        if not megacloud_key:
            self.log.warning("Could not fetch MegaCloud decrypt key; skipping encrypted stream decode.")
            return []

        decrypted = decrypt_sources(sources, client_key, megacloud_key)
        if not decrypted:
            return []
        try:
            decoded = json.loads(decrypted)
        except ValueError:
            self.log.debug("Failed to parse decrypted MegaCloud source JSON")
            return []
        if not isinstance(decoded, list):
            return []
        return links_from_sources(decoded, subtitles, referrer, self.provider)

    def _get_client_key(self, source_id: str, watch_referer: str,
                        cancel: Optional[threading.Event]) -> Optional[str]:
        embed_page = f"{self.host}/embed-2/v3/e-1/{source_id}"
        html = self._get_text(embed_page, watch_referer,
                              'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8', cancel)
        key = extract_client_key(html)
        if not key:
            self.log.debug(f"No client key found on MegaCloud embed page for {source_id}")
        return key

    def _fetch_megacloud_key(self, cancel: Optional[threading.Event]) -> Optional[str]:
        payload = self._get_text(self.key_url, self.referer, 'application/json, text/plain, */*', cancel)
        if not payload:
            return None
        data = json.loads(payload)
        key = data.get('mega') if isinstance(data, dict) else None
        return key if isinstance(key, str) and key.strip() else None

    def _get_text(self, url: str, referer: Optional[str], accept: str,
                  cancel: Optional[threading.Event], xhr: bool = False) -> Optional[str]:
        headers = {
            'User-Agent': self.user_agent,
            'Accept': accept,
            'Accept-Language': 'en-US,en;q=0.9',
        }
        if referer:
            parsed = urlparse(referer)
            headers['Referer'] = referer
            headers['Origin'] = f"{parsed.scheme}://{parsed.hostname}"
        if xhr:
            headers['X-Requested-With'] = 'XMLHttpRequest'

        try:
            response = self.transport.get(url, headers=headers, cancel=cancel)
        except OperationCancelled:
            raise
        except Exception as e:
            self.log.debug(f"Request failed for {url}: {e}")
            return None
        if not response.ok:
            self.log.debug(f"Request to {url} failed with HTTP {response.status_code}")
            return None
        return response.text
