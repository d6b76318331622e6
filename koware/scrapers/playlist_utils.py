import logging
import re
import threading
from typing import Dict, List, Optional, Sequence
from urllib.parse import urljoin, urlparse

from koware.models import StreamLink, SubtitleTrack
from koware.transport import HttpTransport, OperationCancelled

logger = logging.getLogger(__name__)

COARSE_QUALITIES = ("", "hls", "auto")


def is_coarse(quality: str) -> bool:
    return (quality or "").strip().lower() in COARSE_QUALITIES


def is_m3u8(url: str) -> bool:
    return ".m3u8" in urlparse(url or "").path.lower()


class PlaylistUtils:
    PLAYLIST_SEPARATOR = "#EXT-X-STREAM-INF:"
    MEDIA_TAG = "#EXT-X-MEDIA:"
    ATTRIBUTE_REGEX = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')
    RESOLUTION_REGEX = re.compile(r'^(\d+)x(\d+)$')

    def __init__(self, transport: HttpTransport, user_agent: str = "", timeout: float = 10.0):
        self.transport = transport
        self.user_agent = user_agent
        self.timeout = timeout

    def extract_from_hls(self, link: StreamLink, subtitle_list: Sequence[SubtitleTrack] = (),
                         cancel: Optional[threading.Event] = None,
                         deadline: Optional[float] = None) -> List[StreamLink]:
        """
        Download the master playlist behind ``link`` and return one link per
        variant. Returns an empty list when the playlist can't be fetched.
        """
        headers = {
            'Accept': '*/*',
            'User-Agent': self.user_agent,
        }
        if link.referrer:
            headers['Referer'] = link.referrer

        try:
            response = self.transport.get(link.url, headers=headers, timeout=self.timeout,
                                          cancel=cancel, deadline=deadline)
        except OperationCancelled:
            raise
        except ConnectionError as e:
            logger.debug(f"Playlist download failed for {link.url}: {e}")
            return []

        if not response.ok:
            logger.debug(f"Playlist {link.url} returned HTTP {response.status_code}")
            return []

        return self.parse_hls(response.text, link, subtitle_list)

    def parse_hls(self, playlist: str, link: StreamLink,
                  subtitle_list: Sequence[SubtitleTrack] = ()) -> List[StreamLink]:
        """Parse master playlist text. ``link`` supplies the manifest URL and shared fields."""
        lines = [line.strip() for line in (playlist or "").split("\n")]
        lines = [line for line in lines if line]

        subtitles = self._parse_subtitles(lines, link.url) or list(subtitle_list)

        videos = []
        pending_quality = None
        for line in lines:
            if line.startswith(self.PLAYLIST_SEPARATOR):
                pending_quality = self._parse_resolution(line[len(self.PLAYLIST_SEPARATOR):])
                continue
            if line.startswith('#') or pending_quality is None:
                continue

            videos.append(link.model_copy(update={
                'url': urljoin(link.url, line),
                'quality': pending_quality,
                'subtitles': tuple(subtitles),
            }))
            pending_quality = None

        if not videos:
            videos.append(link.model_copy(update={'quality': 'auto', 'subtitles': tuple(subtitles)}))
        return videos

    def _parse_attributes(self, text: str) -> Dict[str, str]:
        return {key: value.strip('"') for key, value in self.ATTRIBUTE_REGEX.findall(text)}

    def _parse_resolution(self, text: str) -> Optional[str]:
        """RESOLUTION=1920x1080 -> 1080p"""
        match = self.RESOLUTION_REGEX.match(self._parse_attributes(text).get('RESOLUTION', ''))
        if match:
            return f"{match.group(2)}p"
        return None

    def _parse_subtitles(self, lines: List[str], base_url: str) -> List[SubtitleTrack]:
        tracks = []
        for line in lines:
            if not line.startswith(self.MEDIA_TAG):
                continue
            attrs = self._parse_attributes(line[len(self.MEDIA_TAG):])
            if attrs.get('TYPE', '').upper() != 'SUBTITLES' or not attrs.get('URI'):
                continue
            tracks.append(SubtitleTrack(
                label=attrs.get('NAME') or 'Subtitles',
                url=urljoin(base_url, attrs['URI']),
                language=attrs.get('LANGUAGE') or None,
            ))
        return tracks
