import re
from typing import Dict, Iterable, List, Tuple

from koware.models import StreamLink

_DIGITS = re.compile(r"\d")


def quality_score(quality: str) -> int:
    """1080p -> 1080, "auto" -> 0, anything without digits -> -1."""
    digits = "".join(_DIGITS.findall(quality or ""))
    if digits:
        return int(digits)
    if (quality or "").strip().lower() == "auto":
        return 0
    return -1


def _strength(link: StreamLink) -> Tuple[int, int]:
    return link.host_priority, quality_score(link.quality)


def is_http(url: str) -> bool:
    return (url or "").lower().startswith(("http://", "https://"))


def rank_streams(links: Iterable[StreamLink]) -> List[StreamLink]:
    """
    Drop non-http links, keep the strongest entry per URL and order the
    result best quality first, host priority breaking ties.
    """
    best: Dict[str, StreamLink] = {}
    for link in links:
        if not is_http(link.url):
            continue
        current = best.get(link.url)
        if current is None or _strength(link) > _strength(current):
            best[link.url] = link

    return sorted(best.values(), key=lambda l: (quality_score(l.quality), l.host_priority), reverse=True)
