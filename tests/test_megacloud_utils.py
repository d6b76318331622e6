import base64
import json
import threading
import time

import pytest
import requests

from koware.scrapers.megacloud_utils import (
    LAYERS, PRINTABLE, MegaCloudExtractor, MegaCloudKeyCache, _SeededRandom, _seed_shuffle,
    decrypt_sources, extract_client_key, extract_source_id, hash32, keygen,
)
from koware.transport import OperationCancelled


def encrypt_raw(text, client_key, megacloud_key):
    """Apply the three cipher layers in the direction the player script undoes them."""
    key = keygen(megacloud_key, client_key)
    columns = len(key) + 1
    for iteration in range(1, LAYERS + 1):
        layer_key = key + str(iteration)
        forward = dict(zip(PRINTABLE, _seed_shuffle(PRINTABLE, layer_key)))
        text = "".join(forward[c] for c in text)

        rows = len(text) // columns
        grid = [text[r * columns:(r + 1) * columns] for r in range(rows)]
        order = sorted(range(columns), key=lambda i: (layer_key[i], i))
        text = "".join(grid[r][c] for c in order for r in range(rows))

        rng = _SeededRandom(hash32(layer_key))
        text = "".join(PRINTABLE[(ord(c) - 32 + rng.next(95)) % 95] for c in text)
    return base64.b64encode(text.encode()).decode()


def encrypt(payload, client_key, megacloud_key):
    columns = len(keygen(megacloud_key, client_key)) + 1
    text = f"{len(payload):04d}{payload}"
    text += "~" * (-len(text) % columns)
    return encrypt_raw(text, client_key, megacloud_key)


def test_seeded_random_sequence():
    rng = _SeededRandom(65)
    assert rng.next(95) == 46
    assert rng.seed == 861542886


def test_hash32():
    assert hash32("") == 0
    assert hash32("ab") == 3105


def test_keygen_known_values():
    assert keygen("a", "b") == "W#V"
    assert keygen("abcdef", "c") == "R$UWVUTS"
    assert keygen("", "") == ""


def test_decrypt_round_trip():
    payload = json.dumps([{"file": "https://cdn.example/hls/1080/index.m3u8", "type": "hls"}])
    encrypted = encrypt(payload, "clientKey9", "megaSecret")

    assert decrypt_sources(encrypted, "clientKey9", "megaSecret") == payload


def test_decrypt_with_wrong_key_does_not_yield_payload():
    payload = '[{"file":"https://cdn.example/a.m3u8"}]'
    encrypted = encrypt(payload, "clientKey9", "megaSecret")

    assert decrypt_sources(encrypted, "clientKey9", "otherSecret") != payload


# Recorded from the player script's own decryption routine; not produced by encrypt() above.
RECORDED_MEGA_KEY = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
RECORDED_CLIENT_KEY = "Xk9qL2mP7vR4tY8wZ1nB5cD3fG6hJ0aS9uE2iO4pQ7rT1yU"
RECORDED_KEYGEN = 'RuV:0Q\'t%3\'W"qW1ST%o(*SR%e#6%Y0sV"0P&j%)UVWg%\'0S$d0$0U(bV/"Q1z$8\'XVy15$T$rp7]W0pG.|R\'l[2hY",Bxf%Do1A'
RECORDED_CIPHERTEXT = (
    "Ok5PNztINV9bP3ZCdV91Y1ZSLHhdUGp8ZHlubTw3SzctTygpXyBEMSJ8MHAnSVxtWEZPJX"
    "tQLSJUbjYnM30lYExQRmkoPCRDdSFfKUxSJih2LWd1T0dOKjpgPCBkZ29DQzRXRSc="
)
RECORDED_PLAINTEXT = '[{"file":"https://sunburst.example/_v7/4b1c2d/master.m3u8","type":"hls"}]'


def test_keygen_recorded_value():
    key = keygen(RECORDED_MEGA_KEY, RECORDED_CLIENT_KEY)

    assert len(key) == 100
    assert key == RECORDED_KEYGEN


def test_decrypt_recorded_payload():
    assert decrypt_sources(RECORDED_CIPHERTEXT, RECORDED_CLIENT_KEY, RECORDED_MEGA_KEY) == RECORDED_PLAINTEXT
    assert decrypt_sources(RECORDED_CIPHERTEXT, RECORDED_CLIENT_KEY, RECORDED_MEGA_KEY + "x") == ""


def test_decrypt_rejects_invalid_base64():
    assert decrypt_sources("not base64!!", "client", "mega") == ""


def test_decrypt_rejects_out_of_bounds_length():
    columns = len(keygen("mega", "client")) + 1
    text = "9999abc"
    text += "~" * (-len(text) % columns)

    assert decrypt_sources(encrypt_raw(text, "client", "mega"), "client", "mega") == ""


def test_decrypt_rejects_non_numeric_prefix():
    columns = len(keygen("mega", "client")) + 1
    text = "abcd[]"
    text += "~" * (-len(text) % columns)

    assert decrypt_sources(encrypt_raw(text, "client", "mega"), "client", "mega") == ""


def test_extract_source_id():
    assert extract_source_id("https://megacloud.example/embed-2/v3/e-1/AbC123?k=1") == "AbC123"
    assert extract_source_id("https://megacloud.example/embed-2/v3/e-1/AbC123") is None
    assert extract_source_id("") is None


@pytest.mark.parametrize("html,expected", [
    ('<meta name="_gg_fb" content="metaKey1">', "metaKey1"),
    ("<!-- _is_th:commentKey -->", "commentKey"),
    ('<div data-dpi="dpiKey"></div>', "dpiKey"),
    ('<script nonce="nonceKey">', "nonceKey"),
    ("window._xy_ws = 'wsKey';", "wsKey"),
    ("<html></html>", None),
    ("", None),
])
def test_extract_client_key_strategies(html, expected):
    assert extract_client_key(html) == expected


def test_lk_db_takes_precedence():
    html = ('<meta name="_gg_fb" content="metaKey1">'
            '<script>window._lk_db = {x: "aa11", y: "bb22", z: "cc33"};</script>')
    assert extract_client_key(html) == "aa11bb22cc33"


def test_incomplete_lk_db_falls_through():
    html = '<script>window._lk_db = {x: "aa11", y: "bb22"};</script><script nonce="nonceKey">'
    assert extract_client_key(html) == "nonceKey"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_key_cache_reuses_fresh_value():
    clock = FakeClock()
    cache = MegaCloudKeyCache(ttl=100, clock=clock)
    fetches = []

    def fetch():
        fetches.append(1)
        return f"key{len(fetches)}"

    assert cache.get_or_refresh(fetch) == "key1"
    clock.now = 50
    assert cache.get_or_refresh(fetch) == "key1"
    clock.now = 150
    assert cache.get_or_refresh(fetch) == "key2"
    assert len(fetches) == 2


def test_key_cache_keeps_stale_value_on_failure():
    clock = FakeClock()
    cache = MegaCloudKeyCache(ttl=10, clock=clock)
    assert cache.get_or_refresh(lambda: "old") == "old"

    clock.now = 20

    def broken():
        raise ValueError("bad json")

    assert cache.get_or_refresh(broken) == "old"
    assert cache.get_or_refresh(lambda: None) == "old"


def test_key_cache_propagates_cancellation():
    cache = MegaCloudKeyCache()

    def cancelled():
        raise OperationCancelled()

    with pytest.raises(OperationCancelled):
        cache.get_or_refresh(cancelled)


def test_key_cache_fetches_once_for_concurrent_callers():
    cache = MegaCloudKeyCache()
    fetches = []

    def slow_fetch():
        fetches.append(1)
        time.sleep(0.05)
        return "shared"

    results = []
    threads = [threading.Thread(target=lambda: results.append(cache.get_or_refresh(slow_fetch)))
               for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == ["shared"] * 5
    assert len(fetches) == 1


EMBED_URL = "https://megacloud.example/embed-2/v3/e-1/src42?k=1"
EMBED_HTML = '<html><meta name="_gg_fb" content="clientKey9"></html>'


@pytest.fixture
def extractor(fake_transport):
    return MegaCloudExtractor(
        fake_transport, user_agent="test-agent", host="https://megacloud.example",
        key_url="https://keys.example/keys.json", key_cache=MegaCloudKeyCache(),
    )


def test_extractor_uses_clear_sources(fake_transport, extractor):
    fake_transport.add("getSources", {
        "encrypted": False,
        "sources": [{"file": "https://lightning.example/master.m3u8", "type": "hls"}],
        "tracks": [{"file": "https://cdn.example/en.vtt", "label": "English", "srclang": "en"}],
    })
    fake_transport.add("/e-1/src42", EMBED_HTML)

    links = extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1?ep=5")

    assert len(links) == 1
    link = links[0]
    assert link.url == "https://lightning.example/master.m3u8"
    assert link.quality == "auto"
    assert link.host_priority == 8
    assert link.referrer == "https://megacloud.example/"
    assert link.subtitles[0].language == "en"
    assert "_k=clientKey9" in fake_transport.urls()[1]
    assert fake_transport.calls[1]["headers"]["X-Requested-With"] == "XMLHttpRequest"


def test_extractor_decrypts_sources(fake_transport, extractor):
    payload = json.dumps([{"file": "https://cdn.example/1080/index.m3u8"}])
    fake_transport.add("getSources", {"encrypted": True, "sources": encrypt(payload, "clientKey9", "megaSecret")})
    fake_transport.add("/e-1/src42", EMBED_HTML)
    fake_transport.add("keys.example", {"mega": "megaSecret"})

    links = extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1?ep=5")

    assert [l.url for l in links] == ["https://cdn.example/1080/index.m3u8"]
    assert links[0].quality == "1080p"


def test_extractor_without_key_returns_nothing(fake_transport, extractor):
    fake_transport.add("getSources", {"encrypted": True, "sources": "AAAA"})
    fake_transport.add("/e-1/src42", EMBED_HTML)
    fake_transport.add("keys.example", ("oops", 500))

    assert extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1") == []


def test_extractor_without_client_key_stops_early(fake_transport, extractor):
    fake_transport.add("/e-1/src42", "<html></html>")

    assert extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1") == []
    assert len(fake_transport.calls) == 1


def test_key_request_sends_provider_referer(fake_transport):
    extractor = MegaCloudExtractor(
        fake_transport, user_agent="test-agent", host="https://megacloud.example",
        key_url="https://keys.example/keys.json", key_cache=MegaCloudKeyCache(),
        referer="https://hianime.example",
    )
    payload = json.dumps([{"file": "https://cdn.example/1080/index.m3u8"}])
    fake_transport.add("getSources", {"encrypted": True, "sources": encrypt(payload, "clientKey9", "megaSecret")})
    fake_transport.add("/e-1/src42", EMBED_HTML)
    fake_transport.add("keys.example", {"mega": "megaSecret"})

    assert len(extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1?ep=5")) == 1

    key_call = next(c for c in fake_transport.calls if "keys.example" in c["url"])
    assert key_call["headers"]["Referer"] == "https://hianime.example"
    assert key_call["headers"]["Origin"] == "https://hianime.example"


@pytest.mark.parametrize("error", [
    requests.exceptions.ChunkedEncodingError("cut"),
    requests.exceptions.TooManyRedirects("loop"),
])
def test_extractor_swallows_unwrapped_request_errors(fake_transport, extractor, error):
    fake_transport.add("/e-1/src42", error)

    assert extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1") == []


def test_extractor_propagates_cancellation(fake_transport, extractor):
    fake_transport.add("/e-1/src42", OperationCancelled())

    with pytest.raises(OperationCancelled):
        extractor.get_streams(EMBED_URL, "https://hianime.example/watch/show-1")
