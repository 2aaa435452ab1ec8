"""Shared fixtures: fake fetchers and encoders, sample images."""

import io

import pytest
from PIL import Image

import pixbooster as pb


def image_bytes(fmt: str = "PNG", size=(4, 3), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


class FakeCodecs(pb.Codecs):
    """Real Pillow decoding, placeholder bytes for every destination."""

    def can_encode(self, fmt):
        return fmt.extension in (".jxl", ".avif", ".webp")

    def encode(self, image, fmt):
        if not self.can_encode(fmt):
            raise pb.UnsupportedOutputFormat(fmt.extension)
        w, h = image.size
        return f"{fmt.extension}:{w}x{h}".encode()


class FakeFetcher(pb.Fetcher):
    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def fetch(self, url, timeout=None):
        self.calls.append(url)
        r = self.responses.get(url)
        if r is None:
            raise pb.UpstreamFetchError(f"failed {url} -> HTTP 404")
        if isinstance(r, Exception):
            raise r
        return r


class FailingStore(pb.MemCache):
    def put(self, key, data):
        raise pb.CacheWriteError("disk full")


@pytest.fixture
def settings():
    return pb.Settings(marker="px", cache_backend="none")


@pytest.fixture
def codec(settings):
    return pb.UrlCodec(settings.marker)


@pytest.fixture
def registry(settings):
    return pb.build_registry(settings)


@pytest.fixture
def fake_codecs(settings):
    return FakeCodecs(settings)


@pytest.fixture
def png_bytes():
    return image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return image_bytes("JPEG")


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def fmt():
    def lookup(ext):
        return next(f for f in pb.DESTINATION_FORMATS if f.extension == ext)

    return lookup
