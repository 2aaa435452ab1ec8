#!/usr/bin/env python3
import argparse
import dbm
import hashlib
import io
import logging
import mimetypes
import os
import re
import sys
import tempfile
from dataclasses import dataclass, field, replace
from http import HTTPStatus
from pathlib import Path
from threading import Event, Lock
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)
from urllib.parse import unquote, urlparse, urlunparse
from wsgiref.simple_server import make_server
from wsgiref.util import request_uri

import requests
from bs4 import BeautifulSoup, FeatureNotFound, Tag
from PIL import Image
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "pixbooster/0.1 (+image transcoder)",
    "Accept": "image/jpeg,image/png,image/webp;q=0.9,*/*;q=0.5",
}

DEFAULT_MARKER = "pixbooster"
MARKER_RE = re.compile(r"^[A-Za-z0-9_-]+$")
WS_RE = re.compile(r"\s+")

CACHE_BACKENDS = ("none", "mem", "file", "dbm")
HTML_PARSERS = ("html.parser", "lxml")

# Older interpreters and minimal /etc/mime.types lack these.
for _ext, _type in (
    (".webp", "image/webp"),
    (".avif", "image/avif"),
    (".jxl", "image/jxl"),
):
    mimetypes.add_type(_type, _ext)

# -------------------- Errors --------------------


class PixboosterError(Exception):
    status: Optional[int] = 500


class NotVirtualURL(PixboosterError):
    status = None


class UnsupportedRequestedFormat(PixboosterError):
    status = 400


class FormatDisabledByConfig(PixboosterError):
    pass


class UpstreamFetchError(PixboosterError):
    pass


class UnsupportedInputFormat(PixboosterError):
    pass


class UnsupportedOutputFormat(PixboosterError):
    pass


class CodecError(PixboosterError):
    pass


class Cancelled(PixboosterError):
    pass


class CacheWriteError(PixboosterError):
    pass


class ConfigError(PixboosterError):
    pass


# -------------------- Settings --------------------


def _check_range(name: str, value: Optional[int], lo: int, hi: int) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not lo <= value <= hi:
        raise ConfigError(f"invalid {name} value: {value!r} (expected {lo}..{hi})")


@dataclass(frozen=True)
class WebpOptions:
    quality: Optional[int] = None
    lossless: bool = False
    exact: bool = False


@dataclass(frozen=True)
class AvifOptions:
    quality: Optional[int] = None
    speed: Optional[int] = None


@dataclass(frozen=True)
class JxlOptions:
    quality: Optional[int] = None
    effort: Optional[int] = None


@dataclass(frozen=True)
class Settings:
    marker: str = DEFAULT_MARKER

    # Inputs
    jpeg_input: bool = True
    png_input: bool = True
    webp_input: bool = True

    # Outputs
    webp_output: bool = True
    avif_output: bool = True
    jxl_output: bool = True

    # Encoding; per-format quality falls back to `quality`
    quality: Optional[int] = None
    webp: WebpOptions = field(default_factory=WebpOptions)
    avif: AvifOptions = field(default_factory=AvifOptions)
    jxl: JxlOptions = field(default_factory=JxlOptions)

    # Cache
    cache_backend: str = "file"  # none | mem | file | dbm
    storage: Optional[str] = None

    # Fetch
    timeout: float = 15.0
    max_bytes: int = 50_000_000
    origin: Optional[str] = None

    # HTML
    parser: str = "html.parser"

    def __post_init__(self) -> None:
        if not self.marker or not MARKER_RE.match(self.marker):
            raise ConfigError(f"invalid marker: {self.marker!r}")
        _check_range("quality", self.quality, 0, 100)
        _check_range("webp quality", self.webp.quality, 0, 100)
        _check_range("avif quality", self.avif.quality, 0, 100)
        _check_range("avif speed", self.avif.speed, 0, 10)
        _check_range("jxl quality", self.jxl.quality, 0, 100)
        _check_range("jxl effort", self.jxl.effort, 0, 10)
        if self.cache_backend not in CACHE_BACKENDS:
            raise ConfigError(f"unknown cache backend: {self.cache_backend}")
        if self.parser not in HTML_PARSERS:
            raise ConfigError(f"unknown HTML parser: {self.parser}")
        if self.timeout <= 0:
            raise ConfigError("timeout must be positive")
        if self.origin and urlparse(self.origin).scheme not in {"http", "https"}:
            raise ConfigError(f"origin must be an http(s) URL: {self.origin}")


# -------------------- Formats --------------------

SOURCE = "source"
DESTINATION = "destination"


@dataclass(frozen=True)
class ImageFormat:
    extension: str
    mime_type: str
    role: str
    enabled: bool = True


# Destination order is serialization priority.
DESTINATION_FORMATS = (
    ImageFormat(".jxl", "image/jxl", DESTINATION),
    ImageFormat(".avif", "image/avif", DESTINATION),
    ImageFormat(".webp", "image/webp", DESTINATION),
)
SOURCE_FORMATS = (
    ImageFormat(".jpg", "image/jpeg", SOURCE),
    ImageFormat(".png", "image/png", SOURCE),
    ImageFormat(".webp", "image/webp", SOURCE),
)


def normalize_mime(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def guess_mime(url: str) -> Optional[str]:
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    mime, _ = mimetypes.guess_type(path, strict=False)
    return mime


@dataclass(frozen=True)
class FormatRegistry:
    destinations: Tuple[ImageFormat, ...]
    sources: Tuple[ImageFormat, ...]

    def destination_for_extension(self, ext: str) -> Optional[ImageFormat]:
        ext = (ext or "").lower()
        for f in self.destinations:
            if f.extension == ext:
                return f
        return None

    def source_for_mime(self, content_type: Optional[str]) -> Optional[ImageFormat]:
        mime = normalize_mime(content_type)
        for f in self.sources:
            if f.mime_type == mime:
                return f
        return None

    def enabled_destinations(self) -> List[ImageFormat]:
        return [f for f in self.destinations if f.enabled]

    def is_output_allowed(self, fmt: ImageFormat) -> bool:
        known = self.destination_for_extension(fmt.extension)
        return known is not None and known.enabled

    def is_input_allowed(self, filename: str) -> bool:
        mime = guess_mime(filename)
        if mime is None:
            return False
        known = self.source_for_mime(mime)
        return known is not None and known.enabled


def build_registry(
    settings: Settings, codecs: Optional["Codecs"] = None
) -> FormatRegistry:
    out_flags = {
        ".jxl": settings.jxl_output,
        ".avif": settings.avif_output,
        ".webp": settings.webp_output,
    }
    in_flags = {
        "image/jpeg": settings.jpeg_input,
        "image/png": settings.png_input,
        "image/webp": settings.webp_input,
    }
    destinations = []
    for f in DESTINATION_FORMATS:
        enabled = out_flags[f.extension]
        if enabled and codecs is not None and not codecs.can_encode(f):
            logging.warning("%s output disabled: no encoder available", f.extension)
            enabled = False
        destinations.append(replace(f, enabled=enabled))
    sources = []
    for f in SOURCE_FORMATS:
        enabled = in_flags[f.mime_type]
        if enabled and codecs is not None and not codecs.can_decode(f):
            logging.warning("%s input disabled: no decoder available", f.mime_type)
            enabled = False
        sources.append(replace(f, enabled=enabled))
    return FormatRegistry(tuple(destinations), tuple(sources))


# -------------------- Virtual URLs --------------------


class UrlCodec:
    def __init__(self, marker: str = DEFAULT_MARKER):
        self.marker = marker

    def encode(self, url: str, fmt: ImageFormat) -> str:
        p = urlparse(url)
        return urlunparse(p._replace(path=f"{p.path}.{self.marker}{fmt.extension}"))

    def split(self, url: str) -> Tuple[str, str]:
        """Return (original URL, requested extension) for a virtual URL."""
        try:
            p = urlparse(url)
        except ValueError as e:
            raise NotVirtualURL(f"unparsable URL {url!r}: {e}") from e
        parts = p.path.split(".")
        try:
            idx = parts.index(self.marker)
        except ValueError:
            raise NotVirtualURL(f"no {self.marker} marker in {url!r}") from None
        original_path = ".".join(parts[:idx])
        if not original_path.strip("/"):
            raise NotVirtualURL(f"nothing precedes the marker in {url!r}")
        original = urlunparse(p._replace(path=original_path))
        ext = "".join("." + seg for seg in parts[idx + 1 :])
        return original, ext

    def decode(self, url: str) -> str:
        return self.split(url)[0]

    def is_virtual(self, url: str) -> bool:
        try:
            self.split(url)
        except NotVirtualURL:
            return False
        return True


# -------------------- HTML utils --------------------


def parse_html(
    markup: Union[str, bytes],
    parser: str = "html.parser",
    from_encoding: Optional[str] = None,
) -> BeautifulSoup:
    kwargs = {"from_encoding": from_encoding} if isinstance(markup, bytes) else {}
    try:
        return BeautifulSoup(markup, parser, **kwargs)
    except FeatureNotFound:
        logging.warning("HTML parser %s not installed, using html.parser", parser)
        return BeautifulSoup(markup, "html.parser", **kwargs)


def serialize_html(soup: BeautifulSoup, encoding: Optional[str] = None) -> bytes:
    return soup.encode(encoding or "utf-8", formatter="html")


def _copy_attrs(attrs: Mapping[str, object], skip: Iterable[str] = ()) -> Dict[str, object]:
    skip = set(skip)
    return {
        k: (list(v) if isinstance(v, list) else v)
        for k, v in attrs.items()
        if k not in skip
    }


# -------------------- Rewriter --------------------


class Rewriter:
    def __init__(self, registry: FormatRegistry, codec: UrlCodec, host: str):
        self.registry = registry
        self.codec = codec
        self.host = (host or "").lower()
        self.ignore_attribute = f"data-{codec.marker}-ignore"

    # eligibility

    def is_same_site(self, url: str) -> bool:
        try:
            p = urlparse(url.strip())
        except ValueError as e:
            logging.debug("unparsable URL %r: %s", url, e)
            return False
        if p.scheme not in ("", "http", "https"):
            return False
        if not p.netloc:
            return True
        return p.netloc.lower() == self.host

    def is_rewritable(self, url: Optional[str]) -> bool:
        if not url:
            return False
        return (
            self.is_same_site(url)
            and not self.codec.is_virtual(url)
            and self.registry.is_input_allowed(url)
        )

    def is_opted_out(self, tag: Tag) -> bool:
        node = tag
        while isinstance(node, Tag):
            if node.has_attr(self.ignore_attribute):
                return True
            node = node.parent
        return False

    def collect_images(self, root: Tag) -> List[Tag]:
        return [
            img
            for img in root.find_all("img")
            if self.is_rewritable(img.get("src"))
            and img.find_parent("picture") is None
            and not self.is_opted_out(img)
        ]

    def collect_pictures(self, root: Tag) -> List[Tag]:
        return [p for p in root.find_all("picture") if not self.is_opted_out(p)]

    # mutation

    def wrap_image(self, soup: BeautifulSoup, img: Tag) -> Tag:
        picture = soup.new_tag(
            "picture", attrs=_copy_attrs(img.attrs, skip=("src", "alt", "srcset"))
        )
        picture.append(soup.new_tag("img", attrs=_copy_attrs(img.attrs)))
        img.replace_with(picture)
        self.populate_picture(soup, picture)
        return picture

    def populate_picture(self, soup: BeautifulSoup, picture: Tag) -> int:
        if picture.name != "picture":
            return 0
        candidates: List[Tag] = []
        img: Optional[Tag] = None
        for child in picture.children:
            if not isinstance(child, Tag):
                continue
            if child.name == "source":
                candidates.append(child)
            elif child.name == "img" and img is None:
                img = child
        if not candidates and img is not None:
            candidates.append(img)
        added = 0
        for candidate in candidates:
            if candidate.has_attr(self.ignore_attribute):
                continue
            added += self._expand(soup, candidate)
        return added

    def optimized_srcset(self, srcset: str, fmt: ImageFormat) -> Optional[str]:
        """Rewrite eligible URLs of a srcset; None when nothing was eligible."""
        changed = False
        parts = []
        for candidate in srcset.split(","):
            tokens = WS_RE.split(candidate.strip()) if candidate.strip() else []
            for i, token in enumerate(tokens):
                if self.is_rewritable(token):
                    tokens[i] = self.codec.encode(token, fmt)
                    changed = True
            parts.append(" ".join(tokens))
        return ",".join(parts) if changed else None

    def _expand(self, soup: BeautifulSoup, candidate: Tag) -> int:
        added = 0
        srcset = candidate.get("srcset")
        if srcset is not None:
            extra = (
                _copy_attrs(candidate.attrs, skip=("srcset", "type", "src"))
                if candidate.name == "source"
                else {}
            )
            for fmt in self.registry.enabled_destinations():
                new_srcset = self.optimized_srcset(srcset, fmt)
                if new_srcset is None:
                    break
                if self._insert_source(soup, candidate, new_srcset, fmt, extra):
                    added += 1
            return added
        src = candidate.get("src")
        if candidate.name == "img" and self.is_rewritable(src):
            for fmt in self.registry.enabled_destinations():
                if self._insert_source(soup, candidate, self.codec.encode(src, fmt), fmt):
                    added += 1
        return added

    def _is_generated(self, tag: Tag) -> bool:
        if tag.name != "source":
            return False
        tokens = WS_RE.split(tag.get("srcset", "").replace(",", " ").strip())
        return any(self.codec.is_virtual(t) for t in tokens if t)

    def _insert_source(
        self,
        soup: BeautifulSoup,
        before: Tag,
        srcset: str,
        fmt: ImageFormat,
        extra: Optional[Mapping[str, object]] = None,
    ) -> bool:
        attrs = dict(extra or {})
        attrs["srcset"] = srcset
        attrs["type"] = fmt.mime_type
        # sources from an earlier pass sit directly before their candidate
        for sibling in before.find_previous_siblings():
            if not self._is_generated(sibling):
                break
            if sibling.attrs == attrs:
                return False
        before.insert_before(soup.new_tag("source", attrs=attrs))
        return True

    def rewrite(self, soup: BeautifulSoup) -> int:
        if not self.registry.enabled_destinations():
            return 0
        pictures = self.collect_pictures(soup)
        images = self.collect_images(soup)
        added = 0
        for img in images:
            picture = self.wrap_image(soup, img)
            added += len(picture.find_all("source", recursive=False))
        for picture in pictures:
            added += self.populate_picture(soup, picture)
        logging.debug(
            "rewrote %d images, %d pictures, %d sources added",
            len(images),
            len(pictures),
            added,
        )
        return added


def rewrite_html(
    body: Union[str, bytes],
    host: str,
    registry: FormatRegistry,
    codec: UrlCodec,
    *,
    encoding: Optional[str] = None,
    parser: str = "html.parser",
) -> bytes:
    soup = parse_html(body, parser=parser, from_encoding=encoding)
    Rewriter(registry, codec, host).rewrite(soup)
    return serialize_html(soup, soup.original_encoding or encoding)


# -------------------- Codecs --------------------

PIL_FORMATS = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
    ".webp": "WEBP",
    ".avif": "AVIF",
    ".jxl": "JXL",
}


def load_jxl_plugin() -> bool:
    try:
        import pillow_jxl  # noqa: F401  registers JXL with Pillow
    except Exception:
        logging.warning(
            "pillow-jxl-plugin not installed. JPEG XL disabled or: pip install pillow-jxl-plugin"
        )
        return False
    return True


def _normalize_mode(im: Image.Image) -> Image.Image:
    if im.mode in ("RGB", "RGBA"):
        return im
    has_alpha = "A" in im.getbands() or "transparency" in im.info
    return im.convert("RGBA" if has_alpha else "RGB")


class Codecs:
    def __init__(self, settings: Settings):
        self.settings = settings
        load_jxl_plugin()
        Image.init()

    def _pil_name(self, fmt: ImageFormat) -> Optional[str]:
        key = fmt.mime_type if fmt.role == SOURCE else fmt.extension
        return PIL_FORMATS.get(key)

    def can_decode(self, fmt: ImageFormat) -> bool:
        return self._pil_name(fmt) in Image.OPEN

    def can_encode(self, fmt: ImageFormat) -> bool:
        return self._pil_name(fmt) in Image.SAVE

    def encode_options(self, fmt: ImageFormat) -> Dict[str, object]:
        s = self.settings
        opts: Dict[str, object] = {}
        if fmt.extension == ".webp":
            quality = s.webp.quality
            opts["lossless"] = s.webp.lossless
            opts["exact"] = s.webp.exact
        elif fmt.extension == ".avif":
            quality = s.avif.quality
            if s.avif.speed is not None:
                opts["speed"] = s.avif.speed
        elif fmt.extension == ".jxl":
            quality = s.jxl.quality
            if s.jxl.effort is not None:
                opts["effort"] = s.jxl.effort
        else:
            raise UnsupportedOutputFormat(f"unsupported output image format: {fmt.extension}")
        if quality is None:
            quality = s.quality
        if quality is not None:
            opts["quality"] = quality
        return opts

    def decode(self, data: bytes, fmt: ImageFormat) -> Image.Image:
        name = self._pil_name(fmt)
        if name is None or not self.can_decode(fmt):
            raise UnsupportedInputFormat(f"unsupported input image format: {fmt.mime_type}")
        try:
            im = Image.open(io.BytesIO(data), formats=[name])
            im.load()
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise CodecError(f"decoding {fmt.mime_type} failed: {e}") from e
        return im

    def encode(self, image: Image.Image, fmt: ImageFormat) -> bytes:
        name = self._pil_name(fmt)
        if name is None or not self.can_encode(fmt):
            raise UnsupportedOutputFormat(f"unsupported output image format: {fmt.extension}")
        opts = self.encode_options(fmt)
        buf = io.BytesIO()
        try:
            _normalize_mode(image).save(buf, format=name, **opts)
        except (OSError, ValueError, TypeError) as e:
            raise CodecError(f"encoding {fmt.extension} failed: {e}") from e
        return buf.getvalue()


# -------------------- Fetchers --------------------


def build_session(headers: Optional[Dict[str, str]] = None) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS if headers is None else headers)
    return s


class Fetcher:
    def fetch(self, url: str, timeout: Optional[float] = None) -> Tuple[bytes, str]:
        raise NotImplementedError


class HttpFetcher(Fetcher):
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        origin: Optional[str] = None,
        max_bytes: int = 50_000_000,
    ):
        self.session = session or build_session()
        self.origin = origin
        self.max_bytes = max_bytes

    def resolve(self, url: str) -> str:
        if not self.origin:
            return url
        o, p = urlparse(self.origin), urlparse(url)
        return urlunparse(p._replace(scheme=o.scheme, netloc=o.netloc))

    def fetch(self, url: str, timeout: Optional[float] = None) -> Tuple[bytes, str]:
        target = self.resolve(url)
        try:
            resp = self.session.get(target, timeout=timeout, stream=True)
        except requests.RequestException as e:
            raise UpstreamFetchError(f"error fetching {target}: {e}") from e
        try:
            if not 200 <= resp.status_code < 300:
                raise UpstreamFetchError(f"failed {target} -> HTTP {resp.status_code}")
            cl = resp.headers.get("Content-Length")
            if cl and cl.isdigit() and int(cl) > self.max_bytes:
                raise UpstreamFetchError(f"original too large {target} ({cl} bytes)")
            chunks = []
            written = 0
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                written += len(chunk)
                if written > self.max_bytes:
                    raise UpstreamFetchError(
                        f"original too large {target} (>{self.max_bytes} bytes)"
                    )
                chunks.append(chunk)
            return b"".join(chunks), resp.headers.get("Content-Type", "")
        except requests.RequestException as e:
            raise UpstreamFetchError(f"error fetching {target}: {e}") from e
        finally:
            resp.close()


def call_wsgi(
    app: Callable, environ: Dict[str, object]
) -> Tuple[str, List[Tuple[str, str]], bytes]:
    captured: Dict[str, object] = {}
    chunks: List[bytes] = []

    def start_response(status, headers, exc_info=None):
        if exc_info and captured:
            raise exc_info[1].with_traceback(exc_info[2])
        captured["status"] = status
        captured["headers"] = list(headers)
        return chunks.append

    result = app(environ, start_response)
    try:
        for chunk in result:
            if chunk:
                chunks.append(chunk)
    finally:
        close = getattr(result, "close", None)
        if close is not None:
            close()
    if "status" not in captured:
        raise RuntimeError("application returned without calling start_response")
    return captured["status"], captured["headers"], b"".join(chunks)


def header_value(headers: Iterable[Tuple[str, str]], name: str) -> str:
    name = name.lower()
    for k, v in headers:
        if k.lower() == name:
            return v
    return ""


class AppFetcher(Fetcher):
    """Fetch originals with an in-process GET against a WSGI application."""

    def __init__(self, app: Callable):
        self.app = app

    def fetch(self, url: str, timeout: Optional[float] = None) -> Tuple[bytes, str]:
        p = urlparse(url)
        host = p.hostname or "localhost"
        scheme = p.scheme or "http"
        environ = {
            "REQUEST_METHOD": "GET",
            "SCRIPT_NAME": "",
            "PATH_INFO": unquote(p.path, encoding="latin-1") or "/",
            "QUERY_STRING": p.query,
            "SERVER_NAME": host,
            "SERVER_PORT": str(p.port or (443 if scheme == "https" else 80)),
            "SERVER_PROTOCOL": "HTTP/1.1",
            "HTTP_HOST": p.netloc or host,
            "HTTP_ACCEPT": DEFAULT_HEADERS["Accept"],
            "wsgi.version": (1, 0),
            "wsgi.url_scheme": scheme,
            "wsgi.input": io.BytesIO(),
            "wsgi.errors": sys.stderr,
            "wsgi.multithread": False,
            "wsgi.multiprocess": False,
            "wsgi.run_once": False,
        }
        try:
            status, headers, body = call_wsgi(self.app, environ)
            code = int(status.split(" ", 1)[0])
        except Exception as e:
            raise UpstreamFetchError(f"error fetching {url}: {e}") from e
        if not 200 <= code < 300:
            raise UpstreamFetchError(f"failed {url} -> HTTP {code}")
        return body, header_value(headers, "Content-Type")


# -------------------- Cache stores --------------------


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    ensure_parent_dir(path)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def cache_key(url: str, fmt: ImageFormat) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest() + fmt.extension


class CacheStore:
    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemCache(CacheStore):
    def __init__(self, init: Optional[Mapping[str, bytes]] = None):
        self._m: Dict[str, bytes] = dict(init or {})
        self._lock = Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._m.get(key)

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._m[key] = data


class FileCache(CacheStore):
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / key

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logging.warning("unable to read cache entry %s: %s", p, e)
            return None

    def put(self, key: str, data: bytes) -> None:
        p = self.path_for(key)
        try:
            atomic_write_bytes(p, data)
        except OSError as e:
            raise CacheWriteError(f"unable to write {p}: {e}") from e


class DBMCache(CacheStore):
    def __init__(self, path: Path):
        ensure_parent_dir(path)
        self._db = dbm.open(str(path), "c")
        self._lock = Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._db.get(key.encode("utf-8"))

    def put(self, key: str, data: bytes) -> None:
        try:
            with self._lock:
                self._db[key.encode("utf-8")] = data
        except dbm.error as e:
            raise CacheWriteError(f"unable to write {key}: {e}") from e

    def close(self) -> None:
        try:
            self._db.close()
        except dbm.error as e:
            logging.warning("failed to close cache db: %s", e)


def storage_usable(root: Path) -> bool:
    try:
        root.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=root, prefix="test_write_"):
            pass
    except OSError as e:
        logging.error("storage %s not writable: %s", root, e)
        return False
    return True


def make_cache(settings: Settings) -> Optional[CacheStore]:
    backend = settings.cache_backend
    if backend == "none":
        return None
    if backend == "mem":
        return MemCache()
    if not settings.storage:
        logging.debug("no storage configured, caching disabled")
        return None
    root = Path(settings.storage)
    if not storage_usable(root):
        logging.error("configured storage unusable, caching disabled: %s", root)
        return None
    if backend == "dbm":
        return DBMCache(root / "cache.db")
    return FileCache(root)


# -------------------- Transcoding --------------------


def _check_cancel(cancel: Optional[Event], url: str) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"conversion of {url} cancelled")


class Transcoder:
    def __init__(self, registry: FormatRegistry, fetcher: Fetcher, codecs: Codecs):
        self.registry = registry
        self.fetcher = fetcher
        self.codecs = codecs

    def convert(
        self,
        url: str,
        fmt: ImageFormat,
        timeout: Optional[float] = None,
        cancel: Optional[Event] = None,
    ) -> bytes:
        _check_cancel(cancel, url)
        body, content_type = self.fetcher.fetch(url, timeout=timeout)
        _check_cancel(cancel, url)

        source = self.registry.source_for_mime(content_type)
        if source is None or not source.enabled:
            raise UnsupportedInputFormat(
                f"unsupported input image format: {content_type or 'unknown'}"
            )
        image = self.codecs.decode(body, source)
        _check_cancel(cancel, url)

        dest = self.registry.destination_for_extension(fmt.extension)
        if dest is None or not dest.enabled:
            raise UnsupportedOutputFormat(f"unsupported output image format: {fmt.extension}")
        data = self.codecs.encode(image, dest)
        _check_cancel(cancel, url)
        logging.debug("converted %s -> %s (%d bytes)", url, dest.extension, len(data))
        return data


class CachedTranscoder:
    def __init__(self, transcoder: Transcoder, store: CacheStore):
        self.transcoder = transcoder
        self.store = store

    def convert(
        self,
        url: str,
        fmt: ImageFormat,
        timeout: Optional[float] = None,
        cancel: Optional[Event] = None,
    ) -> bytes:
        key = cache_key(url, fmt)
        data = self.store.get(key)
        if data is not None:
            logging.debug("cache hit %s (%s)", url, fmt.extension)
            return data
        data = self.transcoder.convert(url, fmt, timeout=timeout, cancel=cancel)
        try:
            self.store.put(key, data)
        except CacheWriteError as e:
            logging.warning("serving %s uncached: %s", url, e)
        return data


# -------------------- Middleware --------------------


def request_host(environ: Mapping[str, object]) -> str:
    host = environ.get("HTTP_HOST")
    if host:
        return str(host)
    host = str(environ.get("SERVER_NAME", ""))
    port = str(environ.get("SERVER_PORT", ""))
    scheme = environ.get("wsgi.url_scheme", "http")
    if port and (scheme, port) not in (("http", "80"), ("https", "443")):
        host += ":" + port
    return host


def _charset(content_type: str) -> Optional[str]:
    for param in content_type.split(";")[1:]:
        k, _, v = param.partition("=")
        if k.strip().lower() == "charset" and v.strip():
            return v.strip().strip("\"'")
    return None


class PixboosterMiddleware:
    def __init__(
        self,
        app: Callable,
        settings: Optional[Settings] = None,
        *,
        codecs: Optional[Codecs] = None,
        registry: Optional[FormatRegistry] = None,
        fetcher: Optional[Fetcher] = None,
        cache: Optional[CacheStore] = None,
    ):
        self.app = app
        self.settings = settings or Settings()
        self.codecs = codecs or Codecs(self.settings)
        self.registry = registry or build_registry(self.settings, self.codecs)
        self.codec = UrlCodec(self.settings.marker)
        if fetcher is None:
            if self.settings.origin:
                fetcher = HttpFetcher(
                    origin=self.settings.origin, max_bytes=self.settings.max_bytes
                )
            else:
                fetcher = AppFetcher(app)
        self.fetcher = fetcher
        self.transcoder: Union[Transcoder, CachedTranscoder] = Transcoder(
            self.registry, fetcher, self.codecs
        )
        store = cache if cache is not None else make_cache(self.settings)
        if store is not None:
            self.transcoder = CachedTranscoder(self.transcoder, store)

    def __call__(self, environ, start_response):
        path = environ.get("PATH_INFO") or "/"
        if self.codec.is_virtual(path):
            return self.serve_virtual(environ, start_response)
        logging.debug("pass-through: %s", path)
        return self.serve_downstream(environ, start_response)

    def _error(self, start_response, status: int):
        phrase = HTTPStatus(status).phrase
        body = phrase.encode("utf-8")
        start_response(
            f"{status} {phrase}",
            [
                ("Content-Type", "text/plain; charset=utf-8"),
                ("Content-Length", str(len(body))),
            ],
        )
        return [body]

    def serve_virtual(self, environ, start_response):
        url = request_uri(environ, include_query=True)
        try:
            original, ext = self.codec.split(url)
            fmt = self.registry.destination_for_extension(ext)
            if fmt is None:
                raise UnsupportedRequestedFormat(f"unsupported image format: {url}")
            if not fmt.enabled:
                raise FormatDisabledByConfig(
                    f"{fmt.extension} file requested but disabled by configuration"
                )
            logging.debug("original image URL: %s", original)
            data = self.transcoder.convert(original, fmt, timeout=self.settings.timeout)
        except PixboosterError as e:
            status = e.status or 500
            logging.error("%s -> %d: %s", url, status, e)
            return self._error(start_response, status)
        start_response(
            "200 OK",
            [("Content-Type", fmt.mime_type), ("Content-Length", str(len(data)))],
        )
        return [data]

    def serve_downstream(self, environ, start_response):
        status, headers, body = call_wsgi(self.app, environ)
        content_type = header_value(headers, "Content-Type")
        encoding = header_value(headers, "Content-Encoding").lower()
        if (
            body
            and content_type.lower().startswith("text/html")
            and encoding in ("", "identity")
        ):
            body = rewrite_html(
                body,
                request_host(environ),
                self.registry,
                self.codec,
                encoding=_charset(content_type),
                parser=self.settings.parser,
            )
            headers = [(k, v) for k, v in headers if k.lower() != "content-length"]
            headers.append(("Content-Length", str(len(body))))
        start_response(status, headers)
        return [body]


# -------------------- Static site --------------------


def static_app(docroot: Path) -> Callable:
    root = Path(docroot).resolve()

    def app(environ, start_response):
        path_info = str(environ.get("PATH_INFO") or "/")
        rel = path_info.encode("latin-1").decode("utf-8", "replace").lstrip("/")
        path = (root / rel).resolve()
        if path.is_dir():
            path = path / "index.html"
        if not path.is_relative_to(root) or not path.is_file():
            body = b"Not Found"
            start_response(
                "404 Not Found",
                [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))],
            )
            return [body]
        data = path.read_bytes()
        ctype = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        start_response(
            "200 OK", [("Content-Type", ctype), ("Content-Length", str(len(data)))]
        )
        return [data]

    return app


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            try:
                return tomllib.load(f) or {}
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"invalid TOML in {p}: {e}") from e
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise ConfigError("YAML config requires 'PyYAML'") from None
        with open(p, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"invalid YAML in {p}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError("Top-level YAML must be a mapping")
            return data
    else:
        raise ConfigError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Mapping[str, object]) -> Dict[str, object]:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in ("general", "formats", "cache", "fetch"):
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    # per-format sections share key names, prefix them
    for g in ("webp", "avif", "jxl"):
        if isinstance(cfg.get(g), dict):
            flat.update({f"{g}_{k}": v for k, v in cfg[g].items()})
    return flat


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Serve modern image formats (jxl, avif, webp) without changing your HTML.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("--verbose", action="store_true", help="debug logging")
    p.add_argument(
        "--marker", type=str, default=DEFAULT_MARKER, help="virtual URL marker"
    )

    # formats
    p.add_argument("--no-jpeg", action="store_true", help="ignore JPEG images in HTML")
    p.add_argument("--no-png", action="store_true", help="ignore PNG images in HTML")
    p.add_argument(
        "--no-webp-input", action="store_true", help="ignore WebP images in HTML"
    )
    p.add_argument("--no-webp-output", action="store_true", help="disable WebP output")
    p.add_argument("--no-avif", action="store_true", help="disable AVIF output")
    p.add_argument("--no-jxl", action="store_true", help="disable JPEG XL output")

    # encoding
    p.add_argument("--quality", type=int, default=None, help="default quality 0..100")
    p.add_argument("--webp-quality", type=int, default=None, help="WebP quality")
    p.add_argument("--webp-lossless", action="store_true", help="lossless WebP")
    p.add_argument(
        "--webp-exact", action="store_true", help="keep RGB under transparent pixels"
    )
    p.add_argument("--avif-quality", type=int, default=None, help="AVIF quality")
    p.add_argument("--avif-speed", type=int, default=None, help="AVIF speed 0..10")
    p.add_argument("--jxl-quality", type=int, default=None, help="JPEG XL quality")
    p.add_argument("--jxl-effort", type=int, default=None, help="JPEG XL effort 0..10")

    # cache / fetch
    p.add_argument(
        "--storage", type=str, default=None, help="directory for converted images"
    )
    p.add_argument(
        "--cache-backend",
        type=str,
        choices=list(CACHE_BACKENDS),
        default="file",
        help="where converted images are kept",
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="fetch timeout seconds"
    )
    p.add_argument(
        "--max-bytes", type=int, default=50_000_000, help="max original image bytes"
    )
    p.add_argument(
        "--origin", type=str, default=None, help="fetch originals from this http(s) origin"
    )
    p.add_argument(
        "--parser",
        type=str,
        choices=list(HTML_PARSERS),
        default="html.parser",
        help="BeautifulSoup HTML parser",
    )

    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="serve a directory with image rewriting")
    serve.add_argument("docroot", help="directory to serve")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="bind address")
    serve.add_argument("--port", type=int, default=8080, help="bind port")

    rw = sub.add_parser("rewrite", help="rewrite <img> tags of an HTML file")
    rw.add_argument("file", help="HTML file")
    rw.add_argument(
        "--site-host", type=str, default="localhost", help="host treated as same-origin"
    )
    rw.add_argument("-o", "--output", type=str, default=None, help="output file")

    conv = sub.add_parser("convert", help="convert one image URL")
    conv.add_argument("url", help="http(s) URL of the original image")
    conv.add_argument("format", choices=["jxl", "avif", "webp"], help="target format")
    conv.add_argument("-o", "--output", type=str, required=True, help="output file")

    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        marker=args.marker,
        jpeg_input=not args.no_jpeg,
        png_input=not args.no_png,
        webp_input=not args.no_webp_input,
        webp_output=not args.no_webp_output,
        avif_output=not args.no_avif,
        jxl_output=not args.no_jxl,
        quality=args.quality,
        webp=WebpOptions(
            quality=args.webp_quality,
            lossless=args.webp_lossless,
            exact=args.webp_exact,
        ),
        avif=AvifOptions(quality=args.avif_quality, speed=args.avif_speed),
        jxl=JxlOptions(quality=args.jxl_quality, effort=args.jxl_effort),
        cache_backend=args.cache_backend,
        storage=args.storage,
        timeout=args.timeout,
        max_bytes=max(1024, args.max_bytes),
        origin=args.origin,
        parser=args.parser,
    )


def run_serve(args: argparse.Namespace, settings: Settings) -> None:
    docroot = Path(args.docroot)
    if not docroot.is_dir():
        raise ConfigError(f"not a directory: {docroot}")
    app = PixboosterMiddleware(static_app(docroot), settings)
    with make_server(args.host, args.port, app) as httpd:
        logging.info("serving %s on http://%s:%d", docroot, args.host, args.port)
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logging.info("stopped")


def run_rewrite(args: argparse.Namespace, settings: Settings) -> None:
    registry = build_registry(settings, Codecs(settings))
    body = Path(args.file).read_bytes()
    out = rewrite_html(
        body,
        args.site_host,
        registry,
        UrlCodec(settings.marker),
        parser=settings.parser,
    )
    if args.output:
        atomic_write_bytes(Path(args.output), out)
        logging.info("rewrote %s -> %s", args.file, args.output)
    else:
        sys.stdout.buffer.write(out)


def run_convert(args: argparse.Namespace, settings: Settings) -> None:
    codecs = Codecs(settings)
    registry = build_registry(settings, codecs)
    fmt = registry.destination_for_extension("." + args.format)
    if fmt is None or not fmt.enabled:
        raise FormatDisabledByConfig(f".{args.format} output disabled")
    fetcher = HttpFetcher(origin=settings.origin, max_bytes=settings.max_bytes)
    data = Transcoder(registry, fetcher, codecs).convert(
        args.url, fmt, timeout=settings.timeout
    )
    atomic_write_bytes(Path(args.output), data)
    logging.info("converted %s -> %s (%d bytes)", args.url, args.output, len(data))


COMMANDS = {
    "serve": run_serve,
    "rewrite": run_rewrite,
    "convert": run_convert,
}


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        settings = settings_from_args(args)
        COMMANDS[args.command](args, settings)
    except (PixboosterError, OSError) as e:
        logging.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
