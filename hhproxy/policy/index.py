import dataclasses
import hashlib
import ipaddress
import re
from enum import Enum
from typing import Mapping, Optional
from urllib import parse

from hhproxy.errors import InvalidURL
from hhproxy.typing import CacheKey, ForwardedHeaders, OriginUrl

DEFAULT_QUALITY = 40
MIN_QUALITY = 1
MAX_QUALITY = 100

MIN_COMPRESS_LENGTH = 1024
MIN_TRANSPARENT_COMPRESS_LENGTH = MIN_COMPRESS_LENGTH * 100

# Largest pixel height the encoders accept.
MAX_HEIGHT = 16383

VIA = '1.1 bandwidth-hero'

FORWARDED_HEADERS = ('cookie', 'dnt', 'referer', 'range')

# Characters encodeURI() leaves alone besides alphanumerics and "-_.~".
URI_SAFE = ";,/?:@&=+$!*'()#"

leading_int_re = re.compile(r'\s*([+-]?\d+)')


class OutputFormat(Enum):
  WEBP = 'webp'
  JPEG = 'jpeg'

  @property
  def mime(self) -> str:
    return f'image/{self.value}'


@dataclasses.dataclass(frozen=True)
class ProxyRequest:
  url: OriginUrl
  webp: bool
  grayscale: bool
  quality: int
  headers: ForwardedHeaders
  forwarded_for: str
  via: str = ''

  @property
  def output_format(self) -> OutputFormat:
    return OutputFormat.WEBP if self.webp else OutputFormat.JPEG

  @property
  def location(self) -> str:
    """`url` in the encoded form a Location header carries."""
    return encode_uri(self.url)

  @property
  def has_range(self) -> bool:
    return 'range' in self.headers

  def cache_key(self) -> CacheKey:
    raw = f'{self.url}\n{self.quality}\n{int(self.grayscale)}\n{self.output_format.value}'
    return CacheKey(hashlib.sha256(raw.encode()).hexdigest())

  def log_context(self) -> dict[str, object]:
    return {
        'url': self.url,
        'quality': self.quality,
        'grayscale': self.grayscale,
        'format': self.output_format.value,
    }


@dataclasses.dataclass(frozen=True)
class OriginMeta:
  content_type: str
  content_length: int
  status: int
  location: Optional[str] = None

  @classmethod
  def from_headers(cls, status: int, headers: Mapping[str, str]) -> 'OriginMeta':
    return cls(
        content_type=headers.get('content-type', ''),
        content_length=parse_content_length(headers.get('content-length', '')),
        status=status,
        location=headers.get('location'))


@dataclasses.dataclass(frozen=True)
class TranscodeParams:
  resize_height: Optional[int]
  format: OutputFormat
  grayscale: bool
  quality: int

  @classmethod
  def create(cls, req: ProxyRequest, origin_height: int) -> 'TranscodeParams':
    return cls(
        resize_height=compute_resize_height(origin_height),
        format=req.output_format,
        grayscale=req.grayscale,
        quality=req.quality)


def encode_uri(url: str) -> str:
  return parse.quote(url, safe=URI_SAFE)


def parse_content_length(s: str) -> int:
  try:
    n = int(s)
  except ValueError:
    return 0
  return n if 0 < n else 0


def parse_quality(s: Optional[str]) -> int:
  """Reads `l` the way `parseInt(l) || 40` does, then clamps it."""
  if s is None:
    return DEFAULT_QUALITY

  m = leading_int_re.match(s)
  if m is None:
    return DEFAULT_QUALITY

  quality = int(m[1])
  if quality == 0:
    return DEFAULT_QUALITY

  return max(MIN_QUALITY, min(MAX_QUALITY, quality))


def parse_url(s: str) -> OriginUrl:
  url = parse.unquote(s)
  try:
    parsed = parse.urlsplit(url)
    # Accessing the port validates it.
    parsed.port
  except ValueError as e:
    raise InvalidURL(f'malformed url: {e}')

  if parsed.scheme not in ('http', 'https'):
    raise InvalidURL(f'unsupported scheme: {parsed.scheme!r}')
  if not parsed.hostname:
    raise InvalidURL('url has no host')

  return OriginUrl(url)


def parse_params(
    query: Mapping[str, str],
    headers: Mapping[str, str],
    client_ip: str,
) -> Optional[ProxyRequest]:
  """Builds the request record, or None when there is no `url` to proxy."""
  url = query.get('url', '')
  if url == '':
    return None

  forwarded: ForwardedHeaders = {}
  for name in FORWARDED_HEADERS:
    if name in headers:
      forwarded[name] = headers[name]  # type: ignore[literal-required]

  return ProxyRequest(
      url=parse_url(url),
      webp='jpeg' not in query,
      grayscale=query.get('bw') != '0',
      quality=parse_quality(query.get('l')),
      headers=forwarded,
      forwarded_for=headers.get('x-forwarded-for', '') or client_ip,
      via=headers.get('via', ''))


def should_compress(meta: OriginMeta, req: ProxyRequest) -> bool:
  if not meta.content_type.startswith('image'):
    return False

  if meta.content_length == 0:
    return False

  # Byte ranges cannot be honored once the image is re-encoded.
  if req.has_range:
    return False

  if req.webp and meta.content_length < MIN_COMPRESS_LENGTH:
    return False

  if (not req.webp and meta.content_type.endswith(('png', 'gif')) and
      meta.content_length < MIN_TRANSPARENT_COMPRESS_LENGTH):
    return False

  return True


def compute_resize_height(origin_height: int) -> Optional[int]:
  if MAX_HEIGHT < origin_height:
    return MAX_HEIGHT
  return None


def is_loopback(ip: str) -> bool:
  try:
    return ipaddress.ip_address(ip.strip()).is_loopback
  except ValueError:
    return False


def is_proxy_loop(req: ProxyRequest) -> bool:
  """Best-effort guard against the proxy fetching through itself."""
  if VIA not in req.via:
    return False

  first_hop = req.forwarded_for.split(',', 1)[0]
  return is_loopback(first_hop)
