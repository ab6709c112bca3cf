from http import HTTPStatus
from typing import AsyncIterator, Mapping

from starlette.datastructures import MutableHeaders
from starlette.types import Send

from hhproxy.errors import ClientDisconnected
from hhproxy.policy.index import OutputFormat

PLACEHOLDER_BODY = 'bandwidth-hero-proxy'
INVALID_URL_BODY = 'Invalid URL'

CORS_HEADERS = {
    'access-control-allow-origin': '*',
    'cross-origin-resource-policy': 'cross-origin',
    'cross-origin-embedder-policy': 'unsafe-none',
}

# Copied from the origin on the passthrough path.
PASSTHROUGH_HEADERS = ('accept-ranges', 'content-type', 'content-length', 'content-range')

# Carried over from the origin on both paths; etag only where the bytes are the origin's.
ORIGIN_CACHE_HEADERS = ('cache-control', 'expires', 'last-modified')

# Stale origin cache metadata must not stick to a redirect.
REDIRECT_CLEARED_HEADERS = ('cache-control', 'expires', 'date', 'etag', 'last-modified')


class ResponseComposer:
  """Client response of one exchange.

  Headers accumulate until start(); from then on `headers_sent` is set and
  only body writes are possible. Every path checks `headers_sent` before
  starting, so a response is finalized exactly once.
  """

  def __init__(self, send: Send):
    self._send = send
    self.status: int = HTTPStatus.OK
    self.headers = MutableHeaders()
    self.headers_sent = False
    self.finalized = False
    self.bytes_sent = 0

  def set_cors(self) -> None:
    for name, value in CORS_HEADERS.items():
      self.headers[name] = value

  def copy_headers(self, source: Mapping[str, str], names: tuple[str, ...]) -> None:
    for name in names:
      value = source.get(name)
      if value:
        self.headers[name] = value

  def clear_headers(self, names: tuple[str, ...]) -> None:
    for name in names:
      if name in self.headers:
        del self.headers[name]

  def prepare_passthrough(
      self,
      status: int,
      origin_headers: Mapping[str, str],
      identity_encoded: bool,
  ) -> None:
    self.status = status
    self.set_cors()
    self.copy_headers(origin_headers, ORIGIN_CACHE_HEADERS + ('etag',))
    if identity_encoded:
      self.copy_headers(origin_headers, PASSTHROUGH_HEADERS)
    else:
      # The body is relayed decoded, so the origin length does not apply.
      self.copy_headers(origin_headers, ('accept-ranges', 'content-type', 'content-range'))
    self.headers['x-proxy-bypass'] = '1'

  def prepare_transcoded(
      self,
      origin_headers: Mapping[str, str],
      output_format: OutputFormat,
      original_size: int,
      encoded_size: int,
  ) -> None:
    self.set_cors()
    self.copy_headers(origin_headers, ORIGIN_CACHE_HEADERS)
    self.headers['content-type'] = output_format.mime
    self.headers['content-length'] = str(encoded_size)
    self.headers['content-encoding'] = 'identity'
    self.headers['x-original-size'] = str(original_size)
    self.headers['x-bytes-saved'] = str(original_size - encoded_size)

  async def start(self) -> None:
    if self.headers_sent:
      raise Exception('system error')
    self.headers_sent = True
    await self.send({
        'type': 'http.response.start',
        'status': int(self.status),
        'headers': self.headers.raw,
    })

  async def write(self, chunk: bytes) -> None:
    if not chunk:
      return
    await self.send({'type': 'http.response.body', 'body': chunk, 'more_body': True})
    self.bytes_sent += len(chunk)

  async def finish(self, body: bytes = b'') -> None:
    if self.finalized:
      return
    self.finalized = True
    await self.send({'type': 'http.response.body', 'body': body, 'more_body': False})
    self.bytes_sent += len(body)

  async def send(self, message: dict) -> None:
    try:
      await self._send(message)
    except OSError as e:
      raise ClientDisconnected(str(e)) from e

  async def stream(self, chunks: AsyncIterator[bytes]) -> None:
    """Relays `chunks` after the headers.

    Each write waits until the server has accepted the previous chunk, so a
    slow client pauses the producer.
    """
    await self.start()
    async for chunk in chunks:
      await self.write(chunk)
    await self.finish()

  async def text(self, status: int, body: str) -> None:
    if self.headers_sent:
      return
    encoded = body.encode()
    self.status = status
    self.headers['content-type'] = 'text/plain; charset=utf-8'
    self.headers['content-length'] = str(len(encoded))
    await self.start()
    await self.finish(encoded)

  async def placeholder(self) -> None:
    await self.text(HTTPStatus.OK, PLACEHOLDER_BODY)

  async def invalid_url(self) -> None:
    # No location to redirect to.
    await self.text(HTTPStatus.BAD_REQUEST, INVALID_URL_BODY)

  async def redirect_to_origin(self, location: str) -> bool:
    """Sends the client to `location`; returns False when it is too late to.

    `location` must already be URI-encoded; it is sent as is.
    """
    if self.headers_sent:
      return False

    self.clear_headers(REDIRECT_CLEARED_HEADERS)
    self.clear_headers(PASSTHROUGH_HEADERS)
    self.clear_headers(('content-encoding', 'x-original-size', 'x-bytes-saved', 'x-proxy-bypass'))
    self.headers['location'] = location
    self.headers['content-length'] = '0'
    self.status = HTTPStatus.FOUND
    await self.start()
    await self.finish()
    return True
