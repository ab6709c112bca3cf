import random
from typing import AsyncIterator, Optional

import httpx

from hhproxy.config import Settings
from hhproxy.errors import (
    InvalidURL,
    UpstreamClientError,
    UpstreamRedirect,
    UpstreamServerError,
    UpstreamTimeout,
    UpstreamUnavailable
)
from hhproxy.policy.index import VIA, OriginMeta, ProxyRequest
from hhproxy.typing import OriginUrl


def create_client(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
  return httpx.AsyncClient(
      transport=transport,
      follow_redirects=False,
      timeout=httpx.Timeout(settings.read_timeout, connect=settings.connect_timeout))


class Origin:
  """Origin response whose headers have arrived and whose body is unread."""

  def __init__(
      self,
      request_location: str,
      url: OriginUrl,
      response: httpx.Response,
      meta: OriginMeta,
      chunk_size: int,
  ):
    self.request_location = request_location
    self.url = url
    self.response = response
    self.meta = meta
    self.chunk_size = chunk_size

  @property
  def headers(self) -> httpx.Headers:
    return self.response.headers

  @property
  def identity_encoded(self) -> bool:
    return self.headers.get('content-encoding', 'identity').lower() == 'identity'

  async def chunks(self) -> AsyncIterator[bytes]:
    try:
      async for chunk in self.response.aiter_bytes(self.chunk_size):
        yield chunk
    except httpx.TimeoutException as e:
      raise UpstreamTimeout(f'origin body timed out: {e}', self.request_location) from e
    except (httpx.TransportError, httpx.DecodingError) as e:
      raise UpstreamUnavailable(f'origin body failed: {e}', self.request_location) from e

  async def aclose(self) -> None:
    await self.response.aclose()


class Fetcher:

  def __init__(self, client: httpx.AsyncClient, settings: Settings):
    self.client = client
    self.settings = settings

  def build_headers(self, req: ProxyRequest) -> dict[str, str]:
    # One user agent for the whole redirect chain.
    return {
        **req.headers,
        'user-agent': random.choice(self.settings.user_agents),
        'x-forwarded-for': req.forwarded_for,
        'via': VIA,
        'accept-encoding': 'identity',
    }

  async def send(
      self,
      req: ProxyRequest,
      url: httpx.URL,
      headers: dict[str, str],
  ) -> httpx.Response:
    try:
      request = self.client.build_request('GET', url, headers=headers)
      return await self.client.send(request, stream=True)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
      raise InvalidURL(f'cannot request {url}: {e}') from e
    except httpx.TimeoutException as e:
      raise UpstreamTimeout(f'origin timed out: {e}', req.location) from e
    except httpx.TransportError as e:
      raise UpstreamUnavailable(f'origin unreachable: {e}', req.location) from e

  async def fetch(self, req: ProxyRequest) -> Origin:
    """Requests the origin, following at most `max_redirects` hops.

    A redirect beyond the limit, or one the proxy cannot follow, is raised
    as UpstreamRedirect so the client is sent to the last location seen.
    """
    headers = self.build_headers(req)
    try:
      url = httpx.URL(req.url)
    except httpx.InvalidURL as e:
      raise InvalidURL(f'cannot request {req.url}: {e}') from e

    hops = 0
    while True:
      try:
        response = await self.send(req, url, headers)
      except InvalidURL:
        if hops == 0:
          raise
        raise UpstreamRedirect(str(url), hops)

      meta = OriginMeta.from_headers(response.status_code, response.headers)
      status = meta.status
      if 400 <= status:
        await response.aclose()
        if status < 500:
          raise UpstreamClientError(req.location, status)
        raise UpstreamServerError(req.location, status)

      location = meta.location
      if 300 <= status < 400 and location:
        await response.aclose()
        try:
          next_url = response.url.join(location)
        except httpx.InvalidURL:
          raise UpstreamRedirect(location, hops)

        if self.settings.max_redirects <= hops:
          raise UpstreamRedirect(str(next_url), hops)

        if next_url.host != url.host or next_url.scheme != url.scheme:
          headers.pop('cookie', None)
        url = next_url
        hops += 1
        continue

      return Origin(
          req.location, OriginUrl(str(response.url)), response, meta, self.settings.chunk_size)
