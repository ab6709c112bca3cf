from typing import AsyncGenerator, Callable, Optional

import httpx
import pytest
import pytest_asyncio

from hhproxy.config import DEFAULT_USER_AGENTS, Settings
from hhproxy.errors import (
    InvalidURL,
    UpstreamClientError,
    UpstreamRedirect,
    UpstreamServerError,
    UpstreamTimeout,
    UpstreamUnavailable
)
from hhproxy.policy.index import VIA, ProxyRequest, parse_params

from .index import Fetcher, create_client

ORIGIN_URL = 'https://example.com/img.png'
SETTINGS = Settings(user_agents=('hhproxy-test',), chunk_size=4)

Handler = Callable[[httpx.Request], httpx.Response]


@pytest_asyncio.fixture
async def fetcher_factory() -> AsyncGenerator[Callable[[Handler], Fetcher], None]:
  clients: list[httpx.AsyncClient] = []

  def fn(handler: Handler) -> Fetcher:
    client = create_client(SETTINGS, httpx.MockTransport(handler))
    clients.append(client)
    return Fetcher(client, SETTINGS)

  yield fn

  for client in clients:
    await client.aclose()


def proxy_request(url: str = ORIGIN_URL, headers: Optional[dict[str, str]] = None) -> ProxyRequest:
  req = parse_params({'url': url}, headers or {}, '198.51.100.7')
  assert req is not None
  return req


@pytest.mark.asyncio
async def test_forwarded_headers(fetcher_factory: Callable[[Handler], Fetcher]) -> None:
  seen: list[httpx.Request] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request)
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=b'0123456789')

  fetcher = fetcher_factory(handler)
  origin = await fetcher.fetch(
      proxy_request(
          headers={
              'cookie': 'session=1',
              'dnt': '1',
              'referer': 'https://example.org/',
              'range': 'bytes=0-3',
              'authorization': 'Bearer secret',
              'accept-language': 'ja',
          }))
  await origin.aclose()

  assert len(seen) == 1
  headers = seen[0].headers
  assert headers['cookie'] == 'session=1'
  assert headers['dnt'] == '1'
  assert headers['referer'] == 'https://example.org/'
  assert headers['range'] == 'bytes=0-3'
  assert headers['user-agent'] == 'hhproxy-test'
  assert headers['x-forwarded-for'] == '198.51.100.7'
  assert headers['via'] == VIA
  assert 'authorization' not in headers
  assert 'accept-language' not in headers


@pytest.mark.asyncio
async def test_origin_meta_and_body(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=b'0123456789')

  origin = await fetcher_factory(handler).fetch(proxy_request())
  try:
    assert origin.meta.content_type == 'image/png'
    assert origin.meta.content_length == 10
    assert origin.meta.status == 200
    assert origin.identity_encoded

    chunks = [chunk async for chunk in origin.chunks()]
    assert chunks == [b'0123', b'4567', b'89']
  finally:
    await origin.aclose()


@pytest.mark.asyncio
async def test_follows_redirects(fetcher_factory: Callable[[Handler], Fetcher]) -> None:
  seen: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(str(request.url))
    n = len(seen)
    if n <= 4:
      return httpx.Response(302, headers={'location': f'/hop{n}.png'})
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=b'png')

  origin = await fetcher_factory(handler).fetch(proxy_request())
  await origin.aclose()

  assert seen == [
      ORIGIN_URL,
      'https://example.com/hop1.png',
      'https://example.com/hop2.png',
      'https://example.com/hop3.png',
      'https://example.com/hop4.png',
  ]
  assert origin.url == 'https://example.com/hop4.png'
  assert origin.request_location == ORIGIN_URL


@pytest.mark.asyncio
async def test_redirect_limit(fetcher_factory: Callable[[Handler], Fetcher]) -> None:
  seen: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(str(request.url))
    return httpx.Response(301, headers={'location': 'https://example.com/img.png'})

  with pytest.raises(UpstreamRedirect) as e:
    await fetcher_factory(handler).fetch(proxy_request('https://example.com/start.png'))

  assert e.value.location == 'https://example.com/img.png'
  assert e.value.hops == 4
  assert len(seen) == 5


@pytest.mark.asyncio
async def test_redirect_limit_keeps_encoding(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(301, headers={'location': str(request.url)})

  with pytest.raises(UpstreamRedirect) as e:
    await fetcher_factory(handler).fetch(proxy_request('https://example.com/café menu.png'))

  assert e.value.location == 'https://example.com/caf%C3%A9%20menu.png'


@pytest.mark.asyncio
async def test_redirect_drops_cookie_across_hosts(
    fetcher_factory: Callable[[Handler], Fetcher]) -> None:
  cookies: list[str | None] = []

  def handler(request: httpx.Request) -> httpx.Response:
    cookies.append(request.headers.get('cookie'))
    if request.url.host == 'example.com':
      return httpx.Response(302, headers={'location': 'https://cdn.example.net/img.png'})
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=b'png')

  origin = await fetcher_factory(handler).fetch(proxy_request(headers={'cookie': 'a=b'}))
  await origin.aclose()

  assert cookies == ['a=b', None]


@pytest.mark.parametrize(
    'status,error', [
        (400, UpstreamClientError),
        (404, UpstreamClientError),
        (500, UpstreamServerError),
        (503, UpstreamServerError),
    ],
    ids=['400', '404', '500', '503'])
@pytest.mark.asyncio
async def test_error_status(
    fetcher_factory: Callable[[Handler], Fetcher],
    status: int,
    error: type[Exception],
) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(status, headers={'cache-control': 'max-age=60'})

  with pytest.raises(error) as e:
    await fetcher_factory(handler).fetch(proxy_request())

  assert e.value.status == status  # type: ignore[attr-defined]
  assert e.value.location == ORIGIN_URL  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_redirect_without_location(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(304)

  origin = await fetcher_factory(handler).fetch(proxy_request())
  await origin.aclose()

  assert origin.meta.status == 304


@pytest.mark.asyncio
async def test_connect_error(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError('connection refused', request=request)

  with pytest.raises(UpstreamUnavailable) as e:
    await fetcher_factory(handler).fetch(proxy_request())

  assert not isinstance(e.value, UpstreamTimeout)
  assert e.value.location == ORIGIN_URL


@pytest.mark.asyncio
async def test_timeout(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectTimeout('timed out', request=request)

  with pytest.raises(UpstreamTimeout):
    await fetcher_factory(handler).fetch(proxy_request())


@pytest.mark.asyncio
async def test_unsupported_protocol(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.UnsupportedProtocol('no', request=request)

  with pytest.raises(InvalidURL):
    await fetcher_factory(handler).fetch(proxy_request())


@pytest.mark.asyncio
async def test_body_failure(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  class BrokenStream(httpx.AsyncByteStream):

    async def __aiter__(self):
      yield b'0123'
      raise httpx.ReadError('connection reset')

  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200, headers={
            'content-type': 'image/png',
            'content-length': '100'
        }, stream=BrokenStream())

  origin = await fetcher_factory(handler).fetch(proxy_request())
  received = []
  with pytest.raises(UpstreamUnavailable):
    async for chunk in origin.chunks():
      received.append(chunk)
  await origin.aclose()

  assert received == [b'0123']


@pytest.mark.asyncio
async def test_error_location_is_encoded(fetcher_factory: Callable[[Handler], Fetcher]) -> None:

  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404)

  with pytest.raises(UpstreamClientError) as e:
    await fetcher_factory(handler).fetch(proxy_request('https://example.com/café menu.png'))

  assert e.value.location == 'https://example.com/caf%C3%A9%20menu.png'


@pytest.mark.asyncio
async def test_user_agent_per_request() -> None:
  seen: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    seen.append(request.headers['user-agent'])
    if request.url.path == '/moved.png':
      return httpx.Response(302, headers={'location': '/img.png'})
    return httpx.Response(200, headers={'content-type': 'image/png'}, content=b'png')

  settings = Settings(chunk_size=4)
  async with create_client(settings, httpx.MockTransport(handler)) as client:
    fetcher = Fetcher(client, settings)
    for _ in range(20):
      origin = await fetcher.fetch(proxy_request('https://example.com/moved.png'))
      await origin.aclose()

  assert set(seen) <= set(DEFAULT_USER_AGENTS)
  # Both hops of a redirect chain carry the same user agent.
  assert all(seen[i] == seen[i + 1] for i in range(0, len(seen), 2))
  assert 1 < len(set(seen))
