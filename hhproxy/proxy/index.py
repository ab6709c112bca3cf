import contextlib
import logging
from typing import Any, AsyncIterator, Optional

import anyio
import boto3
import httpx
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from hhproxy.cache.index import CachedImage, S3Cache
from hhproxy.config import Settings, configure_codec
from hhproxy.errors import (
    ClientDisconnected,
    InvalidURL,
    ProxyError,
    UpstreamError
)
from hhproxy.log import init_logging
from hhproxy.policy.index import ProxyRequest, is_proxy_loop, parse_params, should_compress
from hhproxy.response.index import ResponseComposer
from hhproxy.transcode.index import TranscodeJob, Transcoder
from hhproxy.typing import TranscodeLog
from hhproxy.upstream.index import Fetcher, Origin, create_client


class ProxyServer:
  """Process-wide collaborators shared by every exchange."""

  def __init__(
      self,
      log: logging.Logger,
      settings: Settings,
      client: httpx.AsyncClient,
      limiter: anyio.CapacityLimiter,
      cache: Optional[S3Cache],
  ):
    self.log = log
    self.settings = settings
    self.client = client
    self.fetcher = Fetcher(client, settings)
    self.transcoder = Transcoder(settings, limiter)
    self.cache = cache

  async def handle(self, request: Request) -> 'ProxyExchange':
    client_ip = request.client.host if request.client is not None else ''
    return ProxyExchange(self, dict(request.query_params), dict(request.headers), client_ip)


async def listen_for_disconnect(receive: Receive) -> None:
  while True:
    message = await receive()
    if message['type'] == 'http.disconnect':
      break


class ProxyExchange:
  """One client request, from parameter parsing to the final body byte.

  Runs as an ASGI callable so the pipeline can be cancelled when the client
  goes away: the disconnect listener and the pipeline share a task group,
  and whichever ends first cancels the other.
  """

  def __init__(
      self,
      server: ProxyServer,
      query: dict[str, str],
      headers: dict[str, str],
      client_ip: str,
  ):
    self.server = server
    self.settings = server.settings
    self.query = query
    self.headers = headers
    self.client_ip = client_ip
    self.log_context: dict[str, Any] = {'url': query.get('url', '')}

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.server.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.server.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.server.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    res = ResponseComposer(send)
    failure: Optional[Exception] = None

    async with anyio.create_task_group() as task_group:

      async def watch() -> None:
        await listen_for_disconnect(receive)
        if res.finalized:
          # Normal end of the response; the pipeline may still be storing it.
          return
        self.log_debug('client disconnected', {'bytes_sent': res.bytes_sent})
        task_group.cancel_scope.cancel()

      task_group.start_soon(watch)
      try:
        await self.run(res)
      except ClientDisconnected as e:
        self.log_debug('client disconnected', {'reason': str(e), 'bytes_sent': res.bytes_sent})
      except Exception as e:
        failure = e
      finally:
        task_group.cancel_scope.cancel()

    if failure is not None:
      raise failure

  async def run(self, res: ResponseComposer) -> None:
    try:
      req = parse_params(self.query, self.headers, self.client_ip)
    except InvalidURL as e:
      self.log_warning('invalid url', {'reason': str(e)})
      await res.invalid_url()
      return

    if req is None:
      self.log_debug('no url', {})
      await res.placeholder()
      return

    self.log_context = req.log_context()

    if is_proxy_loop(req):
      self.log_warning('proxy loop detected', {'via': req.via, 'forwarded_for': req.forwarded_for})
      await res.redirect_to_origin(req.location)
      return

    if self.server.cache is not None and not req.has_range:
      if await self.respond_from_cache(res, req):
        return

    try:
      origin = await self.server.fetcher.fetch(req)
    except InvalidURL as e:
      self.log_warning('invalid url', {'reason': str(e)})
      await res.invalid_url()
      return
    except UpstreamError as e:
      self.log_warning('upstream failed', {'reason': str(e), 'location': e.location})
      await res.redirect_to_origin(e.location)
      return

    try:
      await self.relay(res, req, origin)
    except ClientDisconnected:
      raise
    except ProxyError as e:
      location = e.location if isinstance(e, UpstreamError) else origin.url
      if await res.redirect_to_origin(location):
        self.log_warning('redirected to origin', {'reason': str(e), 'location': location})
      else:
        self.log_error('aborted after headers were sent', {
            'reason': str(e),
            'bytes_sent': res.bytes_sent,
        })
        raise
    finally:
      with anyio.CancelScope(shield=True):
        await origin.aclose()

  async def relay(self, res: ResponseComposer, req: ProxyRequest, origin: Origin) -> None:
    if not should_compress(origin.meta, req):
      self.log_debug('bypass', {
          'content_type': origin.meta.content_type,
          'content_length': origin.meta.content_length,
      })
      res.prepare_passthrough(origin.meta.status, origin.headers, origin.identity_encoded)
      await res.stream(origin.chunks())
      return

    job = await self.server.transcoder.transcode(req, origin.chunks())

    with contextlib.closing(job):
      assert job.info is not None and job.params is not None

      transcode_log: TranscodeLog = {
          'original_size': origin.meta.content_length,
          'encoded_size': job.size,
          'width': job.info.width,
          'height': job.info.height,
          'native_format': job.info.native_format,
          'codec_us': job.codec_us,
      }
      self.log_debug('transcoded', {**transcode_log, 'resize_height': job.params.resize_height})

      res.prepare_transcoded(
          origin.headers, req.output_format, origin.meta.content_length, job.size)
      if self.server.cache is not None:
        res.headers['x-cache'] = 'MISS'
      await res.stream(job.stream(self.settings.chunk_size))

      await self.store_in_cache(req, job, origin.meta.content_length)

  async def respond_from_cache(self, res: ResponseComposer, req: ProxyRequest) -> bool:
    cache = self.server.cache
    assert cache is not None

    try:
      cached = await anyio.to_thread.run_sync(cache.get, req.cache_key())
    except Exception as e:
      self.log_warning('failed to read cache', {'reason': str(e)})
      return False

    if cached is None:
      return False

    self.log_debug('cache hit', {'original_size': cached.original_size, 'size': len(cached.body)})
    res.prepare_transcoded({}, req.output_format, cached.original_size, len(cached.body))
    res.headers['x-cache'] = 'HIT'
    await res.stream(chunk_bytes(cached.body, self.settings.chunk_size))
    return True

  async def store_in_cache(self, req: ProxyRequest, job: TranscodeJob, original_size: int) -> None:
    cache = self.server.cache
    if cache is None or self.settings.cache_max_size < job.size:
      return

    job.output.seek(0)
    image = CachedImage(
        body=job.output.read(), content_type=req.output_format.mime, original_size=original_size)
    try:
      await anyio.to_thread.run_sync(cache.set, req.cache_key(), image, self.settings.cache_ttl)
    except Exception as e:
      self.log_warning('failed to write cache', {'reason': str(e)})


async def chunk_bytes(body: bytes, chunk_size: int) -> AsyncIterator[bytes]:
  for i in range(0, len(body), chunk_size):
    yield body[i:i + chunk_size]


def create_cache(log: logging.Logger, settings: Settings) -> Optional[S3Cache]:
  if not settings.cache_enabled:
    return None

  s3 = boto3.client('s3', region_name=settings.region)
  return S3Cache(log, s3, settings.cache_bucket, settings.cache_key_prefix)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cache: Optional[S3Cache] = None,
) -> Starlette:
  if settings is None:
    settings = Settings.from_env()

  log = init_logging(settings.log_level)
  server: Optional[ProxyServer] = None

  @contextlib.asynccontextmanager
  async def lifespan(app: Starlette) -> AsyncIterator[None]:
    nonlocal server

    configure_codec(settings)
    async with create_client(settings, transport) as client:
      server = ProxyServer(
          log=log,
          settings=settings,
          client=client,
          limiter=anyio.CapacityLimiter(settings.codec_concurrency),
          cache=cache if cache is not None else create_cache(log, settings))
      log.info({
          'message': 'started',
          'codec_concurrency': settings.codec_concurrency,
          'cache': settings.cache_bucket if server.cache is not None else None,
      })
      yield
    server = None

  async def proxy(request: Request) -> ProxyExchange:
    assert server is not None
    return await server.handle(request)

  return Starlette(routes=[Route('/', proxy, methods=['GET'])], lifespan=lifespan)
