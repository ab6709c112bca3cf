import dataclasses
import time
from enum import Enum
from tempfile import SpooledTemporaryFile
from typing import IO, AsyncIterator, Optional

import anyio
from PIL import Image, ImageFile

from hhproxy.config import Settings
from hhproxy.errors import CodecError, DecodeFailure, EncodeFailure
from hhproxy.policy.index import OutputFormat, ProxyRequest, TranscodeParams

WHITE = (255, 255, 255, 255)


class State(Enum):
  IDLE = 0
  METADATA_PENDING = 1
  TRANSFORMING = 2
  STREAMING = 3
  COMPLETED = 4
  FAILED = 5


@dataclasses.dataclass(frozen=True)
class ImageInfo:
  width: int
  height: int
  native_format: str

  @classmethod
  def from_image(cls, image: Image.Image) -> 'ImageInfo':
    return cls(image.width, image.height, image.format or '')

  @property
  def pixels(self) -> int:
    return self.width * self.height


def convert_mode(image: Image.Image, params: TranscodeParams) -> Image.Image:
  alpha = image.has_transparency_data

  if params.format == OutputFormat.JPEG:
    if alpha:
      rgba = image.convert('RGBA')
      image = Image.alpha_composite(Image.new('RGBA', rgba.size, WHITE), rgba)
    return image.convert('L' if params.grayscale else 'RGB')

  if params.grayscale:
    # WebP has no grayscale mode; gray pixels are stored as RGB.
    return image.convert('LA' if alpha else 'L').convert('RGBA' if alpha else 'RGB')

  return image.convert('RGBA' if alpha else 'RGB')


def encode(image: Image.Image, params: TranscodeParams, out: IO[bytes]) -> None:
  image = convert_mode(image, params)

  # Only ever shrinks; width follows the aspect ratio.
  if params.resize_height is not None and params.resize_height < image.height:
    width = max(1, round(image.width * params.resize_height / image.height))
    image = image.resize((width, params.resize_height), Image.Resampling.LANCZOS)

  match params.format:
    case OutputFormat.JPEG:
      image.save(out, 'JPEG', quality=params.quality, optimize=True, progressive=True)
    case OutputFormat.WEBP:
      image.save(out, 'WEBP', quality=params.quality)
    case _:
      raise Exception('system error')


class TranscodeJob:
  """Decode and encode state of one request.

  feed() and finish() block on the codec and are run in worker threads, one
  call at a time, in origin byte order. The encoded image is spooled so its
  final size is known before any header goes out; the spool stays in memory
  up to `spool_memory_limit` bytes and spills to a temporary file beyond it.
  """

  def __init__(
      self,
      req: ProxyRequest,
      max_pixels: Optional[int],
      spool_memory_limit: int,
  ):
    self.req = req
    self.max_pixels = max_pixels
    self.parser = ImageFile.Parser()
    self.output = SpooledTemporaryFile(max_size=spool_memory_limit)
    self.state = State.IDLE
    self.info: Optional[ImageInfo] = None
    self.params: Optional[TranscodeParams] = None
    self.size = 0
    self.codec_ns = 0

  @property
  def codec_us(self) -> int:
    return self.codec_ns // 1000

  def fail(self, error: CodecError) -> CodecError:
    self.state = State.FAILED
    return error

  def probe(self, image: Image.Image) -> None:
    info = ImageInfo.from_image(image)
    if self.max_pixels is not None and self.max_pixels < info.pixels:
      raise self.fail(
          DecodeFailure(f'image has {info.pixels} pixels, more than {self.max_pixels}'))

    self.info = info
    self.params = TranscodeParams.create(self.req, info.height)
    self.state = State.TRANSFORMING

  def feed(self, chunk: bytes) -> None:
    if self.state == State.IDLE:
      self.state = State.METADATA_PENDING

    start_ns = time.time_ns()
    try:
      self.parser.feed(chunk)
    except Exception as e:
      raise self.fail(DecodeFailure(f'failed to decode: {e}')) from e
    finally:
      self.codec_ns += time.time_ns() - start_ns

    if self.state == State.METADATA_PENDING and self.parser.image is not None:
      self.probe(self.parser.image)

  def finish(self) -> int:
    """Completes decoding, encodes, and returns the encoded size."""
    start_ns = time.time_ns()
    try:
      try:
        image = self.parser.close()
      except Exception as e:
        raise self.fail(DecodeFailure(f'failed to decode: {e}')) from e

      if self.params is None:
        self.probe(image)
      assert self.params is not None

      try:
        encode(image, self.params, self.output)
      except Exception as e:
        raise self.fail(EncodeFailure(f'failed to encode: {e}')) from e
    finally:
      self.codec_ns += time.time_ns() - start_ns

    self.size = self.output.tell()
    self.output.seek(0)
    self.state = State.STREAMING
    return self.size

  async def stream(self, chunk_size: int) -> AsyncIterator[bytes]:
    while True:
      chunk = self.output.read(chunk_size)
      if not chunk:
        break
      yield chunk
    self.state = State.COMPLETED

  def close(self) -> None:
    if self.state != State.COMPLETED:
      self.state = State.FAILED
    self.output.close()


class Transcoder:

  def __init__(self, settings: Settings, limiter: anyio.CapacityLimiter):
    self.settings = settings
    self.limiter = limiter

  async def transcode(self, req: ProxyRequest, chunks: AsyncIterator[bytes]) -> TranscodeJob:
    """Feeds origin bytes into the codec and returns the encoded job.

    The next origin chunk is only read once the codec has consumed the
    previous one, so a slow codec pauses the origin read. A limiter slot is
    taken per codec call, never while waiting on the origin.
    """
    job = TranscodeJob(req, self.settings.max_pixels, self.settings.spool_memory_limit)
    try:
      async for chunk in chunks:
        await anyio.to_thread.run_sync(job.feed, chunk, limiter=self.limiter)
      await anyio.to_thread.run_sync(job.finish, limiter=self.limiter)
    except BaseException:
      job.close()
      raise

    return job
