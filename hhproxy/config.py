import dataclasses
import os
from typing import Mapping, Optional

from PIL import Image

from hhproxy.errors import ConfigError

ENV_PREFIX = 'HHPROXY_'

# Each outbound request picks one of these at random.
DEFAULT_USER_AGENTS = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 '
    '(KHTML, like Gecko) Version/17.2 Safari/605.1.15',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0',
)

# Encoded output height is capped at 16383px, so a square of that size is the
# largest input that is not a pathological aspect ratio.
DEFAULT_MAX_PIXELS = 16383 * 16383


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  user_agents: tuple[str, ...] = DEFAULT_USER_AGENTS
  connect_timeout: float = 10.0
  read_timeout: float = 30.0
  max_redirects: int = 4
  chunk_size: int = 64 * 1024
  spool_memory_limit: int = 1024 * 1024
  max_pixels: Optional[int] = DEFAULT_MAX_PIXELS
  codec_concurrency: int = 1
  codec_blocks_max: int = 0
  cache_bucket: str = ''
  cache_key_prefix: str = ''
  cache_ttl: int = 24 * 60 * 60
  cache_max_size: int = 5 * 1024 * 1024
  region: str = 'us-east-1'
  log_level: str = 'DEBUG'

  @property
  def cache_enabled(self) -> bool:
    return self.cache_bucket != ''

  @classmethod
  def from_env(cls, env: Mapping[str, str] = os.environ) -> 'Settings':
    max_pixels = get_int(env, 'MAX_PIXELS', DEFAULT_MAX_PIXELS)
    user_agent = get_env_or(env, 'USER_AGENT')

    return cls(
        user_agents=(user_agent,) if user_agent else DEFAULT_USER_AGENTS,
        connect_timeout=get_float(env, 'CONNECT_TIMEOUT', 10.0),
        read_timeout=get_float(env, 'READ_TIMEOUT', 30.0),
        max_redirects=get_int(env, 'MAX_REDIRECTS', 4),
        chunk_size=get_int(env, 'CHUNK_SIZE', 64 * 1024, minimum=1),
        spool_memory_limit=get_int(env, 'SPOOL_MEMORY_LIMIT', 1024 * 1024),
        max_pixels=None if max_pixels == 0 else max_pixels,
        codec_concurrency=get_int(env, 'CODEC_CONCURRENCY', os.cpu_count() or 1, minimum=1),
        codec_blocks_max=get_int(env, 'CODEC_BLOCKS_MAX', 0),
        cache_bucket=get_env_or(env, 'CACHE_BUCKET'),
        cache_key_prefix=get_env_or(env, 'CACHE_KEY_PREFIX'),
        cache_ttl=get_int(env, 'CACHE_TTL', 24 * 60 * 60, minimum=1),
        cache_max_size=get_int(env, 'CACHE_MAX_SIZE', 5 * 1024 * 1024),
        region=get_env_or(env, 'REGION', 'us-east-1'),
        log_level=get_env_or(env, 'LOG_LEVEL', 'DEBUG').upper())


def get_env_or(env: Mapping[str, str], name: str, default: str = '') -> str:
  value = env.get(ENV_PREFIX + name, '')
  return default if value == '' else value


def get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
  value = get_env_or(env, name)
  if value == '':
    return default

  try:
    n = int(value)
  except ValueError:
    raise ConfigError(f'{ENV_PREFIX}{name} must be an integer: {value}')

  if n < minimum:
    raise ConfigError(f'{ENV_PREFIX}{name} must be at least {minimum}: {value}')
  return n


def get_float(env: Mapping[str, str], name: str, default: float) -> float:
  value = get_env_or(env, name)
  if value == '':
    return default

  try:
    f = float(value)
  except ValueError:
    raise ConfigError(f'{ENV_PREFIX}{name} must be a number: {value}')

  if f <= 0:
    raise ConfigError(f'{ENV_PREFIX}{name} must be positive: {value}')
  return f


def configure_codec(settings: Settings) -> None:
  # The pixel ceiling is enforced explicitly after the metadata probe.
  Image.MAX_IMAGE_PIXELS = None
  Image.core.set_blocks_max(settings.codec_blocks_max)
