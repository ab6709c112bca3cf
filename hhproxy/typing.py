from typing import NewType, TypedDict

OriginUrl = NewType('OriginUrl', str)
CacheKey = NewType('CacheKey', str)


class ForwardedHeaders(TypedDict, total=False):
  cookie: str
  dnt: str
  referer: str
  range: str


class TranscodeLog(TypedDict):
  original_size: int
  encoded_size: int
  width: int
  height: int
  native_format: str
  codec_us: int
