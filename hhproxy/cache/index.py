import dataclasses
import datetime
import logging
from typing import Any, Optional

from botocore.exceptions import ClientError
from dateutil import parser, tz

from hhproxy.typing import CacheKey

ORIGINAL_SIZE_METADATA = 'original-size'
EXPIRES_AT_METADATA = 'expires-at'

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def format_timestamp(dt: datetime.datetime) -> str:
  return dt.astimezone(datetime.timezone.utc).strftime(TIMESTAMP_FORMAT)


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


@dataclasses.dataclass(frozen=True)
class CachedImage:
  body: bytes
  content_type: str
  original_size: int


class S3Cache:
  """Encoded images in an S3 bucket, each with its own expiry.

  The calls block; callers run them in a worker thread. Errors other than a
  missing key propagate so the caller can log them and carry on uncached.
  """

  def __init__(self, log: logging.Logger, s3: Any, bucket: str, key_prefix: str):
    self.log = log
    self.s3 = s3
    self.bucket = bucket
    self.key_prefix = key_prefix

  def object_key(self, key: CacheKey) -> str:
    return f'{self.key_prefix}{key}'

  def get(self, key: CacheKey, now: Optional[datetime.datetime] = None) -> Optional[CachedImage]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=self.object_key(key))
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise e

    metadata = res.get('Metadata', {})
    try:
      expires_at = parser.parse(metadata[EXPIRES_AT_METADATA])
      original_size = int(metadata[ORIGINAL_SIZE_METADATA])
    except (KeyError, ValueError, OverflowError) as e:
      self.log.warning({
          'message': 'invalid cache metadata',
          'key': key,
          'reason': str(e),
      })
      res['Body'].close()
      self.delete(key)
      return None

    if expires_at <= (now or get_now()):
      res['Body'].close()
      self.delete(key)
      return None

    return CachedImage(
        body=res['Body'].read(),
        content_type=res['ContentType'],
        original_size=original_size)

  def set(
      self,
      key: CacheKey,
      image: CachedImage,
      ttl: int,
      now: Optional[datetime.datetime] = None,
  ) -> None:
    expires_at = (now or get_now()) + datetime.timedelta(seconds=ttl)
    self.s3.put_object(
        Bucket=self.bucket,
        Key=self.object_key(key),
        Body=image.body,
        ContentType=image.content_type,
        Expires=expires_at,
        Metadata={
            ORIGINAL_SIZE_METADATA: str(image.original_size),
            EXPIRES_AT_METADATA: format_timestamp(expires_at),
        })

  def delete(self, key: CacheKey) -> None:
    self.s3.delete_object(Bucket=self.bucket, Key=self.object_key(key))
