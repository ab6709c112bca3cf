import datetime
import io
import logging
from typing import Any, Generator

import boto3
import pytest
from botocore.config import Config
from botocore.response import StreamingBody
from botocore.stub import Stubber
from dateutil import tz

from hhproxy.typing import CacheKey

from .index import EXPIRES_AT_METADATA, ORIGINAL_SIZE_METADATA, CachedImage, S3Cache

BUCKET = 'hhproxy-test'
PREFIX = 'cache/'
KEY = CacheKey('0123abcd')
OBJECT_KEY = 'cache/0123abcd'
BODY = b'RIFF....WEBPVP8 '

NOW = datetime.datetime(2024, 6, 1, 12, 0, 0, tzinfo=tz.tzutc())


@pytest.fixture
def s3() -> Generator[tuple[S3Cache, Stubber], None, None]:
  client = boto3.client(
      's3',
      region_name='us-east-1',
      aws_access_key_id='testing',
      aws_secret_access_key='testing',
      # Keeps checksum members out of the stubbed parameters.
      config=Config(
          request_checksum_calculation='when_required',
          response_checksum_validation='when_required'))
  with Stubber(client) as stubber:
    yield S3Cache(logging.getLogger('hhproxy'), client, BUCKET, PREFIX), stubber
    stubber.assert_no_pending_responses()


def get_object_response(metadata: dict[str, str]) -> dict[str, Any]:
  return {
      'Body': StreamingBody(io.BytesIO(BODY), len(BODY)),
      'ContentType': 'image/webp',
      'Metadata': metadata,
  }


def test_hit(s3: tuple[S3Cache, Stubber]) -> None:
  cache, stubber = s3
  stubber.add_response(
      'get_object',
      get_object_response({
          ORIGINAL_SIZE_METADATA: '50000',
          EXPIRES_AT_METADATA: '2024-06-02T12:00:00.000000Z',
      }), {
          'Bucket': BUCKET,
          'Key': OBJECT_KEY
      })

  assert cache.get(KEY, NOW) == CachedImage(
      body=BODY, content_type='image/webp', original_size=50000)


def test_miss(s3: tuple[S3Cache, Stubber]) -> None:
  cache, stubber = s3
  stubber.add_client_error(
      'get_object',
      service_error_code='NoSuchKey',
      http_status_code=404,
      expected_params={
          'Bucket': BUCKET,
          'Key': OBJECT_KEY
      })

  assert cache.get(KEY, NOW) is None


def test_access_denied(s3: tuple[S3Cache, Stubber]) -> None:
  cache, stubber = s3
  stubber.add_client_error('get_object', service_error_code='AccessDenied', http_status_code=403)

  with pytest.raises(Exception):
    cache.get(KEY, NOW)


@pytest.mark.parametrize(
    'metadata', [
        {
            ORIGINAL_SIZE_METADATA: '50000',
            EXPIRES_AT_METADATA: '2024-06-01T12:00:00.000000Z',
        },
        {
            ORIGINAL_SIZE_METADATA: '50000',
            EXPIRES_AT_METADATA: '2024-05-01T00:00:00.000000Z',
        },
        {
            EXPIRES_AT_METADATA: '2024-06-02T12:00:00.000000Z',
        },
        {
            ORIGINAL_SIZE_METADATA: 'many',
            EXPIRES_AT_METADATA: '2024-06-02T12:00:00.000000Z',
        },
        {
            ORIGINAL_SIZE_METADATA: '50000',
            EXPIRES_AT_METADATA: 'someday',
        },
    ],
    ids=['just-expired', 'expired', 'no-size', 'bad-size', 'bad-expiry'])
def test_dropped(s3: tuple[S3Cache, Stubber], metadata: dict[str, str]) -> None:
  cache, stubber = s3
  stubber.add_response('get_object', get_object_response(metadata), {
      'Bucket': BUCKET,
      'Key': OBJECT_KEY
  })
  stubber.add_response('delete_object', {}, {'Bucket': BUCKET, 'Key': OBJECT_KEY})

  assert cache.get(KEY, NOW) is None


def test_set(s3: tuple[S3Cache, Stubber]) -> None:
  cache, stubber = s3
  stubber.add_response(
      'put_object', {}, {
          'Bucket': BUCKET,
          'Key': OBJECT_KEY,
          'Body': BODY,
          'ContentType': 'image/webp',
          'Expires': datetime.datetime(2024, 6, 2, 12, 0, 0, tzinfo=tz.tzutc()),
          'Metadata': {
              ORIGINAL_SIZE_METADATA: '50000',
              EXPIRES_AT_METADATA: '2024-06-02T12:00:00.000000Z',
          },
      })

  cache.set(KEY, CachedImage(BODY, 'image/webp', 50000), 24 * 60 * 60, NOW)
