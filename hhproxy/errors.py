class ProxyError(Exception):
  pass


class ConfigError(ProxyError):
  pass


class InvalidURL(ProxyError):
  pass


class UpstreamError(ProxyError):
  """Failure that still leaves the client a usable path to the image.

  `location` is where the client gets redirected, already URI-encoded: the
  origin URL, or the last `Location` seen when the origin itself redirected.
  """

  def __init__(self, message: str, location: str):
    super().__init__(message)
    self.location = location


class UpstreamStatusError(UpstreamError):

  def __init__(self, location: str, status: int):
    super().__init__(f'origin responded with status {status}', location)
    self.status = status


class UpstreamClientError(UpstreamStatusError):
  pass


class UpstreamServerError(UpstreamStatusError):
  pass


class UpstreamRedirect(UpstreamError):

  def __init__(self, location: str, hops: int):
    super().__init__(f'redirect limit reached after {hops} hops', location)
    self.hops = hops


class UpstreamUnavailable(UpstreamError):
  pass


class UpstreamTimeout(UpstreamUnavailable):
  pass


class CodecError(ProxyError):
  pass


class DecodeFailure(CodecError):
  pass


class EncodeFailure(CodecError):
  pass


class ClientDisconnected(ProxyError):
  pass
