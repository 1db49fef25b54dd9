from typing import Literal, NewType, NotRequired, ReadOnly, TypedDict

FileId = NewType('FileId', str)
StorageKey = NewType('StorageKey', str)
HttpPath = NewType('HttpPath', str)


class HttpDetails(TypedDict):
  method: ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH',
                           'CONNECT']]
  path: HttpPath
  protocol: str
  sourceIp: ReadOnly[str]
  userAgent: ReadOnly[str]


class RequestContext(TypedDict):
  domainName: ReadOnly[str]
  http: HttpDetails
  requestId: ReadOnly[str]
  timeEpoch: NotRequired[int]


class HttpRequestEvent(TypedDict):
  version: ReadOnly[Literal['2.0']]
  rawPath: HttpPath
  rawQueryString: str
  headers: dict[str, str]
  cookies: NotRequired[list[str]]
  queryStringParameters: NotRequired[dict[str, str]]
  requestContext: RequestContext
  isBase64Encoded: bool


class HttpResponse(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: NotRequired[str]
  isBase64Encoded: NotRequired[bool]
