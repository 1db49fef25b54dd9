import asyncio
import base64
import datetime
import os
import re
import time
from email.utils import format_datetime
from http import HTTPStatus
from logging import Logger
from typing import Mapping, Optional
from urllib import parse

from imgasset.assets.index import Asset, AssetsService
from imgasset.config import Settings
from imgasset.exceptions import Forbidden, IllegalTransformation, RangeNotSatisfiable
from imgasset.files.index import JsonFileRepository, PublicReadAccess
from imgasset.logs.index import (
    HttpAccessLogger,
    init_logging,
    parse_level,
    redact_cookie,
    redact_headers
)
from imgasset.remote.index import AliyunOssProcessor
from imgasset.storage.index import Range, StorageManager, collect
from imgasset.transform.index import (
    TransformationRequest,
    TransformExecutor,
    get_transform_gate,
    load_presets,
    parse_flag
)
from imgasset.typing import HttpRequestEvent, HttpResponse

asset_path_re = re.compile(r'^/assets/([^/]+)(?:/[^/]*)?/?$')
range_re = re.compile(r'^bytes=(\d*)-(\d*)$')

logger = init_logging(os.environ.get('LOG_LEVEL', 'info'))


def parse_range_header(value: Optional[str]) -> Optional[Range]:
  if value is None:
    return None

  m = range_re.match(value.strip())
  if m is None:
    # Unsupported units and multipart ranges are ignored.
    return None

  return Range(
      start=int(m[1]) if m[1] != '' else None,
      end=int(m[2]) if m[2] != '' else None,
  )


def http_date(dt: datetime.datetime) -> str:
  return format_datetime(dt.astimezone(datetime.timezone.utc), usegmt=True)


def error_response(status: HTTPStatus) -> HttpResponse:
  return {
      'statusCode': status.value,
      'headers': {
          'content-type': 'text/plain; charset=utf-8',
          'cache-control': 'no-store',
      },
      'body': status.phrase,
  }


class AssetServer:
  instances: dict[Settings, 'AssetServer'] = {}

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      service: AssetsService,
      access_log: HttpAccessLogger,
  ):
    self.log = log
    self.settings = settings
    self.service = service
    self.access_log = access_log
    self.cache_control = f'public, max-age={settings.cache_ttl}'

  @classmethod
  def create(cls, log: Logger, settings: Settings) -> 'AssetServer':
    log.setLevel(parse_level(settings.log_level))

    storage = StorageManager.from_locations(settings.storage_locations)

    remote = None
    if any(loc.driver == AliyunOssProcessor.driver for loc in settings.storage_locations):
      remote = AliyunOssProcessor(settings.remote_max_source_size)

    executor = TransformExecutor(
        get_transform_gate(settings.max_concurrent), settings.max_dimension, log)

    service = AssetsService(
        log=log,
        storage=storage,
        files=JsonFileRepository(settings.file_manifest),
        access=PublicReadAccess(settings.public_read),
        executor=executor,
        presets=load_presets(settings.presets),
        remote=remote)

    nolog = None if settings.nolog_patterns is None else list(settings.nolog_patterns)
    return cls(log, settings, service, HttpAccessLogger(log, nolog))

  @classmethod
  def from_env(cls, log: Logger, environ: Mapping[str, str]) -> Optional['AssetServer']:
    settings = Settings.from_env(environ, log)
    if settings is None:
      return None

    if settings not in cls.instances:
      cls.instances[settings] = cls.create(log, settings)

    return cls.instances[settings]

  def asset_response(self, asset: Asset, body: bytes, partial: bool) -> HttpResponse:
    length = asset.stat.size
    if asset.range is not None:
      length = (asset.range.end or 0) - (asset.range.start or 0) + 1

    headers = {
        'content-type': asset.file.type or 'application/octet-stream',
        'content-length': str(length),
        'accept-ranges': 'bytes',
        'cache-control': self.cache_control,
        'last-modified': http_date(asset.stat.last_modified),
    }

    if partial and asset.range is not None:
      headers['content-range'] = f'bytes {asset.range.start}-{asset.range.end}/{asset.stat.size}'

    return {
        'statusCode': (HTTPStatus.PARTIAL_CONTENT if partial else HTTPStatus.OK).value,
        'headers': headers,
        'body': base64.b64encode(body).decode(),
        'isBase64Encoded': True,
    }

  async def dispatch(self, event: HttpRequestEvent) -> HttpResponse:
    method = event['requestContext']['http']['method']
    if method not in ['GET', 'HEAD']:
      return error_response(HTTPStatus.METHOD_NOT_ALLOWED)

    m = asset_path_re.match(event['rawPath'])
    if m is None:
      return error_response(HTTPStatus.NOT_FOUND)

    id = parse.unquote(m[1])
    qs = dict(parse.parse_qsl(event['rawQueryString'], keep_blank_values=True))
    headers = {k.lower(): v for k, v in event['headers'].items()}

    try:
      request = TransformationRequest.from_dict(qs)

      if parse_flag(qs.get('redirect', '')):
        asset_url = await self.service.get_url(id, request)
        if asset_url.url != '':
          return {
              'statusCode': HTTPStatus.FOUND.value,
              'headers': {
                  'location': asset_url.url,
                  'cache-control': self.cache_control,
              },
          }

      range = parse_range_header(headers.get('range'))
      asset = await self.service.get_asset(id, request, range)
      body = b'' if method == 'HEAD' else await collect(asset.stream)

      res = self.asset_response(asset, body, range is not None)
      if parse_flag(qs.get('download', '')):
        res['headers']['content-disposition'] = 'attachment'
      return res
    except Forbidden:
      return error_response(HTTPStatus.FORBIDDEN)
    except RangeNotSatisfiable as e:
      res = error_response(HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)
      if e.size is not None:
        res['headers']['content-range'] = f'bytes */{e.size}'
      return res
    except IllegalTransformation as e:
      self.log.warning({'message': 'illegal transformation', 'id': id, 'reason': str(e)})
      return error_response(HTTPStatus.BAD_REQUEST)
    except Exception as e:
      self.log.error({'message': 'error during dispatch()', 'id': id, 'reason': str(e)})
      return error_response(HTTPStatus.INTERNAL_SERVER_ERROR)

  async def handle(self, event: HttpRequestEvent) -> HttpResponse:
    start_ns = time.monotonic_ns()

    self.log.debug({
        'message': 'request',
        'path': event['rawPath'],
        'headers': redact_headers(event['headers'], self.settings.refresh_token_cookie_name),
        'cookies': [
            redact_cookie(c, self.settings.refresh_token_cookie_name)
            for c in event.get('cookies', [])
        ],
    })

    res = await self.dispatch(event)

    http = event['requestContext']['http']
    headers = {k.lower(): v for k, v in event['headers'].items()}
    qstr = event['rawQueryString']
    self.access_log.record(
        method=http['method'],
        path=event['rawPath'] + (f'?{qstr}' if qstr != '' else ''),
        status=int(res['statusCode']),
        response_time_ms=(time.monotonic_ns() - start_ns) // 1_000_000,
        remote_addr=http['sourceIp'],
        referrer=headers.get('referer', ''),
        user_agent=http['userAgent'],
        protocol=http['protocol'])

    return res


def lambda_main(event: HttpRequestEvent) -> HttpResponse:
  server = AssetServer.from_env(logger, os.environ)
  if server is None:
    return error_response(HTTPStatus.INTERNAL_SERVER_ERROR)

  return asyncio.run(server.handle(event))
