import datetime
import logging
import sys
from logging import Logger
from typing import Any, Optional
from urllib import parse

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern
from pythonjsonlogger.json import JsonFormatter

import imgasset

LOGGER_NAME = 'imgasset'

REDACTED_QUERY = '--redacted--'
REDACTED_HEADER = '--redact--'

DEFAULT_NOLOG_PATTERNS = [
    '*.ico',
    '*.gif',
    '*.jpg',
    '*.jpeg',
    '*.png',
    '*.svg',
    '*.woff',
    '*.woff2',
    '*.otf',
    '*.ttf',
]


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgasset.version

    super().add_fields(log_record, record, message_dict)


def parse_level(level: str) -> int:
  value = logging.getLevelName(level.upper())
  if not isinstance(value, int):
    raise ValueError(f'unknown log level: {level}')
  return value


def init_logging(level: str = 'info') -> Logger:
  logging.getLogger('botocore').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.INFO)
  logging.getLogger('pyvips').setLevel(logging.WARNING)

  log = logging.getLogger(LOGGER_NAME)
  log.setLevel(parse_level(level))
  for h in list(log.handlers):
    log.removeHandler(h)

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


def redact_query(path: str) -> str:
  url = parse.urlsplit(path)
  if url.query == '':
    return url.path

  qs = parse.parse_qsl(url.query, keep_blank_values=True)
  redacted = [(k, REDACTED_QUERY if k == 'access_token' else v) for k, v in qs]
  return f'{url.path}?{parse.urlencode(redacted)}'


def redact_headers(headers: dict[str, str], refresh_cookie_name: str) -> dict[str, str]:
  res: dict[str, str] = {}
  for name, value in headers.items():
    if name.lower() == 'authorization':
      res[name] = REDACTED_HEADER
    elif name.lower() == 'cookie':
      res[name] = redact_cookie(value, refresh_cookie_name)
    else:
      res[name] = value
  return res


def redact_cookie(cookie: str, name: str) -> str:
  parts = []
  for part in cookie.split(';'):
    key, sep, _ = part.strip().partition('=')
    if sep and key == name:
      parts.append(f'{key}={REDACTED_HEADER}')
    else:
      parts.append(part.strip())
  return '; '.join(parts)


def api_module(path: str) -> str:
  segments = [s for s in path.split('?', 1)[0].split('/') if s != '']
  return segments[0] if segments else ''


class HttpAccessLogger:

  def __init__(self, log: Logger, nolog: Optional[list[str]] = None):
    self.log = log
    self.nolog = PathSpec.from_lines(
        GitWildMatchPattern, DEFAULT_NOLOG_PATTERNS if nolog is None else nolog)

  def skip(self, path: str) -> bool:
    return self.nolog.match_file(path.split('?', 1)[0].lstrip('/'))

  def record(
      self,
      method: str,
      path: str,
      status: int,
      response_time_ms: int,
      remote_addr: str = '',
      referrer: str = '',
      user_agent: str = '',
      protocol: str = 'HTTP/1.1',
  ) -> Optional[dict[str, Any]]:
    if self.skip(path):
      return None

    entry = {
        'message': f'{method} {redact_query(path)} {status}',
        'remote_addr': remote_addr,
        'protocol': protocol,
        'method': method,
        'url': redact_query(path),
        'status': status,
        'response_time_ms': response_time_ms,
        'module': api_module(path),
        'referrer': referrer,
        'user_agent': user_agent,
    }

    if 400 <= status < 600:
      self.log.error(entry)
    else:
      self.log.info(entry)

    return entry
