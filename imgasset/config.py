import dataclasses
import json
import re
from logging import Logger
from typing import Any, Mapping, Optional

from imgasset.exceptions import ConfigError
from imgasset.logs.index import parse_level

DEFAULT_MAX_CONCURRENT = 1
DEFAULT_MAX_DIMENSION = 6000
DEFAULT_CACHE_TTL = '30d'
DEFAULT_REMOTE_MAX_SOURCE_SIZE = 20 * 1024 * 1024
DEFAULT_REFRESH_TOKEN_COOKIE_NAME = 'refresh_token'

duration_re = re.compile(r'^(\d+)\s*(ms|s|m|h|d|w)?$')

DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 60 * 60,
    'd': 24 * 60 * 60,
    'w': 7 * 24 * 60 * 60,
}

TRUTHY = ['true', '1', 'yes', 'on']
FALSY = ['false', '0', 'no', 'off', '']


@dataclasses.dataclass(eq=True, frozen=True)
class StorageLocation:
  name: str
  driver: str
  root: str = ''
  bucket: str = ''
  region: str = ''
  endpoint: str = ''
  public_url: str = ''


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  log_level: str
  max_concurrent: int
  max_dimension: int
  cache_ttl: int
  presets: str
  remote_max_source_size: int
  file_manifest: str
  public_read: bool
  storage_locations: tuple[StorageLocation, ...]
  nolog_patterns: Optional[tuple[str, ...]]
  refresh_token_cookie_name: str

  @classmethod
  def from_env(
      cls,
      environ: Mapping[str, str],
      log: Optional[Logger] = None,
  ) -> Optional['Settings']:
    try:
      return cls.parse(environ)
    except KeyError as e:
      if log is not None:
        log.warning({
            'message': 'environment variable not found',
            'key': str(e),
        })
      return None
    except ConfigError as e:
      if log is not None:
        log.warning({
            'message': 'invalid environment variable',
            'reason': str(e),
        })
      return None

  @classmethod
  def parse(cls, environ: Mapping[str, str]) -> 'Settings':
    presets = environ.get('ASSETS_TRANSFORM_PRESETS', '[]')
    parse_presets(presets)

    log_level = environ.get('LOG_LEVEL', 'info')
    try:
      parse_level(log_level)
    except ValueError as e:
      raise ConfigError(str(e))

    nolog = environ.get('LOGGER_HTTP_NOLOG')

    return cls(
        log_level=log_level,
        max_concurrent=parse_positive_int(
            environ, 'ASSETS_TRANSFORM_MAX_CONCURRENT', DEFAULT_MAX_CONCURRENT),
        max_dimension=parse_positive_int(
            environ, 'ASSETS_TRANSFORM_IMAGE_MAX_DIMENSION', DEFAULT_MAX_DIMENSION),
        cache_ttl=parse_duration(environ.get('ASSETS_CACHE_TTL', DEFAULT_CACHE_TTL)),
        presets=presets,
        remote_max_source_size=parse_positive_int(
            environ, 'ASSETS_REMOTE_MAX_SOURCE_SIZE', DEFAULT_REMOTE_MAX_SOURCE_SIZE),
        file_manifest=environ['ASSETS_FILE_MANIFEST'],
        public_read=parse_bool(environ.get('ASSETS_PUBLIC_READ', 'false')),
        storage_locations=parse_storage_locations(environ),
        nolog_patterns=None if nolog is None else tuple(split_list(nolog)),
        refresh_token_cookie_name=environ.get(
            'REFRESH_TOKEN_COOKIE_NAME', DEFAULT_REFRESH_TOKEN_COOKIE_NAME))


def split_list(s: str) -> list[str]:
  return [v.strip() for v in s.split(',') if v.strip() != '']


def parse_positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
  raw = environ.get(name)
  if raw is None:
    return default
  try:
    value = int(raw)
  except ValueError:
    raise ConfigError(f'{name} must be an integer: {raw}')
  if value <= 0:
    raise ConfigError(f'{name} must be positive: {raw}')
  return value


def parse_bool(s: str) -> bool:
  v = s.strip().lower()
  if v in TRUTHY:
    return True
  if v in FALSY:
    return False
  raise ConfigError(f'invalid boolean: {s}')


def parse_duration(s: str) -> int:
  m = duration_re.match(s.strip())
  if m is None:
    raise ConfigError(f'invalid duration: {s}')
  return int(int(m[1]) * DURATION_UNITS[m[2] or 's'])


def parse_presets(s: str) -> list[dict[str, Any]]:
  try:
    presets = json.loads(s)
  except json.JSONDecodeError as e:
    raise ConfigError(f'ASSETS_TRANSFORM_PRESETS is not valid JSON: {e}')

  if not isinstance(presets, list) or not all(isinstance(p, dict) and 'key' in p for p in presets):
    raise ConfigError('ASSETS_TRANSFORM_PRESETS must be a list of objects with "key"')

  return presets


def parse_storage_locations(environ: Mapping[str, str]) -> tuple[StorageLocation, ...]:
  locations = []
  for name in split_list(environ.get('STORAGE_LOCATIONS', 'local')):
    prefix = f'STORAGE_{name.upper()}_'
    locations.append(
        StorageLocation(
            name=name,
            driver=environ[f'{prefix}DRIVER'],
            root=environ.get(f'{prefix}ROOT', ''),
            bucket=environ.get(f'{prefix}BUCKET', ''),
            region=environ.get(f'{prefix}REGION', ''),
            endpoint=environ.get(f'{prefix}ENDPOINT', ''),
            public_url=environ.get(f'{prefix}PUBLIC_URL', '')))

  if len(locations) == 0:
    raise ConfigError('STORAGE_LOCATIONS is empty')

  return tuple(locations)
