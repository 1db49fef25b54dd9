import asyncio
import dataclasses
import datetime
import os
from pathlib import Path
from tempfile import NamedTemporaryFile, SpooledTemporaryFile
from typing import AsyncIterable, AsyncIterator, Optional, Protocol
from urllib import parse

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from dateutil import tz
from mypy_boto3_s3.client import S3Client

from imgasset.config import StorageLocation
from imgasset.typing import StorageKey

CHUNK_SIZE = 64 * 1024
SPOOL_MAX_SIZE = 8 * 1024 * 1024


@dataclasses.dataclass(eq=True, frozen=True)
class Range:
  start: Optional[int] = None
  end: Optional[int] = None

  def __str__(self) -> str:
    return f'{"" if self.start is None else self.start}-{"" if self.end is None else self.end}'


@dataclasses.dataclass(frozen=True)
class Stat:
  size: int
  last_modified: datetime.datetime


class Storage(Protocol):
  driver: str

  async def exists(self, name: StorageKey) -> bool:
    ...

  def get_stream(self, name: StorageKey, range: Optional[Range] = None) -> AsyncIterator[bytes]:
    ...

  async def get_stat(self, name: StorageKey) -> Stat:
    ...

  async def put(self, name: StorageKey, stream: AsyncIterable[bytes], content_type: str) -> None:
    ...

  def get_url(self, name: StorageKey) -> str:
    ...


async def iter_bytes(data: bytes, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
  for i in range(0, len(data), chunk_size):
    yield data[i:i + chunk_size]


async def collect(stream: AsyncIterable[bytes]) -> bytes:
  return b''.join([chunk async for chunk in stream])


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey', 'NotFound']


def range_header(range: Range) -> str:
  return f'bytes={range.start or 0}-{"" if range.end is None else range.end}'


def join_url(base: str, name: StorageKey) -> str:
  return f'{base.rstrip("/")}/{parse.quote(name)}'


class LocalStorage:
  driver = 'local'

  def __init__(self, root: str, public_url: str = ''):
    self.root = Path(root).resolve()
    self.public_url = public_url

  def path(self, name: StorageKey) -> Path:
    path = (self.root / name).resolve()
    if not path.is_relative_to(self.root):
      raise ValueError(f'path escapes storage root: {name}')
    return path

  async def exists(self, name: StorageKey) -> bool:
    return await asyncio.to_thread(self.path(name).is_file)

  async def get_stream(
      self,
      name: StorageKey,
      range: Optional[Range] = None,
  ) -> AsyncIterator[bytes]:
    f = await asyncio.to_thread(open, self.path(name), 'rb')
    try:
      remaining: Optional[int] = None
      if range is not None:
        if range.start:
          await asyncio.to_thread(f.seek, range.start)
        if range.end is not None:
          remaining = range.end - (range.start or 0) + 1

      while remaining is None or 0 < remaining:
        size = CHUNK_SIZE if remaining is None else min(CHUNK_SIZE, remaining)
        chunk = await asyncio.to_thread(f.read, size)
        if not chunk:
          break
        if remaining is not None:
          remaining -= len(chunk)
        yield chunk
    finally:
      f.close()

  async def get_stat(self, name: StorageKey) -> Stat:
    st = await asyncio.to_thread(os.stat, self.path(name))
    return Stat(
        size=st.st_size,
        last_modified=datetime.datetime.fromtimestamp(st.st_mtime, tz=tz.tzutc()))

  async def put(self, name: StorageKey, stream: AsyncIterable[bytes], content_type: str) -> None:
    path = self.path(name)
    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)

    # Concurrent writers of the same name each rename a complete file into place.
    tmp = NamedTemporaryFile(dir=path.parent, prefix=f'.{path.name}.', delete=False)
    try:
      async for chunk in stream:
        await asyncio.to_thread(tmp.write, chunk)
      tmp.close()
      await asyncio.to_thread(os.replace, tmp.name, path)
    except BaseException:
      tmp.close()
      Path(tmp.name).unlink(missing_ok=True)
      raise

  def get_url(self, name: StorageKey) -> str:
    if self.public_url != '':
      return join_url(self.public_url, name)
    return self.path(name).as_uri()


class S3Storage:
  driver = 's3'

  def __init__(self, s3: S3Client, bucket: str, public_url: str = ''):
    self.s3 = s3
    self.bucket = bucket
    self.public_url = public_url

  async def exists(self, name: StorageKey) -> bool:
    try:
      await asyncio.to_thread(self.s3.head_object, Bucket=self.bucket, Key=name)
    except ClientError as e:
      if is_not_found_client_error(e):
        return False
      raise e
    return True

  async def get_stream(
      self,
      name: StorageKey,
      range: Optional[Range] = None,
  ) -> AsyncIterator[bytes]:
    if range is None:
      res = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=name)
    else:
      res = await asyncio.to_thread(
          self.s3.get_object, Bucket=self.bucket, Key=name, Range=range_header(range))

    body = res['Body']
    chunks = body.iter_chunks(CHUNK_SIZE)
    try:
      while True:
        chunk = await asyncio.to_thread(next, chunks, None)
        if chunk is None:
          break
        yield chunk
    finally:
      body.close()

  async def get_stat(self, name: StorageKey) -> Stat:
    res = await asyncio.to_thread(self.s3.head_object, Bucket=self.bucket, Key=name)
    return Stat(size=res['ContentLength'], last_modified=res['LastModified'])

  async def put(self, name: StorageKey, stream: AsyncIterable[bytes], content_type: str) -> None:
    with SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as f:
      async for chunk in stream:
        f.write(chunk)
      f.seek(0)
      await asyncio.to_thread(
          self.s3.upload_fileobj, f, self.bucket, name, ExtraArgs={'ContentType': content_type})

  def get_url(self, name: StorageKey) -> str:
    if self.public_url != '':
      return join_url(self.public_url, name)
    region = self.s3.meta.region_name
    return join_url(f'https://{self.bucket}.s3.{region}.amazonaws.com', name)


class AliyunOssStorage(S3Storage):
  driver = 'aliyunoss'

  def __init__(self, s3: S3Client, bucket: str, endpoint: str, public_url: str = ''):
    super().__init__(s3, bucket, public_url)
    self.endpoint = endpoint

  def get_url(self, name: StorageKey) -> str:
    if self.public_url != '':
      return join_url(self.public_url, name)
    host = parse.urlsplit(self.endpoint).netloc or self.endpoint
    return join_url(f'https://{self.bucket}.{host}', name)


def create_storage(location: StorageLocation) -> Storage:
  match location.driver:
    case 'local':
      return LocalStorage(location.root, location.public_url)
    case 's3':
      s3 = boto3.client(
          's3', region_name=location.region or None, endpoint_url=location.endpoint or None)
      return S3Storage(s3, location.bucket, location.public_url)
    case 'aliyunoss':
      s3 = boto3.client(
          's3',
          region_name=location.region or None,
          endpoint_url=location.endpoint,
          config=Config(signature_version='s3v4', s3={'addressing_style': 'virtual'}))
      return AliyunOssStorage(s3, location.bucket, location.endpoint, location.public_url)
    case _:
      raise ValueError(f'unknown storage driver: {location.driver}')


class StorageManager:

  def __init__(self, disks: dict[str, Storage]):
    self.disks = disks

  @classmethod
  def from_locations(cls, locations: tuple[StorageLocation, ...]) -> 'StorageManager':
    return cls({location.name: create_storage(location) for location in locations})

  def disk(self, name: str) -> Storage:
    return self.disks[name]

  def driver_name(self, name: str) -> str:
    return self.disks[name].driver
