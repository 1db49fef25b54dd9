import asyncio
import dataclasses
import re
from logging import Logger
from typing import AsyncIterator, Mapping, Optional

from imgasset.exceptions import Forbidden, RangeNotSatisfiable
from imgasset.files.index import (
    AccessChecker,
    Accountability,
    FileRecord,
    FileRepository
)
from imgasset.remote.index import RemoteProcessor
from imgasset.storage.index import Range, Stat, Storage, StorageManager
from imgasset.transform.index import (
    FORMAT_CONTENT_TYPES,
    TRANSFORMABLE_TYPES,
    Operation,
    TransformationRequest,
    TransformExecutor,
    derive_variant_name,
    maybe_extract_format,
    resolve_preset
)
from imgasset.typing import FileId, StorageKey

FILES_COLLECTION = 'files'

uuid4_re = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$', re.IGNORECASE)

# Materializations outlive a cancelled caller; keep them referenced until done.
background_tasks: set[asyncio.Task] = set()


def is_valid_uuid4(s: str) -> bool:
  return uuid4_re.match(s) is not None


def normalize_range(range: Range, size: int) -> Range:
  start = range.start
  end = range.end

  missing_limits = start is None and end is None
  end_before_start = start is not None and end is not None and end <= start
  start_overflow = start is not None and size <= start
  end_underflow = end is not None and end <= 0

  if size <= 0 or missing_limits or end_before_start or start_overflow or end_underflow:
    raise RangeNotSatisfiable(range, size)

  last_byte = size - 1

  if start is None:
    assert end is not None
    # Suffix range: the last `end` bytes.
    if size <= end:
      return Range(0, last_byte)
    return Range(size - end, last_byte)

  if end is None or last_byte < end:
    end = last_byte

  return Range(max(start, 0), end)


def is_transformable(file: FileRecord, operations: list[Operation]) -> bool:
  return file.type is not None and 0 < len(operations) and file.type in TRANSFORMABLE_TYPES


@dataclasses.dataclass(frozen=True)
class Asset:
  stream: AsyncIterator[bytes]
  file: FileRecord
  stat: Stat
  range: Optional[Range] = None


@dataclasses.dataclass(frozen=True)
class AssetUrl:
  url: str
  file: Optional[FileRecord]


class AssetsService:

  def __init__(
      self,
      log: Logger,
      storage: StorageManager,
      files: FileRepository,
      access: AccessChecker,
      executor: TransformExecutor,
      presets: Optional[Mapping[str, TransformationRequest]] = None,
      accountability: Optional[Accountability] = None,
      remote: Optional[RemoteProcessor] = None,
  ):
    self.log = log
    self.storage = storage
    self.files = files
    self.access = access
    self.executor = executor
    self.presets = presets or {}
    self.accountability = accountability
    self.remote = remote

  async def resolve_file(self, id: str) -> FileRecord:
    # Checked before any lookup so malformed ids never reach the metadata store.
    if not is_valid_uuid4(id):
      raise Forbidden()

    file_id = FileId(id)
    public_ids = await self.files.find_public_asset_ids()
    admin = self.accountability is not None and self.accountability.admin

    if file_id not in public_ids and not admin:
      await self.access.check_access('read', FILES_COLLECTION, file_id)

    file = await self.files.find_by_id(file_id)
    if file is None:
      raise Forbidden()

    if not await self.storage.disk(file.storage).exists(file.filename_disk):
      raise Forbidden()

    return file

  def variant_of(
      self,
      file: FileRecord,
      operations: list[Operation],
      suffix: Optional[str],
  ) -> tuple[FileRecord, StorageKey]:
    new_format = maybe_extract_format(operations)
    variant = derive_variant_name(file.filename_disk, operations, suffix, new_format)

    if new_format is not None:
      file = dataclasses.replace(file, type=FORMAT_CONTENT_TYPES[new_format])

    return file, variant

  async def materialize(
      self,
      storage: Storage,
      file: FileRecord,
      operations: list[Operation],
      variant: StorageKey,
  ) -> None:
    task = asyncio.ensure_future(self.executor.run(storage, file, operations, variant))
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)
    await asyncio.shield(task)

  async def serve(
      self,
      storage: Storage,
      file: FileRecord,
      name: StorageKey,
      range: Optional[Range],
  ) -> Asset:
    stat = await storage.get_stat(name)
    if range is not None:
      # Offsets, suffix ranges included, are resolved against the object actually served.
      range = normalize_range(range, stat.size)
    return Asset(stream=storage.get_stream(name, range), file=file, stat=stat, range=range)

  async def get_asset(
      self,
      id: str,
      request: TransformationRequest,
      range: Optional[Range] = None,
  ) -> Asset:
    file = await self.resolve_file(id)
    storage = self.storage.disk(file.storage)

    if range is not None:
      normalize_range(range, file.filesize)

    operations = resolve_preset(request, file, self.presets)

    if not is_transformable(file, operations):
      return await self.serve(storage, file, file.filename_disk, range)

    file, variant = self.variant_of(file, operations, request.suffix)

    if await storage.exists(variant):
      self.log.debug({'message': 'variant found', 'id': file.id, 'variant': variant})
      return await self.serve(storage, file, variant, range)

    self.executor.check_dimensions(file)

    self.log.debug({'message': 'variant not found', 'id': file.id, 'variant': variant})
    await self.materialize(storage, file, operations, variant)

    return await self.serve(storage, file, variant, range)

  async def get_url(self, id: str, request: TransformationRequest) -> AssetUrl:
    file = await self.resolve_file(id)

    if self.remote is None or self.storage.driver_name(file.storage) != self.remote.driver:
      return AssetUrl(url='', file=None)

    storage = self.storage.disk(file.storage)
    url = storage.get_url(file.filename_disk)

    operations = resolve_preset(request, file, self.presets)

    if not is_transformable(file, operations):
      return AssetUrl(url=url, file=file)

    if file.filesize < self.remote.max_source_size:
      url = self.remote.process_url(url, operations)
    else:
      url = ''

    if url != '':
      return AssetUrl(url=url, file=file)

    file, variant = self.variant_of(file, operations, request.suffix)

    if not await storage.exists(variant):
      self.executor.check_dimensions(file)
      self.log.debug({
          'message': 'remote processing unavailable',
          'id': file.id,
          'variant': variant,
      })
      await self.materialize(storage, file, operations, variant)

    return AssetUrl(url=storage.get_url(variant), file=file)
