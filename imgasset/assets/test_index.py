import asyncio
import logging
from logging import Logger
from pathlib import Path
from typing import Optional

import pytest
from pyvips import Image  # type: ignore

from imgasset.exceptions import Forbidden, IllegalTransformation, RangeNotSatisfiable
from imgasset.files.index import Accountability, FileRecord
from imgasset.remote.index import AliyunOssProcessor
from imgasset.storage.index import LocalStorage, Range, Storage, StorageManager, collect
from imgasset.transform.index import (
    Operation,
    TransformationRequest,
    TransformExecutor,
    TransformGate,
    derive_variant_name,
    load_presets,
    resolve_preset
)
from imgasset.typing import FileId, StorageKey

from .index import (
    Asset,
    AssetsService,
    AssetUrl,
    background_tasks,
    normalize_range
)

FILE_ID = FileId('8cbb43fe-4cdf-4991-8352-c461779cec02')
PDF_ID = FileId('5d3e1b1c-9a0e-4f5e-8c55-0f3b1f2a7d10')
MISSING_ID = FileId('b2f0a0a6-3c6e-4b7e-9a3b-6f1d2e3c4b5a')

OSS_URL = 'https://assets.oss-cn-hangzhou.aliyuncs.com'

JPEG_MIME = 'image/jpeg'
WEBP_MIME = 'image/webp'
PDF_MIME = 'application/pdf'

PDF_DATA = b'%PDF-1.4\n' + b'0' * 2048


class FakeFiles:

  def __init__(self, records: list[FileRecord], public: Optional[set[FileId]] = None):
    self.records = {r.id: r for r in records}
    self.public = public or set()
    self.calls = 0

  async def find_by_id(self, id: FileId) -> Optional[FileRecord]:
    self.calls += 1
    return self.records.get(id)

  async def find_public_asset_ids(self) -> set[FileId]:
    self.calls += 1
    return self.public


class FakeAccess:

  def __init__(self, allowed: bool = True):
    self.allowed = allowed
    self.calls: list[tuple[str, str, FileId]] = []

  async def check_access(self, action: str, collection: str, id: FileId) -> None:
    self.calls.append((action, collection, id))
    if not self.allowed:
      raise Forbidden()


class CountingExecutor(TransformExecutor):

  def __init__(self, gate: TransformGate, max_dimension: int, log: Logger, delay: float = 0):
    super().__init__(gate, max_dimension, log)
    self.runs = 0
    self.delay = delay

  async def run(
      self,
      storage: Storage,
      file: FileRecord,
      operations: list[Operation],
      variant: StorageKey,
  ) -> None:
    self.runs += 1
    if 0 < self.delay:
      await asyncio.sleep(self.delay)
    await super().run(storage, file, operations, variant)


class OssStorage(LocalStorage):
  driver = 'aliyunoss'


def make_image(width: int, height: int) -> bytes:
  image = (Image.black(width, height, bands=3) + [40, 120, 200]).cast('uchar')
  return image.write_to_buffer('.jpg')


def size_of(data: bytes) -> tuple[int, int]:
  image = Image.new_from_buffer(data, '')
  return (image.width, image.height)


class Env:

  def __init__(self, root: Path, log: Logger, storage: Optional[LocalStorage] = None):
    self.root = root
    self.storage = storage or LocalStorage(str(root))
    self.jpeg = make_image(80, 40)
    (root / 'image.jpg').write_bytes(self.jpeg)
    (root / 'doc.pdf').write_bytes(PDF_DATA)

    self.image = FileRecord(
        id=FILE_ID,
        storage='local',
        filename_disk=StorageKey('image.jpg'),
        type=JPEG_MIME,
        filesize=len(self.jpeg),
        width=80,
        height=40)
    self.pdf = FileRecord(
        id=PDF_ID,
        storage='local',
        filename_disk=StorageKey('doc.pdf'),
        type=PDF_MIME,
        filesize=len(PDF_DATA))
    self.missing = FileRecord(
        id=MISSING_ID,
        storage='local',
        filename_disk=StorageKey('gone.jpg'),
        type=JPEG_MIME,
        filesize=100,
        width=10,
        height=10)

    self.files = FakeFiles([self.image, self.pdf, self.missing])
    self.access = FakeAccess()
    self.executor = CountingExecutor(TransformGate(1), 4000, log)
    self.log = log

  def service(
      self,
      accountability: Optional[Accountability] = None,
      remote: Optional[AliyunOssProcessor] = None,
      presets: str = '[]',
  ) -> AssetsService:
    return AssetsService(
        log=self.log,
        storage=StorageManager({'local': self.storage}),
        files=self.files,
        access=self.access,
        executor=self.executor,
        presets=load_presets(presets),
        accountability=accountability,
        remote=remote)

  def variant(self, request: TransformationRequest, new_format: Optional[str] = None) -> Path:
    operations = resolve_preset(request, self.image, {})
    return self.root / derive_variant_name(
        self.image.filename_disk, operations, request.suffix, new_format)


@pytest.fixture
def logger() -> Logger:
  return logging.getLogger('imgasset-test')


@pytest.fixture
def env(tmp_path: Path, logger: Logger) -> Env:
  return Env(tmp_path, logger)


def fetch(
    service: AssetsService,
    id: str,
    request: TransformationRequest,
    range: Optional[Range] = None,
) -> tuple[Asset, bytes]:

  async def main() -> tuple[Asset, bytes]:
    asset = await service.get_asset(id, request, range)
    return asset, await collect(asset.stream)

  return asyncio.run(main())


@pytest.mark.parametrize(
    'range,expected', [
        (Range(0, 99), Range(0, 99)),
        (Range(start=900), Range(900, 999)),
        (Range(end=100), Range(900, 999)),
        (Range(end=5000), Range(0, 999)),
        (Range(10, 5000), Range(10, 999)),
    ],
    ids=['bounded', 'open-end', 'suffix', 'suffix-too-long', 'end-past-size'])
def test_normalize_range(range: Range, expected: Range) -> None:
  assert normalize_range(range, 1000) == expected


@pytest.mark.parametrize(
    'range,size', [
        (Range(), 1000),
        (Range(50, 50), 1000),
        (Range(60, 50), 1000),
        (Range(start=1000), 1000),
        (Range(end=0), 1000),
        (Range(0, 10), 0),
    ],
    ids=['no-limits', 'empty', 'reversed', 'start-past-end', 'zero-suffix', 'empty-file'])
def test_normalize_range_rejects(range: Range, size: int) -> None:
  with pytest.raises(RangeNotSatisfiable):
    normalize_range(range, size)


def test_get_asset_malformed_id(env: Env) -> None:
  with pytest.raises(Forbidden):
    fetch(env.service(), 'not-a-uuid', TransformationRequest())

  assert env.files.calls == 0
  assert env.access.calls == []


def test_get_asset_access_denied(env: Env) -> None:
  env.access.allowed = False

  with pytest.raises(Forbidden):
    fetch(env.service(), FILE_ID, TransformationRequest())

  assert env.access.calls == [('read', 'files', FILE_ID)]


def test_get_asset_public_id_skips_access_check(env: Env) -> None:
  env.access.allowed = False
  env.files.public = {FILE_ID}

  _, body = fetch(env.service(), FILE_ID, TransformationRequest())

  assert body == env.jpeg
  assert env.access.calls == []


def test_get_asset_admin_skips_access_check(env: Env) -> None:
  env.access.allowed = False

  _, body = fetch(env.service(Accountability(admin=True)), FILE_ID, TransformationRequest())

  assert body == env.jpeg
  assert env.access.calls == []


def test_get_asset_unknown_id(env: Env) -> None:
  with pytest.raises(Forbidden):
    fetch(env.service(), 'a1a1a1a1-b2b2-4c3c-8d4d-e5e5e5e5e5e5', TransformationRequest())


def test_get_asset_original_missing(env: Env) -> None:
  with pytest.raises(Forbidden):
    fetch(env.service(), MISSING_ID, TransformationRequest())


def test_get_asset_original(env: Env) -> None:
  asset, body = fetch(env.service(), FILE_ID, TransformationRequest())

  assert body == env.jpeg
  assert asset.file is env.image
  assert asset.stat.size == len(env.jpeg)
  assert asset.range is None
  assert env.executor.runs == 0


def test_get_asset_non_image_ignores_transformations(env: Env) -> None:
  asset, body = fetch(env.service(), PDF_ID, TransformationRequest(width=100, format='webp'))

  assert body == PDF_DATA
  assert asset.file.type == PDF_MIME
  assert env.executor.runs == 0
  assert sorted(p.name for p in env.root.iterdir()) == ['doc.pdf', 'image.jpg']


def test_get_asset_range_on_original(env: Env) -> None:
  asset, body = fetch(env.service(), PDF_ID, TransformationRequest(), Range(start=10, end=19))

  assert body == PDF_DATA[10:20]
  assert asset.range == Range(10, 19)
  assert asset.stat.size == len(PDF_DATA)


def test_get_asset_suffix_range(env: Env) -> None:
  asset, body = fetch(env.service(), PDF_ID, TransformationRequest(), Range(end=16))

  assert body == PDF_DATA[-16:]
  assert asset.range == Range(len(PDF_DATA) - 16, len(PDF_DATA) - 1)


def test_get_asset_range_not_satisfiable(env: Env) -> None:
  with pytest.raises(RangeNotSatisfiable):
    fetch(env.service(), PDF_ID, TransformationRequest(), Range(start=len(PDF_DATA)))


def test_get_asset_transforms_once(env: Env) -> None:
  request = TransformationRequest(width=20)
  service = env.service()

  asset, body = fetch(service, FILE_ID, request)

  assert size_of(body) == (20, 10)
  assert asset.file.type == JPEG_MIME
  assert env.variant(request).read_bytes() == body
  assert env.executor.runs == 1

  _, again = fetch(service, FILE_ID, request)

  assert again == body
  assert env.executor.runs == 1


def test_get_asset_cache_hit(env: Env) -> None:
  request = TransformationRequest(width=20)
  env.variant(request).write_bytes(b'cached variant')

  asset, body = fetch(env.service(), FILE_ID, request)

  assert body == b'cached variant'
  assert asset.stat.size == len(b'cached variant')
  assert env.executor.runs == 0
  assert env.executor.gate.in_use == 0


def test_get_asset_cache_hit_skips_dimension_check(env: Env) -> None:
  env.image.width = 5000
  env.image.height = 5000
  request = TransformationRequest(width=20)
  env.variant(request).write_bytes(b'cached variant')

  _, body = fetch(env.service(), FILE_ID, request)

  assert body == b'cached variant'


def test_get_asset_refuses_oversized(env: Env) -> None:
  env.image.width = 5000
  env.image.height = 5000

  with pytest.raises(IllegalTransformation):
    fetch(env.service(), FILE_ID, TransformationRequest(width=20))

  assert env.executor.runs == 0
  assert sorted(p.name for p in env.root.iterdir()) == ['doc.pdf', 'image.jpg']


def test_get_asset_unknown_dimensions(env: Env) -> None:
  env.image.width = None

  with pytest.raises(IllegalTransformation):
    fetch(env.service(), FILE_ID, TransformationRequest(width=20))


def test_get_asset_illegal_transformation(env: Env) -> None:
  with pytest.raises(IllegalTransformation):
    fetch(env.service(), FILE_ID, TransformationRequest(transforms=(['explode'],)))


def test_get_asset_format_change(env: Env) -> None:
  request = TransformationRequest(format='webp')

  asset, body = fetch(env.service(), FILE_ID, request)

  assert asset.file.type == WEBP_MIME
  assert Image.new_from_buffer(body, '').get('vips-loader') == 'webpload_buffer'
  assert env.variant(request, 'webp').suffix == '.webp'
  assert env.variant(request, 'webp').exists()
  # The stored metadata is left alone.
  assert env.files.records[FILE_ID].type == JPEG_MIME


def test_get_asset_preset(env: Env) -> None:
  service = env.service(presets='[{"key":"thumb","width":40,"height":40,"fit":"contain"}]')

  _, body = fetch(service, FILE_ID, TransformationRequest(key='thumb'))

  assert size_of(body) == (40, 40)


def test_get_asset_range_on_variant(env: Env) -> None:
  request = TransformationRequest(width=20)
  whole = Range(0, len(env.jpeg) - 1)

  asset, body = fetch(env.service(), FILE_ID, request, whole)

  assert asset.range == Range(0, min(len(env.jpeg), asset.stat.size) - 1)
  assert len(body) == asset.range.end + 1


def test_get_asset_suffix_range_on_variant(env: Env) -> None:
  request = TransformationRequest(format='png')

  asset, body = fetch(env.service(), FILE_ID, request, Range(end=16))

  whole = env.variant(request, 'png').read_bytes()
  assert asset.stat.size == len(whole)
  assert asset.range == Range(len(whole) - 16, len(whole) - 1)
  assert body == whole[-16:]


def test_get_asset_concurrent_requests_agree(env: Env) -> None:
  service = env.service()
  request = TransformationRequest(width=30, format='png')

  async def main() -> list[bytes]:
    assets = await asyncio.gather(*[service.get_asset(FILE_ID, request) for _ in range(2)])
    return [await collect(a.stream) for a in assets]

  first, second = asyncio.run(main())

  assert first == second
  assert size_of(first) == (30, 15)
  assert env.executor.gate.in_use == 0


def test_get_asset_cancelled_caller_still_writes_variant(tmp_path: Path, logger: Logger) -> None:
  env = Env(tmp_path, logger)
  env.executor = CountingExecutor(TransformGate(1), 4000, logger, delay=0.05)
  service = env.service()
  request = TransformationRequest(width=20)

  async def main() -> None:
    task = asyncio.ensure_future(service.get_asset(FILE_ID, request))
    while env.executor.runs == 0:
      await asyncio.sleep(0.001)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
      await task
    await asyncio.gather(*list(background_tasks))

  asyncio.run(main())

  assert env.variant(request).exists()
  assert not background_tasks


def test_get_url_without_remote(env: Env) -> None:
  assert asyncio.run(env.service().get_url(FILE_ID, TransformationRequest(width=20))) == AssetUrl(
      url='', file=None)


def test_get_url_other_driver(env: Env) -> None:
  service = env.service(remote=AliyunOssProcessor())

  assert asyncio.run(service.get_url(FILE_ID, TransformationRequest(width=20))) == AssetUrl(
      url='', file=None)


@pytest.fixture
def oss_env(tmp_path: Path, logger: Logger) -> Env:
  return Env(tmp_path, logger, OssStorage(str(tmp_path), OSS_URL))


def test_get_url_processes_remotely(oss_env: Env) -> None:
  service = oss_env.service(remote=AliyunOssProcessor())

  res = asyncio.run(service.get_url(FILE_ID, TransformationRequest(width=20)))

  assert res.url == f'{OSS_URL}/image.jpg?x-oss-process=image%2Fresize%2Cm_fill%2Cw_20%2Climit_0'
  assert res.file is oss_env.image
  assert oss_env.executor.runs == 0


def test_get_url_without_transformation(oss_env: Env) -> None:
  service = oss_env.service(remote=AliyunOssProcessor())

  res = asyncio.run(service.get_url(PDF_ID, TransformationRequest(width=20)))

  assert res == AssetUrl(url=f'{OSS_URL}/doc.pdf', file=oss_env.pdf)


def test_get_url_falls_back_when_source_too_large(oss_env: Env) -> None:
  service = oss_env.service(remote=AliyunOssProcessor(max_source_size=10))
  request = TransformationRequest(width=20)

  res = asyncio.run(service.get_url(FILE_ID, request))

  variant = oss_env.variant(request)
  assert variant.exists()
  assert res.url == f'{OSS_URL}/{variant.name}'
  assert oss_env.executor.runs == 1


def test_get_url_falls_back_for_unsupported_operation(oss_env: Env) -> None:
  service = oss_env.service(remote=AliyunOssProcessor())
  request = TransformationRequest(format='webp')

  res = asyncio.run(service.get_url(FILE_ID, request))

  variant = oss_env.variant(request, 'webp')
  assert variant.exists()
  assert res.url == f'{OSS_URL}/{variant.name}'
  assert res.file is not None and res.file.type == WEBP_MIME


def test_get_url_fallback_reuses_variant(oss_env: Env) -> None:
  service = oss_env.service(remote=AliyunOssProcessor(max_source_size=10))
  request = TransformationRequest(width=20)
  oss_env.variant(request).write_bytes(b'cached variant')

  res = asyncio.run(service.get_url(FILE_ID, request))

  assert res.url == f'{OSS_URL}/{oss_env.variant(request).name}'
  assert oss_env.executor.runs == 0
