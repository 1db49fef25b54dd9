import asyncio
import dataclasses
import hashlib
import json
import math
import os
import re
from logging import Logger
from tempfile import NamedTemporaryFile
from typing import Any, Callable, ClassVar, Mapping, Optional

from pyvips import Error as VipsError  # type: ignore
from pyvips import Image  # type: ignore

from imgasset.config import parse_presets
from imgasset.exceptions import (
    IllegalTransformation,
    TransformFailed
)
from imgasset.files.index import FileRecord
from imgasset.storage.index import Storage, iter_bytes
from imgasset.typing import StorageKey

TRANSFORMABLE_TYPES = ['image/jpeg', 'image/png', 'image/webp', 'image/tiff']

FORMAT_CONTENT_TYPES = {
    'jpeg': 'image/jpeg',
    'jpg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'tiff': 'image/tiff',
    'avif': 'image/avif',
}

FITS = ['cover', 'contain', 'fill', 'inside', 'outside']
DEFAULT_FIT = 'cover'

suffix_re = re.compile(r'^[A-Za-z0-9_-][A-Za-z0-9_.-]*$')


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def compact(d: dict[str, Any]) -> dict[str, Any]:
  return {k: v for k, v in d.items() if v is not None}


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


class Operation:
  name: ClassVar[str]

  def to_list(self) -> list[Any]:
    return [self.name]


@dataclasses.dataclass(eq=True, frozen=True)
class Resize(Operation):
  name: ClassVar[str] = 'resize'
  width: Optional[int] = None
  height: Optional[int] = None
  fit: str = DEFAULT_FIT
  without_enlargement: bool = False

  def to_list(self) -> list[Any]:
    return [
        self.name,
        compact({
            'width': self.width,
            'height': self.height,
            'fit': self.fit,
            'withoutEnlargement': self.without_enlargement or None,
        }),
    ]


@dataclasses.dataclass(eq=True, frozen=True)
class Rotate(Operation):
  name: ClassVar[str] = 'rotate'
  angle: Optional[float] = None

  def to_list(self) -> list[Any]:
    return [self.name] if self.angle is None else [self.name, self.angle]


@dataclasses.dataclass(eq=True, frozen=True)
class Flip(Operation):
  name: ClassVar[str] = 'flip'


@dataclasses.dataclass(eq=True, frozen=True)
class Flop(Operation):
  name: ClassVar[str] = 'flop'


@dataclasses.dataclass(eq=True, frozen=True)
class Grayscale(Operation):
  name: ClassVar[str] = 'grayscale'


@dataclasses.dataclass(eq=True, frozen=True)
class Blur(Operation):
  name: ClassVar[str] = 'blur'
  sigma: float = 1.0

  def to_list(self) -> list[Any]:
    return [self.name, self.sigma]


@dataclasses.dataclass(eq=True, frozen=True)
class Sharpen(Operation):
  name: ClassVar[str] = 'sharpen'
  sigma: Optional[float] = None

  def to_list(self) -> list[Any]:
    return [self.name] if self.sigma is None else [self.name, self.sigma]


@dataclasses.dataclass(eq=True, frozen=True)
class Extract(Operation):
  name: ClassVar[str] = 'extract'
  left: int
  top: int
  width: int
  height: int

  def to_list(self) -> list[Any]:
    return [
        self.name, {
            'left': self.left,
            'top': self.top,
            'width': self.width,
            'height': self.height,
        }
    ]


@dataclasses.dataclass(eq=True, frozen=True)
class ToFormat(Operation):
  name: ClassVar[str] = 'toFormat'
  format: str
  quality: Optional[int] = None

  def to_list(self) -> list[Any]:
    return [self.name, self.format, compact({'quality': self.quality})]


def parse_int(value: Any, field: str, minimum: int = 1) -> int:
  if isinstance(value, bool):
    raise IllegalTransformation(f'"{field}" must be an integer')
  try:
    n = int(value)
  except (TypeError, ValueError):
    raise IllegalTransformation(f'"{field}" must be an integer')
  if n != value and str(n) != str(value).strip():
    raise IllegalTransformation(f'"{field}" must be an integer')
  if n < minimum:
    raise IllegalTransformation(f'"{field}" must be at least {minimum}')
  return n


def parse_optional_int(value: Any, field: str, minimum: int = 1) -> Optional[int]:
  if value is None or value == '':
    return None
  return parse_int(value, field, minimum)


def parse_float(value: Any, field: str) -> float:
  if isinstance(value, bool):
    raise IllegalTransformation(f'"{field}" must be a number')
  try:
    number = float(value)
  except (TypeError, ValueError):
    raise IllegalTransformation(f'"{field}" must be a number')
  if not math.isfinite(number):
    raise IllegalTransformation(f'"{field}" must be a finite number')
  return number


def parse_flag(value: Any) -> bool:
  if isinstance(value, str):
    return value.strip().lower() in ['true', '1']
  return bool(value)


def parse_format(value: Any) -> str:
  fmt = str(value).lower()
  if fmt not in FORMAT_CONTENT_TYPES:
    raise IllegalTransformation(f'unsupported format: {value}')
  return fmt


def parse_quality(value: Any) -> Optional[int]:
  quality = parse_optional_int(value, 'quality')
  if quality is not None and 100 < quality:
    raise IllegalTransformation('"quality" must be at most 100')
  return quality


def parse_fit(value: Any) -> str:
  if value is None or value == '':
    return DEFAULT_FIT
  if value not in FITS:
    raise IllegalTransformation(f'unsupported fit: {value}')
  return value


def expect_args(args: list[Any], name: str, maximum: int) -> None:
  if maximum < len(args):
    raise IllegalTransformation(f'too many arguments for "{name}"')


def parse_resize(args: list[Any]) -> Resize:
  expect_args(args, 'resize', 3)
  if len(args) == 1 and isinstance(args[0], dict):
    options = args[0]
  else:
    options = args[2] if len(args) == 3 and isinstance(args[2], dict) else {}
    options = {
        **options,
        'width': args[0] if 0 < len(args) else None,
        'height': args[1] if 1 < len(args) else None,
    }

  op = Resize(
      width=parse_optional_int(options.get('width'), 'width'),
      height=parse_optional_int(options.get('height'), 'height'),
      fit=parse_fit(options.get('fit')),
      without_enlargement=parse_flag(options.get('withoutEnlargement', False)))
  if op.width is None and op.height is None:
    raise IllegalTransformation('"resize" needs a width or a height')
  return op


def parse_rotate(args: list[Any]) -> Rotate:
  expect_args(args, 'rotate', 1)
  if len(args) == 0 or args[0] is None:
    return Rotate()
  return Rotate(parse_float(args[0], 'angle'))


def parse_blur(args: list[Any]) -> Blur:
  expect_args(args, 'blur', 1)
  if len(args) == 0 or args[0] is None or args[0] is True:
    return Blur()
  sigma = parse_float(args[0], 'sigma')
  if not 0.3 <= sigma <= 1000:
    raise IllegalTransformation('"sigma" must be between 0.3 and 1000')
  return Blur(sigma)


def parse_sharpen(args: list[Any]) -> Sharpen:
  expect_args(args, 'sharpen', 1)
  if len(args) == 0 or args[0] is None:
    return Sharpen()
  if isinstance(args[0], dict):
    sigma = args[0].get('sigma')
    return Sharpen(None if sigma is None else parse_float(sigma, 'sigma'))
  return Sharpen(parse_float(args[0], 'sigma'))


def parse_extract(args: list[Any]) -> Extract:
  expect_args(args, 'extract', 1)
  if len(args) != 1 or not isinstance(args[0], dict):
    raise IllegalTransformation('"extract" needs a region')
  region = args[0]
  return Extract(
      left=parse_int(region.get('left'), 'left', 0),
      top=parse_int(region.get('top'), 'top', 0),
      width=parse_int(region.get('width'), 'width'),
      height=parse_int(region.get('height'), 'height'))


def parse_to_format(args: list[Any]) -> ToFormat:
  expect_args(args, 'toFormat', 2)
  if len(args) == 0:
    raise IllegalTransformation('"toFormat" needs a format')
  options = args[1] if len(args) == 2 and isinstance(args[1], dict) else {}
  return ToFormat(parse_format(args[0]), parse_quality(options.get('quality')))


def parse_no_args(op: Callable[[], Operation], name: str) -> Callable[[list[Any]], Operation]:

  def fn(args: list[Any]) -> Operation:
    expect_args(args, name, 0)
    return op()

  return fn


PARSERS: dict[str, Callable[[list[Any]], Operation]] = {
    'resize': parse_resize,
    'rotate': parse_rotate,
    'flip': parse_no_args(Flip, 'flip'),
    'flop': parse_no_args(Flop, 'flop'),
    'grayscale': parse_no_args(Grayscale, 'grayscale'),
    'blur': parse_blur,
    'sharpen': parse_sharpen,
    'extract': parse_extract,
    'toFormat': parse_to_format,
}


def parse_operation(raw: Any) -> Operation:
  if not isinstance(raw, (list, tuple)) or len(raw) == 0 or not isinstance(raw[0], str):
    raise IllegalTransformation(f'invalid transformation: {raw}')

  parser = PARSERS.get(raw[0])
  if parser is None:
    raise IllegalTransformation(f'unknown transformation: {raw[0]}')

  return parser(list(raw[1:]))


@dataclasses.dataclass(eq=True, frozen=True)
class TransformationRequest:
  key: Optional[str] = None
  transforms: tuple[Any, ...] = ()
  width: Optional[int] = None
  height: Optional[int] = None
  fit: Optional[str] = None
  without_enlargement: bool = False
  format: Optional[str] = None
  quality: Optional[int] = None
  suffix: Optional[str] = None

  @classmethod
  def from_dict(cls, d: Mapping[str, Any]) -> 'TransformationRequest':
    transforms = d.get('transforms') or []
    if isinstance(transforms, str):
      try:
        transforms = json.loads(transforms)
      except json.JSONDecodeError:
        raise IllegalTransformation('"transforms" must be a JSON array')
    if not isinstance(transforms, list):
      raise IllegalTransformation('"transforms" must be an array')

    return cls(
        key=d.get('key') or None,
        transforms=tuple(transforms),
        width=parse_optional_int(d.get('width'), 'width'),
        height=parse_optional_int(d.get('height'), 'height'),
        fit=d.get('fit') or None,
        without_enlargement=parse_flag(d.get('withoutEnlargement', False)),
        format=d.get('format') or None,
        quality=parse_quality(d.get('quality')),
        suffix=d.get('suffix') or None)


def load_presets(s: str) -> dict[str, TransformationRequest]:
  return {p['key']: TransformationRequest.from_dict({**p, 'key': None}) for p in parse_presets(s)}


def resolve_preset(
    request: TransformationRequest,
    file: FileRecord,
    presets: Mapping[str, TransformationRequest],
) -> list[Operation]:
  params = request
  if request.key is not None:
    if request.key not in presets:
      raise IllegalTransformation(f'unknown preset: {request.key}')
    params = presets[request.key]

  operations = [parse_operation(raw) for raw in params.transforms]

  if params.format is not None:
    operations.append(ToFormat(parse_format(params.format), params.quality))
  elif params.quality is not None:
    # Quality alone keeps the source format; sources without one are served as is.
    fmt = (file.type or '').split('/')[-1]
    if fmt in FORMAT_CONTENT_TYPES:
      operations.append(ToFormat(fmt, params.quality))

  if params.width is not None or params.height is not None:
    operations.append(
        Resize(
            width=params.width,
            height=params.height,
            fit=parse_fit(params.fit),
            without_enlargement=params.without_enlargement))

  return operations


def maybe_extract_format(operations: list[Operation]) -> Optional[str]:
  formats = [op for op in operations if isinstance(op, ToFormat)]
  return formats[-1].format if formats else None


def maybe_extract_quality(operations: list[Operation]) -> Optional[int]:
  formats = [op for op in operations if isinstance(op, ToFormat)]
  return formats[-1].quality if formats else None


def operations_hash(operations: list[Operation]) -> str:
  return hashlib.sha1(json_dump([op.to_list() for op in operations]).encode()).hexdigest()


def variant_suffix(operations: list[Operation], suffix: Optional[str] = None) -> str:
  if len(operations) == 0:
    return ''
  if suffix:
    if suffix_re.match(suffix) is None:
      raise IllegalTransformation(f'invalid suffix: {suffix}')
    return f'.{suffix}'
  return f'__{operations_hash(operations)}'


def derive_variant_name(
    base: StorageKey,
    operations: list[Operation],
    suffix: Optional[str] = None,
    new_format: Optional[str] = None,
) -> StorageKey:
  if len(operations) == 0:
    return base

  stem, ext = os.path.splitext(base)
  extension = f'.{new_format}' if new_format else ext
  return StorageKey(stem + variant_suffix(operations, suffix) + extension)


def resize_scales(original: Size, op: Resize) -> tuple[float, float, bool]:
  if op.width is None and op.height is None:
    return (1.0, 1.0, False)

  if op.width is None:
    assert op.height is not None
    hscale = vscale = op.height / original.height
  elif op.height is None:
    hscale = vscale = op.width / original.width
  else:
    sx = op.width / original.width
    sy = op.height / original.height
    match op.fit:
      case 'fill':
        hscale, vscale = sx, sy
      case 'cover' | 'outside':
        hscale = vscale = max(sx, sy)
      case 'contain' | 'inside':
        hscale = vscale = min(sx, sy)
      case _:
        raise IllegalTransformation(f'unsupported fit: {op.fit}')

  if op.without_enlargement and (1.0 < hscale or 1.0 < vscale):
    return (min(hscale, 1.0), min(vscale, 1.0), True)

  return (hscale, vscale, False)


def apply_resize(image: Image, op: Resize) -> Image:
  hscale, vscale, capped = resize_scales(Size.from_image(image), op)
  if hscale != 1.0 or vscale != 1.0:
    image = image.resize(hscale, vscale=vscale)

  if capped or op.width is None or op.height is None:
    return image

  resized = Size.from_image(image)
  match op.fit:
    case 'cover':
      width = min(op.width, resized.width)
      height = min(op.height, resized.height)
      image = image.extract_area(
          (resized.width - width) // 2, (resized.height - height) // 2, width, height)
    case 'contain':
      width = max(op.width, resized.width)
      height = max(op.height, resized.height)
      image = image.embed(
          (width - resized.width) // 2, (height - resized.height) // 2,
          width,
          height,
          extend='background',
          background=[0.0] * image.bands)

  return image


def apply_rotate(image: Image, op: Rotate) -> Image:
  if op.angle is None:
    return image.autorot()

  angle = op.angle % 360
  if angle % 90 == 0:
    return image.rot(f'd{int(angle)}')
  return image.rotate(angle)


def apply_blur(image: Image, op: Blur) -> Image:
  return image.gaussblur(op.sigma)


def apply_sharpen(image: Image, op: Sharpen) -> Image:
  if op.sigma is None:
    return image.sharpen()
  return image.sharpen(sigma=op.sigma)


def apply_extract(image: Image, op: Extract) -> Image:
  frame = Size.from_image(image)
  if frame.width < op.left + op.width or frame.height < op.top + op.height:
    raise IllegalTransformation('"extract" region is outside the image')
  return image.extract_area(op.left, op.top, op.width, op.height)


APPLIERS: dict[type[Operation], Callable[[Image, Any], Image]] = {
    Resize: apply_resize,
    Rotate: apply_rotate,
    Flip: lambda image, _: image.flipver(),
    Flop: lambda image, _: image.fliphor(),
    Grayscale: lambda image, _: image.colourspace('b-w'),
    Blur: apply_blur,
    Sharpen: apply_sharpen,
    Extract: apply_extract,
    # Output format is chosen by the saver.
    ToFormat: lambda image, _: image,
}

SEQUENTIAL_OPERATIONS = (Resize, Grayscale, Blur, Sharpen, ToFormat)


def orientation(image: Image) -> int:
  if image.get_typeof('orientation') == 0:
    return 1
  return image.get('orientation')


def has_explicit_rotate(operations: list[Operation]) -> bool:
  return any(isinstance(op, Rotate) for op in operations)


def can_read_sequentially(image: Image, operations: list[Operation]) -> bool:
  if not has_explicit_rotate(operations) and 1 < orientation(image):
    return False
  return all(isinstance(op, SEQUENTIAL_OPERATIONS) for op in operations)


def save_options(fmt: str, quality: Optional[int]) -> dict[str, Any]:
  if quality is None or fmt == 'png':
    return {}
  return {'Q': quality}


def render(source: str, operations: list[Operation], fmt: str, max_dimension: int) -> bytes:
  image = Image.new_from_file(source)

  # Header-only read; nothing is decoded until the saver runs.
  original = Size.from_image(image)
  if max_dimension**2 < original.width * original.height:
    raise IllegalTransformation(f'Image exceeds {max_dimension**2} input pixels.')

  if can_read_sequentially(image, operations):
    image = Image.new_from_file(source, access='sequential')

  if not has_explicit_rotate(operations):
    image = image.autorot()

  for op in operations:
    image = APPLIERS[type(op)](image, op)

  return image.write_to_buffer(f'.{fmt}', **save_options(fmt, maybe_extract_quality(operations)))


def output_format(file: FileRecord, operations: list[Operation]) -> str:
  return maybe_extract_format(operations) or (file.type or '').split('/')[-1]


def check_dimensions(file: FileRecord, max_dimension: int) -> None:
  width = file.width
  height = file.height
  if (width is None or height is None or width <= 0 or height <= 0 or max_dimension < width or
      max_dimension < height):
    raise IllegalTransformation(
        "Image is too large to be transformed, or image size couldn't be determined.")


class TransformGate:

  def __init__(self, capacity: int):
    self.capacity = capacity
    self.in_use = 0
    self.semaphore = asyncio.BoundedSemaphore(capacity)

  async def __aenter__(self) -> 'TransformGate':
    await self.semaphore.acquire()
    self.in_use += 1
    return self

  async def __aexit__(self, *_: Any) -> None:
    self.in_use -= 1
    self.semaphore.release()


_gate: Optional[TransformGate] = None


def get_transform_gate(capacity: int) -> TransformGate:
  global _gate
  if _gate is None:
    _gate = TransformGate(capacity)
  return _gate


class TransformExecutor:

  def __init__(self, gate: TransformGate, max_dimension: int, log: Logger):
    self.gate = gate
    self.max_dimension = max_dimension
    self.log = log

  def check_dimensions(self, file: FileRecord) -> None:
    check_dimensions(file, self.max_dimension)

  async def run(
      self,
      storage: Storage,
      file: FileRecord,
      operations: list[Operation],
      variant: StorageKey,
  ) -> None:
    self.check_dimensions(file)

    fmt = output_format(file, operations)
    content_type = FORMAT_CONTENT_TYPES[fmt]

    async with self.gate:
      with NamedTemporaryFile(delete_on_close=False) as source:
        try:
          async for chunk in storage.get_stream(file.filename_disk):
            source.write(chunk)
        except Exception as e:
          self.log.error({
              'message': "couldn't read source for transformation",
              'id': file.id,
              'reason': str(e),
          })
          raise TransformFailed(f"Couldn't transform file {file.id}") from e
        source.close()

        try:
          data = await asyncio.to_thread(render, source.name, operations, fmt, self.max_dimension)
        except VipsError as e:
          self.log.error({
              'message': "couldn't transform file",
              'id': file.id,
              'reason': str(e),
          })
          raise TransformFailed(f"Couldn't transform file {file.id}") from e

      await storage.put(variant, iter_bytes(data), content_type)
      self.log.debug({
          'message': 'variant written',
          'id': file.id,
          'variant': variant,
          'size': len(data),
      })
