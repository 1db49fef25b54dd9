import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Any, Optional, Protocol

from imgasset.exceptions import Forbidden
from imgasset.typing import FileId, StorageKey

PUBLIC_SETTING_KEYS = ['project_logo', 'public_background', 'public_foreground']


@dataclasses.dataclass
class FileRecord:
  id: FileId
  storage: str
  filename_disk: StorageKey
  type: Optional[str]
  filesize: int
  width: Optional[int] = None
  height: Optional[int] = None

  @classmethod
  def from_dict(cls, d: dict[str, Any]) -> 'FileRecord':
    return cls(
        id=FileId(d['id']),
        storage=d['storage'],
        filename_disk=StorageKey(d['filename_disk']),
        type=d.get('type'),
        filesize=int(d.get('filesize') or 0),
        width=d.get('width'),
        height=d.get('height'))


@dataclasses.dataclass(frozen=True)
class Accountability:
  admin: bool = False
  user: Optional[str] = None


class FileRepository(Protocol):

  async def find_by_id(self, id: FileId) -> Optional[FileRecord]:
    ...

  async def find_public_asset_ids(self) -> set[FileId]:
    ...


class AccessChecker(Protocol):

  async def check_access(self, action: str, collection: str, id: FileId) -> None:
    ...


class JsonFileRepository:

  def __init__(self, path: str):
    self.path = Path(path)

  async def load(self) -> dict[str, Any]:
    text = await asyncio.to_thread(self.path.read_text, encoding='utf-8')
    return json.loads(text)

  async def find_by_id(self, id: FileId) -> Optional[FileRecord]:
    manifest = await self.load()
    for d in manifest.get('files', []):
      if d.get('id') == id:
        return FileRecord.from_dict(d)
    return None

  async def find_public_asset_ids(self) -> set[FileId]:
    settings = (await self.load()).get('settings') or {}
    return {FileId(settings[k]) for k in PUBLIC_SETTING_KEYS if settings.get(k)}


class PublicReadAccess:

  def __init__(self, allowed: bool):
    self.allowed = allowed

  async def check_access(self, action: str, collection: str, id: FileId) -> None:
    if action != 'read' or not self.allowed:
      raise Forbidden()
