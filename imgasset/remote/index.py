from typing import Optional, Protocol
from urllib import parse

from imgasset.transform.index import Operation, Resize

OSS_PROCESS_PARAM = 'x-oss-process'

# Aliyun OSS rejects sources larger than this with
# "Maximal size of image supported is 20971520".
OSS_MAX_SOURCE_SIZE = 20 * 1024 * 1024

OSS_RESIZE_MODES = {
    'contain': 'lfit',
    'cover': 'fill',
    'inside': 'lfit',
    'outside': 'fit',
    'fill': 'fill',
}


class RemoteProcessor(Protocol):
  driver: str
  max_source_size: int

  def process_url(self, url: str, operations: list[Operation]) -> str:
    ...


def encode_oss_resize(op: Resize) -> Optional[str]:
  mode = OSS_RESIZE_MODES.get(op.fit)
  if mode is None:
    return None

  cmd = f'resize,m_{mode}'
  if op.width:
    cmd += f',w_{op.width}'
  if op.height:
    cmd += f',h_{op.height}'
  if op.without_enlargement:
    cmd += ',limit_1'
  else:
    cmd += ',limit_0'
  return cmd


def encode_oss_process(operations: list[Operation]) -> Optional[str]:
  cmds = []
  for op in operations:
    match op:
      case Resize():
        cmd = encode_oss_resize(op)
        if cmd is None:
          return None
        cmds.append(cmd)
      case _:
        return None

  return 'image/' + '/'.join(cmds) if cmds else ''


class AliyunOssProcessor:
  driver = 'aliyunoss'

  def __init__(self, max_source_size: int = OSS_MAX_SOURCE_SIZE):
    self.max_source_size = max_source_size

  def process_url(self, url: str, operations: list[Operation]) -> str:
    process = encode_oss_process(operations)
    if process is None:
      return ''
    if process == '':
      return url

    u = parse.urlsplit(url)
    qs = [
        (k, v)
        for k, v in parse.parse_qsl(u.query, keep_blank_values=True)
        if k != OSS_PROCESS_PARAM
    ]
    qs.append((OSS_PROCESS_PARAM, process))
    return parse.urlunsplit((u.scheme, u.netloc, u.path, parse.urlencode(qs), u.fragment))
