from typing import Any, Optional


class Forbidden(Exception):

  def __init__(self, message: str = "You don't have permission to access this.") -> None:
    super().__init__(message)


class RangeNotSatisfiable(Exception):

  def __init__(self, range: Any, size: Optional[int] = None) -> None:
    super().__init__(f'Range {range} is invalid or doesn\'t match the file size.')
    self.range = range
    self.size = size


class IllegalTransformation(Exception):
  pass


class TransformFailed(Exception):
  pass


class ConfigError(Exception):
  pass
