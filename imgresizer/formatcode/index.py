import dataclasses
import re
from typing import Optional

from imgresizer.failure import Failure, Rejection
from imgresizer.typing import FormatCode

width_re = re.compile(r'w([0-9]{1,9})')
height_re = re.compile(r'h([0-9]{1,9})')
max_re = re.compile(r'm([0-9]{1,9})')
box_re = re.compile(r'w([0-9]{1,9})h([0-9]{1,9})')

RELATIVE = 'relative'


@dataclasses.dataclass(eq=True, frozen=True)
class ConstrainWidth:
  px: int


@dataclasses.dataclass(eq=True, frozen=True)
class ConstrainHeight:
  px: int


@dataclasses.dataclass(eq=True, frozen=True)
class MaxDimension:
  px: int


@dataclasses.dataclass(eq=True, frozen=True)
class CropToBox:
  width: int
  height: int


@dataclasses.dataclass(eq=True, frozen=True)
class RelativeToOriginal:
  pass


TransformSpec = ConstrainWidth | ConstrainHeight | MaxDimension | CropToBox | RelativeToOriginal


def is_allowed(format_code: str, whitelist: frozenset[str]) -> bool:
  return format_code in whitelist


def positive(s: str) -> Optional[int]:
  n = int(s)
  return n if 0 < n else None


def parse(format_code: FormatCode | str) -> TransformSpec | Rejection:
  """Turns a format code such as ``w200`` or ``w200h150`` into a transform.

  Codes must match a rule completely. Numbers must be positive; ``w0`` is a
  failure rather than an empty image.
  """

  def unsupported(reason: str) -> Rejection:
    return Rejection(Failure.UNSUPPORTED_FORMAT_CODE, f'{reason}: {format_code!r}')

  m = width_re.fullmatch(format_code)
  if m is not None:
    match positive(m[1]):
      case None:
        return unsupported('zero width')
      case int() as px:
        return ConstrainWidth(px)

  m = height_re.fullmatch(format_code)
  if m is not None:
    match positive(m[1]):
      case None:
        return unsupported('zero height')
      case int() as px:
        return ConstrainHeight(px)

  m = max_re.fullmatch(format_code)
  if m is not None:
    match positive(m[1]):
      case None:
        return unsupported('zero size')
      case int() as px:
        return MaxDimension(px)

  m = box_re.fullmatch(format_code)
  if m is not None:
    match (positive(m[1]), positive(m[2])):
      case (int() as width, int() as height):
        return CropToBox(width, height)
      case _:
        return unsupported('zero box edge')

  if format_code == RELATIVE:
    return RelativeToOriginal()

  return unsupported('unsupported format')
