import dataclasses
from typing import Optional

from imgresizer.failure import Failure, Rejection
from imgresizer.formatcode.index import (
    ConstrainHeight,
    ConstrainWidth,
    CropToBox,
    MaxDimension,
    RelativeToOriginal,
    TransformSpec
)


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @property
  def is_portrait(self) -> bool:
    return self.width < self.height

  def is_empty(self) -> bool:
    return self.width <= 0 or self.height <= 0


@dataclasses.dataclass(frozen=True)
class Area:
  x: int
  y: int
  width: int
  height: int

  @classmethod
  def create(cls, x: int, y: int, width: int, height: int) -> 'Area':
    if x < 0 or y < 0 or width <= 0 or height <= 0:
      raise ValueError(f'Invalid argument: x: {x}, y: {y}, width: {width}, height: {height}')

    return cls(x, y, width, height)

  @property
  def right(self) -> int:
    return self.x + self.width

  @property
  def bottom(self) -> int:
    return self.y + self.height

  def is_in(self, frame: Size) -> bool:
    return self.right <= frame.width and self.bottom <= frame.height

  def to_size(self) -> Size:
    return Size(self.width, self.height)


@dataclasses.dataclass(frozen=True)
class TargetGeometry:
  resized: Size
  crop: Optional[Area] = None

  @property
  def size(self) -> Size:
    return self.resized if self.crop is None else self.crop.to_size()

  @property
  def width(self) -> int:
    return self.size.width

  @property
  def height(self) -> int:
    return self.size.height


def rounddiv(a: int, b: int) -> int:
  # Nearest integer of a / b, halves rounded up.
  return (2 * a + b) // (2 * b)


def scale_edge(edge: int, numerator: int, denominator: int) -> int:
  return max(1, rounddiv(edge * numerator, denominator))


def resize_by_width(original: Size, width: int) -> Size:
  return Size(width, scale_edge(original.height, width, original.width))


def resize_by_height(original: Size, height: int) -> Size:
  return Size(scale_edge(original.width, height, original.height), height)


def center_crop(resized: Size, target: Size) -> Area:
  assert target.width <= resized.width and target.height <= resized.height

  return Area.create(
      x=(resized.width - target.width) // 2,
      y=(resized.height - target.height) // 2,
      width=target.width,
      height=target.height)


def crop_to_box(original: Size, target: Size) -> TargetGeometry:
  # target.width / target.height > original.width / original.height
  if target.width * original.height > original.width * target.height:
    resized = resize_by_width(original, target.width)
  else:
    resized = resize_by_height(original, target.height)

  return TargetGeometry(resized=resized, crop=center_crop(resized, target))


def compute(spec: TransformSpec, original: Size) -> TargetGeometry | Rejection:
  """Computes the output geometry of ``spec`` applied to an image of ``original`` size.

  Nothing here touches pixels: the result tells the codec what to resize to and
  which area of the resized image to keep.
  """
  if original.is_empty():
    return Rejection(
        Failure.ZERO_DIMENSION_SOURCE,
        f'source has no pixels: {original.width}x{original.height}')

  match spec:
    case ConstrainWidth(px=width):
      return TargetGeometry(resized=resize_by_width(original, width))
    case ConstrainHeight(px=height):
      return TargetGeometry(resized=resize_by_height(original, height))
    case MaxDimension(px=px):
      if original.is_portrait:
        return TargetGeometry(resized=resize_by_height(original, px))
      return TargetGeometry(resized=resize_by_width(original, px))
    case CropToBox(width=width, height=height):
      return crop_to_box(original, Size(width, height))
    case RelativeToOriginal():
      return Rejection(Failure.RESERVED_TRANSFORM, 'relative transform is not defined')
    case _:
      raise Exception('system error')
