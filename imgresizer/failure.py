import dataclasses
from enum import Enum
from http import HTTPStatus


class Failure(Enum):
  EMPTY_DIRECTORY = 'dir_not_extracted'
  FORMAT_NOT_WHITELISTED = 'asset_format_not_in_whitelist'
  SOURCE_NOT_FOUND = 'asset_not_found'
  INVALID_QUALITY = 'invalid_image_quality'
  UNSUPPORTED_FORMAT_CODE = 'unsupported_format_code'
  RESERVED_TRANSFORM = 'reserved_transform'
  ZERO_DIMENSION_SOURCE = 'zero_dimension_source'
  UNREADABLE_SOURCE = 'unreadable_source'

  @property
  def status(self) -> HTTPStatus:
    match self:
      case Failure.EMPTY_DIRECTORY | Failure.FORMAT_NOT_WHITELISTED | Failure.SOURCE_NOT_FOUND:
        return HTTPStatus.NOT_FOUND
      case Failure.INVALID_QUALITY:
        return HTTPStatus.BAD_REQUEST
      case Failure.RESERVED_TRANSFORM:
        return HTTPStatus.NOT_IMPLEMENTED
      case _:
        return HTTPStatus.INTERNAL_SERVER_ERROR

  @property
  def is_server_error(self) -> bool:
    return 500 <= self.status < 600

  @property
  def metric(self) -> str:
    return self.value


@dataclasses.dataclass(eq=True, frozen=True)
class Rejection:
  failure: Failure
  detail: str

  @property
  def status(self) -> HTTPStatus:
    return self.failure.status
