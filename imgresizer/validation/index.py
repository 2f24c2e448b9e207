import dataclasses
import datetime
import hashlib
import json
from email.utils import format_datetime
from typing import Any, Optional

from dateutil import parser, tz


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def to_utc(mtime: datetime.datetime | float) -> datetime.datetime:
  if isinstance(mtime, datetime.datetime):
    if mtime.tzinfo is None:
      return mtime.replace(tzinfo=tz.tzutc())
    return mtime.astimezone(tz.tzutc())
  return datetime.datetime.fromtimestamp(mtime, tz=tz.tzutc())


def etag(dir: str, format_code: str, basename: str, source_mtime: datetime.datetime | float) -> str:
  factors = [
      dir,
      format_code,
      basename,
      to_utc(source_mtime).isoformat(timespec='microseconds'),
  ]
  return hashlib.md5(json_dump(factors).encode(), usedforsecurity=False).hexdigest()


def last_modified(source_mtime: datetime.datetime | float) -> datetime.datetime:
  return to_utc(source_mtime).replace(microsecond=0)


def http_date(dt: datetime.datetime) -> str:
  return format_datetime(dt.astimezone(datetime.timezone.utc), usegmt=True)


@dataclasses.dataclass(frozen=True)
class ValidationToken:
  etag: str
  last_modified: datetime.datetime

  @classmethod
  def from_source(
      cls,
      dir: str,
      format_code: str,
      basename: str,
      source_mtime: datetime.datetime | float,
  ) -> 'ValidationToken':
    return cls(
        etag=etag(dir, format_code, basename, source_mtime),
        last_modified=last_modified(source_mtime))

  @property
  def etag_header(self) -> str:
    return f'"{self.etag}"'

  @property
  def last_modified_header(self) -> str:
    return http_date(self.last_modified)

  def headers(self) -> dict[str, str]:
    return {
        'ETag': self.etag_header,
        'Last-Modified': self.last_modified_header,
    }


def etag_matches(token: ValidationToken, if_none_match: str) -> bool:
  for candidate in if_none_match.split(','):
    candidate = candidate.strip()
    if candidate == '*':
      return True
    if candidate.startswith('W/'):
      candidate = candidate[2:]
    if candidate == token.etag_header:
      return True
  return False


def parse_http_date(value: str) -> Optional[datetime.datetime]:
  try:
    return to_utc(parser.parse(value))
  except (ValueError, OverflowError):
    return None


def not_modified(
    token: ValidationToken,
    if_none_match: Optional[str],
    if_modified_since: Optional[str],
) -> bool:
  # If-None-Match wins over If-Modified-Since when both are sent (RFC 9110 13.2.2).
  if if_none_match:
    return etag_matches(token, if_none_match)

  if if_modified_since:
    since = parse_http_date(if_modified_since)
    if since is None:
      return False
    return token.last_modified <= since

  return False
