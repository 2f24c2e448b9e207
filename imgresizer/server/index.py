import contextlib
import contextvars
import dataclasses
import datetime
import json
import logging
import mimetypes
import re
import sys
import time
from collections.abc import Mapping
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Any, Generator, Optional

import pyvips
from pythonjsonlogger.jsonlogger import JsonFormatter
from pyvips import Image  # type: ignore

import imgresizer
from imgresizer.cachecontrol.index import (
    DEFAULT_STAGING_PATTERNS,
    LIVE_MAX_AGE,
    CacheContext,
    cache_headers,
    staging_path_spec
)
from imgresizer.failure import Failure, Rejection
from imgresizer.formatcode.index import TransformSpec, is_allowed, parse
from imgresizer.geometry.index import Size, TargetGeometry, compute
from imgresizer.typing import FormatCode, HttpPath
from imgresizer.validation.index import ValidationToken, not_modified

DEFAULT_IMAGE_QUALITY = 85

CACHE_CONTROL = 'x-cache-control'
IMAGE_QUALITY = 'x-image-quality'
IF_NONE_MATCH = 'if-none-match'
IF_MODIFIED_SINCE = 'if-modified-since'

ENV_PREFIX = 'IMGRESIZER_'

HISTOGRAM_BINS = 8

request_path: contextvars.ContextVar[str] = contextvars.ContextVar('request_path', default='')

path_re = re.compile(r'^(.+)?/([^/]+)/([^/]+)$')

LOADER_MIMES = {
    'jpegload': 'image/jpeg',
    'pngload': 'image/png',
    'webpload': 'image/webp',
    'gifload': 'image/gif',
    'tiffload': 'image/tiff',
}

# MIME -> (libvips saver suffix, whether the saver takes a quality)
SAVERS = {
    'image/jpeg': ('.jpg', True),
    'image/png': ('.png', False),
    'image/webp': ('.webp', True),
    'image/gif': ('.gif', False),
    'image/avif': ('.avif', True),
    'image/heic': ('.heic', True),
    'image/tiff': ('.tif', False),
}


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgresizer.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  log = logging.getLogger(__name__)
  log.setLevel(logging.DEBUG)
  for h in list(log.handlers):
    log.removeHandler(h)

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


def env_bool(value: str) -> bool:
  match value.strip().lower():
    case 'true' | '1' | 'yes' | 'on':
      return True
    case 'false' | '0' | 'no' | 'off':
      return False
    case _:
      raise ValueError(f'not a boolean: {value!r}')


@dataclasses.dataclass(eq=True, frozen=True)
class Settings:
  source_folder: Path
  size_whitelist: frozenset[str]
  default_quality: int = DEFAULT_IMAGE_QUALITY
  staging_patterns: str = DEFAULT_STAGING_PATTERNS
  cache_extensions: bool = True
  live_max_age: int = LIVE_MAX_AGE

  @classmethod
  def from_env(cls, log: Logger, environ: Mapping[str, str]) -> Optional['Settings']:

    def get(name: str) -> str:
      return environ[f'{ENV_PREFIX}{name}']

    def get_or(name: str, default: str) -> str:
      value = environ.get(f'{ENV_PREFIX}{name}', '')
      return default if value == '' else value

    try:
      source_folder = Path(get('SOURCE_FOLDER'))
      size_whitelist = frozenset(
          c.strip() for c in get('SIZE_WHITELIST').split(',') if c.strip() != '')
      default_quality = int(get_or('DEFAULT_QUALITY', str(DEFAULT_IMAGE_QUALITY)))
      staging_patterns = get_or('STAGING_PATTERNS', DEFAULT_STAGING_PATTERNS)
      cache_extensions = env_bool(get_or('CACHE_EXTENSIONS', 'true'))
      live_max_age = int(get_or('LIVE_MAX_AGE', str(LIVE_MAX_AGE)))
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    if not 1 <= default_quality <= 100:
      log.warning({
          'message': 'invalid environment variable',
          'reason': f'default quality out of range: {default_quality}',
      })
      return None

    return cls(
        source_folder=source_folder,
        size_whitelist=size_whitelist,
        default_quality=default_quality,
        staging_patterns=staging_patterns,
        cache_extensions=cache_extensions,
        live_max_age=live_max_age)


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  body: Optional[bytes] = None
  content_type: Optional[str] = None
  headers: Mapping[str, str] = dataclasses.field(default_factory=dict)
  vips_us: Optional[int] = None
  img_size: Optional[int] = None

  @classmethod
  def reject(cls, rejection: Rejection) -> 'InstantResponse':
    return cls(status=rejection.status)


@dataclasses.dataclass(eq=True, frozen=True)
class OriginalAssetRequest:
  dir: str
  format_code: str
  basename: str
  source: Path


@dataclasses.dataclass(eq=True, frozen=True)
class DerivativeRequest:
  dir: str
  format_code: FormatCode
  basename: str


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
  value = headers.get(name)
  if value is None or value == '':
    return None
  return value


def parse_quality(value: Optional[str], default: int) -> int | Rejection:
  if value is None:
    return default

  try:
    quality = int(value.strip())
  except ValueError:
    return Rejection(Failure.INVALID_QUALITY, f'image quality is not an integer: {value!r}')

  if not 1 <= quality <= 100:
    return Rejection(Failure.INVALID_QUALITY, f'image quality out of range: {quality}')

  return quality


def loader_mime(image: Image, filename: str) -> str:
  loader = str(image.get('vips-loader'))
  for suffix in ['_buffer', '_source']:
    if loader.endswith(suffix):
      loader = loader[:-len(suffix)]

  if loader in LOADER_MIMES:
    return LOADER_MIMES[loader]

  # heifload reads both containers; the codec tells them apart.
  if loader == 'heifload':
    if image.get_typeof('heif-compression') != 0 and image.get('heif-compression') == 'av1':
      return 'image/avif'
    return 'image/heic'

  return mimetypes.guess_type(filename)[0] or 'application/octet-stream'


def apply_geometry(image: Image, geometry: TargetGeometry) -> Image:
  resized = geometry.resized
  if (image.width, image.height) != (resized.width, resized.height):
    image = image.thumbnail_image(
        resized.width, height=resized.height, size='force', no_rotate=True)

  crop = geometry.crop
  if crop is not None:
    image = image.extract_area(crop.x, crop.y, crop.width, crop.height)

  return image


def encode(image: Image, mime: str, filename: str, quality: int) -> bytes:
  suffix, lossy = SAVERS.get(mime, (Path(filename).suffix, False))
  # Derivatives carry no EXIF, XMP or ICC metadata.
  if lossy:
    return image.write_to_buffer(suffix, Q=quality, strip=True)
  return image.write_to_buffer(suffix, strip=True)


def to_hex(rgb: list[float]) -> str:
  return '#' + ''.join(f'{max(0, min(255, round(v))):02x}' for v in rgb)


def average_color(image: Image) -> str:
  return to_hex([image.extract_band(i).avg() for i in range(3)])


def dominant_color(image: Image) -> str:
  # Pixel (r, g) of band b counts the pixels falling into RGB bucket (r, g, b).
  hist = image.hist_find_ndim(bins=HISTOGRAM_BINS)
  _, opts = hist.max(x=True, y=True)
  counts = hist.getpoint(opts['x'], opts['y'])
  b = max(range(len(counts)), key=lambda i: counts[i])

  width = 256 / HISTOGRAM_BINS
  return to_hex([(i + 0.5) * width for i in (opts['x'], opts['y'], b)])


def to_srgb(image: Image) -> Image:
  if image.hasalpha():
    image = image.flatten()
  if image.bands < 3 or image.interpretation not in ['srgb', 'rgb']:
    image = image.colourspace('srgb')
  if image.format != 'uchar':
    image = image.cast('uchar')
  return image.extract_band(0, n=3)


class ImgServer:

  def __init__(self, log: logging.Logger, settings: Settings):
    self.log = log
    self.settings = settings
    self.source_root = settings.source_folder.resolve()
    self.staging_spec = staging_path_spec(settings.staging_patterns)

    # Derivatives are recomputed for every request.
    pyvips.cache_set_max(0)

  @property
  def log_context(self) -> dict[str, Any]:
    return {'path': request_path.get()}

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, path: HttpPath) -> None:
    request_path.set(str(path))

  def rejected(self, rejection: Rejection) -> InstantResponse:
    entry = {
        'failure': rejection.failure.name,
        'metric': rejection.failure.metric,
        'status': int(rejection.status),
        'reason': rejection.detail,
    }
    if rejection.failure.is_server_error:
      self.log_error('request failed', entry)
    else:
      self.log_warning('request rejected', entry)

    return InstantResponse.reject(rejection)

  def resolve_source(self, *parts: str) -> Optional[Path]:
    path = self.source_root.joinpath(*[p.strip('/') for p in parts if p.strip('/') != ''])
    try:
      resolved = path.resolve()
    except (OSError, RuntimeError, ValueError):
      return None

    if not resolved.is_relative_to(self.source_root):
      return None

    if not resolved.is_file():
      return None

    return resolved

  def classify(self, path: HttpPath) -> OriginalAssetRequest | DerivativeRequest | Rejection:
    m = path_re.match(path)
    if m is None or m[1] is None or m[1].strip('/') == '':
      return Rejection(Failure.EMPTY_DIRECTORY, '404, incorrect path, dir not extracted.')

    dir, format_code, basename = m[1], m[2], m[3]

    static_file = self.resolve_source(dir, format_code, basename)
    if static_file is not None:
      return OriginalAssetRequest(dir, format_code, basename, static_file)

    return DerivativeRequest(dir, FormatCode(format_code), basename)

  def response_headers(
      self,
      token: ValidationToken,
      dir: str,
      headers: Mapping[str, str],
  ) -> dict[str, str]:
    context = CacheContext.from_request(dir, self.staging_spec, get_header(headers, CACHE_CONTROL))
    return {
        **token.headers(),
        **cache_headers(context, self.settings.live_max_age, self.settings.cache_extensions),
    }

  @contextlib.contextmanager
  def open_image(self, filename: str) -> Generator[Image, None, None]:
    image = Image.new_from_file(filename)
    try:
      yield image
    finally:
      del image

  def serve_original(
      self,
      req: OriginalAssetRequest,
      headers: Mapping[str, str],
  ) -> InstantResponse:
    token = ValidationToken.from_source(
        req.dir, req.format_code, req.basename, req.source.stat().st_mtime)
    res_headers = self.response_headers(token, req.dir, headers)

    if not_modified(token, get_header(headers, IF_NONE_MATCH),
                    get_header(headers, IF_MODIFIED_SINCE)):
      return InstantResponse(status=HTTPStatus.NOT_MODIFIED, headers=res_headers)

    body = req.source.read_bytes()
    self.log_debug('serve original image', {'source': str(req.source), 'img_size': len(body)})

    return InstantResponse(
        status=HTTPStatus.OK,
        body=body,
        content_type=mimetypes.guess_type(req.source.name)[0] or 'application/octet-stream',
        headers=res_headers,
        img_size=len(body))

  def render(
      self,
      source: Path,
      spec: TransformSpec,
      quality: int,
  ) -> tuple[bytes, str] | Rejection:
    try:
      with self.open_image(str(source)) as image:
        geometry = compute(spec, Size(image.width, image.height))
        if isinstance(geometry, Rejection):
          return geometry

        mime = loader_mime(image, source.name)
        resized = apply_geometry(image, geometry)
        self.log_debug(
            'resize param', {
                'original': dataclasses.asdict(Size(image.width, image.height)),
                'resized': dataclasses.asdict(geometry.resized),
                'crop': None if geometry.crop is None else dataclasses.asdict(geometry.crop),
                'quality': quality,
            })
        return encode(resized, mime, source.name, quality), mime
    except pyvips.Error as e:
      return Rejection(Failure.UNREADABLE_SOURCE, f'failed to process {source}: {e}')

  def serve_derivative(
      self,
      req: DerivativeRequest,
      headers: Mapping[str, str],
  ) -> InstantResponse:
    if not is_allowed(req.format_code, self.settings.size_whitelist):
      return self.rejected(
          Rejection(
              Failure.FORMAT_NOT_WHITELISTED, f'404, format code not found ({req.format_code}).'))

    # A listed code the parser cannot read is a whitelist misconfiguration.
    spec = parse(req.format_code)
    if isinstance(spec, Rejection):
      return self.rejected(spec)

    source = self.resolve_source(req.dir, req.basename)
    if source is None:
      return self.rejected(
          Rejection(
              Failure.SOURCE_NOT_FOUND,
              f"404, original file not found ({req.dir.rstrip('/')}/{req.basename})."))

    quality = parse_quality(get_header(headers, IMAGE_QUALITY), self.settings.default_quality)
    if isinstance(quality, Rejection):
      return self.rejected(quality)

    token = ValidationToken.from_source(
        req.dir, req.format_code, req.basename, source.stat().st_mtime)
    res_headers = self.response_headers(token, req.dir, headers)

    if not_modified(token, get_header(headers, IF_NONE_MATCH),
                    get_header(headers, IF_MODIFIED_SINCE)):
      return InstantResponse(status=HTTPStatus.NOT_MODIFIED, headers=res_headers)

    start_ns = time.time_ns()

    match self.render(source, spec, quality):
      case Rejection() as rejection:
        return self.rejected(rejection)
      case (bytes() as body, str() as mime):
        return InstantResponse(
            status=HTTPStatus.OK,
            body=body,
            content_type=mime,
            headers=res_headers,
            vips_us=(time.time_ns() - start_ns) // 1000,
            img_size=len(body))
      case _:
        raise Exception('system error')

  def process(self, path: HttpPath, headers: Mapping[str, str]) -> InstantResponse:
    """Answers a GET for ``path``.

    ``headers`` must use lower-case names. An existing file at ``path`` is
    served untouched; anything else is treated as
    ``/{dir}/{format_code}/{basename}`` and rendered from ``{dir}/{basename}``.
    """
    self.set_log_context(path)

    match self.classify(path):
      case Rejection() as rejection:
        return self.rejected(rejection)
      case OriginalAssetRequest() as req:
        res = self.serve_original(req, headers)
      case DerivativeRequest() as req:
        res = self.serve_derivative(req, headers)
      case _:
        raise Exception('system error')

    self.log_debug(
        'responded', {
            'status': int(res.status),
            'cache_control': res.headers.get('Cache-Control'),
            'content_type': res.content_type,
            'img_size': res.img_size,
            'vips_us': res.vips_us,
        })

    return res

  def analyse(self, path: HttpPath) -> InstantResponse:
    self.set_log_context(path)

    source = self.resolve_source(path)
    if source is None:
      return self.rejected(
          Rejection(Failure.SOURCE_NOT_FOUND, f'404, original file not found ({path}).'))

    token = ValidationToken.from_source('analyse', '', path, source.stat().st_mtime)

    try:
      with self.open_image(str(source)) as image:
        if Size(image.width, image.height).is_empty():
          return self.rejected(Rejection(Failure.ZERO_DIMENSION_SOURCE, f'{source} has no pixels'))
        rgb = to_srgb(image)
        body = {
            'average_color': average_color(rgb),
            'dominant_color': dominant_color(rgb),
            'file': path,
        }
    except pyvips.Error as e:
      return self.rejected(Rejection(Failure.UNREADABLE_SOURCE, f'failed to analyse {source}: {e}'))

    return InstantResponse(
        status=HTTPStatus.OK,
        body=json.dumps(body).encode(),
        content_type='application/json',
        headers=token.headers())
