import dataclasses
import re
from typing import Optional

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from imgresizer.typing import Environment, Visibility

LIVE_MAX_AGE = 24 * 60 * 60
EDGE_CONTROL_NO_STORE = 'no-store, max-age=0'

DEFAULT_STAGING_PATTERNS = '/staging/**'

# Lower bound of max-age -> stale-while-revalidate / stale-if-error window.
# The first row whose bound is reached wins.
STALE_WINDOWS = [
    (365 * 24 * 60 * 60, 2628000),
    (2628000, 24 * 60 * 60),
    (24 * 60 * 60, 60 * 60),
    (60 * 60, 60),
]

max_age_re = re.compile(r'(?:^|[\s,])max-age=(\d+)')


def staging_path_spec(patterns: str) -> Optional[PathSpec]:
  lines = [p.strip() for p in patterns.split(',') if p.strip() != '']
  if len(lines) == 0:
    return None
  return PathSpec.from_lines(GitWildMatchPattern, lines)


def classify(dir: str, staging_spec: Optional[PathSpec]) -> Environment:
  if staging_spec is None:
    return 'live'

  # Match the directory as a directory so that '/staging/**' also covers '/staging' itself.
  if staging_spec.match_file(f"{dir.strip('/')}/"):
    return 'staging'

  return 'live'


@dataclasses.dataclass(eq=True, frozen=True)
class CacheContext:
  environment: Environment
  override: Optional[str] = None

  @classmethod
  def from_request(
      cls,
      dir: str,
      staging_spec: Optional[PathSpec],
      override: Optional[str],
  ) -> 'CacheContext':
    if override is not None and override.strip() == '':
      override = None
    return cls(environment=classify(dir, staging_spec), override=override)


@dataclasses.dataclass(eq=True, frozen=True)
class CacheDirective:
  visibility: Visibility
  max_age: int
  extras: tuple[str, ...] = ()
  override: Optional[str] = None

  @property
  def value(self) -> str:
    if self.override is not None:
      return self.override

    return ', '.join([self.visibility, *self.extras, f'max-age={self.max_age}'])


def compute(
    context: CacheContext,
    live_max_age: int = LIVE_MAX_AGE,
    extensions: bool = True,
) -> CacheDirective:
  if context.override is not None:
    # Sent verbatim; the other fields only describe what the override would have replaced.
    return CacheDirective(
        visibility='private' if 'private' in context.override else 'public',
        max_age=parse_max_age(context.override) or 0,
        override=context.override)

  if context.environment == 'live':
    return CacheDirective(visibility='public', max_age=live_max_age)

  return CacheDirective(
      visibility='private', max_age=0, extras=('no-store',) if extensions else ())


def edge_control(cache_control: str) -> Optional[str]:
  if 'private' in cache_control:
    return EDGE_CONTROL_NO_STORE
  return None


def parse_max_age(cache_control: str) -> Optional[int]:
  m = max_age_re.search(cache_control)
  if m is None:
    return None
  return int(m[1])


def stale_window(max_age: int) -> int:
  for lower_bound, window in STALE_WINDOWS:
    if lower_bound <= max_age:
      return window
  return 0


def cache_headers(
    context: CacheContext,
    live_max_age: int = LIVE_MAX_AGE,
    extensions: bool = True,
) -> dict[str, str]:
  """Response headers telling browsers and edge caches how long to keep a response.

  With ``extensions`` disabled only Cache-Control is produced. Otherwise private
  responses also get an Edge-Control header forbidding storage on the edge, and
  responses cacheable for an hour or more get stale-while-revalidate and
  stale-if-error windows derived from their max-age.
  """
  cache_control = compute(context, live_max_age, extensions).value
  headers = {'Cache-Control': cache_control}

  if not extensions:
    return headers

  ec = edge_control(cache_control)
  if ec is not None:
    headers['Edge-Control'] = ec

  max_age = parse_max_age(cache_control)
  if max_age is not None:
    window = stale_window(max_age)
    if 0 < window:
      headers['Stale-While-Revalidate'] = str(window)
      headers['Stale-If-Error'] = str(window)

  return headers
