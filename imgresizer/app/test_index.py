import logging
import random
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from pyvips import Image  # type: ignore

from imgresizer.server.index import ImgServer, Settings

from .index import create_app

SIZE_WHITELIST = ['w100', 'h150', 'm200', 'w100h100']


def put_original(root: Path, path: str) -> None:
  dest = root / path
  dest.parent.mkdir(parents=True, exist_ok=True)
  image = (Image.black(400, 300, bands=3) + [30, 60, 90]).cast('uchar')
  image.copy(interpretation='srgb').write_to_file(str(dest))


@pytest.fixture
def client(tmp_path: Path) -> TestClient:
  root = tmp_path / 'source'
  for env in ['live', 'staging']:
    put_original(root, f'{env}/images/kitten.jpg')
    put_original(root, f'{env}/images/matz.jpg')

  settings = Settings(source_folder=root, size_whitelist=frozenset(SIZE_WHITELIST))
  return TestClient(create_app(ImgServer(logging.getLogger(__name__), settings)))


@pytest.fixture
def format_code() -> str:
  return random.choice(SIZE_WHITELIST)


def test_heartbeat(client: TestClient) -> None:
  res = client.get('/heartbeat')
  assert res.status_code == 200
  assert res.text == 'ok'


def test_original(client: TestClient) -> None:
  res = client.get('/live/images/kitten.jpg')
  assert res.status_code == 200
  assert res.headers['content-type'] == 'image/jpeg'
  assert res.headers['last-modified'] is not None
  assert res.headers['etag'] is not None


def test_original_not_found(client: TestClient) -> None:
  res = client.get('/live/images/matzwibble.jpg')
  assert res.status_code == 404
  assert 'cache-control' not in res.headers


def test_no_dir(client: TestClient) -> None:
  assert client.get('/live/bar.jpg').status_code == 404


def test_not_whitelisted(client: TestClient) -> None:
  assert client.get('/live/images/wrong_format/matz.jpg').status_code == 404


def test_source_not_found(client: TestClient, format_code: str) -> None:
  assert client.get(f'/live/images/{format_code}/bar.jpg').status_code == 404


@pytest.mark.parametrize('format_code', SIZE_WHITELIST)
def test_every_whitelisted_code(client: TestClient, format_code: str) -> None:
  res = client.get(f'/live/images/{format_code}/matz.jpg')
  assert res.status_code == 200
  assert res.headers['content-type'] == 'image/jpeg'
  assert len(res.content) > 0


def test_derivative_etag_is_stable(client: TestClient, format_code: str) -> None:
  first = client.get(f'/live/images/{format_code}/kitten.jpg')
  second = client.get(f'/live/images/{format_code}/kitten.jpg')
  assert first.status_code == second.status_code == 200
  assert first.headers['etag'] == second.headers['etag']


def test_derivative_not_modified(client: TestClient, format_code: str) -> None:
  first = client.get(f'/live/images/{format_code}/kitten.jpg')
  res = client.get(
      f'/live/images/{format_code}/kitten.jpg', headers={'If-None-Match': first.headers['etag']})
  assert res.status_code == 304
  assert res.content == b''


def test_live(client: TestClient, format_code: str) -> None:
  res = client.get(f'/live/images/{format_code}/kitten.jpg')
  assert res.status_code == 200
  assert 'public' in res.headers['cache-control']
  assert 'max-age=86400' in res.headers['cache-control']
  assert res.headers['stale-while-revalidate'] == '3600'
  assert res.headers['stale-if-error'] == '3600'


def test_staging(client: TestClient, format_code: str) -> None:
  res = client.get(f'/staging/images/{format_code}/kitten.jpg')
  assert res.status_code == 200
  assert 'private' in res.headers['cache-control']
  assert 'max-age=0' in res.headers['cache-control']
  assert res.headers['edge-control'] == 'no-store, max-age=0'
  assert 'stale-while-revalidate' not in res.headers
  assert 'stale-if-error' not in res.headers


@pytest.mark.parametrize('path', ['/live/images/w100/kitten.jpg', '/staging/images/kitten.jpg'])
def test_cache_control_override(client: TestClient, path: str) -> None:
  res = client.get(path, headers={'X-Cache-Control': 'private, max-age=60'})
  assert res.status_code == 200
  assert res.headers['cache-control'] == 'private, max-age=60'


def test_invalid_quality(client: TestClient) -> None:
  res = client.get('/live/images/w100/kitten.jpg', headers={'X-Image-Quality': 'best'})
  assert res.status_code == 400


def test_quality(client: TestClient) -> None:
  res = client.get('/live/images/w100/kitten.jpg', headers={'X-Image-Quality': '30'})
  assert res.status_code == 200


def test_analyse(client: TestClient) -> None:
  res = client.get('/analyse/live/images/kitten.jpg')
  assert res.status_code == 200
  body = res.json()
  assert body['file'] == '/live/images/kitten.jpg'
  assert body['average_color'].startswith('#')
  assert body['dominant_color'].startswith('#')
  assert res.headers['etag'] is not None


def test_analyse_not_found(client: TestClient) -> None:
  assert client.get('/analyse/live/images/nothing.jpg').status_code == 404


def test_head_derivative(client: TestClient) -> None:
  body = client.get('/live/images/w100/kitten.jpg')
  res = client.head('/live/images/w100/kitten.jpg')
  assert res.status_code == 200
  assert res.content == b''
  assert res.headers['etag'] == body.headers['etag']
  assert res.headers['cache-control'] == 'public, max-age=86400'
  assert res.headers['content-type'] == 'image/jpeg'
  assert res.headers['content-length'] == str(len(body.content))


def test_head_original(client: TestClient) -> None:
  res = client.head('/staging/images/kitten.jpg')
  assert res.status_code == 200
  assert res.content == b''
  assert res.headers['etag'] is not None
  assert res.headers['edge-control'] == 'no-store, max-age=0'


def test_head_not_found(client: TestClient) -> None:
  assert client.head('/live/images/w100/bar.jpg').status_code == 404


def test_head_heartbeat(client: TestClient) -> None:
  assert client.head('/heartbeat').status_code == 200


def test_head_analyse(client: TestClient) -> None:
  res = client.head('/analyse/live/images/kitten.jpg')
  assert res.status_code == 200
  assert res.content == b''
  assert res.headers['content-type'] == 'application/json'


@pytest.mark.parametrize(
    'path', ['/live/images/w100/kit%00ten.jpg', '/live/images/kit%00ten.jpg'],
    ids=['derivative', 'original'])
def test_null_byte(client: TestClient, path: str) -> None:
  assert client.get(path).status_code == 404
