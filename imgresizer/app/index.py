from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from imgresizer.server.index import ImgServer, InstantResponse
from imgresizer.typing import HttpPath

METHODS = ['GET', 'HEAD']


def to_response(res: InstantResponse, method: str = 'GET') -> Response:
  body = res.body or b''
  headers = dict(res.headers)
  if method == 'HEAD':
    # Same headers as GET, including the length of the body left out.
    headers['content-length'] = str(len(body))
    body = b''

  return Response(
      content=body,
      status_code=res.status,
      headers=headers,
      media_type=res.content_type)


def create_app(server: ImgServer) -> FastAPI:
  """Builds the HTTP surface in front of ``server``.

  Routes are plain functions so that libvips work runs on the worker thread pool
  instead of the event loop.
  """
  app = FastAPI(title='imgresizer', docs_url=None, redoc_url=None, openapi_url=None)

  @app.api_route('/heartbeat', methods=METHODS, response_class=PlainTextResponse)
  def heartbeat() -> str:
    return 'ok'

  @app.api_route('/analyse/{path:path}', methods=METHODS)
  def analyse(path: str, request: Request) -> Response:
    return to_response(server.analyse(HttpPath(f'/{path}')), request.method)

  @app.api_route('/{path:path}', methods=METHODS)
  def image(path: str, request: Request) -> Response:
    # Starlette header names are already lower-case.
    headers = {k: v for k, v in request.headers.items()}
    return to_response(server.process(HttpPath(f'/{path}'), headers), request.method)

  return app
