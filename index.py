import os
import sys

import uvicorn
from fastapi import FastAPI

from imgresizer.app.index import create_app
from imgresizer.server.index import ImgServer, Settings, init_logging

logger = init_logging()


def create_app_from_env() -> FastAPI:
  settings = Settings.from_env(logger, os.environ)
  if settings is None:
    sys.exit(1)

  logger.info({
      'message': 'settings loaded',
      'source_folder': str(settings.source_folder),
      'size_whitelist': sorted(settings.size_whitelist),
      'cache_extensions': settings.cache_extensions,
  })

  return create_app(ImgServer(logger, settings))


if __name__ == '__main__':
  uvicorn.run(
      create_app_from_env(),
      host=os.environ.get('IMGRESIZER_HOST', '0.0.0.0'),
      port=int(os.environ.get('IMGRESIZER_PORT', '8000')))
