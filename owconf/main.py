import logging

from fastapi import FastAPI

from owconf import __version__
from owconf.config import settings
from owconf.routers import api

logging.basicConfig(encoding="utf-8", level=settings.log_level)

app = FastAPI(title="owconf", version=__version__)
app.include_router(api.router, prefix="/api/v1")
