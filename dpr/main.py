"""ASGI entry point: ``uvicorn dpr.main:app``."""

from __future__ import annotations

import logging

from .api import create_app
from .docker_ops import DockerDriver

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app(DockerDriver())
