"""Main entry point for the koperasi loan service."""

import uvicorn

from components.core.config import get_settings
from restapi.router import create_app

app = create_app()

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run("main:app", reload=settings.DEBUG, log_level=settings.LOG_LEVEL.lower())
