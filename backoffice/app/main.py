from fastapi import FastAPI

from backoffice.app.api.errors import setup_exception_handlers
from backoffice.app.api.v1.router import router as v1_router
from backoffice.app.core.config import PROJECT_NAME, VERSION
from backoffice.app.core.logging_config import configure_logging

configure_logging()

app = FastAPI(title=PROJECT_NAME, version=VERSION)
setup_exception_handlers(app)
app.include_router(v1_router, prefix="/v1")
