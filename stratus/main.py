from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from stratus.api import deployments
from stratus.api.utils import register_exception_handlers
from stratus.db import engine, init_db
from stratus.logging_config import configure_logging

configure_logging()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db(engine)
    yield


app = FastAPI(
    title="Stratus",
    description="Deployment records and approvals for CloudFormation environments",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


app.include_router(deployments.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("stratus.main:app", host="0.0.0.0", port=8001, log_level="info", reload=True)
