"""
SleepFactor decay service entry point.

  uvicorn sleepfactor.main:app --host 0.0.0.0 --port 8000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sleepfactor.api.routes import router
from sleepfactor.config import LOG_LEVEL
from sleepfactor.core.database import init_db

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="SleepFactor Decay Service",
    description="Residual substance levels at habitual bedtime from consumption logs.",
    lifespan=lifespan,
)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
