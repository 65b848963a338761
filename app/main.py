from app.core.bootstrap import init

init()

from loguru import logger
from fastapi import FastAPI

from app.config import CORS_ORIGINS, CORS_ALLOW_CREDENTIALS
from app.core.lifespan import lifespan
from app.cors import apply_cors_middleware
from app.api.streams import router as streams_router
from app._version import __version__


app = FastAPI(title="StreamRelay", version=__version__, lifespan=lifespan)
apply_cors_middleware(
    app,
    origins=CORS_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
)
app.include_router(streams_router)  # resolve / manifest / segment / cache


# Healthcheck endpoint for CI/CD and monitoring
@app.get("/health")
async def healthcheck():
    return {"status": "ok"}


if __name__ == "__main__":
    from app.cli import run_server

    logger.info("Starting StreamRelay FastAPI server...")
    run_server(app)
