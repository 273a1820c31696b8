from contextlib import asynccontextmanager

from fastapi import FastAPI
from database import dispose_engine
from webhook import router
import uvicorn

from logging_config import get_logger

logger = get_logger("api", "api.log")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Ingestion API up")
    yield
    await dispose_engine()
    logger.info("Ingestion API stopped")


app = FastAPI(title="Trip-Recorder", lifespan=lifespan)
app.include_router(router)

if __name__=="__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
