from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

import app_service as svc
from errors import register_error_handling
from routers.api_router import router

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    svc.log_cache_status()
    if os.getenv("SAHKOAPP_DISABLE_SCHEDULER") != "1":
        svc.start_refresh_scheduler()
    yield
    svc.reset_service()
    svc.release_scheduler_process_lock()


app = FastAPI(title="Sahkoapp API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handling(app, logger)
app.include_router(router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
