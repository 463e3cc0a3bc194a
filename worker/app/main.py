import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from worker.app.config import settings as C
from worker.app.routers import portfolio as portfolio_router
from worker.app.routers import status as status_router
from worker.app.routers import sync as sync_router

log = logging.getLogger("worker")


@asynccontextmanager
async def lifespan(_: FastAPI):
    log.info(
        "root=%r supabase=%s strategy=%s budget_ms=%d",
        C.DROPBOX_ROOT_PATH,
        C.SUPABASE_URL or "-",
        C.asset_strategy,
        C.SYNC_TIME_BUDGET_MS,
    )
    missing = C.missing_for_sync()
    if missing:
        # the read endpoint can still serve; triggers answer 500 until fixed
        log.warning("sync disabled until configured; missing: %s", ", ".join(missing))
    yield


app = FastAPI(title="folio-sync-worker", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=C.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

for r in (status_router.router, portfolio_router.router, sync_router.router):
    app.include_router(r)


@app.get("/")
async def root():
    return {"service": "folio-sync", "routes": sorted({route.path for route in app.routes})}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT_WORKER", "8090")))
