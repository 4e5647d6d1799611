"""
Makos credits API.

Mounts the credits, billing, webhook and cron routers plus the Inngest
serve endpoint at /api/inngest.
"""

from dotenv import load_dotenv
load_dotenv()

import os
import logging
from datetime import datetime, timezone

import inngest.fast_api
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.inngest.client import inngest_client
from app.inngest.functions import all_functions
from app.routers import billing, credits, cron, webhooks

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Makos Credits API", version="1.0.0")

allowed_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(credits.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(cron.router)

inngest.fast_api.serve(app, inngest_client, all_functions)


@app.get("/health", tags=["system"])
async def health_check():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
