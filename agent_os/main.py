import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_os.config import settings
from agent_os.logging_config import setup_logging
from agent_os.routers import events

setup_logging(settings.log_level)

app = FastAPI(
    title="Agent OS",
    description="Policy-constrained WhatsApp agent runtime",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events.router)


@app.get("/health")
def health():
    return {"status": "ok"}
