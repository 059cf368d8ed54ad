"""
Sandbox Codex - HTTP server.
FastAPI bridge to the AgentLoop.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI

from config import app_config
from web import api

# ============================================================
# FastAPI application
# ============================================================

app = FastAPI(title=app_config.title)
app.include_router(api.router)
