from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from .config import settings
from .routers import formulas, modules, units, workspace

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger("estimator")

app = FastAPI(
    title=settings.APP_NAME,
    description="Formula and dependency resolution engine for module-based cost estimates",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(units.router, prefix="/api")
app.include_router(formulas.router, prefix="/api")
app.include_router(modules.router, prefix="/api")
app.include_router(workspace.router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "ok", "app": settings.APP_NAME}
