import logging

from fastapi import Depends, FastAPI

from moon_registry.api.git_index import router as git_index_router
from moon_registry.api.packages import router as packages_router
from moon_registry.core.dependencies import get_registry
from moon_registry.services.registry import Registry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="MoonBit package registry mirror",
    version="0.1.0",
    description="Serves package metadata and archives mirrored from upstream registries.",
)


@app.get("/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


@app.get("/")
@app.get("/api")
async def info(registry: Registry = Depends(get_registry)) -> dict:
    """
    Registry name and the entry points a client needs.
    """
    return {
        "name": registry.config.registry.name,
        "version": app.version,
        "endpoints": {
            "git": "/git/index",
            "packages": "/user/{username}/{package}/{version}.zip",
            "health": "/health",
        },
    }


app.include_router(packages_router, tags=["packages"])
app.include_router(git_index_router, tags=["git"])


if __name__ == "__main__":
    """
    Allow running `python -m moon_registry.main` to start the Uvicorn
    development server for the registry in the current directory.
    """
    import uvicorn

    uvicorn.run(
        "moon_registry.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
    )
