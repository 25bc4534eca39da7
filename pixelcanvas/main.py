import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from pixelcanvas.api.v1.routes import router as api_v1_router

logger = logging.getLogger(__name__)

ENV_PATH = Path(__file__).parent.parent / ".env"


def load_environment(env_path: Path = ENV_PATH) -> bool:
    """
    Load settings from a .env file next to the project, if present.

    Values already set in the process environment win, so deployments can
    override the file.
    """
    if not env_path.exists():
        logger.info(".env file not found at %s; using process environment only", env_path)
        return False

    load_dotenv(dotenv_path=env_path, override=False)
    logger.info("Loaded environment from %s", env_path)
    if not os.environ.get("REPLICATE_API_TOKEN"):
        logger.warning("REPLICATE_API_TOKEN not set; background updates will fail until it is")
    return True


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app() -> FastAPI:
    """
    Application factory for the Pixel Canvas API.

    Keeping this as a separate function makes it easier to extend
    configuration and testing later.
    """
    app = FastAPI(
        title="Pixel Canvas API",
        version="0.1.0",
        description="Cell extraction, seam-blended compositing and background updates for the shared canvas.",
    )

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", tags=["health"])
    async def root_health_check() -> dict:
        """Simple root health check endpoint."""
        return {"status": "ok"}

    app.include_router(api_v1_router)

    return app


configure_logging()
load_environment()
app = create_app()
