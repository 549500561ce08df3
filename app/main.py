from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

from app.storage.vault import VaultStorage
from app.settings import settings
from app.routers.image_service import router as image_router
from app.routers.albums import router as album_router
from app.exceptions import add_exception_handlers

logging.basicConfig(level=settings.log_level)
log = logging.getLogger("image-vault")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
        Async context manager for FastAPI application lifecycle events.
        Opens and closes the vault storage for the application.
    """
    # Initialize resources
    app.state.vault = VaultStorage()
    yield
    # Cleanup resources
    app.state.vault.close()

# Initialize App
app = FastAPI(
    title=settings.app_title,
    lifespan=lifespan,
    description="Encrypted Image Vault",
    root_path = "/api/v1"
)

# Add exception handlers
add_exception_handlers(app)

# CORS - Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add the routers
app.include_router(image_router)
app.include_router(album_router)

# Check Health
@app.get("/")
def read_root():
    """
        Default end point

    """
    return "Image Vault is running."

def run(host: str = "127.0.0.1", port: int = 8000, reload: bool = False):
    uvicorn.run("app.main:app", host=host, port=port, reload=reload)

if __name__ == "__main__":
    run(host="0.0.0.0", reload=True)
