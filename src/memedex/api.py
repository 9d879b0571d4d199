"""
memedex API.

- Items: list, get, update, delete, star, share
- Ingestion: upload, directory scan, description/embedding generation
- Search: vector (hybrid) and text modes
- Maintenance: stats, resets, cleanup, settings, health
"""

import asyncio
import io
import logging
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from PIL import Image

from . import __version__
from .config import Settings
from .description import DescriptionClient
from .errors import MemedexError
from .models.embedding import EmbeddingModel
from .models.schemas import (
    BatchResult,
    CleanupResult,
    DeleteResponse,
    DescriptionHealth,
    ErrorResponse,
    GenerateResponse,
    HealthResponse,
    ItemListResponse,
    ItemUpdate,
    MemeItem,
    ResetResponse,
    ScanProgress,
    ScanRequest,
    ScanStartedResponse,
    SearchResponse,
    SettingValue,
    ShareRequest,
    StatsResponse,
    UploadFileResult,
    UploadResponse,
    VersionResponse,
)
from .processing import ItemProcessor
from .query import ItemQuery
from .scanner import DirectoryScanner
from .search import HybridSearchEngine
from .storage import ItemStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ItemStore] = None,
    embedder: Optional[EmbeddingModel] = None,
    describer: Optional[DescriptionClient] = None,
) -> FastAPI:
    """Create memedex FastAPI application."""
    if settings is None:
        settings = Settings()
    assert settings is not None, "Settings must be provided or created"

    # Core components; shared by every request
    store = store or ItemStore(settings)
    embedder = embedder or EmbeddingModel(settings)
    describer = describer or DescriptionClient(settings)
    scanner = DirectoryScanner(store, settings)
    processor = ItemProcessor(store, describer, embedder, settings)
    search_engine = HybridSearchEngine(
        store, embedder, max_limit=settings.search_limit_max
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Initializing {settings.app_name}...")
        warm_up = None
        if settings.warm_up_embedding:
            warm_up = asyncio.create_task(embedder.warm_up())
        yield
        if warm_up is not None and not warm_up.done():
            warm_up.cancel()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Meme image index with hybrid semantic search",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.scanner = scanner
    app.state.store = store

    # Dependency providers
    def get_store() -> ItemStore:
        return store

    def get_scanner() -> DirectoryScanner:
        return scanner

    def get_processor() -> ItemProcessor:
        return processor

    def get_search_engine() -> HybridSearchEngine:
        return search_engine

    def get_describer() -> DescriptionClient:
        return describer

    @app.exception_handler(MemedexError)
    async def memedex_error_handler(request: Request, exc: MemedexError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path}: {exc}")
        body = ErrorResponse(error=str(exc), code=exc.code, retryable=exc.retryable)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    # ========================================
    # SYSTEM
    # ========================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> HealthResponse:
        """Liveness check."""
        return HealthResponse(ok=True)

    @app.get("/api/version", response_model=VersionResponse, tags=["System"])
    async def version() -> VersionResponse:
        return VersionResponse(version=__version__, app_name=settings.app_name)

    @app.get("/api/stats", response_model=StatsResponse, tags=["System"])
    async def stats(storage: ItemStore = Depends(get_store)) -> StatsResponse:
        """Item counts by status."""
        return storage.get_stats()

    @app.get("/api/ollama-status", response_model=DescriptionHealth, tags=["System"])
    async def ollama_status(
        client: DescriptionClient = Depends(get_describer),
    ) -> DescriptionHealth:
        """Vision model reachability."""
        return await client.health()

    @app.get("/api/settings", tags=["System"])
    async def list_settings(storage: ItemStore = Depends(get_store)) -> Dict[str, Any]:
        return storage.get_settings()

    @app.put("/api/settings/{key}", response_model=SettingValue, tags=["System"])
    async def put_setting(
        key: str,
        request: SettingValue,
        storage: ItemStore = Depends(get_store),
    ) -> SettingValue:
        storage.set_setting(key, request.value)
        return SettingValue(value=storage.get_setting(key))

    # ========================================
    # ITEMS
    # ========================================

    @app.get("/api/memes", response_model=ItemListResponse, tags=["Items"])
    async def list_memes(
        status: Optional[str] = None,
        starred: Optional[str] = None,
        limit: Optional[str] = None,
        offset: Optional[str] = None,
        storage: ItemStore = Depends(get_store),
    ) -> ItemListResponse:
        """List items, newest first."""
        query = ItemQuery.build(
            status=status, starred=starred, limit=limit, offset=offset
        )
        memes = storage.list_items(query)
        return ItemListResponse(memes=memes, count=len(memes))

    @app.get("/api/memes/{item_id}", response_model=MemeItem, tags=["Items"])
    async def get_meme(item_id: str, storage: ItemStore = Depends(get_store)) -> MemeItem:
        return storage.require_item(item_id)

    @app.patch("/api/memes/{item_id}", response_model=MemeItem, tags=["Items"])
    async def update_meme(
        item_id: str,
        request: ItemUpdate,
        storage: ItemStore = Depends(get_store),
    ) -> MemeItem:
        """Update title, description, tags, starred flag or status."""
        return storage.update_item(item_id, request)

    @app.delete("/api/memes/{item_id}", response_model=DeleteResponse, tags=["Items"])
    async def delete_meme(
        item_id: str, storage: ItemStore = Depends(get_store)
    ) -> DeleteResponse:
        """Delete an item record (keeps the image file)."""
        return DeleteResponse(success=storage.delete_item(item_id))

    @app.post("/api/memes/{item_id}/star", response_model=MemeItem, tags=["Items"])
    async def star_meme(item_id: str, storage: ItemStore = Depends(get_store)) -> MemeItem:
        return storage.toggle_star(item_id)

    @app.post("/api/memes/{item_id}/share", response_model=MemeItem, tags=["Items"])
    async def share_meme(
        item_id: str,
        request: ShareRequest,
        storage: ItemStore = Depends(get_store),
    ) -> MemeItem:
        """Record a share in the item's history."""
        return storage.append_share(item_id, request.url, request.text_boxes)

    # ========================================
    # PROCESSING
    # ========================================

    @app.post(
        "/api/memes/{item_id}/generate",
        response_model=GenerateResponse,
        tags=["Processing"],
    )
    async def generate_meme(
        item_id: str, items: ItemProcessor = Depends(get_processor)
    ) -> GenerateResponse:
        """Describe and embed one item."""
        item = await items.generate(item_id)
        return GenerateResponse(success=True, item=item)

    @app.post("/api/generate-pending", response_model=BatchResult, tags=["Processing"])
    async def generate_pending(
        items: ItemProcessor = Depends(get_processor),
    ) -> BatchResult:
        """Describe and embed pending items sequentially."""
        return await items.generate_pending()

    @app.post("/api/reset-processing", response_model=ResetResponse, tags=["Processing"])
    async def reset_processing(
        items: ItemProcessor = Depends(get_processor),
    ) -> ResetResponse:
        return ResetResponse(reset=items.reset_processing())

    @app.post("/api/reset-errors", response_model=ResetResponse, tags=["Processing"])
    async def reset_errors(items: ItemProcessor = Depends(get_processor)) -> ResetResponse:
        return ResetResponse(reset=items.reset_errors())

    @app.post("/api/cleanup", response_model=CleanupResult, tags=["Processing"])
    async def cleanup(storage: ItemStore = Depends(get_store)) -> CleanupResult:
        """Delete items whose image file is gone."""
        return await asyncio.to_thread(storage.cleanup_missing_files)

    # ========================================
    # SEARCH
    # ========================================

    @app.get("/api/search", response_model=SearchResponse, tags=["Search"])
    async def search(
        q: str = "",
        mode: str = "vector",
        limit: int = 20,
        engine: HybridSearchEngine = Depends(get_search_engine),
    ) -> SearchResponse:
        """Hybrid vector search or full-text search."""
        results = await engine.search(q, mode=mode, limit=limit)
        return SearchResponse(results=results)

    # ========================================
    # INGESTION
    # ========================================

    @app.post("/api/upload", response_model=UploadResponse, tags=["Ingestion"])
    async def upload(
        file: List[UploadFile] = File(...),
        storage: ItemStore = Depends(get_store),
    ) -> UploadResponse:
        """Store uploaded images and register them as pending items."""
        upload_dir = Path(settings.upload_dir)

        def store_upload(name: str, content_type: str, data: bytes) -> UploadFileResult:
            try:
                with Image.open(io.BytesIO(data)) as image:
                    width, height = image.size
            except (OSError, Image.DecompressionBombError) as e:
                return UploadFileResult(
                    name=name, success=False, error=f"Invalid image: {e}"
                )

            suffix = Path(name).suffix or f".{content_type.split('/', 1)[1]}"
            target = upload_dir / f"{secrets.token_urlsafe(9)}{suffix.lower()}"
            try:
                upload_dir.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
                item = storage.add_item(
                    str(target),
                    title=Path(name).stem,
                    meta={
                        "filesize": len(data),
                        "format": suffix.lstrip(".").lower(),
                        "width": width,
                        "height": height,
                    },
                )
            except (OSError, MemedexError) as e:
                logger.error(f"Upload of {name} failed: {e}")
                return UploadFileResult(name=name, success=False, error=str(e))

            return UploadFileResult(name=name, success=True, id=item.id)

        results: List[UploadFileResult] = []
        for upload_file in file:
            name = upload_file.filename or "upload"
            content_type = upload_file.content_type or ""
            if not content_type.startswith("image/"):
                results.append(
                    UploadFileResult(name=name, success=False, error="Not an image")
                )
                continue

            data = await upload_file.read()
            results.append(
                await asyncio.to_thread(store_upload, name, content_type, data)
            )

        uploaded = sum(1 for r in results if r.success)
        return UploadResponse(
            uploaded=uploaded, failed=len(results) - uploaded, results=results
        )

    @app.post("/api/scan", response_model=ScanStartedResponse, tags=["Ingestion"])
    async def start_scan(
        background_tasks: BackgroundTasks,
        request: Optional[ScanRequest] = None,
        directory_scanner: DirectoryScanner = Depends(get_scanner),
    ) -> ScanStartedResponse:
        """Start a background scan; 409 if one is already running."""
        directory = (request.directory if request else None) or str(
            settings.scan_directory
        )
        directory_scanner.begin()

        def run_scan() -> None:
            try:
                directory_scanner.run(directory)
            except Exception as e:
                logger.error(f"Scan error: {e}")

        background_tasks.add_task(run_scan)
        return ScanStartedResponse(started=True, directory=directory)

    @app.get("/api/scan/status", response_model=ScanProgress, tags=["Ingestion"])
    async def scan_status(
        directory_scanner: DirectoryScanner = Depends(get_scanner),
    ) -> ScanProgress:
        return directory_scanner.progress

    return app
