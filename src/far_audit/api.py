from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from loguru import logger
from pydantic import BaseModel

from .config import Settings
from .errors import (
    ConfigurationError,
    DuplicateDocumentError,
    FarAuditError,
    NotFoundError,
    ValidationError,
)
from .logging_setup import configure_logging
from .service import AuditService
from .store import Store


class GLEntriesIn(BaseModel):
    entries: List[Dict[str, Any]]


class LinkIn(BaseModel):
    documentItemId: str
    glEntryId: str


class DocumentRef(BaseModel):
    documentId: str


class ReviewIn(BaseModel):
    rows: List[Dict[str, Any]]


def _error(status: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": str(exc), **extra})


def register_error_handlers(app: FastAPI):
    @app.exception_handler(DuplicateDocumentError)
    async def duplicate_handler(request: Request, exc: DuplicateDocumentError):
        return _error(400, exc, code=exc.code, existingDocumentId=exc.existing_document_id)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(400, exc)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(404, exc)

    @app.exception_handler(ConfigurationError)
    async def config_handler(request: Request, exc: ConfigurationError):
        return _error(503, exc)

    @app.exception_handler(FarAuditError)
    async def generic_handler(request: Request, exc: FarAuditError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error(500, exc)


def build_router(service: AuditService) -> APIRouter:
    router = APIRouter()
    store = service.store

    @router.get("/health")
    def health():
        return {"ok": True, "counts": store.counts()}

    # ---- GL ----

    @router.post("/gl/normalize")
    def normalize_gl(
        file: UploadFile = File(...),
        useAssist: bool = Form(False),
        allowDuplicate: bool = Form(False),
    ):
        data = file.file.read()
        return service.normalize_gl(data, file.filename or "upload.csv", use_assist=useAssist,
                                    allow_duplicate=allowDuplicate)

    @router.post("/gl")
    def add_gl(body: GLEntriesIn):
        ids = store.add_gl_entries(body.entries)
        return {"inserted": len(ids), "ids": ids}

    @router.get("/gl")
    def list_gl(limit: int = Query(100), offset: int = Query(0)):
        return store.list_gl(limit=limit, offset=offset)

    @router.delete("/gl")
    def clear_gl():
        store.clear("gl")
        return {"ok": True}

    @router.delete("/gl/{gl_id}")
    def delete_gl(gl_id: str):
        store.delete_gl(gl_id)
        return {"ok": True}

    @router.post("/gl/{gl_id}/documents")
    def attach_document(gl_id: str, body: DocumentRef):
        return store.attach_document_to_gl(gl_id, body.documentId).to_dict()

    @router.delete("/gl/{gl_id}/documents/{document_id}")
    def detach_document(gl_id: str, document_id: str):
        return store.detach_document_from_gl(gl_id, document_id).to_dict()

    # ---- documents ----

    @router.post("/docs/ingest")
    def ingest(
        files: List[UploadFile] = File(...),
        duplicatePolicy: Optional[str] = Form(None),
    ):
        uploads = [(f.filename or "upload", f.content_type or "", f.file.read()) for f in files]
        return {"results": service.ingest_documents(uploads, duplicate_policy=duplicatePolicy)}

    @router.get("/docs")
    def list_docs():
        return store.list_document_items()

    @router.delete("/docs")
    def clear_docs():
        store.clear("docs")
        return {"ok": True}

    @router.post("/docs/link")
    def link(body: LinkIn):
        return store.link(body.documentItemId, body.glEntryId).to_dict()

    @router.delete("/docs/link")
    def unlink(body: LinkIn):
        store.unlink(body.documentItemId, body.glEntryId)
        return {"ok": True}

    @router.post("/docs/reprocess")
    def reprocess(body: DocumentRef):
        return service.reprocess(body.documentId)

    @router.delete("/all")
    def clear_all():
        store.clear("all")
        return {"ok": True}

    # ---- review / reports ----

    @router.post("/llm-review")
    def llm_review(body: ReviewIn):
        return service.review(body.rows)

    @router.get("/requirements")
    def requirements():
        store.recompute_derived_flags()
        return service.requirements()

    # ---- config ----

    @router.get("/config")
    def get_config():
        return store.app_config

    @router.put("/config")
    def put_config(body: Dict[str, Any]):
        return store.update_app_config(body)

    @router.get("/di-config")
    def get_di_config():
        return service.di_settings().public_dict()

    @router.put("/di-config")
    def put_di_config(body: Dict[str, Any]):
        store.update_di_config(body)
        return service.di_settings().public_dict()

    return router


def create_app(settings: Optional[Settings] = None, service: Optional[AuditService] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if service is None:
        store = Store(settings)
        store.load()
        service = AuditService(settings, store)

    app = FastAPI(title="FAR Audit API", description="GL evidence linking and FAR Part 31 review", version="0.1.0")
    register_error_handlers(app)
    app.include_router(build_router(service))
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=str(settings.upload_dir), check_dir=False), name="uploads")
    app.state.service = service
    return app


def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_file)
    logger.info(f"Starting FAR audit API on {settings.host}:{settings.port}")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
