"""
Use cases behind the HTTP surface: GL normalization, document ingest and
reprocess, manual linking, LLM review and the requirements report.
"""

from typing import Dict, List, Optional, Tuple

from loguru import logger

from . import spreadsheet
from .compliance import ComplianceReviewer
from .config import DISettings, Settings, normalize_endpoint
from .doc_intel import DocIntelClient
from .errors import DuplicateDocumentError, ValidationError
from .extractor import Extractor, is_supported_mime
from .linker import build_links
from .llm_client import LLMClient
from .models import Document
from .policy import requirements_report
from .store import Store


class AuditService:
    def __init__(self, settings: Settings, store: Store, llm: Optional[LLMClient] = None,
                 reviewer: Optional[ComplianceReviewer] = None):
        self.settings = settings
        self.store = store
        self.llm = llm if llm is not None else LLMClient(settings.llm)
        self.reviewer = reviewer or ComplianceReviewer(self.llm)

    # ---- collaborators ----------------------------------------------

    def di_settings(self) -> DISettings:
        """Environment DI settings with runtime overrides from the store applied."""
        base = self.settings.di
        override = self.store.di_config or {}
        return DISettings(
            endpoint=normalize_endpoint(override.get("endpoint") or base.endpoint),
            api_key=override.get("apiKey") or base.api_key,
            api_version=override.get("apiVersion") or base.api_version,
            model=override.get("model") or base.model,
            poll_interval=base.poll_interval,
            max_attempts=base.max_attempts,
            timeout=base.timeout,
        )

    def extractor(self) -> Extractor:
        di = self.di_settings()
        return Extractor(
            llm=self.llm,
            di=DocIntelClient(di),
            tesseract_enabled=self.settings.tesseract_enabled,
            di_model=di.model,
        )

    # ---- GL ----------------------------------------------------------

    def normalize_gl(self, data: bytes, filename: str, use_assist: bool = False,
                     allow_duplicate: bool = False) -> Dict:
        if not data:
            raise ValidationError("Uploaded spreadsheet is empty")
        if len(data) > self.settings.max_upload_bytes:
            raise ValidationError(f"{filename} exceeds the {self.settings.max_upload_bytes} byte limit")
        result = spreadsheet.normalize(data, filename, use_assist=use_assist, llm=self.llm)
        result["fileMetadata"] = self.store.register_gl_file(data, filename, allow_duplicate=allow_duplicate)
        return result

    # ---- documents ---------------------------------------------------

    def _check_upload(self, filename: str, mime_type: str, data: bytes):
        if not is_supported_mime(mime_type):
            raise ValidationError(f"{filename}: unsupported file type {mime_type!r} (image, PDF or DOCX)")
        if not data:
            raise ValidationError(f"{filename}: file is empty")
        if len(data) > self.settings.max_upload_bytes:
            raise ValidationError(f"{filename}: exceeds the {self.settings.max_upload_bytes} byte limit")

    def ingest_documents(self, files: List[Tuple[str, str, bytes]],
                         duplicate_policy: Optional[str] = None) -> List[Dict]:
        """Ingest ``(filename, mime_type, bytes)`` uploads; one result per file."""
        if not self.store.gl_entries:
            raise ValidationError("Upload a GL spreadsheet before supporting documents")
        if not files:
            raise ValidationError("No files uploaded")
        if len(files) > self.settings.max_files_per_ingest:
            raise ValidationError(f"At most {self.settings.max_files_per_ingest} files per upload")
        for filename, mime_type, data in files:
            self._check_upload(filename, mime_type, data)

        results = []
        for filename, mime_type, data in files:
            try:
                doc = self.store.add_document(data, mime_type, filename, duplicate_policy=duplicate_policy)
            except DuplicateDocumentError as e:
                logger.info(f"Duplicate upload {filename}: {e.code}")
                results.append({
                    "success": False,
                    "filename": filename,
                    "error": str(e),
                    "code": e.code,
                    "existingDocumentId": e.existing_document_id,
                })
                continue
            results.append(self._process(doc, data))
        return results

    def _process(self, doc: Document, data: bytes) -> Dict:
        extraction = self.extractor().extract(data, doc.mime_type, doc.filename)
        self.store.set_document_content(doc, extraction.text, extraction.doc_type, extraction.approvals)
        items = self.store.new_items(doc, extraction.items)
        links = build_links([i.to_dict() for i in items], self.store.gl_dicts(), self.store.matching_cfg)
        self.store.attach(doc, items, links)
        logger.info(f"{doc.filename}: type={doc.doc_type} items={len(items)} links={len(links)}")
        return {
            "success": True,
            "documentId": doc.id,
            "filename": doc.filename,
            "fileUrl": doc.file_url,
            "docType": doc.doc_type,
            "items": [i.to_dict() for i in items],
            "links": [l.to_dict() for l in links],
            "approvals": [a.to_dict() for a in doc.approvals],
            "ocrData": extraction.ocr,
            "steps": extraction.steps,
        }

    def reprocess(self, document_id: str) -> Dict:
        doc = self.store.get_document(document_id)
        data = self.store.read_upload(doc.id)
        return self._process(doc, data)

    # ---- review / reports -------------------------------------------

    def review(self, rows: List[Dict]) -> Dict:
        return self.reviewer.review(rows, self.store.attachments_for)

    def requirements(self) -> Dict:
        return requirements_report(list(self.store.gl_entries.values()), self.store.policy)
