"""
In-process entity graph: GL entries, documents, document items, links and
approvals, plus runtime config blobs.

The graph in memory is authoritative. When ``FAR_AUDIT_DB`` points at a
SQLite file every mutation is also written through ``state_store``; write
failures are logged and never undo the in-memory change. Without SQLite the
config blobs live in a JSON file and the graph starts empty on each run.
"""

import hashlib
import re
import shutil
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from . import state_store
from .config import Settings
from .config_loader import DEFAULT_POLICY, load_matching_config, load_policy
from .errors import DuplicateDocumentError, NotFoundError, ValidationError
from .file_store import FileConfigStore
from .linker import is_unallowable, summarize_item
from .models import Approval, DocAttachment, DocItem, Document, GLDocLink, GLEntry
from .normalizers import parse_amount, parse_date


DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000
SCOPES = ("gl", "docs", "all")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def file_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_filename(name: str) -> str:
    base = Path(name or "upload").name
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned or "upload"


def match_quality(score_pct: Optional[float]) -> Optional[str]:
    if score_pct is None:
        return None
    if score_pct >= 85:
        return "high"
    if score_pct >= 70:
        return "medium"
    return "low"


def _text(value) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


class Store:
    def __init__(self, settings: Settings, matching_cfg: Optional[Dict] = None):
        self.settings = settings
        self.matching_cfg = matching_cfg or load_matching_config()
        self._lock = threading.RLock()
        self.gl_entries: Dict[str, GLEntry] = {}
        self.documents: Dict[str, Document] = {}
        self.doc_items: Dict[str, DocItem] = {}
        self.links: Dict[Tuple[str, str], GLDocLink] = {}
        self.gl_files: Dict[str, Dict] = {}
        self.app_config: Dict = {"policy": load_policy()}
        self.di_config: Dict = {}
        self.file_config = FileConfigStore(settings.config_file)

    # ---- persistence -------------------------------------------------

    @property
    def durable(self) -> bool:
        return state_store.enabled()

    def _persist(self, fn: Callable, *args):
        if not self.durable:
            return
        try:
            fn(*args)
        except sqlite3.Error as e:
            logger.warning(f"SQLite write failed ({fn.__name__}): {e}")

    def load(self):
        """Rehydrate from SQLite when configured, else read the JSON config file."""
        with self._lock:
            configs: Dict[str, Dict] = {}
            if self.durable:
                try:
                    state_store.init_db()
                    data = state_store.load_all()
                    for key in ("app_config", "di_config", "gl_files"):
                        value = state_store.get_config(key)
                        if isinstance(value, dict):
                            configs[key] = value
                except sqlite3.Error as e:
                    logger.warning(f"SQLite unavailable, starting empty: {e}")
                else:
                    self.gl_entries = {e.id: e for e in data["gl_entries"]}
                    self.documents = {d.id: d for d in data["documents"]}
                    self.doc_items = {i.id: i for i in data["doc_items"]}
                    self.links = {l.key: l for l in data["links"]}
                    logger.info(
                        f"Loaded {len(self.gl_entries)} GL entries, {len(self.documents)} documents, "
                        f"{len(self.links)} links from SQLite"
                    )
            else:
                configs = self.file_config.load_all()

            if configs.get("app_config"):
                self.app_config = {**self.app_config, **configs["app_config"]}
            if configs.get("di_config"):
                self.di_config = configs["di_config"]
            if configs.get("gl_files"):
                self.gl_files = configs["gl_files"]
            self.recompute_derived_flags()

    def _save_config(self, key: str, value: Dict):
        if self.durable:
            self._persist(state_store.set_config, key, value)
        else:
            self.file_config.save(key, value)

    # ---- config blobs -----------------------------------------------

    @property
    def policy(self) -> Dict:
        return self.app_config.get("policy") or DEFAULT_POLICY

    def update_app_config(self, changes: Dict) -> Dict:
        if not isinstance(changes, dict):
            raise ValidationError("config must be an object")
        with self._lock:
            self.app_config = {**self.app_config, **changes}
            self._save_config("app_config", self.app_config)
            return self.app_config

    def update_di_config(self, changes: Dict) -> Dict:
        if not isinstance(changes, dict):
            raise ValidationError("di config must be an object")
        allowed = {"endpoint", "apiKey", "apiVersion", "model"}
        with self._lock:
            self.di_config = {**self.di_config, **{k: v for k, v in changes.items() if k in allowed}}
            self._save_config("di_config", self.di_config)
            return self.di_config

    # ---- GL ----------------------------------------------------------

    def register_gl_file(self, data: bytes, filename: str, allow_duplicate: bool = False) -> Dict:
        """Record an uploaded GL spreadsheet, refusing repeats unless allowed."""
        digest = file_digest(data)
        with self._lock:
            if not allow_duplicate:
                if digest in self.gl_files:
                    raise DuplicateDocumentError(DuplicateDocumentError.DUPLICATE_EXACT, None, filename)
                if any(m.get("filename") == filename for m in self.gl_files.values()):
                    raise DuplicateDocumentError(DuplicateDocumentError.DUPLICATE_NAME, None, filename)
            meta = {"filename": filename, "fileHash": digest, "size": len(data), "uploadedAt": _now()}
            self.gl_files[digest] = meta
            self._save_config("gl_files", self.gl_files)
            return meta

    def add_gl_entries(self, rows: List[Dict]) -> List[str]:
        entries = []
        for i, row in enumerate(rows):
            if not isinstance(row, dict):
                raise ValidationError(f"entries[{i}] must be an object")
            raw_amount = row.get("amount")
            # memo and subtotal lines come through the normalizer without an amount
            if raw_amount is None or (isinstance(raw_amount, str) and not raw_amount.strip()):
                signed = 0.0
            else:
                signed = parse_amount(raw_amount, signed=True)
            if signed is None:
                raise ValidationError(f"entries[{i}].amount must be a finite number")
            entries.append(GLEntry(
                id=_new_id(),
                amount=abs(signed),
                is_credit=bool(row.get("isCredit")) or signed < 0,
                created_at=_now(),
                account_number=_text(row.get("accountNumber")),
                description=_text(row.get("description")),
                date=parse_date(row.get("date")),
                category=_text(row.get("category")),
                vendor=_text(row.get("vendor")),
                contract_number=_text(row.get("contractNumber")),
            ))
        with self._lock:
            for e in entries:
                self.gl_entries[e.id] = e
            self._persist(state_store.save_gl_entries, entries)
            self.recompute_derived_flags()
        logger.info(f"Inserted {len(entries)} GL entries")
        return [e.id for e in entries]

    def get_gl(self, gl_id: str) -> GLEntry:
        entry = self.gl_entries.get(str(gl_id))
        if entry is None:
            raise NotFoundError(f"GL entry {gl_id} not found")
        return entry

    def list_gl(self, limit: int = DEFAULT_LIST_LIMIT, offset: int = 0) -> Dict:
        limit = max(1, min(int(limit or DEFAULT_LIST_LIMIT), MAX_LIST_LIMIT))
        offset = max(0, int(offset or 0))
        with self._lock:
            ordered = sorted(self.gl_entries.values(), key=lambda e: (e.date or "", e.id), reverse=True)
            rows = [e.to_dict() for e in ordered[offset:offset + limit]]
        return {"rows": rows, "limit": limit, "offset": offset, "total": len(ordered)}

    def gl_dicts(self) -> List[Dict]:
        with self._lock:
            return [e.to_dict() for e in self.gl_entries.values()]

    def delete_gl(self, gl_id: str):
        with self._lock:
            self.get_gl(gl_id)
            del self.gl_entries[gl_id]
            for key in [k for k in self.links if k[1] == gl_id]:
                del self.links[key]
            self._persist(state_store.delete_gl_entries, [gl_id])
            self.recompute_derived_flags()

    # ---- documents ---------------------------------------------------

    def find_duplicate(self, digest: str, filename: str) -> Optional[Tuple[str, Document]]:
        for doc in self.documents.values():
            if doc.file_hash == digest:
                return DuplicateDocumentError.DUPLICATE_EXACT, doc
        for doc in self.documents.values():
            if doc.filename == filename:
                return DuplicateDocumentError.DUPLICATE_NAME, doc
        return None

    def add_document(self, data: bytes, mime_type: str, filename: str,
                     duplicate_policy: Optional[str] = None) -> Document:
        """Create a Document for ``data`` and save the bytes under the upload dir.

        Identical bytes are always refused. A different payload under an
        existing filename is refused unless ``duplicate_policy == "replace"``,
        in which case the old document and everything derived from it goes.
        """
        digest = file_digest(data)
        with self._lock:
            dup = self.find_duplicate(digest, filename)
            if dup is not None:
                code, existing = dup
                if code == DuplicateDocumentError.DUPLICATE_EXACT or duplicate_policy != "replace":
                    raise DuplicateDocumentError(code, existing.id, filename)
                logger.info(f"Replacing document {existing.id} ({filename})")
                self.remove_document(existing.id)

            doc_id = _new_id()
            name = safe_filename(filename)
            folder = Path(self.settings.upload_dir) / doc_id
            folder.mkdir(parents=True, exist_ok=True)
            (folder / name).write_bytes(data)
            doc = Document(
                id=doc_id,
                filename=filename,
                mime_type=mime_type,
                file_hash=digest,
                created_at=_now(),
                file_url=f"/uploads/{doc_id}/{name}",
                size=len(data),
            )
            self.documents[doc_id] = doc
            self._persist(state_store.save_document, doc)
            return doc

    def upload_path(self, doc: Document) -> Path:
        return Path(self.settings.upload_dir) / doc.id / safe_filename(doc.filename)

    def read_upload(self, doc_id: str) -> bytes:
        doc = self.get_document(doc_id)
        path = self.upload_path(doc)
        if not path.exists():
            raise NotFoundError(f"Stored upload for document {doc_id} is missing")
        return path.read_bytes()

    def get_document(self, doc_id: str) -> Document:
        doc = self.documents.get(str(doc_id))
        if doc is None:
            raise NotFoundError(f"Document {doc_id} not found")
        return doc

    def _drop_derived(self, doc_id: str):
        item_ids = {i.id for i in self.doc_items.values() if i.document_id == doc_id}
        for item_id in item_ids:
            del self.doc_items[item_id]
        for key in [k for k in self.links if k[0] in item_ids]:
            del self.links[key]

    def remove_document(self, doc_id: str):
        with self._lock:
            doc = self.get_document(doc_id)
            self._drop_derived(doc_id)
            del self.documents[doc_id]
            for entry in self.gl_entries.values():
                entry.attached_documents = [a for a in entry.attached_documents if a.document_id != doc_id]
            shutil.rmtree(Path(self.settings.upload_dir) / doc.id, ignore_errors=True)
            self._persist(state_store.delete_documents, [doc_id])
            self.recompute_derived_flags()

    def new_items(self, doc: Document, raw_items: List[Dict]) -> List[DocItem]:
        return [
            DocItem(
                id=_new_id(),
                document_id=doc.id,
                kind=raw.get("kind"),
                vendor=raw.get("vendor"),
                date=raw.get("date"),
                amount=raw.get("amount"),
                currency=raw.get("currency"),
                details=raw.get("details") or {},
                text_excerpt=raw.get("textExcerpt"),
            )
            for raw in raw_items
        ]

    def set_document_content(self, doc: Document, text: Optional[str], doc_type: str,
                             approvals: List[Approval]):
        with self._lock:
            doc.text_content = text
            doc.doc_type = doc_type
            for a in approvals:
                if not a.id:
                    a.id = _new_id()
            doc.approvals = list(approvals)

    def attach(self, doc: Document, items: List[DocItem], links: List[GLDocLink]):
        """Store a document's items and links, then recompute GL flags."""
        with self._lock:
            touched = {l.gl_entry_id for l in self.links.values()
                       if self.doc_items.get(l.document_item_id) is not None
                       and self.doc_items[l.document_item_id].document_id == doc.id}
            self._drop_derived(doc.id)
            for item in items:
                self.doc_items[item.id] = item
            for link in links:
                if link.document_item_id in self.doc_items and link.gl_entry_id in self.gl_entries:
                    self.links[link.key] = link
            stored_links = [l for l in links if l.key in self.links]
            touched.update(l.gl_entry_id for l in stored_links)
            self.recompute_derived_flags()
            self._persist(state_store.replace_document, doc, items, stored_links,
                          [self.gl_entries[g] for g in sorted(touched) if g in self.gl_entries])

    # ---- links -------------------------------------------------------

    def link(self, document_item_id: str, gl_entry_id: str) -> GLDocLink:
        """Manual link with full confidence; existing links are returned unchanged."""

        with self._lock:
            item = self.doc_items.get(str(document_item_id))
            if item is None:
                raise NotFoundError(f"Document item {document_item_id} not found")
            self.get_gl(gl_entry_id)
            key = (item.id, str(gl_entry_id))
            if key in self.links:
                return self.links[key]
            link = GLDocLink(
                document_item_id=item.id,
                gl_entry_id=str(gl_entry_id),
                score=1.0,
                doc_summary=summarize_item(item.to_dict()),
                doc_flag_unallowable=is_unallowable(item.to_dict(), self.matching_cfg),
            )
            self.links[key] = link
            self._persist(state_store.save_links, [link])
            self.recompute_derived_flags()
            return link

    def unlink(self, document_item_id: str, gl_entry_id: str):
        key = (str(document_item_id), str(gl_entry_id))
        with self._lock:
            if key not in self.links:
                raise NotFoundError(f"No link between item {document_item_id} and GL {gl_entry_id}")
            del self.links[key]
            self._persist(state_store.delete_links, [key])
            self.recompute_derived_flags()

    def attach_document_to_gl(self, gl_id: str, doc_id: str) -> GLEntry:
        with self._lock:
            entry = self.get_gl(gl_id)
            doc = self.get_document(doc_id)
            if not any(a.document_id == doc.id for a in entry.attached_documents):
                entry.attached_documents.append(
                    DocAttachment(document_id=doc.id, filename=doc.filename, file_url=doc.file_url)
                )
            self.recompute_derived_flags()
            self._persist(state_store.save_gl_entries, [entry])
            return entry

    def detach_document_from_gl(self, gl_id: str, doc_id: str) -> GLEntry:
        with self._lock:
            entry = self.get_gl(gl_id)
            entry.attached_documents = [a for a in entry.attached_documents if a.document_id != doc_id]
            self.recompute_derived_flags()
            self._persist(state_store.save_gl_entries, [entry])
            return entry

    def attachments_for(self, gl_id: str) -> List[Dict]:
        """Documents supporting a GL line, via links and direct attachment."""
        with self._lock:
            out = []
            for link in self.links.values():
                if link.gl_entry_id != gl_id:
                    continue
                item = self.doc_items.get(link.document_item_id)
                doc = self.documents.get(item.document_id) if item else None
                if doc is None:
                    continue
                details = item.details if isinstance(item.details, dict) else {}
                out.append({
                    "documentItemId": item.id,
                    "documentId": doc.id,
                    "filename": doc.filename,
                    "mimeType": doc.mime_type,
                    "docType": doc.doc_type,
                    "processingMethod": details.get("processingMethod"),
                    "confidence": details.get("confidence"),
                    "vendor": item.vendor,
                    "date": item.date,
                    "amount": item.amount,
                    "summary": link.doc_summary,
                    "unallowable": link.doc_flag_unallowable,
                })
            entry = self.gl_entries.get(gl_id)
            for att in entry.attached_documents if entry else []:
                doc = self.documents.get(att.document_id)
                if doc is not None:
                    out.append({
                        "documentId": doc.id,
                        "filename": doc.filename,
                        "mimeType": doc.mime_type,
                        "docType": doc.doc_type,
                        "summary": None,
                        "unallowable": False,
                    })
            return out

    def list_document_items(self) -> Dict:
        with self._lock:
            return {
                "documents": [d.to_dict() for d in self.documents.values()],
                "items": [i.to_dict() for i in self.doc_items.values()],
                "links": [l.to_dict() for l in self.links.values()],
            }

    # ---- derived state ----------------------------------------------

    def recompute_derived_flags(self):
        with self._lock:
            by_gl: Dict[str, List[GLDocLink]] = {}
            for link in self.links.values():
                by_gl.setdefault(link.gl_entry_id, []).append(link)

            for entry in self.gl_entries.values():
                links = by_gl.get(entry.id, [])
                entry.attached_documents = [a for a in entry.attached_documents if a.document_id in self.documents]
                entry.attachments_count = len(links) + len(entry.attached_documents)
                entry.has_receipt = entry.attachments_count > 0

                doc_ids = {a.document_id for a in entry.attached_documents}
                for link in links:
                    item = self.doc_items.get(link.document_item_id)
                    if item is not None:
                        doc_ids.add(item.document_id)
                entry.approvals_count = sum(
                    len(self.documents[d].approvals) for d in doc_ids if d in self.documents
                )
                entry.has_approval = entry.approvals_count > 0

                if links:
                    best = max(links, key=lambda l: l.score)
                    entry.document_match_quality = match_quality(best.score * 100)
                    entry.doc_summary = best.doc_summary
                    entry.doc_flag_unallowable = any(l.doc_flag_unallowable for l in links)
                else:
                    entry.document_match_quality = None
                    entry.doc_summary = None
                    entry.doc_flag_unallowable = False

    def counts(self) -> Dict[str, int]:
        return {"gl": len(self.gl_entries), "docs": len(self.documents)}

    # ---- clearing ----------------------------------------------------

    def clear(self, scope: str):
        if scope not in SCOPES:
            raise ValidationError(f"scope must be one of {', '.join(SCOPES)}")
        with self._lock:
            if scope in ("docs", "all"):
                upload_root = Path(self.settings.upload_dir)
                for doc_id in list(self.documents):
                    shutil.rmtree(upload_root / doc_id, ignore_errors=True)
                self.documents.clear()
                self.doc_items.clear()
                self.links.clear()
                self._persist(state_store.delete_documents, None)
            if scope in ("gl", "all"):
                self.gl_entries.clear()
                self.links.clear()
                self.gl_files = {}
                self._persist(state_store.delete_gl_entries, None)
                self._save_config("gl_files", self.gl_files)
            self.recompute_derived_flags()
            logger.info(f"Cleared scope={scope}")
