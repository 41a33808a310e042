import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import Approval, DocAttachment, DocItem, Document, GLDocLink, GLEntry


def _get_db_path() -> Optional[str]:
    """Read the DB path from the environment on every call so tests can monkeypatch it."""
    return os.getenv("FAR_AUDIT_DB") or os.getenv("SQLITE_PATH") or None


def enabled() -> bool:
    return bool(_get_db_path())


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path())
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA foreign_keys=OFF;")
    try:
        yield con
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()


def init_db():
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS gl_entries (
              id TEXT PRIMARY KEY,
              account_number TEXT,
              description TEXT,
              amount REAL,
              date TEXT,
              category TEXT,
              vendor TEXT,
              contract_number TEXT,
              is_credit INTEGER DEFAULT 0,
              created_at TEXT,
              doc_summary TEXT,
              doc_flag_unallowable INTEGER DEFAULT 0,
              attached_documents_json TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
              id TEXT PRIMARY KEY,
              filename TEXT,
              mime_type TEXT,
              file_hash TEXT,
              text_content TEXT,
              created_at TEXT,
              doc_type TEXT,
              file_url TEXT,
              size INTEGER
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS document_approvals (
              id TEXT PRIMARY KEY,
              document_id TEXT,
              approver TEXT,
              title TEXT,
              date TEXT,
              decision TEXT,
              comments TEXT,
              target_type TEXT,
              summary TEXT,
              confidence REAL
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS doc_items (
              id TEXT PRIMARY KEY,
              document_id TEXT,
              kind TEXT,
              vendor TEXT,
              date TEXT,
              amount REAL,
              currency TEXT,
              details_json TEXT,
              text_excerpt TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS gl_doc_links (
              document_item_id TEXT,
              gl_entry_id TEXT,
              score REAL,
              doc_summary TEXT,
              doc_flag_unallowable INTEGER DEFAULT 0,
              discrepancies_json TEXT,
              PRIMARY KEY (document_item_id, gl_entry_id)
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_config (
              key TEXT PRIMARY KEY,
              value_json TEXT,
              updated_at TEXT
            );
            """
        )


def _write_gl_entries(con, entries: Iterable[GLEntry]):
    rows = [
        (
            e.id, e.account_number, e.description, e.amount, e.date, e.category, e.vendor,
            e.contract_number, int(e.is_credit), e.created_at, e.doc_summary, int(e.doc_flag_unallowable),
            json.dumps([a.to_dict() for a in e.attached_documents]),
        )
        for e in entries
    ]
    if not rows:
        return
    con.executemany(
        "INSERT OR REPLACE INTO gl_entries(id, account_number, description, amount, date, category, vendor, "
            "contract_number, is_credit, created_at, doc_summary, doc_flag_unallowable, attached_documents_json) "
            "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
        rows,
    )


def save_gl_entries(entries: Iterable[GLEntry]):
    with _conn() as con:
        _write_gl_entries(con, entries)


def delete_gl_entries(ids: Optional[List[str]] = None):
    """Delete the given GL entries and their links; all of them when ``ids`` is None."""
    with _conn() as con:
        if ids is None:
            con.execute("DELETE FROM gl_entries")
            con.execute("DELETE FROM gl_doc_links")
            return
        for gl_id in ids:
            con.execute("DELETE FROM gl_entries WHERE id=?", (gl_id,))
            con.execute("DELETE FROM gl_doc_links WHERE gl_entry_id=?", (gl_id,))


def _write_document(con, doc: Document):
    con.execute(
        "INSERT OR REPLACE INTO documents(id, filename, mime_type, file_hash, text_content, created_at, "
        "doc_type, file_url, size) VALUES (?,?,?,?,?,?,?,?,?)",
        (doc.id, doc.filename, doc.mime_type, doc.file_hash, doc.text_content, doc.created_at,
         doc.doc_type, doc.file_url, doc.size),
    )
    con.execute("DELETE FROM document_approvals WHERE document_id=?", (doc.id,))
    con.executemany(
        "INSERT OR REPLACE INTO document_approvals(id, document_id, approver, title, date, decision, comments, "
        "target_type, summary, confidence) VALUES (?,?,?,?,?,?,?,?,?,?)",
        [
            (a.id, doc.id, a.approver, a.title, a.date, a.decision, a.comments, a.target_type, a.summary,
             a.confidence)
            for a in doc.approvals
        ],
    )


def _delete_document_rows(con, doc_id: str):
    con.execute(
        "DELETE FROM gl_doc_links WHERE document_item_id IN (SELECT id FROM doc_items WHERE document_id=?)",
        (doc_id,),
    )
    con.execute("DELETE FROM doc_items WHERE document_id=?", (doc_id,))
    con.execute("DELETE FROM document_approvals WHERE document_id=?", (doc_id,))
    con.execute("DELETE FROM documents WHERE id=?", (doc_id,))


def save_document(doc: Document, items: Iterable[DocItem] = (), links: Iterable[GLDocLink] = ()):
    """Write a document with its approvals, items and links in one transaction."""
    with _conn() as con:
        _write_document(con, doc)
        _write_items(con, items)
        _write_links(con, links)


def replace_document(doc: Document, items: Iterable[DocItem], links: Iterable[GLDocLink],
                     gl_entries: Iterable[GLEntry] = ()):
    """Swap a document's derived rows and the touched GL entries in one transaction."""
    with _conn() as con:
        _delete_document_rows(con, doc.id)
        _write_document(con, doc)
        _write_items(con, items)
        _write_links(con, links)
        _write_gl_entries(con, gl_entries)


def _write_items(con, items: Iterable[DocItem]):
    con.executemany(
        "INSERT OR REPLACE INTO doc_items(id, document_id, kind, vendor, date, amount, currency, details_json, "
        "text_excerpt) VALUES (?,?,?,?,?,?,?,?,?)",
        [
            (i.id, i.document_id, i.kind, i.vendor, i.date, i.amount, i.currency,
             json.dumps(i.details, ensure_ascii=False, default=str), i.text_excerpt)
            for i in items
        ],
    )


def _write_links(con, links: Iterable[GLDocLink]):
    con.executemany(
        "INSERT OR REPLACE INTO gl_doc_links(document_item_id, gl_entry_id, score, doc_summary, "
        "doc_flag_unallowable, discrepancies_json) VALUES (?,?,?,?,?,?)",
        [
            (l.document_item_id, l.gl_entry_id, l.score, l.doc_summary, int(l.doc_flag_unallowable),
             json.dumps(l.discrepancies, default=str))
            for l in links
        ],
    )


def save_links(links: Iterable[GLDocLink]):
    with _conn() as con:
        _write_links(con, links)


def delete_links(pairs: Iterable[Tuple[str, str]]):
    with _conn() as con:
        con.executemany(
            "DELETE FROM gl_doc_links WHERE document_item_id=? AND gl_entry_id=?",
            list(pairs),
        )


def delete_documents(ids: Optional[List[str]] = None):
    """Cascade-delete documents with their approvals, items and those items' links."""
    with _conn() as con:
        if ids is None:
            for table in ("documents", "document_approvals", "doc_items", "gl_doc_links"):
                con.execute(f"DELETE FROM {table}")
            return
        for doc_id in ids:
            _delete_document_rows(con, doc_id)


def set_config(key: str, value: Any):
    with _conn() as con:
        con.execute(
            "INSERT OR REPLACE INTO kv_config(key, value_json, updated_at) VALUES (?,?,?)",
            (key, json.dumps(value, ensure_ascii=False), datetime.utcnow().isoformat()),
        )


def get_config(key: str) -> Optional[Any]:
    with _conn() as con:
        cur = con.execute("SELECT value_json FROM kv_config WHERE key=?", (key,))
        row = cur.fetchone()
        if not row or not row[0]:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            return None


def _loads(text: Optional[str], default):
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return default


def load_all() -> Dict[str, list]:
    """Rehydrate every table into model objects."""
    with _conn() as con:
        gl = []
        for r in con.execute(
            "SELECT id, account_number, description, amount, date, category, vendor, contract_number, is_credit, "
            "created_at, doc_summary, doc_flag_unallowable, attached_documents_json FROM gl_entries"
        ):
            gl.append(GLEntry(
                id=r[0], account_number=r[1], description=r[2], amount=r[3] or 0.0, date=r[4], category=r[5],
                vendor=r[6], contract_number=r[7], is_credit=bool(r[8]), created_at=r[9], doc_summary=r[10],
                doc_flag_unallowable=bool(r[11]),
                attached_documents=[
                    DocAttachment(document_id=a.get("documentId"), filename=a.get("filename"),
                                  file_url=a.get("fileUrl"))
                    for a in _loads(r[12], []) if isinstance(a, dict) and a.get("documentId")
                ],
            ))

        approvals: Dict[str, List[Approval]] = {}
        for r in con.execute(
            "SELECT id, document_id, approver, title, date, decision, comments, target_type, summary, confidence "
            "FROM document_approvals"
        ):
            approvals.setdefault(r[1], []).append(Approval(
                id=r[0], approver=r[2], title=r[3], date=r[4], decision=r[5] or "unknown", comments=r[6],
                target_type=r[7], summary=r[8], confidence=r[9] if r[9] is not None else 0.5,
            ))

        docs = [
            Document(
                id=r[0], filename=r[1], mime_type=r[2], file_hash=r[3], text_content=r[4], created_at=r[5],
                doc_type=r[6] or "unknown", file_url=r[7], size=r[8] or 0, approvals=approvals.get(r[0], []),
            )
            for r in con.execute(
                "SELECT id, filename, mime_type, file_hash, text_content, created_at, doc_type, file_url, size "
                "FROM documents"
            )
        ]

        items = [
            DocItem(
                id=r[0], document_id=r[1], kind=r[2], vendor=r[3], date=r[4], amount=r[5], currency=r[6],
                details=_loads(r[7], {}), text_excerpt=r[8],
            )
            for r in con.execute(
                "SELECT id, document_id, kind, vendor, date, amount, currency, details_json, text_excerpt "
                "FROM doc_items"
            )
        ]

        links = [
            GLDocLink(
                document_item_id=r[0], gl_entry_id=r[1], score=r[2] or 0.0, doc_summary=r[3],
                doc_flag_unallowable=bool(r[4]), discrepancies=_loads(r[5], []),
            )
            for r in con.execute(
                "SELECT document_item_id, gl_entry_id, score, doc_summary, doc_flag_unallowable, discrepancies_json "
                "FROM gl_doc_links"
            )
        ]

    return {"gl_entries": gl, "documents": docs, "doc_items": items, "links": links}
