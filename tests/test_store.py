import pytest

from far_audit.errors import DuplicateDocumentError, NotFoundError, ValidationError
from far_audit.linker import build_links
from far_audit.models import Approval
from far_audit.spreadsheet import normalize
from far_audit.store import Store, match_quality, safe_filename


@pytest.fixture
def store(settings):
    s = Store(settings)
    s.load()
    return s


def add_gl(store, **overrides):
    row = {"date": "2024-03-15", "vendor": "Staples", "amount": 42.0, "description": "Paper"}
    row.update(overrides)
    return store.add_gl_entries([row])[0]


def ingest(store, data=b"receipt-bytes", filename="receipt.png", approvals=(), **item):
    doc = store.add_document(data, "image/png", filename)
    raw = {"vendor": "Staples", "date": "2024-03-15", "amount": 42.0}
    raw.update(item)
    items = store.new_items(doc, [raw])
    store.set_document_content(doc, "Staples total 42.00", "receipt", list(approvals))
    links = build_links([i.to_dict() for i in items], store.gl_dicts(), store.matching_cfg)
    store.attach(doc, items, links)
    return doc, items, links


def test_list_gl_sorted_date_desc_with_total(store):
    old = add_gl(store, date="2024-01-01")
    new = add_gl(store, date="2024-06-01")
    page = store.list_gl(limit=1, offset=0)
    assert page["total"] == 2
    assert [r["id"] for r in page["rows"]] == [new]
    assert store.list_gl(limit=5000)["limit"] == 1000
    assert store.list_gl(offset=1)["rows"][0]["id"] == old


def test_add_gl_entries_sign_and_validation(store):
    gl_id = add_gl(store, amount="(12.50)")
    entry = store.get_gl(gl_id)
    assert entry.amount == pytest.approx(12.5)
    assert entry.is_credit is True
    with pytest.raises(ValidationError):
        store.add_gl_entries([{"amount": "n/a"}])
    with pytest.raises(NotFoundError):
        store.get_gl("missing")


def test_gl_file_duplicates(store):
    store.register_gl_file(b"a,b\n", "gl.csv")
    with pytest.raises(DuplicateDocumentError) as exact:
        store.register_gl_file(b"a,b\n", "other.csv")
    assert exact.value.code == DuplicateDocumentError.DUPLICATE_EXACT
    with pytest.raises(DuplicateDocumentError) as named:
        store.register_gl_file(b"c,d\n", "gl.csv")
    assert named.value.code == DuplicateDocumentError.DUPLICATE_NAME
    meta = store.register_gl_file(b"c,d\n", "gl.csv", allow_duplicate=True)
    assert meta["filename"] == "gl.csv"


def test_linked_receipt_sets_gl_flags(store):
    gl_id = add_gl(store)
    _, _, links = ingest(store, approvals=[Approval(approver="Jane Doe", decision="approved")])
    assert len(links) == 1
    entry = store.get_gl(gl_id)
    assert entry.has_receipt and entry.attachments_count == 1
    assert entry.has_approval and entry.approvals_count == 1
    assert entry.document_match_quality == "high"
    assert entry.doc_summary.startswith("Staples | 2024-03-15 | $42.00")


def test_unlink_resets_flags(store):
    gl_id = add_gl(store)
    _, items, _ = ingest(store)
    store.unlink(items[0].id, gl_id)
    entry = store.get_gl(gl_id)
    assert entry.attachments_count == 0
    assert entry.has_receipt is False
    assert entry.document_match_quality is None
    with pytest.raises(NotFoundError):
        store.unlink(items[0].id, gl_id)


def test_manual_link_is_idempotent(store):
    gl_a = add_gl(store)
    gl_b = add_gl(store, vendor="Other", amount=999.0, date="2023-01-01")
    _, items, _ = ingest(store)
    first = store.link(items[0].id, gl_b)
    assert first.score == 1.0
    assert store.link(items[0].id, gl_b) is first
    assert store.get_gl(gl_b).attachments_count == 1
    assert store.get_gl(gl_a).attachments_count == 1


def test_direct_attachment_counts_approvals_once(store):
    gl_id = add_gl(store)
    doc, _, _ = ingest(store, approvals=[Approval(approver="Jane Doe", decision="approved")])
    store.attach_document_to_gl(gl_id, doc.id)
    store.attach_document_to_gl(gl_id, doc.id)
    entry = store.get_gl(gl_id)
    assert entry.attachments_count == 2
    assert entry.approvals_count == 1
    store.detach_document_from_gl(gl_id, doc.id)
    assert store.get_gl(gl_id).attachments_count == 1


def test_attachments_for_lists_linked_documents(store):
    gl_id = add_gl(store)
    doc, _, _ = ingest(store)
    attachments = store.attachments_for(gl_id)
    assert attachments[0]["documentId"] == doc.id
    assert attachments[0]["mimeType"] == "image/png"


def test_exact_duplicate_document_refused(store):
    add_gl(store)
    doc, _, _ = ingest(store)
    with pytest.raises(DuplicateDocumentError) as err:
        store.add_document(b"receipt-bytes", "image/png", "copy.png")
    assert err.value.code == DuplicateDocumentError.DUPLICATE_EXACT
    assert err.value.existing_document_id == doc.id


def test_same_name_replace_cascades(store):
    gl_id = add_gl(store)
    old, old_items, _ = ingest(store)
    with pytest.raises(DuplicateDocumentError) as err:
        store.add_document(b"new-bytes", "image/png", "receipt.png")
    assert err.value.code == DuplicateDocumentError.DUPLICATE_NAME

    new = store.add_document(b"new-bytes", "image/png", "receipt.png", duplicate_policy="replace")
    assert old.id not in store.documents
    assert old_items[0].id not in store.doc_items
    assert not store.links
    assert store.get_gl(gl_id).attachments_count == 0
    assert store.upload_path(new).read_bytes() == b"new-bytes"
    assert not store.upload_path(old).exists()


def test_clear_docs_keeps_gl(store):
    gl_id = add_gl(store)
    ingest(store)
    store.clear("docs")
    assert store.counts() == {"gl": 1, "docs": 0}
    assert store.get_gl(gl_id).has_receipt is False
    store.clear("all")
    assert store.counts() == {"gl": 0, "docs": 0}
    with pytest.raises(ValidationError):
        store.clear("everything")


def test_delete_gl_drops_its_links(store):
    gl_id = add_gl(store)
    ingest(store)
    store.delete_gl(gl_id)
    assert not store.links
    with pytest.raises(NotFoundError):
        store.delete_gl(gl_id)


def test_config_blobs_survive_reload_via_json_file(settings):
    first = Store(settings)
    first.update_di_config({"endpoint": "https://di.example.com", "apiKey": "secret", "bogus": 1})
    first.update_app_config({"policy": {"general": {"receipt_threshold": 10}}})

    second = Store(settings)
    second.load()
    assert second.di_config == {"endpoint": "https://di.example.com", "apiKey": "secret"}
    assert second.policy == {"general": {"receipt_threshold": 10}}


def test_helpers():
    assert safe_filename("../../etc/passwd") == "passwd"
    assert safe_filename("my receipt (1).png") == "my_receipt_1_.png"
    assert match_quality(90) == "high"
    assert match_quality(70) == "medium"
    assert match_quality(10) == "low"
    assert match_quality(None) is None


def test_normalized_rows_without_amount_are_inserted(store):
    csv = b"Date,Description,Amount\n2024-03-15,Paper,10.00\n2024-03-16,Memo: see attached,\n"
    rows = normalize(csv, "gl.csv")["rows"]
    assert len(rows) == 2
    ids = store.add_gl_entries(rows)
    assert len(ids) == 2
    memo = store.get_gl(ids[1])
    assert memo.amount == 0.0
    assert memo.is_credit is False
