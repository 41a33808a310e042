import pytest

from far_audit.linker import build_links, is_unallowable, summarize_item
from far_audit.matcher import match_item, score_match, threshold_for


def test_exact_match_scores_100(matching_cfg):
    item = {"vendor": "STAPLES", "date": "2024-03-15", "amount": 1234.56}
    gl = {"id": "gl1", "vendor": "Staples Business", "date": "2024-03-15", "amount": 1234.56}
    score, flags = score_match(item, gl, matching_cfg)
    assert score == 1.0
    assert flags["boosted"]

    result = match_item(item, [gl], matching_cfg)
    assert result.gl_entry_id == "gl1"
    assert result.score == 100
    assert result.discrepancies == []


def test_fallback_prefers_smallest_date_gap(matching_cfg):
    item = {"vendor": "Acme", "date": "2024-03-10", "amount": 50.00}
    gls = [
        {"id": "gl1", "date": "2024-03-10", "amount": 50.00},
        {"id": "gl2", "date": "2024-03-20", "amount": 50.00},
    ]
    result = match_item(item, gls, matching_cfg)
    assert result.gl_entry_id == "gl1"


def test_exact_amount_fallback_when_below_threshold(matching_cfg):
    item = {"vendor": "Acme", "date": "2024-03-01", "amount": 50.00}
    gls = [
        {"id": "far", "date": "2024-04-30", "amount": 50.00, "vendor": "Globex"},
        {"id": "farther", "date": "2024-06-30", "amount": 50.00, "vendor": "Initech"},
    ]
    result = match_item(item, gls, matching_cfg)
    assert result.gl_entry_id == "far"
    assert result.fallback == "exact_amount"
    assert any(d["field"] == "date" for d in result.discrepancies)


def test_no_match_when_nothing_is_close(matching_cfg):
    item = {"vendor": "Acme", "date": "2024-03-01", "amount": 10.00}
    gls = [{"id": "gl1", "vendor": "Globex", "date": "2024-09-01", "amount": 999.00}]
    result = match_item(item, gls, matching_cfg)
    assert result.gl_entry_id is None


def test_no_gl_entries(matching_cfg):
    result = match_item({"amount": 1}, [], matching_cfg)
    assert result.gl_entry_id is None
    assert result.score == 0.0


def test_vendor_symmetric_tie_goes_to_first(matching_cfg):
    item = {"vendor": "Staples", "date": "2024-03-15", "amount": 20.00}
    gls = [
        {"id": "a", "vendor": "Staples Inc.", "date": "2024-03-15", "amount": 20.00},
        {"id": "b", "vendor": "STAPLES", "date": "2024-03-15", "amount": 20.00},
    ]
    assert match_item(item, gls, matching_cfg).gl_entry_id == "a"


def test_vendor_mismatch_threshold(matching_cfg):
    item = {"vendor": "Acme", "date": "2024-03-10", "amount": 50.00}
    gl = {"id": "gl1", "vendor": "Globex", "date": "2024-03-11", "amount": 50.00}
    _, flags = score_match(item, gl, matching_cfg)
    assert flags["amountExact"] and flags["dateClose"] and not flags["vendorMatch"]
    assert threshold_for(flags, matching_cfg) == pytest.approx(0.70)

    flags_no_vendor = dict(flags, vendorPresentBoth=False)
    assert threshold_for(flags_no_vendor, matching_cfg) == pytest.approx(0.60)


def test_penalty_applies_when_everything_is_off(matching_cfg):
    item = {"vendor": "Acme", "date": "2024-03-01", "amount": 10.00}
    gl = {"id": "gl1", "vendor": "Zzyzx", "date": "2024-03-09", "amount": 17.00}
    score, flags = score_match(item, gl, matching_cfg)
    assert flags["penalized"]
    expected = (0.4 * 0.45 + 0.25 * 0.35 + flags["vendorScore"] * 0.20) * 0.7
    assert score == pytest.approx(expected, abs=1e-3)


def test_amount_discrepancy_reported(matching_cfg):
    item = {"vendor": "Staples", "date": "2024-03-15", "amount": 101.00}
    gl = {"id": "gl1", "vendor": "Staples", "date": "2024-03-15", "amount": 100.00}
    result = match_item(item, [gl], matching_cfg)
    assert result.gl_entry_id == "gl1"
    amount = [d for d in result.discrepancies if d["field"] == "amount"][0]
    assert amount["difference"] == pytest.approx(1.0)
    assert amount["percentDiff"] == pytest.approx(1.0)


def test_build_links_summary_and_unallowable(matching_cfg):
    item = {
        "id": "item1",
        "vendor": "Bistro",
        "date": "2024-03-15",
        "amount": 88.0,
        "details": {"lines": [{"desc": "Dinner"}, {"desc": "Bottle of wine"}]},
    }
    gl = {"id": "gl1", "vendor": "Bistro", "date": "2024-03-15", "amount": 88.0}
    links = build_links([item], [gl], matching_cfg)
    assert len(links) == 1
    link = links[0]
    assert link.score == 1.0
    assert link.doc_summary == "Bistro | 2024-03-15 | $88.00 | Dinner | Bottle of wine"
    assert link.doc_flag_unallowable is True
    assert summarize_item({}) is None
    assert not is_unallowable({"details": {"lines": [{"desc": "Printer paper"}]}}, matching_cfg)
