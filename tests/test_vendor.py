from far_audit.vendor import normalize_vendor, vendor_similarity


def test_normalize_vendor_drops_suffixes_and_tld():
    assert normalize_vendor("Staples Inc.") == "staples"
    assert normalize_vendor("Staples Business") == "staples"
    assert normalize_vendor("Amazon.com Marketplace") == "amazon"
    assert normalize_vendor(None) == ""


def test_vendor_similarity_is_symmetric_and_bounded():
    a, b = "STAPLES", "Staples Business"
    assert vendor_similarity(a, b) == vendor_similarity(b, a) == 1.0
    assert 0.0 <= vendor_similarity("Acme Corp", "Globex") < 0.85


def test_vendor_similarity_missing_side_is_zero():
    assert vendor_similarity("", "Staples") == 0.0
    assert vendor_similarity("Staples", None) == 0.0
