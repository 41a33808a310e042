from far_audit.approvals import classify_by_text, detect_decision, extract_approvals, find_date


def test_single_line_approval_with_title_and_date():
    approvals = extract_approvals("Expense report\nApproved by John Smith, Finance Manager on 2024-03-15\n")
    assert len(approvals) == 1
    a = approvals[0]
    assert a.approver == "John Smith"
    assert a.title == "Finance Manager"
    assert a.date == "2024-03-15"
    assert a.decision == "approved"
    assert a.confidence == 0.8
    assert a.summary == "Approved by John Smith (Finance Manager) on 2024-03-15"


def test_block_approval_spanning_lines():
    text = "Approved by:\nJane Doe\nProgram Director\n03/20/2024\n"
    approvals = extract_approvals(text)
    assert len(approvals) == 1
    a = approvals[0]
    assert a.approver == "Jane Doe"
    assert a.title == "Program Director"
    assert a.date == "2024-03-20"
    assert a.confidence == 0.9


def test_decision_hints_without_names():
    approvals = extract_approvals("OK to pay - AP team\nRequest rejected due to missing receipt")
    decisions = sorted((a.decision, a.confidence) for a in approvals)
    assert decisions == [("approved", 0.4), ("rejected", 0.45)]
    assert all(a.approver is None for a in approvals)


def test_lowercase_words_are_not_approvers():
    approvals = extract_approvals("approved by the manager")
    assert all(a.approver != "the" for a in approvals)


def test_duplicate_lines_collapse():
    text = "Approved by John Smith\nApproved by John Smith"
    assert len(extract_approvals(text)) == 1


def test_empty_text():
    assert extract_approvals(None) == []
    assert extract_approvals("   \n ") == []


def test_detect_decision_and_find_date():
    assert detect_decision("Payment denied") == "rejected"
    assert detect_decision("for your records") == "unknown"
    assert find_date("Signed March 5, 2024 at noon") == "2024-03-05"
    assert find_date("no dates here") is None


def test_classify_by_text():
    assert classify_by_text("Invoice # 123\nBill To: X", "scan.pdf") == ("invoice", None)
    assert classify_by_text(None, "receipt_0042.jpg") == ("receipt", None)
    assert classify_by_text("Week ending 3/15, hours worked 40", "x.pdf") == ("timesheet", None)
    assert classify_by_text("Please approve this expense report", "note.docx") == ("approvalNote", "receipt")
    assert classify_by_text("hello", "a.pdf") == ("unknown", None)
