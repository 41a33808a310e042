from far_audit.json_recovery import iter_array_objects, parse_json_object, parse_with_ladder


def test_parse_json_object_strict_and_fenced():
    assert parse_json_object('{"a": 1}') == {"a": 1}
    assert parse_json_object('```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_object('Sure! Here it is: {"a": 3} hope that helps') == {"a": 3}
    assert parse_json_object("no json here") is None
    assert parse_json_object("[1, 2]") is None


def test_iter_array_objects_skips_truncated_tail():
    text = '{"results": [{"index": 0, "rationale": "brace } in \\"string\\""}, {"index": 1}, {"index": 2, "ra'
    objs = list(iter_array_objects(text, "results"))
    assert [o["index"] for o in objs] == [0, 1]
    assert objs[0]["rationale"] == 'brace } in "string"'


def test_iter_array_objects_missing_key():
    assert list(iter_array_objects('{"other": []}', "results")) == []


def test_parse_with_ladder_salvages_truncated_reply():
    truncated = 'prefix {"results":[{"index":0,"classification":"ALLOWED"},{"index":1,"classif'
    parsed = parse_with_ladder(truncated, "results")
    assert parsed == {"results": [{"index": 0, "classification": "ALLOWED"}]}


def test_parse_with_ladder_returns_none_for_garbage():
    assert parse_with_ladder("totally not json", "results") is None
