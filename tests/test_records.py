from nightshift import records
from nightshift.records import RecordKind


def test_render_then_extract_latest():
    body = records.render(RecordKind.ASSIGNED, {"attempt": 2, "research_cycles": 1}, summary="Worker assigned.")
    assert body.startswith("Worker assigned.\n\n<!-- WORKER:ASSIGNED -->")

    found = records.extract(body)
    assert len(found) == 1
    assert found[0].kind == "WORKER:ASSIGNED"
    assert found[0].get("attempt") == 2


def test_latest_record_across_comment_stream():
    comments = [
        records.render(RecordKind.ASSIGNED, {"attempt": 1}),
        "Just a human comment, no markers.",
        records.render(RecordKind.HANDOVER, {"context": "half done"}),
        records.render(RecordKind.ASSIGNED, {"attempt": 2}),
    ]
    stream = records.extract_stream(comments)

    assert [r.position for r in stream] == [0, 1, 2]
    assert records.latest(stream, RecordKind.ASSIGNED).get("attempt") == 2
    assert records.latest(stream, RecordKind.HANDOVER).get("context") == "half done"
    assert records.latest(stream, RecordKind.BLOCKED) is None


def test_malformed_and_non_object_records_are_skipped():
    text = (
        "<!-- WORKER:RESULT -->{not json<!-- /WORKER:RESULT -->\n"
        "<!-- WORKER:RESULT -->[1, 2]<!-- /WORKER:RESULT -->\n"
        '<!-- WORKER:RESULT -->{"outcome": "completed"}<!-- /WORKER:RESULT -->'
    )
    found = records.extract(text)

    assert len(found) == 1
    assert found[0].get("outcome") == "completed"
    assert found[0].position == 0


def test_mismatched_markers_are_ignored():
    text = '<!-- WORKER:ASSIGNED -->{"attempt": 1}<!-- /WORKER:HANDOVER -->'
    assert records.extract(text) == []
