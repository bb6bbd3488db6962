from chat_core.streaming.sse import SSEParser


def _collect():
    events = []
    return events, SSEParser(events.append)


def test_single_event():
    events, parser = _collect()
    parser.feed('data: {"a": 1}\n\n')
    assert len(events) == 1
    assert events[0].type == "event"
    assert events[0].data == '{"a": 1}'
    assert events[0].event is None


def test_multiline_data_joined_with_newline():
    events, parser = _collect()
    parser.feed("data: line one\ndata: line two\n\n")
    assert events[0].data == "line one\nline two"


def test_event_split_across_chunks_and_crlf():
    events, parser = _collect()
    for piece in ["da", "ta: hel", "lo\r", "\n\r\n", "data: [DONE]\r\n\r\n"]:
        parser.feed(piece)
    assert [e.data for e in events] == ["hello", "[DONE]"]


def test_comments_names_ids_and_retry():
    events, parser = _collect()
    parser.feed(": keep-alive\nretry: 3000\nevent: ping\nid: 7\ndata: x\n\n")
    assert events[0].type == "reconnect-interval"
    assert events[0].value == 3000
    assert events[1].event == "ping"
    assert events[1].id == "7"
    assert events[1].data == "x"


def test_leading_bom_and_blank_events_ignored():
    events, parser = _collect()
    parser.feed("\ufeffdata: first\n\n\n\n")
    assert [e.data for e in events] == ["first"]


def test_incomplete_event_not_dispatched():
    events, parser = _collect()
    parser.feed("data: partial\n")
    assert events == []
    parser.feed("\n")
    assert events[0].data == "partial"
