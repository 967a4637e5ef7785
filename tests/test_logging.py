import structlog

from marketplace_assistant.core.logging import (
    clear_log_context,
    get_log_context,
    log_context,
    set_log_context,
    update_log_context,
)
from marketplace_assistant.core.logging.setup import shape_domain_fields


def test_log_context_is_scoped_to_the_block():
    clear_log_context()

    with log_context(owner_id="alice", turn_id="t1"):
        assert get_log_context() == {"owner_id": "alice", "turn_id": "t1"}
        assert structlog.contextvars.get_contextvars()["turn_id"] == "t1"
        with log_context(turn_id="t2"):
            assert get_log_context()["turn_id"] == "t2"
        assert get_log_context()["turn_id"] == "t1"

    assert get_log_context() == {}
    assert "owner_id" not in structlog.contextvars.get_contextvars()


def test_set_update_and_clear():
    set_log_context({"owner_id": "bob"})
    update_log_context("request_id", "r-1")

    assert get_log_context() == {"owner_id": "bob", "request_id": "r-1"}
    assert structlog.contextvars.get_contextvars() == {"owner_id": "bob", "request_id": "r-1"}

    clear_log_context()

    assert get_log_context() == {}
    assert structlog.contextvars.get_contextvars() == {}


def test_vectors_and_raw_buffers_are_shaped_for_output():
    event = shape_domain_fields(
        None,
        "info",
        {
            "event": "Tool call unparseable",
            "query_embedding": [0.1] * 1024,
            "raw_arguments": "x" * 900,
            "owner_id": 42,
        },
    )

    assert event["query_embedding"] == "<1024 floats>"
    assert event["raw_arguments"].endswith("... (900 chars)")
    assert len(event["raw_arguments"]) < 900
    assert event["owner_id"] == "42"
