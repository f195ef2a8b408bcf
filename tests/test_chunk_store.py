import threading

import pytest

from agent_dispatch.clients.database import AgentSession as SessionORM, session_scope
from agent_dispatch.models.enums import StreamType
from agent_dispatch.models.session import SessionTarget
from agent_dispatch.services.concurrency import insert_session_with_guard
from agent_dispatch.services.errors import SessionNotFoundError


@pytest.fixture
def session_id():
    session = insert_session_with_guard(
        SessionTarget.for_epic("proj", "epic-1"), role="build", provider="claude-code", prompt="p"
    )
    return session.id


def _last_text(session_id):
    with session_scope() as db:
        return db.get(SessionORM, session_id).last_non_empty_text


def test_sequences_increase_across_stream_types(chunk_store, session_id):
    sequences = [
        chunk_store.append_chunk(session_id, StreamType.RAW, "raw 1").chunk.sequence,
        chunk_store.append_chunk(session_id, StreamType.OUTPUT, "out 1").chunk.sequence,
        chunk_store.append_chunk(session_id, StreamType.RAW, "raw 2").chunk.sequence,
        chunk_store.append_chunk(session_id, StreamType.RESPONSE, "resp").chunk.sequence,
    ]
    assert sequences == [1, 2, 3, 4]


def test_duplicate_chunk_key_is_absorbed(chunk_store, session_id):
    first = chunk_store.append_chunk(session_id, StreamType.RAW, "line", chunk_key="stdout:1")
    again = chunk_store.append_chunk(session_id, StreamType.RAW, "other", chunk_key="stdout:1")

    assert first.inserted is True
    assert again.inserted is False
    assert again.chunk.sequence == first.chunk.sequence
    assert again.chunk.content == "line"
    assert chunk_store.count_chunks(session_id) == 1

    # The skipped append did not consume a sequence number.
    following = chunk_store.append_chunk(session_id, StreamType.RAW, "next")
    assert following.chunk.sequence == first.chunk.sequence + 1


def test_same_key_on_another_stream_is_a_new_chunk(chunk_store, session_id):
    chunk_store.append_chunk(session_id, StreamType.RAW, "a", chunk_key="k")
    other = chunk_store.append_chunk(session_id, StreamType.OUTPUT, "b", chunk_key="k")
    assert other.inserted is True


def test_chunks_without_key_always_insert(chunk_store, session_id):
    chunk_store.append_chunk(session_id, StreamType.OUTPUT, "same")
    chunk_store.append_chunk(session_id, StreamType.OUTPUT, "same")
    assert chunk_store.count_chunks(session_id, StreamType.OUTPUT) == 2


def test_list_chunks_filters_by_stream_and_orders(chunk_store, session_id):
    chunk_store.append_chunk(session_id, StreamType.OUTPUT, "o1")
    chunk_store.append_chunk(session_id, StreamType.RAW, "r1")
    chunk_store.append_chunk(session_id, StreamType.OUTPUT, "o2")

    outputs = chunk_store.list_chunks(session_id, StreamType.OUTPUT)
    assert [c.content for c in outputs] == ["o1", "o2"]
    assert [c.sequence for c in outputs] == [1, 3]
    assert chunk_store.list_chunks(session_id, StreamType.OUTPUT) == outputs


def test_last_non_empty_text_tracks_display_streams(chunk_store, session_id):
    chunk_store.append_chunk(session_id, StreamType.OUTPUT, "line one\n\n   final output line   \n")
    assert _last_text(session_id) == "final output line"

    chunk_store.append_chunk(session_id, StreamType.RESPONSE, "   \n  ")
    assert _last_text(session_id) == "final output line"

    chunk_store.append_chunk(session_id, StreamType.RAW, "raw noise")
    assert _last_text(session_id) == "final output line"

    chunk_store.append_chunk(session_id, StreamType.RESPONSE, "answer")
    assert _last_text(session_id) == "answer"


def test_append_to_unknown_session_raises(chunk_store):
    with pytest.raises(SessionNotFoundError):
        chunk_store.append_chunk("missing", StreamType.RAW, "x")


def test_concurrent_appends_get_unique_sequences(chunk_store, session_id):
    streams = [StreamType.RAW, StreamType.OUTPUT, StreamType.RESPONSE]
    barrier = threading.Barrier(len(streams))
    errors = []

    def feed(stream):
        barrier.wait()
        try:
            for index in range(10):
                chunk_store.append_chunk(session_id, stream, f"{stream.value}-{index}")
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=feed, args=(stream,)) for stream in streams]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    sequences = sorted(
        chunk.sequence
        for stream in streams
        for chunk in chunk_store.list_chunks(session_id, stream)
    )
    assert sequences == list(range(1, 31))
    for stream in streams:
        per_stream = chunk_store.list_chunks(session_id, stream)
        assert [c.content for c in per_stream] == [f"{stream.value}-{i}" for i in range(10)]
