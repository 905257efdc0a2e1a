import pytest

from audio.tts import SpeechOptions
from state.session import (
    AudioContent,
    PlaybackSession,
    PlaybackStatus,
    SessionState,
    TextContent,
    can_transition,
)


def test_session_walks_through_a_loop_iteration() -> None:
    session = PlaybackSession(content=TextContent("hi"), loop_enabled=True)
    for state in (SessionState.STARTING, SessionState.PLAYING, SessionState.LOOPING, SessionState.STARTING):
        session.transition_to(state)
    assert session.state == SessionState.STARTING


def test_illegal_transition_raises() -> None:
    session = PlaybackSession(content=TextContent("hi"), loop_enabled=False)
    with pytest.raises(ValueError):
        session.transition_to(SessionState.PLAYING)


def test_every_active_state_can_stop() -> None:
    for state in (SessionState.STARTING, SessionState.PLAYING, SessionState.LOOPING):
        assert can_transition(state, SessionState.STOPPING)
    assert can_transition(SessionState.STOPPING, SessionState.IDLE)
    assert not can_transition(SessionState.IDLE, SessionState.STOPPING)


def test_utterance_ids_follow_iterations() -> None:
    session = PlaybackSession(content=TextContent("hi"), loop_enabled=True)
    assert session.next_utterance_id() == f"{session.session_id}:0"
    session.iteration_count = 2
    assert session.next_utterance_id() == f"{session.session_id}:2"
    assert session.utterance_id == f"{session.session_id}:2"


def test_content_emptiness_and_description() -> None:
    assert TextContent("  ").is_empty()
    assert AudioContent("").is_empty()
    described = TextContent("hi", SpeechOptions(lang="en-US", voice="Samantha")).describe()
    assert described["kind"] == "text"
    assert described["options"]["voiceName"] == "Samantha"
    assert AudioContent("QUJD", duration_hint_s=1.5).describe()["encodedLength"] == 4


def test_status_payload_keys() -> None:
    payload = PlaybackStatus(is_playing=True, loop_enabled=True, state=SessionState.LOOPING, iteration_count=4).to_payload()
    assert payload == {
        "isPlaying": True,
        "shouldLoop": True,
        "state": "looping",
        "iterationCount": 4,
        "error": None,
    }
