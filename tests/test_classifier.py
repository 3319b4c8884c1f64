from __future__ import annotations

import pytest

from agent_shells.agentspec import AgentCatalog
from agent_shells.classifier import (
    EventStreamDecoder,
    HeuristicClassifier,
    Rule,
    StructuredEventClassifier,
)
from agent_shells.config import TimingConfig
from agent_shells.record import SessionRecord
from agent_shells.session import Scrollback, Session, SessionStatus

NOW = 5_000.0


class _Proc:
    pid = 1
    alive = True


def make_session(text: str = "", *, since_output: float = 0.1, recent: int = 0, live: bool = True,
                 agent_id: str = "claude") -> Session:
    record = SessionRecord(
        session_id="session-1",
        node_id="session-1",
        agent_id=agent_id,
        agent_name=agent_id,
        command=agent_id,
        cwd="/tmp",
        created_at="",
    )
    session = Session(record=record, scrollback=Scrollback(100, [text] if text else []))
    session.process = _Proc() if live else None
    session.last_output_at = NOW - since_output if text else 0.0
    session.recent_output = recent
    return session


@pytest.fixture
def heuristic() -> HeuristicClassifier:
    return HeuristicClassifier(TimingConfig())


# ── Heuristic rules ──


def test_prompt_wins_over_tool_activity(heuristic):
    session = make_session("→ Read src/app.py\nreading file contents\n❯ ", recent=500)
    assert heuristic.classify(session, None, NOW) == SessionStatus.WAITING_INPUT


def test_recent_tool_text_is_tool_calling(heuristic):
    session = make_session("→ Read src/app.py\nreading file contents\n", recent=500)
    assert heuristic.classify(session, None, NOW) == SessionStatus.TOOL_CALLING


def test_stale_tool_text_falls_through_to_idle(heuristic):
    session = make_session("→ Read src/app.py\nreading file contents\n", since_output=5.0, recent=500)
    assert heuristic.classify(session, None, NOW) == SessionStatus.IDLE


def test_question_and_confirmation_wait_for_input(heuristic):
    assert heuristic.classify(make_session("Which approach would you like to take\n"), None, NOW) == SessionStatus.WAITING_INPUT
    assert heuristic.classify(make_session("Overwrite config (y/n) now\n"), None, NOW) == SessionStatus.WAITING_INPUT


def test_streaming_output_is_running(heuristic):
    session = make_session("Thinking about the change to the parser\n", recent=200)
    assert heuristic.classify(session, None, NOW) == SessionStatus.RUNNING


def test_output_right_after_input_is_not_streaming(heuristic):
    session = make_session("Thinking about the change to the parser\n", recent=200)
    session.last_input_at = NOW - 0.2
    assert heuristic.classify(session, None, NOW) == SessionStatus.IDLE


def test_quiet_session_is_idle(heuristic):
    session = make_session("Done with the refactor\n", since_output=10.0, recent=0)
    assert heuristic.classify(session, None, NOW) == SessionStatus.IDLE


def test_dead_session_is_disconnected(heuristic):
    session = make_session("❯ ", live=False)
    assert heuristic.classify(session, None, NOW) == SessionStatus.DISCONNECTED


def test_rules_can_be_added_and_replaced(heuristic):
    session = make_session("fatal: repository corrupted\n→ Read a.py\n❯ ", recent=500)

    heuristic.add_rule(Rule("fatal", lambda ctx: "fatal:" in ctx.tail_lower, SessionStatus.ERROR), before="question")
    assert heuristic.match(session, NOW).name == "fatal"
    assert heuristic.classify(session, None, NOW) == SessionStatus.ERROR

    heuristic.replace_rule("fatal", Rule("fatal", lambda ctx: False, SessionStatus.ERROR))
    heuristic.replace_rule("prompt", Rule("prompt", lambda ctx: False, SessionStatus.WAITING_INPUT))
    assert heuristic.classify(session, None, NOW) == SessionStatus.TOOL_CALLING

    with pytest.raises(KeyError):
        heuristic.replace_rule("missing", Rule("missing", lambda ctx: True, SessionStatus.IDLE))
    with pytest.raises(KeyError):
        heuristic.add_rule(Rule("x", lambda ctx: True, SessionStatus.IDLE), before="missing")


# ── Structured events ──


@pytest.fixture
def structured() -> StructuredEventClassifier:
    return StructuredEventClassifier(AgentCatalog())


def test_structured_events_map_to_statuses(structured):
    session = make_session()

    assert structured.classify(session, {"type": "message_start"}, NOW) == SessionStatus.RUNNING
    assert structured.classify(
        session, {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Bash"}}, NOW
    ) == SessionStatus.TOOL_CALLING
    assert session.current_tool == "Bash"
    assert structured.classify(
        session, {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}}, NOW
    ) == SessionStatus.RUNNING
    assert structured.classify(
        session, {"type": "content_block_delta", "delta": {"type": "input_json_delta"}}, NOW
    ) is None
    assert structured.classify(session, {"type": "message_stop"}, NOW) == SessionStatus.IDLE


def test_question_tool_means_waiting_for_input(structured):
    session = make_session()
    start = {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "AskUserQuestion"}}

    assert structured.classify(session, start, NOW) == SessionStatus.WAITING_INPUT
    assert structured.classify(session, {"type": "message_stop", "stop_reason": "tool_use"}, NOW) == SessionStatus.WAITING_INPUT


def test_unknown_events_have_no_opinion(structured):
    session = make_session()
    assert structured.classify(session, {"type": "ping"}, NOW) is None
    assert structured.classify(session, "message_start", NOW) is None


def test_decoder_buffers_partial_lines_and_skips_noise():
    decoder = EventStreamDecoder()

    assert decoder.feed('{"type": "message_start"}\n{"type": "mess') == [{"type": "message_start"}]
    assert decoder.feed('age_stop"}\nnot json\n[1, 2]\n\n') == [{"type": "message_stop"}]
    assert decoder.feed("") == []
