from __future__ import annotations

import re

import pytest

from agent_shells.agentspec import AgentCatalog, AgentSpec
from agent_shells.errors import InvalidRequest, InvalidSessionState, ProcessSpawnFailed, SessionNotFound
from agent_shells.events import EventType
from agent_shells.gateway import ViewerConnection
from agent_shells.session import SessionStatus
from agent_shells.status import HookSignal
from agent_shells.supervisor import CreateSessionRequest, IsolationRequest, TicketLink

from conftest import advance

CHATTER = "Planning the refactor of the parser module\n" * 20


def drain_events(queue) -> list:
    out = []
    while not queue.empty():
        out.append(queue.get_nowait().type)
    return out


# ── Creating sessions ──


@pytest.mark.asyncio
async def test_create_session_types_the_command_after_the_startup_delay(runtime, clock, spawner, launch_dir):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    assert re.fullmatch(r"session-\d+-[0-9a-f]{9}", result.session_id)
    assert result.cwd == str(launch_dir.resolve())
    assert result.branch is None
    assert result.warnings == []

    proc = spawner.last
    assert proc.cwd == result.cwd
    assert proc.env["AGENT_SHELLS_SESSION_ID"] == result.session_id
    assert result.session.status == SessionStatus.STARTING

    await advance(runtime, clock, 0.2)
    assert proc.writes == []
    await advance(runtime, clock, 0.2)
    assert proc.writes == ["claude\r"]

    saved = await runtime.persistence.load_records()
    assert [r.session_id for r in saved] == [result.session_id]


@pytest.mark.asyncio
async def test_ticket_prompt_follows_the_startup_command(runtime, clock, spawner):
    ticket = TicketLink(id="T-42", title="Fix login redirect", url="https://tracker.example/T-42")
    await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude", ticket=ticket))
    proc = spawner.last

    await advance(runtime, clock, 1.0)
    assert proc.writes == ["claude\r"]
    await advance(runtime, clock, 1.0)

    assert len(proc.writes) == 2
    prompt = proc.writes[1]
    assert "https://tracker.example/T-42" in prompt
    assert "Ticket T-42: Fix login redirect" in prompt
    assert prompt.endswith("\r")


@pytest.mark.asyncio
async def test_spawn_failure_leaves_nothing_registered(runtime, spawner):
    spawner.fail = True

    with pytest.raises(ProcessSpawnFailed):
        await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    assert len(runtime.registry) == 0
    assert runtime.deferred.pending() == []


@pytest.mark.asyncio
async def test_create_rejects_empty_command_and_missing_cwd(runtime, tmp_path):
    with pytest.raises(InvalidRequest):
        await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="   "))
    with pytest.raises(InvalidRequest):
        await runtime.supervisor.create_session(
            CreateSessionRequest(agent_id="claude", command="claude", cwd=str(tmp_path / "nope"))
        )


@pytest.mark.asyncio
async def test_isolation_outside_a_repo_falls_back_with_a_warning(runtime, launch_dir):
    result = await runtime.supervisor.create_session(
        CreateSessionRequest(agent_id="claude", command="claude", isolation=IsolationRequest("feature/x"))
    )

    assert result.cwd == str(launch_dir.resolve())
    assert result.session.record.worktree_path is None
    assert any("Not a git repository" in w for w in result.warnings)


# ── Process lifecycle ──


@pytest.mark.asyncio
async def test_output_drives_status_and_decays_to_idle(runtime, clock, spawner):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))
    session = result.session

    spawner.last.emit(CHATTER)
    assert session.status == SessionStatus.RUNNING
    assert session.scrollback.text() == CHATTER

    await advance(runtime, clock, 3.0)
    assert session.status == SessionStatus.IDLE
    assert session.recent_output < len(CHATTER)


@pytest.mark.asyncio
async def test_exit_marks_disconnected_and_cancels_timers(runtime, spawner):
    events = runtime.events.subscribe()
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    spawner.last.exit(1)

    session = result.session
    assert session.status == SessionStatus.DISCONNECTED
    assert not session.is_live
    assert runtime.deferred.pending(session_id=session.id) == []
    assert EventType.SESSION_EXITED in drain_events(events)


@pytest.mark.asyncio
async def test_restart_refuses_a_live_session(runtime):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    with pytest.raises(InvalidSessionState):
        await runtime.supervisor.restart_session(result.session_id)


@pytest.mark.asyncio
async def test_restart_resumes_the_agent_conversation(runtime, clock, spawner):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))
    session = result.session
    first = spawner.last
    first.exit(0)
    session.record.resume_token = "tok-1"

    await runtime.supervisor.restart_session(result.session_id)

    second = spawner.last
    assert second is not first
    assert session.process is second
    assert session.status == SessionStatus.STARTING
    await advance(runtime, clock, 0.4)
    assert second.writes == ["claude --resume tok-1\r"]


@pytest.mark.asyncio
async def test_restart_without_resume_support_reruns_the_command(runtime, clock, spawner):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="opencode", command="opencode"))
    spawner.last.exit(0)
    result.session.record.resume_token = "tok-1"

    await runtime.supervisor.restart_session(result.session_id)
    await advance(runtime, clock, 0.4)

    assert spawner.last.writes == ["opencode\r"]


@pytest.mark.asyncio
async def test_delete_kills_process_and_closes_viewers(runtime, spawner, tmux):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))
    sid = result.session_id
    proc = spawner.last
    proc.emit("hello\n")
    await runtime.supervisor.snapshot()
    buffer = runtime.store.buffer_path(sid)
    assert buffer.exists()

    viewer = ViewerConnection(sid)
    runtime.gateway.attach_agent(viewer)

    await runtime.supervisor.delete_session(sid)

    assert proc.killed
    assert sid not in runtime.registry
    assert viewer.closed
    assert not buffer.exists()
    assert tmux.count("kill-window") == 1
    assert await runtime.persistence.load_records() == []
    with pytest.raises(SessionNotFound):
        await runtime.supervisor.delete_session(sid)


@pytest.mark.asyncio
async def test_write_failure_marks_error(runtime, spawner):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))
    spawner.last.fail_writes = True

    assert await runtime.supervisor.write_input(result.session_id, "ls\r") is False
    assert result.session.status == SessionStatus.ERROR


@pytest.mark.asyncio
async def test_input_is_written_and_resize_forwarded(runtime, spawner):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    assert await runtime.supervisor.write_input(result.session_id, "y")
    await runtime.supervisor.resize(result.session_id, 200, 50)

    assert spawner.last.writes == ["y"]
    assert spawner.last.sizes == [(200, 50)]


# ── Metadata and signals ──


@pytest.mark.asyncio
async def test_update_session_changes_editable_fields(runtime):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    session = await runtime.supervisor.update_session(
        result.session_id,
        {"custom_name": "parser work", "position": {"x": 10, "y": 20}, "command": "rm -rf /"},
    )

    assert session.record.custom_name == "parser work"
    assert session.record.position == {"x": 10.0, "y": 20.0}
    assert session.record.command == "claude"
    with pytest.raises(InvalidRequest):
        await runtime.supervisor.update_session(result.session_id, {"position": "left"})


@pytest.mark.asyncio
async def test_hooks_match_by_agent_session_id(runtime):
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="claude", command="claude"))

    matched = await runtime.supervisor.apply_hook(HookSignal(session_id=result.session_id, agent_session_id="tok-9"))
    assert matched is result.session
    saved = await runtime.persistence.load_records()
    assert saved[0].resume_token == "tok-9"

    matched = await runtime.supervisor.apply_hook(HookSignal(agent_session_id="tok-9", status="waiting_input"))
    assert matched is result.session
    assert result.session.status == SessionStatus.WAITING_INPUT


@pytest.mark.asyncio
async def test_hook_for_unknown_session_is_logged(runtime, caplog):
    assert await runtime.supervisor.apply_hook(HookSignal(session_id="session-0-missing", status="idle")) is None
    assert "unknown session" in caplog.text


@pytest.mark.asyncio
async def test_event_stream_companion_feeds_structured_status(make_runtime, spawner, pipe_spawner):
    streamer = AgentSpec(
        id="streamer",
        name="Streamer",
        command="streamer",
        event_stream_args=["--output-format", "stream-json"],
    )
    runtime = make_runtime(catalog=AgentCatalog({"streamer": streamer}))
    result = await runtime.supervisor.create_session(CreateSessionRequest(agent_id="streamer", command="streamer"))

    pipe = pipe_spawner.spawned[-1]
    assert pipe.argv == ["streamer", "--output-format", "stream-json"]

    pipe.emit('{"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Bash"}}\n')
    assert result.session.status == SessionStatus.TOOL_CALLING
    assert result.session.current_tool == "Bash"

    spawner.last.emit(CHATTER)
    assert result.session.status == SessionStatus.TOOL_CALLING
