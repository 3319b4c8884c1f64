from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request

from ..errors import InvalidRequest
from ..runtime import AgentShellsRuntime
from ..status import HookSignal
from ..supervisor import CreateSessionRequest, IsolationRequest, TicketLink

router = APIRouter()


def get_runtime(request: Request) -> AgentShellsRuntime:
    return request.app.state.runtime


def _opt(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _create_request(payload: Dict[str, Any]) -> CreateSessionRequest:
    agent_id = _opt(payload, "agent_id", "agentId")
    command = _opt(payload, "command")
    if not command:
        raise InvalidRequest("command is required")

    isolation = None
    branch = _opt(payload, "branch_name", "branchName")
    if _truthy(payload.get("isolate", payload.get("createWorktree", False))):
        if not branch:
            raise InvalidRequest("branch_name is required when isolate is set")
        isolation = IsolationRequest(branch=branch, base_branch=_opt(payload, "base_branch", "baseBranch"))

    ticket = None
    ticket_id = _opt(payload, "ticket_id", "ticketId")
    if ticket_id:
        ticket = TicketLink(
            id=ticket_id,
            title=_opt(payload, "ticket_title", "ticketTitle") or "",
            url=_opt(payload, "ticket_url", "ticketUrl") or "",
        )

    return CreateSessionRequest(
        agent_id=agent_id or "",
        command=command,
        cwd=_opt(payload, "cwd"),
        agent_name=_opt(payload, "agent_name", "agentName"),
        node_id=_opt(payload, "node_id", "nodeId"),
        custom_name=_opt(payload, "custom_name", "customName"),
        custom_color=_opt(payload, "custom_color", "customColor"),
        position=payload.get("position") if isinstance(payload.get("position"), dict) else None,
        isolation=isolation,
        ticket=ticket,
    )


@router.get("/api/config")
async def get_config(rt: AgentShellsRuntime = Depends(get_runtime)):
    return {
        "ok": True,
        "data": {
            "launch_cwd": rt.settings.launch_cwd,
            "data_dir": str(rt.store.root),
            "shell_available": rt.multiplexer.available(),
        },
    }


@router.get("/api/agents")
async def list_agents(rt: AgentShellsRuntime = Depends(get_runtime)):
    return {"ok": True, "data": [spec.to_payload() for spec in rt.catalog.values()]}


@router.get("/api/sessions")
async def list_sessions(rt: AgentShellsRuntime = Depends(get_runtime)):
    return {"ok": True, "data": [s.to_payload() for s in rt.registry.values()]}


@router.post("/api/sessions")
async def create_session(
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    result = await rt.supervisor.create_session(_create_request(payload))
    return {"ok": True, "data": result.to_payload()}


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: str, rt: AgentShellsRuntime = Depends(get_runtime)):
    return {"ok": True, "data": rt.registry.require(session_id).to_payload()}


@router.get("/api/sessions/{session_id}/status")
async def get_session_status(session_id: str, rt: AgentShellsRuntime = Depends(get_runtime)):
    session = rt.registry.require(session_id)
    return {
        "ok": True,
        "data": {
            "status": session.status.value,
            "tool": session.current_tool,
            "isRestored": session.is_restored,
        },
    }


@router.patch("/api/sessions/{session_id}")
async def update_session(
    session_id: str,
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    aliases = {"customName": "custom_name", "customColor": "custom_color"}
    fields = {aliases.get(k, k): v for k, v in payload.items()}
    session = await rt.supervisor.update_session(session_id, fields)
    return {"ok": True, "data": session.to_payload()}


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, rt: AgentShellsRuntime = Depends(get_runtime)):
    await rt.supervisor.delete_session(session_id)
    return {"ok": True}


@router.post("/api/sessions/{session_id}/restart")
async def restart_session(session_id: str, rt: AgentShellsRuntime = Depends(get_runtime)):
    session = await rt.supervisor.restart_session(session_id)
    return {"ok": True, "data": session.to_payload()}


@router.post("/api/sessions/{session_id}/events")
async def push_events(
    session_id: str,
    payload: Any = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    if isinstance(payload, dict):
        events = payload.get("events") if isinstance(payload.get("events"), list) else [payload]
    elif isinstance(payload, list):
        events = payload
    else:
        raise InvalidRequest("expected an event object or a list of events")
    session = rt.supervisor.push_events(session_id, events)
    return {"ok": True, "data": {"status": session.status.value, "tool": session.current_tool}}


@router.get("/api/state")
async def get_state(rt: AgentShellsRuntime = Depends(get_runtime)):
    document = await rt.persistence.load_document()
    nodes: List[Dict[str, Any]] = []
    for node in document["nodes"]:
        if not isinstance(node, dict):
            continue
        session = rt.registry.get(node.get("session_id"))
        if session is None:
            continue
        merged = dict(node)
        merged.update(
            {
                "status": session.status.value,
                "is_restored": session.is_restored,
                "position": node.get("position") or session.record.position,
            }
        )
        nodes.append(merged)
    return {"ok": True, "data": {"nodes": nodes, "categories": document["categories"]}}


@router.post("/api/state/positions")
async def save_positions(
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    positions = payload.get("positions")
    if not isinstance(positions, dict):
        raise InvalidRequest("positions must be an object keyed by node id")
    updated = await rt.supervisor.update_positions(positions)
    return {"ok": True, "data": {"updated": updated}}


@router.get("/api/categories")
async def list_categories(rt: AgentShellsRuntime = Depends(get_runtime)):
    categories = await rt.persistence.load_categories()
    return {"ok": True, "data": [c.to_dict() for c in categories]}


@router.post("/api/categories")
async def upsert_category(
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    try:
        category = await rt.persistence.upsert_category(payload)
    except (TypeError, ValueError) as exc:
        raise InvalidRequest(str(exc)) from exc
    return {"ok": True, "data": category.to_dict()}


@router.delete("/api/categories/{category_id}")
async def delete_category(category_id: str, rt: AgentShellsRuntime = Depends(get_runtime)):
    if not await rt.persistence.delete_category(category_id):
        raise HTTPException(404, "Category not found")
    return {"ok": True}


@router.get("/api/settings")
async def get_settings(rt: AgentShellsRuntime = Depends(get_runtime)):
    return {"ok": True, "data": await rt.local_config.public_view()}


@router.post("/api/settings")
async def save_settings(
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    updates = dict(payload)
    if "apiKey" in updates:
        updates["api_key"] = updates.pop("apiKey")
    await rt.local_config.save(updates)
    return {"ok": True, "data": await rt.local_config.public_view()}


@router.get("/api/worktree/config")
async def get_worktree_config(rt: AgentShellsRuntime = Depends(get_runtime)):
    return {"ok": True, "data": {"worktree_repos": await rt.local_config.worktree_repos()}}


@router.post("/api/worktree/config")
async def save_worktree_config(
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    repos = payload.get("worktree_repos", payload.get("worktreeRepos"))
    if not isinstance(repos, list) or not all(isinstance(r, dict) for r in repos):
        raise InvalidRequest("worktree_repos must be a list of objects")
    await rt.local_config.save({"worktree_repos": repos})
    return {"ok": True, "data": {"worktree_repos": await rt.local_config.worktree_repos()}}


@router.post("/api/status-update")
async def status_update(
    payload: dict = Body(...),
    rt: AgentShellsRuntime = Depends(get_runtime),
):
    """Hook webhook. Always succeeds; unknown sessions are only logged."""
    hook = HookSignal.from_payload(payload)
    session = await rt.supervisor.apply_hook(hook)
    return {
        "ok": True,
        "data": {
            "matched": session is not None,
            "session_id": session.id if session else None,
            "status": session.status.value if session else None,
        },
    }
