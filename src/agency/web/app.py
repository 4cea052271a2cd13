"""HTTP API and live event stream for the agency."""

import asyncio
import json
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from agency.agents.controller import ControllerStateError
from agency.agents.manager import AgentManager
from agency.config import Config, get_config
from agency.core import agents as agents_mod
from agency.core import events as events_mod
from agency.core import handoffs as handoffs_mod
from agency.core import sessions as sessions_mod
from agency.core import tasks as tasks_mod
from agency.core.tasks import TransitionError
from agency.db.engine import get_db, init_db
from agency.db.models import TASK_STATUSES
from agency.web.access_log import AccessLogMiddleware

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0
EVENT_POLL_INTERVAL = 2.0
STREAM_TICK = 0.25

# Columns shown on the board, in pipeline order.
BOARD_COLUMNS = ("INBOX", "READY", "IN_PROGRESS", "DONE", "QA_TESTING", "QA_PASSED", "SHIPPED")


def _db(request: Request):
    return get_db(request.app.state.config.db_path)


def _manager(request: Request) -> AgentManager:
    return request.app.state.manager


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValueError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _required(body: dict, *keys: str):
    """First present value among ``keys`` (aliases), or ValueError naming the first."""
    for key in keys:
        value = body.get(key)
        if value not in (None, ""):
            return value
    raise ValueError(f"{keys[0]} is required")


def _int_param(request: Request, name: str, default: int | None = None) -> int | None:
    value = request.query_params.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer")


def _not_found(what: str) -> JSONResponse:
    return JSONResponse({"error": f"{what} not found"}, status_code=404)


# ── Error handling ────────────────────────────────────────────────────────────


async def _not_found_error(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=404)


async def _conflict_error(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=409)


async def _bad_request_error(request: Request, exc: Exception):
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _server_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": str(exc) or exc.__class__.__name__}, status_code=500)


# ── Health ────────────────────────────────────────────────────────────────────


async def health(request: Request):
    manager = _manager(request)
    return JSONResponse({
        "status": "ok",
        "running_agents": len(manager.running_agents()),
        "orchestration": _orchestration_dict(manager.orchestration_status()),
    })


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    status_param = request.query_params.get("status")
    statuses = [s.strip() for s in status_param.split(",") if s.strip()] if status_param else None
    for status in statuses or []:
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {status!r}")
    limit = _int_param(request, "limit")
    offset = _int_param(request, "offset")
    with _db(request) as db:
        tasks = tasks_mod.list_tasks(
            db,
            status=statuses,
            assigned_to=request.query_params.get("assigned_to"),
            limit=limit,
            offset=offset,
        )
        return JSONResponse({"tasks": [_task_dict(t) for t in tasks], "total": len(tasks)})


async def api_create_task(request: Request):
    body = await _json_body(request)
    with _db(request) as db:
        task = tasks_mod.create_task(
            db,
            title=_required(body, "title"),
            description=body.get("description"),
            status=body.get("status", "INBOX"),
            priority=body.get("priority", "P2"),
            size=body.get("size", "M"),
            value_statement=body.get("value_statement"),
            acceptance_criteria=body.get("acceptance_criteria"),
            context=body.get("context"),
            review_required=bool(body.get("review_required", False)),
            created_by=body.get("created_by"),
        )
        return JSONResponse(_task_dict(task), status_code=201)


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _db(request) as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return _not_found("Task")
        td = _task_dict(task)
        td["events"] = [_event_dict(e) for e in events_mod.list_events(db, task_id=task_id, limit=50)]
        return JSONResponse(td)


async def api_update_task(request: Request):
    body = await _json_body(request)
    if "db" in body or "task_id" in body:
        raise ValueError("Task id cannot be changed")
    with _db(request) as db:
        task = tasks_mod.update_task(db, request.path_params["task_id"], **body)
        if not task:
            return _not_found("Task")
        return JSONResponse(_task_dict(task))


async def api_delete_task(request: Request):
    with _db(request) as db:
        if not tasks_mod.delete_task(db, request.path_params["task_id"]):
            return _not_found("Task")
        return JSONResponse({"success": True})


def _agent_of(body: dict) -> str | None:
    return body.get("agent") or body.get("agent_name")


_TASK_ACTIONS = {
    "triage": lambda db, tid, body: tasks_mod.triage_task(db, tid, _agent_of(body)),
    "claim": lambda db, tid, body: tasks_mod.claim_task(db, tid, _required(body, "agent", "agent_name")),
    "complete": lambda db, tid, body: tasks_mod.complete_task(
        db, tid, body.get("summary"), body.get("files_changed"), _agent_of(body)
    ),
    "status": lambda db, tid, body: tasks_mod.set_task_status(db, tid, _required(body, "status")),
    "qa-start": lambda db, tid, body: tasks_mod.start_qa(db, tid, _agent_of(body)),
    "qa-pass": lambda db, tid, body: tasks_mod.pass_qa(db, tid, _agent_of(body)),
    "qa-fail": lambda db, tid, body: tasks_mod.fail_qa(db, tid, body.get("reason"), _agent_of(body)),
    "review-start": lambda db, tid, body: tasks_mod.start_review(db, tid, _agent_of(body)),
    "review-approve": lambda db, tid, body: tasks_mod.approve_review(db, tid, _agent_of(body)),
    "review-reject": lambda db, tid, body: tasks_mod.reject_review(
        db, tid, body.get("reason"), _agent_of(body)
    ),
    "ship": lambda db, tid, body: tasks_mod.ship_task(db, tid, _agent_of(body)),
}


async def api_task_action(request: Request):
    action = _TASK_ACTIONS.get(request.path_params["action"])
    if action is None:
        return _not_found("Action")
    body = await _json_body(request)
    with _db(request) as db:
        task = action(db, request.path_params["task_id"], body)
        if not task:
            return _not_found("Task")
        return JSONResponse(_task_dict(task))


# ── Agents ────────────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    manager = _manager(request)
    with _db(request) as db:
        agents = agents_mod.list_agents(db)
    result = []
    for agent in agents:
        ad = _agent_dict(agent)
        controller = manager.get_controller(agent.name)
        ad["controller_state"] = controller.state if controller else None
        result.append(ad)
    return JSONResponse({"agents": result})


async def api_running_agents(request: Request):
    return JSONResponse({"running": _manager(request).running_agents()})


async def api_get_agent(request: Request):
    with _db(request) as db:
        agent = agents_mod.get_agent(db, request.path_params["name"])
    if not agent:
        return _not_found("Agent")
    ad = _agent_dict(agent)
    controller = _manager(request).get_controller(agent.name)
    ad["controller_state"] = controller.state if controller else None
    return JSONResponse(ad)


async def api_agent_sessions(request: Request):
    name = request.path_params["name"]
    with _db(request) as db:
        if not agents_mod.get_agent(db, name):
            return _not_found("Agent")
        sessions = sessions_mod.list_sessions(
            db, agent_name=name, status=request.query_params.get("status"),
            limit=_int_param(request, "limit", 50),
        )
        return JSONResponse({"sessions": [_session_dict(s) for s in sessions]})


async def api_agent_history(request: Request):
    """Messages of the agent's current session, or of one given by ``session_id``."""
    name = request.path_params["name"]
    with _db(request) as db:
        agent = agents_mod.get_agent(db, name)
        if not agent:
            return _not_found("Agent")
        session_id = request.query_params.get("session_id") or agent.session_id
        if not session_id:
            return JSONResponse({"messages": []})
        messages = sessions_mod.list_messages(db, session_id, limit=_int_param(request, "limit"))
        return JSONResponse({"session_id": session_id,
                             "messages": [_message_dict(m) for m in messages]})


async def api_update_agent(request: Request):
    """Set status, and ``working_on``/``blocker`` when present in the body."""
    name = request.path_params["name"]
    body = await _json_body(request)
    fields = {key: body[key] for key in ("working_on", "blocker") if key in body}
    with _db(request) as db:
        agent = agents_mod.update_agent_status(db, name, _required(body, "status"), **fields)
        if not agent:
            return _not_found("Agent")
        return JSONResponse(_agent_dict(agent))


async def api_agent_heartbeat(request: Request):
    name = request.path_params["name"]
    body = await _json_body(request)
    with _db(request) as db:
        if not agents_mod.get_agent(db, name):
            return _not_found("Agent")
        if body.get("status"):
            agents_mod.update_agent_status(db, name, body["status"])
        agent = agents_mod.heartbeat(db, name, body.get("working_on"))
        events_mod.log_event(
            db, "agent.heartbeat", agent_name=name,
            data={"status": agent.status, "working_on": agent.working_on},
        )
        return JSONResponse(_agent_dict(agent))


async def api_start_agent(request: Request):
    name = request.path_params["name"]
    body = await _json_body(request)
    task_id = body.get("taskId") or body.get("task_id")
    controller = await run_in_threadpool(_manager(request).start_agent, name, task_id)
    return JSONResponse({
        "success": True,
        "message": f"Agent {name} started",
        "pid": controller.pid,
        "sessionId": controller.session_id,
    })


async def api_stop_agent(request: Request):
    name = request.path_params["name"]
    await run_in_threadpool(_manager(request).stop_agent, name)
    return JSONResponse({"success": True, "message": f"Agent {name} stopped"})


async def api_pause_agent(request: Request):
    name = request.path_params["name"]
    body = await _json_body(request)
    await run_in_threadpool(_manager(request).pause_agent, name, body.get("reason"))
    return JSONResponse({"success": True, "message": f"Agent {name} paused"})


async def api_resume_agent(request: Request):
    name = request.path_params["name"]
    await run_in_threadpool(_manager(request).resume_agent, name)
    return JSONResponse({"success": True, "message": f"Agent {name} resumed"})


async def api_inject_message(request: Request):
    name = request.path_params["name"]
    body = await _json_body(request)
    message = _required(body, "message")
    delivered = await run_in_threadpool(
        _manager(request).inject_message, name, message, body.get("injected_by") or "user"
    )
    return JSONResponse({
        "success": True,
        "message": "Message injected" if delivered else "Message queued",
        "queued": not delivered,
    })


async def api_redirect_agent(request: Request):
    name = request.path_params["name"]
    body = await _json_body(request)
    task_id = _required(body, "taskId", "task_id")
    with _db(request) as db:
        if not tasks_mod.get_task(db, task_id):
            return _not_found("Task")
    await run_in_threadpool(_manager(request).redirect_agent, name, task_id)
    return JSONResponse({"success": True, "message": f"Agent {name} redirected to task {task_id}"})


# ── Orchestration ─────────────────────────────────────────────────────────────


def _orchestration_dict(status: dict) -> dict:
    return {"enabled": status["enabled"], "intervalMs": status["interval_ms"]}


async def api_orchestration_status(request: Request):
    return JSONResponse(_orchestration_dict(_manager(request).orchestration_status()))


async def api_orchestration_enable(request: Request):
    body = await _json_body(request)
    interval = body.get("intervalMs", body.get("interval_ms"))
    if interval is not None and (isinstance(interval, bool) or not isinstance(interval, int)):
        raise ValueError("intervalMs must be an integer")
    status = await run_in_threadpool(_manager(request).enable_auto_orchestration, interval)
    return JSONResponse({"success": True, "message": "Auto-orchestration enabled",
                         **_orchestration_dict(status)})


async def api_orchestration_disable(request: Request):
    status = await run_in_threadpool(_manager(request).disable_auto_orchestration)
    return JSONResponse({"success": True, "message": "Auto-orchestration disabled",
                         **_orchestration_dict(status)})


async def api_orchestration_run(request: Request):
    started = await run_in_threadpool(_manager(request).run_orchestration_cycle)
    return JSONResponse({
        "success": True,
        "message": "Orchestration cycle completed",
        "started": [{"agent": name, "task_id": task_id} for name, task_id in started],
    })


# ── Handoffs ──────────────────────────────────────────────────────────────────


async def api_list_handoffs(request: Request):
    with _db(request) as db:
        handoffs = handoffs_mod.list_handoffs(
            db,
            to_agent=request.query_params.get("to_agent"),
            status=request.query_params.get("status"),
            limit=_int_param(request, "limit"),
        )
        return JSONResponse({"handoffs": [_handoff_dict(h) for h in handoffs]})


async def api_create_handoff(request: Request):
    body = await _json_body(request)
    with _db(request) as db:
        handoff = handoffs_mod.create_handoff(
            db,
            from_agent=_required(body, "from_agent"),
            title=_required(body, "title"),
            content=body.get("content") or "",
            to_agent=body.get("to_agent"),
            handoff_type=body.get("type", "general"),
            task_id=body.get("task_id"),
            priority=body.get("priority", "normal"),
        )
        return JSONResponse(_handoff_dict(handoff), status_code=201)


async def api_handoff_action(request: Request):
    handoff_id = request.path_params["handoff_id"]
    action = request.path_params["action"]
    body = await _json_body(request)
    with _db(request) as db:
        if action == "claim":
            handoff = handoffs_mod.claim_handoff(db, handoff_id, _required(body, "agent", "agent_name"))
        elif action == "resolve":
            handoff = handoffs_mod.resolve_handoff(db, handoff_id)
        elif action == "dismiss":
            handoff = handoffs_mod.dismiss_handoff(db, handoff_id)
        else:
            return _not_found("Action")
        if not handoff:
            return _not_found("Handoff")
        return JSONResponse(_handoff_dict(handoff))


# ── Events ────────────────────────────────────────────────────────────────────


async def api_list_events(request: Request):
    with _db(request) as db:
        events = events_mod.list_events(
            db,
            event_type=request.query_params.get("type"),
            agent_name=request.query_params.get("agent"),
            task_id=request.query_params.get("task_id"),
            since_id=_int_param(request, "since"),
            limit=_int_param(request, "limit", 50),
        )
        return JSONResponse({"events": [_event_dict(e) for e in events]})


async def api_create_event(request: Request):
    """Record an event from an outside source (hooks, scripts)."""
    body = await _json_body(request)
    data = body.get("data")
    if data is not None and not isinstance(data, dict):
        raise ValueError("data must be an object")
    with _db(request) as db:
        event = events_mod.log_event(
            db,
            _required(body, "type"),
            agent_name=body.get("agent_name"),
            task_id=body.get("task_id"),
            session_id=body.get("session_id"),
            handoff_id=body.get("handoff_id"),
            data=data,
            message=body.get("message"),
        )
        return JSONResponse(_event_dict(event), status_code=201)


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _dashboard_state(db) -> dict:
    return {
        "tasks": [_task_dict(t) for t in tasks_mod.list_tasks(db, limit=100)],
        "agents": [_agent_dict(a) for a in agents_mod.list_agents(db)],
        "handoffs": [_handoff_dict(h) for h in handoffs_mod.list_handoffs(db, limit=50)],
        "recentEvents": [_event_dict(e) for e in events_mod.list_events(db, limit=20)],
    }


async def api_event_stream(request: Request):
    """Server-sent events.

    Sends ``connected`` and a ``state`` snapshot, then live broadcaster
    notifications, newly persisted events as ``event`` records (so writes
    from other processes show up too) and a periodic ``heartbeat``.
    """
    config: Config = request.app.state.config
    subscription = _manager(request).broadcaster.subscribe()

    async def event_generator():
        db = init_db(config.db_path)
        try:
            # Cursor first, so nothing logged after the snapshot is missed
            last_event_id = events_mod.latest_event_id(db)
            state = _dashboard_state(db)
            yield _sse({"type": "connected", "timestamp": time.time()})
            yield _sse({"type": "state", "data": state})
            last_poll = last_heartbeat = time.monotonic()

            while True:
                if await request.is_disconnected():
                    break
                for item in subscription.drain():
                    yield _sse(item)

                now = time.monotonic()
                if now - last_poll >= EVENT_POLL_INTERVAL:
                    last_poll = now
                    for event in events_mod.list_events(db, since_id=last_event_id, limit=100):
                        last_event_id = event.id
                        yield _sse({"type": "event", "data": _event_dict(event)})
                if now - last_heartbeat >= HEARTBEAT_INTERVAL:
                    last_heartbeat = now
                    yield _sse({"type": "heartbeat", "timestamp": time.time()})

                await asyncio.sleep(STREAM_TICK)
        finally:
            subscription.close()
            db.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def api_events_refresh(request: Request):
    """Push a fresh ``state`` snapshot to every stream client."""
    with _db(request) as db:
        state = _dashboard_state(db)
    broadcaster = _manager(request).broadcaster
    broadcaster.publish("state", state)
    return JSONResponse({"success": True, "clients": broadcaster.subscriber_count})


# ── Dashboard ─────────────────────────────────────────────────────────────────


async def api_dashboard_summary(request: Request):
    with _db(request) as db:
        tasks = tasks_mod.list_tasks(db)
        agents = agents_mod.list_agents(db)

    counts = {status: 0 for status in TASK_STATUSES}
    for t in tasks:
        counts[t.status] += 1
    day_ago = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=1)
    shipped_today = sum(1 for t in tasks if t.status == "SHIPPED" and t.shipped_at and t.shipped_at > day_ago)

    return JSONResponse({
        "tasks": {
            "inbox": counts["INBOX"],
            "ready": counts["READY"],
            "in_progress": counts["IN_PROGRESS"],
            "done": counts["DONE"],
            "qa_testing": counts["QA_TESTING"],
            "shipped_today": shipped_today,
            "total": len(tasks),
        },
        "agents": {
            "online": sum(1 for a in agents if a.status != "OFFLINE"),
            "working": sum(1 for a in agents if a.status == "WORKING"),
            "idle": sum(1 for a in agents if a.status == "IDLE"),
            "blocked": sum(1 for a in agents if a.status == "BLOCKED"),
        },
    })


async def api_dashboard_board(request: Request):
    with _db(request) as db:
        tasks = tasks_mod.list_tasks(db, limit=200)
    columns = {status: [] for status in BOARD_COLUMNS}
    for t in tasks:
        if t.status in columns:
            columns[t.status].append(_task_dict(t))
    return JSONResponse({"columns": columns})


async def api_dashboard_state(request: Request):
    with _db(request) as db:
        state = _dashboard_state(db)
    state["timestamp"] = time.time()
    return JSONResponse(state)


async def api_dashboard_workload(request: Request):
    """Per agent: tasks in progress and tasks shipped."""
    with _db(request) as db:
        agents = agents_mod.list_agents(db)
        tasks = tasks_mod.list_tasks(db, status=["IN_PROGRESS", "SHIPPED"])

    active, completed = Counter(), Counter()
    for t in tasks:
        if t.assigned_to:
            (active if t.status == "IN_PROGRESS" else completed)[t.assigned_to] += 1
    workload = [
        {
            "name": a.name,
            "type": a.type,
            "status": a.status,
            "working_on": a.working_on,
            "last_heartbeat": _iso(a.last_heartbeat),
            "active_tasks": active[a.name],
            "completed_tasks": completed[a.name],
        }
        for a in sorted(agents, key=lambda a: (a.type, a.name))
    ]
    return JSONResponse({"workload": workload})


async def api_dashboard_activity(request: Request):
    with _db(request) as db:
        events = events_mod.list_events(db, limit=_int_param(request, "limit", 50))
    return JSONResponse({"events": [_event_dict(e) for e in events]})


async def api_dashboard_handoffs(request: Request):
    with _db(request) as db:
        pending = handoffs_mod.list_handoffs(db, status="PENDING", limit=20)
        claimed = handoffs_mod.list_handoffs(db, status="CLAIMED", limit=10)
        recent = handoffs_mod.list_handoffs(db, limit=10)
    return JSONResponse({
        "pending": [_handoff_dict(h) for h in pending],
        "claimed": [_handoff_dict(h) for h in claimed],
        "recent": [_handoff_dict(h) for h in recent],
        "counts": {"pending": len(pending), "claimed": len(claimed)},
    })


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "priority": t.priority,
        "size": t.size,
        "assigned_to": t.assigned_to,
        "claimed_at": _iso(t.claimed_at),
        "value_statement": t.value_statement,
        "acceptance_criteria": t.acceptance_criteria,
        "context": t.context,
        "files_changed": t.files_changed,
        "summary": t.summary,
        "review_required": t.review_required,
        "sort_order": t.sort_order,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
        "shipped_at": _iso(t.shipped_at),
    }


def _agent_dict(a) -> dict:
    return {
        "name": a.name,
        "type": a.type,
        "specialization": a.specialization,
        "status": a.status,
        "current_task_id": a.current_task_id,
        "working_on": a.working_on,
        "blocker": a.blocker,
        "pid": a.pid,
        "session_id": a.session_id,
        "last_heartbeat": _iso(a.last_heartbeat),
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
    }


def _session_dict(s) -> dict:
    return {
        "id": s.id,
        "agent_name": s.agent_name,
        "external_session_id": s.external_session_id,
        "status": s.status,
        "task_id": s.task_id,
        "pid": s.pid,
        "input_tokens": s.input_tokens,
        "output_tokens": s.output_tokens,
        "started_at": _iso(s.started_at),
        "ended_at": _iso(s.ended_at),
        "exit_code": s.exit_code,
        "exit_reason": s.exit_reason,
    }


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "session_id": m.session_id,
        "role": m.role,
        "content": m.content,
        "tool_calls": m.tool_calls,
        "tool_results": m.tool_results,
        "injected": m.injected,
        "injected_by": m.injected_by,
        "sequence": m.sequence,
        "created_at": _iso(m.created_at),
    }


def _handoff_dict(h) -> dict:
    return {
        "id": h.id,
        "from_agent": h.from_agent,
        "to_agent": h.to_agent,
        "type": h.type,
        "title": h.title,
        "content": h.content,
        "task_id": h.task_id,
        "status": h.status,
        "claimed_by": h.claimed_by,
        "priority": h.priority,
        "created_at": _iso(h.created_at),
        "claimed_at": _iso(h.claimed_at),
        "resolved_at": _iso(h.resolved_at),
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "type": e.type,
        "agent_name": e.agent_name,
        "task_id": e.task_id,
        "session_id": e.session_id,
        "handoff_id": e.handoff_id,
        "data": e.data,
        "message": e.message,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, manager: AgentManager | None = None) -> Starlette:
    """Build the app around one AgentManager.

    The manager is created here (or passed in) before any route can run, and
    stopped when the app shuts down.
    """
    config = config or get_config()
    manager = manager or AgentManager(config)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        with get_db(config.db_path) as db:
            events_mod.log_event(db, "system.startup", data={"api_url": config.api_url},
                                 message="Agency API started")
        if config.auto_orchestrate:
            await run_in_threadpool(manager.enable_auto_orchestration)
        logger.info("Agency API ready at %s", config.api_url)
        try:
            yield
        finally:
            await run_in_threadpool(manager.stop_all)

    routes = [
        Route("/health", health),
        # Tasks
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/{action}", api_task_action, methods=["POST"]),
        # Orchestration (before the /{name} routes)
        Route("/api/agents/orchestration/status", api_orchestration_status),
        Route("/api/agents/orchestration/enable", api_orchestration_enable, methods=["POST"]),
        Route("/api/agents/orchestration/disable", api_orchestration_disable, methods=["POST"]),
        Route("/api/agents/orchestration/run", api_orchestration_run, methods=["POST"]),
        # Agents
        Route("/api/agents", api_list_agents),
        Route("/api/agents/running", api_running_agents),
        Route("/api/agents/{name}", api_get_agent),
        Route("/api/agents/{name}", api_update_agent, methods=["PATCH"]),
        Route("/api/agents/{name}/sessions", api_agent_sessions),
        Route("/api/agents/{name}/history", api_agent_history),
        Route("/api/agents/{name}/heartbeat", api_agent_heartbeat, methods=["POST"]),
        Route("/api/agents/{name}/start", api_start_agent, methods=["POST"]),
        Route("/api/agents/{name}/stop", api_stop_agent, methods=["POST"]),
        Route("/api/agents/{name}/pause", api_pause_agent, methods=["POST"]),
        Route("/api/agents/{name}/resume", api_resume_agent, methods=["POST"]),
        Route("/api/agents/{name}/inject", api_inject_message, methods=["POST"]),
        Route("/api/agents/{name}/redirect", api_redirect_agent, methods=["POST"]),
        # Handoffs
        Route("/api/handoffs", api_list_handoffs, methods=["GET"]),
        Route("/api/handoffs", api_create_handoff, methods=["POST"]),
        Route("/api/handoffs/{handoff_id}/{action}", api_handoff_action, methods=["POST"]),
        # Events
        Route("/api/events", api_list_events, methods=["GET"]),
        Route("/api/events", api_create_event, methods=["POST"]),
        Route("/api/events/stream", api_event_stream),
        Route("/api/events/refresh", api_events_refresh, methods=["POST"]),
        # Dashboard
        Route("/api/dashboard/summary", api_dashboard_summary),
        Route("/api/dashboard/board", api_dashboard_board),
        Route("/api/dashboard/state", api_dashboard_state),
        Route("/api/dashboard/workload", api_dashboard_workload),
        Route("/api/dashboard/activity", api_dashboard_activity),
        Route("/api/dashboard/handoffs", api_dashboard_handoffs),
    ]

    # Starlette matches handlers along the exception's MRO, so the more
    # specific ValueError subclasses win over the 400 fallback.
    exception_handlers = {
        LookupError: _not_found_error,
        ControllerStateError: _conflict_error,
        TransitionError: _conflict_error,
        ValueError: _bad_request_error,
        Exception: _server_error,
    }

    app = Starlette(
        routes=routes,
        middleware=[Middleware(AccessLogMiddleware)],
        exception_handlers=exception_handlers,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.manager = manager
    return app


def run_server(config: Config | None = None, host: str | None = None, port: int | None = None):
    config = config or get_config()
    if host:
        config.host = host
    if port:
        config.port = port
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
