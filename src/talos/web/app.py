"""HTTP control API for a running daemon."""

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from talos.integrations.beans import BeansCliError
from talos.integrations.git import validate_bean_id


def _orchestrator(request: Request):
    return request.app.state.orchestrator


def _bean_id(request: Request) -> str | None:
    bean_id = request.path_params["bean_id"]
    return bean_id if validate_bean_id(bean_id) else None


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_state(request: Request):
    return JSONResponse(_orchestrator(request).get_state())


async def api_pause(request: Request):
    orch = _orchestrator(request)
    orch.pause()
    return JSONResponse({"paused": orch.is_paused})


async def api_resume(request: Request):
    orch = _orchestrator(request)
    orch.resume()
    return JSONResponse({"paused": orch.is_paused})


async def api_cancel(request: Request):
    bean_id = _bean_id(request)
    if not bean_id:
        return JSONResponse({"error": "Invalid bean ID"}, status_code=400)
    # Cancelling waits for the agent to exit
    cancelled = await run_in_threadpool(_orchestrator(request).cancel, bean_id)
    if not cancelled:
        return JSONResponse({"error": "Bean is not running"}, status_code=404)
    return JSONResponse({"bean_id": bean_id, "cancelled": True})


async def api_retry(request: Request):
    bean_id = _bean_id(request)
    if not bean_id:
        return JSONResponse({"error": "Invalid bean ID"}, status_code=400)
    orch = _orchestrator(request)
    try:
        bean = await run_in_threadpool(orch.store.get_bean, bean_id)
        if bean is None:
            return JSONResponse({"error": "Bean not found"}, status_code=404)
        queued = await run_in_threadpool(orch.retry, bean_id)
    except BeansCliError as e:
        return JSONResponse({"error": str(e)}, status_code=502)
    return JSONResponse({"bean_id": bean_id, "queued": queued})


async def api_output(request: Request):
    bean_id = _bean_id(request)
    if not bean_id:
        return JSONResponse({"error": "Invalid bean ID"}, status_code=400)
    output = _orchestrator(request).get_output(bean_id)
    if output is None:
        return JSONResponse({"error": "No output for bean"}, status_code=404)
    return PlainTextResponse(output)


def create_app(orchestrator) -> Starlette:
    routes = [
        Route("/api/state", api_state),
        Route("/api/pause", api_pause, methods=["POST"]),
        Route("/api/resume", api_resume, methods=["POST"]),
        Route("/api/beans/{bean_id}/cancel", api_cancel, methods=["POST"]),
        Route("/api/beans/{bean_id}/retry", api_retry, methods=["POST"]),
        Route("/api/beans/{bean_id}/output", api_output),
    ]
    app = Starlette(routes=routes)
    app.state.orchestrator = orchestrator
    return app


def run_server(orchestrator, host: str = "127.0.0.1", port: int = 8787):
    """Run the control API in the foreground."""
    app = create_app(orchestrator)
    uvicorn.run(app, host=host, port=port, log_config=None)
