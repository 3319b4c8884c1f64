from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import AgentShellsError
from ..runtime import AgentShellsRuntime
from .fastapi_router import router as api_router
from .websocket import router as ws_router


def create_app(runtime: Optional[AgentShellsRuntime] = None, *, run_timers: bool = True) -> FastAPI:
    runtime = runtime or AgentShellsRuntime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start(run_timers=run_timers)
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="agent_shells", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(AgentShellsError)
    async def _agent_shells_error(request: Request, exc: AgentShellsError):
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    app.include_router(api_router)
    app.include_router(ws_router)
    return app


__all__ = ["create_app"]
