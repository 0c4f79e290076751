# loadtester/app.py
from __future__ import annotations

import contextlib
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from loadtester.auth import AuthProvider, ControlTokenMiddleware, bearer_token, get_provider
from loadtester.config import configure_logging
from loadtester.exceptions import LoadTestError, TestStateError
from loadtester.schema import TestConfiguration, TestResults
from loadtester.session_manager import TestRunner

logger = logging.getLogger(__name__)


def create_app(runner: Optional[TestRunner] = None, provider: Optional[AuthProvider] = None) -> FastAPI:
    provider = provider or get_provider()

    # ------------------------------------------------------------------ #
    # Lifespan hook: logging on the way up, stop a running test on the way down
    # ------------------------------------------------------------------ #
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        app.state.runner = runner or TestRunner()
        yield
        if app.state.runner.is_test_running():
            with contextlib.suppress(LoadTestError):
                await app.state.runner.stop_test()
        app.state.runner.events.close()

    app = FastAPI(title="Browser Load Tester", lifespan=lifespan)
    app.add_middleware(ControlTokenMiddleware, provider=provider)
    app.state.runner = runner
    app.state.auth = provider

    @app.exception_handler(TestStateError)
    async def _state_conflict(request: Request, exc: TestStateError):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    # ---------- REST API ---------- #
    @app.post("/tests", status_code=status.HTTP_201_CREATED)
    async def start_test(config: TestConfiguration, request: Request):
        runner: TestRunner = request.app.state.runner
        try:
            test_id = await runner.start_test(config)
        except TestStateError:
            raise
        except LoadTestError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
        return {"testId": test_id}

    @app.get("/tests/current")
    async def current_test(request: Request):
        runner: TestRunner = request.app.state.runner
        return {
            "status": runner.state.value,
            "testId": runner.get_test_id(),
            "monitoring": runner.get_monitoring_data().model_dump(by_alias=True, mode="json"),
        }

    @app.delete("/tests/current", response_model=TestResults)
    async def stop_test(request: Request):
        return await request.app.state.runner.stop_test()

    @app.get("/tests/current/results", response_model=TestResults)
    async def last_results(request: Request):
        results = request.app.state.runner.get_results()
        if results is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No results available")
        return results

    # ---------- WebSocket event stream ---------- #
    @app.websocket("/tests/current/events")
    async def event_stream(websocket: WebSocket):
        token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
        if not websocket.app.state.auth.verify(token):
            await websocket.close(code=4401)
            return

        await websocket.accept()
        try:
            async for event in websocket.app.state.runner.events.channel():
                await websocket.send_json(event.to_dict())
        except WebSocketDisconnect:
            pass
        finally:
            with contextlib.suppress(RuntimeError):
                await websocket.close()

    return app


app = create_app()
