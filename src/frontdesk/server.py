import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import asdict

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from frontdesk.config import Settings, validate_config
from frontdesk.engine import FrontdeskEngine, create_engine

load_dotenv()

logger = logging.getLogger(__name__)


class StartCallRequest(BaseModel):
    company_id: str
    trade: str = ""
    config_version: int = 1


class TurnRequest(BaseModel):
    company_id: str
    text: str
    speaker: str = "caller"


class EndCallRequest(BaseModel):
    started_at: float = 0.0
    ended_at: float = 0.0
    usage: dict = Field(default_factory=dict)


def create_app(engine: FrontdeskEngine | None = None) -> FastAPI:
    """HTTP surface for telephony adapters and the test console.

    Without an injected *engine*, one is built from the environment on
    startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            app.state.engine = engine
            yield
            return
        validate_config()
        app.state.engine = create_engine(Settings.from_env())
        try:
            yield
        finally:
            await app.state.engine.close()

    app = FastAPI(title="Frontdesk Turn Engine", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/calls/{call_id}/start")
    async def start_call(call_id: str, body: StartCallRequest, request: Request):
        ctx = await request.app.state.engine.init_call_context(
            call_id, body.company_id, body.trade, body.config_version
        )
        return {"call_id": ctx.call_id, "company_id": ctx.company_id, "created_at": ctx.created_at}

    @app.post("/calls/{call_id}/turn")
    async def caller_turn(call_id: str, body: TurnRequest, request: Request):
        result = await request.app.state.engine.process_caller_turn(
            body.company_id, call_id, body.speaker, body.text
        )
        return result.to_dict()

    @app.post("/calls/{call_id}/end")
    async def end_call(call_id: str, body: EndCallRequest, request: Request):
        result = await request.app.state.engine.finalize_call(
            call_id, body.started_at, body.ended_at or time.time(), body.usage
        )
        if not result.found:
            raise HTTPException(status_code=404, detail=f"No active call {call_id}")
        return asdict(result)

    return app


app = create_app()


def main():
    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8080")))


if __name__ == "__main__":
    main()
