from __future__ import annotations

import json
import logging
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from aichatplayers.api.middleware import RequestContextMiddleware
from aichatplayers.api.models import (
    BotRegisterIn,
    BotRegisterOut,
    HealthOut,
    PlanRequestIn,
    PlanResponseOut,
)
from aichatplayers.config import AppConfig
from aichatplayers.llm.client import DisabledGenerator, Generator, build_generator
from aichatplayers.llm.errors import LLMUnavailableError, SupervisorError
from aichatplayers.llm.supervisor import LifecycleState, ServerSupervisor
from aichatplayers.logging_setup import configure_logging
from aichatplayers.planner.planner import Planner, PlannerConfig


LOGGER = logging.getLogger("aichatplayers.main")

# server/aichatplayers/main.py -> repo root
REPO_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def _start_generator(config: AppConfig) -> tuple[Generator, ServerSupervisor]:
    supervisor = ServerSupervisor(config.llm)
    try:
        supervisor.ensure_ready()
    except SupervisorError as exc:
        LOGGER.warning("llm_server_start_failed url=%s error=%s", config.llm.server_url, exc)

    if supervisor.state is LifecycleState.FAILED:
        LOGGER.warning("llm_disabled reason=server_start_failed")
        return DisabledGenerator(), supervisor

    try:
        generator = build_generator(config.llm)
    except LLMUnavailableError as exc:
        LOGGER.warning("llm_disabled reason=unavailable error=%s", exc)
        return DisabledGenerator(), supervisor

    LOGGER.info("llm_generator_ready type=%s enabled=%s", type(generator).__name__, generator.enabled)
    return generator, supervisor


def create_app(config: AppConfig | None = None, planner: Planner | None = None) -> FastAPI:
    cfg = config or AppConfig.from_env(env_file=REPO_ENV_FILE)

    app = FastAPI(title="AI Chat Players Planner", version="0.1.0")
    app.state.config = cfg
    app.state.planner = planner
    app.state.owns_planner = planner is None
    app.state.generator = None
    app.state.supervisor = None

    app.add_middleware(RequestContextMiddleware, body_limit_bytes=cfg.service.body_limit_bytes)

    def get_planner() -> Planner:
        if app.state.planner is None:
            app.state.planner = Planner()
        return app.state.planner

    @app.on_event("startup")
    def startup() -> None:
        if not app.state.owns_planner:
            return
        log_path = configure_logging(cfg.logging)
        LOGGER.info(
            "service_starting host=%s port=%s log_file=%s",
            cfg.service.host,
            cfg.service.port,
            log_path,
        )
        generator, supervisor = _start_generator(cfg)
        app.state.generator = generator
        app.state.supervisor = supervisor
        app.state.planner = Planner(generator=generator, config=PlannerConfig.from_llm_config(cfg.llm))

    @app.on_event("shutdown")
    def shutdown() -> None:
        if not app.state.owns_planner:
            return
        if app.state.planner is not None:
            app.state.planner.close()
        if app.state.generator is not None:
            app.state.generator.close()
        if app.state.supervisor is not None:
            app.state.supervisor.close()
        LOGGER.info("service_stopped")

    @app.exception_handler(RequestValidationError)
    async def invalid_payload(request: Request, exc: RequestValidationError) -> JSONResponse:
        LOGGER.warning(
            "request_id=%s invalid_request path=%s errors=%s",
            getattr(request.state, "request_id", ""),
            request.url.path,
            exc.errors(),
        )
        return JSONResponse({"error": "invalid_json"}, status_code=400)

    @app.get("/healthz")
    def healthz(request: Request) -> HealthOut:
        LOGGER.debug("request_id=%s healthz", getattr(request.state, "request_id", ""))
        return HealthOut(status="ok")

    @app.post("/v1/plan")
    def plan(payload: PlanRequestIn, request: Request) -> PlanResponseOut:
        plan_request = payload.to_domain(fallback_request_id=getattr(request.state, "request_id", ""))
        LOGGER.debug(
            "request_id=%s plan_request=%s",
            plan_request.request_id,
            payload.model_dump_json(),
        )
        response = get_planner().plan(plan_request)
        body = response.to_payload()
        LOGGER.debug(
            "request_id=%s plan_response=%s",
            plan_request.request_id,
            json.dumps(body, ensure_ascii=False),
        )
        return PlanResponseOut.model_validate(body)

    @app.post("/v1/bots/register")
    def register_bots(payload: BotRegisterIn, request: Request) -> BotRegisterOut:
        bots = payload.to_domain()
        count = get_planner().register_bots(payload.server_id, bots)
        LOGGER.info(
            "request_id=%s register_bots server_id=%s bots=%s registered=%s",
            getattr(request.state, "request_id", ""),
            payload.server_id,
            len(bots),
            count,
        )
        return BotRegisterOut(registered=count)

    return app


app = create_app()


def main() -> None:
    cfg: AppConfig = app.state.config
    uvicorn.run(app, host=cfg.service.host, port=cfg.service.port, log_config=None)


if __name__ == "__main__":
    main()
