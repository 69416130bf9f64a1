from __future__ import annotations

from fastapi import FastAPI, HTTPException

from .api_models import RouteRequest, RouteResponse, RuleOut
from .db import Store
from .errors import ServiceUnavailable, UpstreamError
from .health import HealthChecker
from .registry import load_registry, service_urls
from .router import Router
from .settings import Settings, load_settings


def build_router(settings: Settings) -> Router:
    registry = load_registry(settings)
    return Router(
        settings,
        service_urls(registry, settings),
        HealthChecker(timeout_s=settings.router_probe_timeout_s),
        store=Store(settings.db_path),
    )


def create_app(settings: Settings | None = None, router: Router | None = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Inference Fleet Router")
    app.state.settings = settings
    app.state.router = router

    def get_router() -> Router:
        if app.state.router is None:
            app.state.router = build_router(settings)
        return app.state.router

    @app.on_event("startup")
    def startup() -> None:
        get_router().startup_report()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/routes", response_model=list[RuleOut])
    def routes() -> list[RuleOut]:
        r = get_router()
        return [
            RuleOut(tag=rule.tag, keywords=list(rule.keywords), target=rule.target, n_predict=rule.n_predict)
            for rule in (*r.rules, r.fallback)
        ]

    @app.post("/route", response_model=RouteResponse)
    def route(req: RouteRequest) -> RouteResponse:
        r = get_router()
        try:
            decision = r.route(req.query)
            completion = r.forward(decision, req.query) if req.forward else None
        except ServiceUnavailable as e:
            raise HTTPException(status_code=503, detail=f"{e.kind}: {e}")
        except UpstreamError as e:
            raise HTTPException(status_code=502, detail=f"{e.kind}: {e}")
        return RouteResponse(
            target_service=decision.target_service,
            matched_keyword=decision.matched_keyword,
            fallback_used=decision.fallback_used,
            completion=completion,
        )

    return app
