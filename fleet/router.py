from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

import httpx

from .db import Store
from .errors import ServiceUnavailable, UpstreamError
from .health import HealthChecker
from .settings import Settings
from .state import RouteDecision


@dataclass(frozen=True)
class RouteRule:
    tag: str
    keywords: tuple[str, ...]
    target: str
    prompt_template: str = "{query}"
    n_predict: int = 512


# Checked in order; first match wins.
DEFAULT_RULES: tuple[RouteRule, ...] = (
    RouteRule(tag="coder", keywords=("@coder", "code", "research"), target="coder"),
    RouteRule(tag="vision", keywords=("@vision", "image", "doc", "ocr"), target="vision"),
    RouteRule(
        tag="voice",
        keywords=("@voice", "audio"),
        target="voice",
        prompt_template="Transcribe and respond to: {query}",
    ),
)

FALLBACK_RULE = RouteRule(
    tag="agent",
    keywords=(),
    target="agent",
    prompt_template="You are QwenAgent. Delegate: {query} to @coder, @vision, or @voice if needed. Else plan.",
    n_predict=256,
)


def classify(
    query: str,
    rules: tuple[RouteRule, ...] = DEFAULT_RULES,
    fallback: RouteRule = FALLBACK_RULE,
) -> RouteDecision:
    """Pick a target for a query. Pure: depends only on the text and the table."""
    text = query.lower()
    for rule in rules:
        for kw in rule.keywords:
            if kw.lower() in text:
                return RouteDecision(target_service=rule.target, matched_keyword=kw, fallback_used=False, tag=rule.tag)
    return RouteDecision(target_service=fallback.target, matched_keyword=None, fallback_used=True, tag=fallback.tag)


class Router:
    """Dispatches queries to the worker chosen by the rule table.

    The URL table is copied into a read-only mapping at construction, so
    concurrent requests need no locking.
    """

    def __init__(
        self,
        settings: Settings,
        urls: Mapping[str, str],
        health: HealthChecker,
        store: Store | None = None,
        rules: tuple[RouteRule, ...] = DEFAULT_RULES,
        fallback: RouteRule = FALLBACK_RULE,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings
        self.urls: Mapping[str, str] = MappingProxyType(dict(urls))
        self.health = health
        self.store = store
        self.rules = tuple(rules)
        self.fallback = fallback
        self._transport = transport
        self._by_tag = {r.tag: r for r in (*self.rules, fallback)}

    def rule_for(self, decision: RouteDecision) -> RouteRule:
        return self._by_tag.get(decision.tag or "", self.fallback)

    def route(self, query: str) -> RouteDecision:
        decision = classify(query, self.rules, self.fallback)
        target = decision.target_service
        self._log("INFO", f"Routing query to {target} (keyword={decision.matched_keyword!r}, fallback={decision.fallback_used})", target)

        base = self.urls.get(target)
        if base is None:
            err = ServiceUnavailable(target, "no endpoint configured")
            self._log("ERROR", f"{err.kind}: {err}", target)
            raise err

        result = self.health.probe(
            f"{base}{self.settings.health_path}",
            attempts=1,
            interval_s=0,
            timeout_s=self.settings.router_probe_timeout_s,
        )
        if not result.healthy:
            err = ServiceUnavailable(target, result.last_error or "health check failed")
            self._log("ERROR", f"{err.kind}: {err}", target)
            raise err
        return decision

    def forward(self, decision: RouteDecision, query: str) -> dict[str, Any]:
        """Single proxy call to the worker's completion endpoint. No retries."""
        target = decision.target_service
        base = self.urls.get(target)
        if base is None:
            raise ServiceUnavailable(target, "no endpoint configured")
        rule = self.rule_for(decision)
        payload = {"prompt": rule.prompt_template.format(query=query), "n_predict": rule.n_predict}
        try:
            with httpx.Client(timeout=self.settings.upstream_timeout_s, transport=self._transport) as client:
                resp = client.post(f"{base}/completion", json=payload)
        except httpx.HTTPError as e:
            err = UpstreamError(target, f"{type(e).__name__}: {e}")
            self._log("ERROR", f"{err.kind}: {err}", target)
            raise err from e
        if resp.status_code >= 300:
            err = UpstreamError(target, f"HTTP {resp.status_code}")
            self._log("ERROR", f"{err.kind}: {err}", target)
            raise err
        try:
            data = resp.json()
        except ValueError as e:
            err = UpstreamError(target, "invalid JSON in response")
            self._log("ERROR", f"{err.kind}: {err}", target)
            raise err from e
        return data if isinstance(data, dict) else {"content": data}

    def handle(self, query: str) -> tuple[RouteDecision, dict[str, Any]]:
        decision = self.route(query)
        return decision, self.forward(decision, query)

    def startup_report(self) -> dict[str, bool]:
        """One health check per known service; not-ready services are logged, not fatal."""
        report: dict[str, bool] = {}
        for name, base in self.urls.items():
            ok, msg, _ = self.health.check(f"{base}{self.settings.health_path}", self.settings.router_probe_timeout_s)
            report[name] = ok
            if not ok:
                self._log("WARN", f"{name} service not ready: {msg}", name)
        return report

    def _log(self, level: str, message: str, service: str | None = None) -> None:
        if self.store is not None:
            self.store.log_event(level, message, service_name=service)
