from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RouteRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Free-text query to classify and dispatch")
    forward: bool = Field(True, description="Forward to the worker; false only returns the decision")


class RouteResponse(BaseModel):
    target_service: str
    matched_keyword: str | None = None
    fallback_used: bool
    completion: dict[str, Any] | None = None


class RuleOut(BaseModel):
    tag: str
    keywords: list[str]
    target: str
    n_predict: int
