from __future__ import annotations

import json
from typing import Any, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from app.guide.app.services import GuideService, GuideServiceError, get_guide_service

router = APIRouter(prefix="/guide", tags=["guide"])


class GuideSuggestionsReq(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    context: dict[str, Any] = Field(default_factory=dict)
    user_first_name: Optional[str] = None
    debug: bool = False
    force_refresh: bool = False


class ProviderOverrides(BaseModel):
    model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=16000)


class ContextRunReq(BaseModel):
    context: Any = None
    user_first_name: Optional[str] = None
    provider_overrides: Optional[ProviderOverrides] = None


class ContextRunResp(BaseModel):
    raw_model_text: str
    parsed_events: list[dict[str, Any]] = Field(default_factory=list)
    debug_summary: dict[str, Any] = Field(default_factory=dict)


def service_error_response(exc: GuideServiceError) -> JSONResponse:
    if exc.body is not None:
        return JSONResponse(status_code=exc.status_code, content=exc.body)
    raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


def _ndjson(lines: Iterator[dict[str, Any]]) -> Iterator[str]:
    for line in lines:
        yield json.dumps(line, ensure_ascii=False, separators=(",", ":")) + "\n"


@router.post("/suggestions")
def guide_suggestions(req: GuideSuggestionsReq, service: GuideService = Depends(get_guide_service)):
    try:
        stream = service.stream_suggestions(
            req.user_id,
            req.context,
            user_first_name=req.user_first_name,
            debug=req.debug,
            force_refresh=req.force_refresh,
        )
    except GuideServiceError as exc:
        return service_error_response(exc)

    headers = {"x-cache": "hit" if stream.cache_hit else "miss", "cache-control": "no-store"}
    if stream.correlation_id:
        headers["x-correlation-id"] = stream.correlation_id
    return StreamingResponse(_ndjson(stream.lines), media_type="application/x-ndjson", headers=headers)


@router.post("/context-run", response_model=ContextRunResp)
def guide_context_run(req: ContextRunReq, service: GuideService = Depends(get_guide_service)):
    try:
        overrides = req.provider_overrides.model_dump(exclude_none=True) if req.provider_overrides else None
        return service.context_run(req.context, user_first_name=req.user_first_name, provider_overrides=overrides)
    except GuideServiceError as exc:
        return service_error_response(exc)
