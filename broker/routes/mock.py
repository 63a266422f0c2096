"""Mock server endpoints backed by specs and approved fixtures."""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from broker.dependencies import get_mock_synthesizer
from engine.mock import MockRequest, MockSynthesizer

router = APIRouter(prefix="/mock", tags=["mock"])

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


async def _read_body(request: Request):
    raw = await request.body()
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    if "json" in request.headers.get("content-type", ""):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


@router.api_route("/{service}/{version}", methods=_METHODS, include_in_schema=False)
@router.api_route("/{service}/{version}/{path:path}", methods=_METHODS)
async def serve_mock(
    service: str,
    version: str,
    request: Request,
    path: str = "",
    synthesizer: MockSynthesizer = Depends(get_mock_synthesizer),
):
    """Answer a request as ``service@version`` would. ``version`` may be ``latest`` or a range."""
    mock_request = MockRequest(
        method=request.method,
        path="/" + path,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=await _read_body(request),
    )
    result = await synthesizer.resolve_and_handle(service, version, mock_request)

    headers = {k: v for k, v in result.headers.items() if k.lower() != "content-length"}
    if result.body is None:
        return Response(status_code=result.status, headers=headers)
    if isinstance(result.body, str) and "json" not in headers.get("content-type", "json"):
        return Response(content=result.body, status_code=result.status, headers=headers)
    return JSONResponse(result.body, status_code=result.status, headers=headers)
