"""
Tool call API.

- POST /v1/tools/invoke: gate, generate and record one tool call

The body is one of the tagged tool request variants (``tool`` field).
Denials come back as normalized errors carrying the verdict:
403 forbidden, 429 limit_exceeded (with Retry-After), 503 store_unavailable.
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Request
from fastapi.exceptions import RequestValidationError
from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from tutorgate.features.tools.dispatch import invoke_tool
from tutorgate.models.tools import ToolRequest


router = APIRouter(prefix="/v1/tools", tags=["tools"])

_tool_request_adapter: TypeAdapter = TypeAdapter(ToolRequest)


def parse_tool_request(payload: Dict[str, Any]) -> ToolRequest:
    try:
        return _tool_request_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise RequestValidationError(e.errors())


@router.post("/invoke")
def invoke(request: Request, payload: Dict[str, Any] = Body(...)):
    tool_request = parse_tool_request(payload)
    generator = getattr(request.app.state, "content_generator", None)
    result = invoke_tool(
        tool_request,
        dict(request.headers),
        generator=generator,
        peer_address=request.client.host if request.client else None,
    )
    return {"data": result.model_dump()}
