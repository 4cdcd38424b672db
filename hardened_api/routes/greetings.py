from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse, PlainTextResponse

from hardened_api.dependencies.validation import sanitized_body, validated_fields
from hardened_api.sanitizers.fields import FieldKind, ValidationRule

router = APIRouter(tags=["greetings"])

GREET_RULES = (
    ValidationRule("name", FieldKind.STRING, min_length=1, max_length=100),
    ValidationRule("email", FieldKind.EMAIL, required=False),
)


@router.get("/", response_class=PlainTextResponse)
async def hello() -> PlainTextResponse:
    return PlainTextResponse("Hello, World!\n")


@router.get("/evening", response_class=HTMLResponse)
async def evening() -> HTMLResponse:
    return HTMLResponse("Good evening")


@router.post("/greet")
async def greet(fields: Dict[str, Any] = Depends(validated_fields(*GREET_RULES))) -> Dict[str, Any]:
    # name is already trimmed and entity-escaped
    return {"message": f"Hello, {fields['name']}!", "email": fields["email"]}


@router.post("/echo")
async def echo(body: Dict[str, Any] = Depends(sanitized_body)) -> Dict[str, Any]:
    return {"received": body}
