from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["Hello"])

GREETING = "Hello, World!\n"


@router.api_route("/", methods=["GET", "HEAD"], response_class=PlainTextResponse)
def hello() -> PlainTextResponse:
    """Plain-text greeting."""

    return PlainTextResponse(GREETING, status_code=200)
