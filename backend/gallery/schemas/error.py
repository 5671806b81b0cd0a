from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every error response; ``code`` is a stable machine-readable identifier."""

    detail: Any
    code: str | None = None
    request_id: str | None = None
