from pydantic import BaseModel


class APIError(BaseModel):
    """Body of every error response produced by the application error handlers."""

    error: str
    error_description: str | None = None
