"""Shared Pydantic schemas."""
from pydantic import BaseModel


class DeleteResponse(BaseModel):
    deleted: bool = True
    id: str = ""


class ErrorResponse(BaseModel):
    error: str
    message: str
