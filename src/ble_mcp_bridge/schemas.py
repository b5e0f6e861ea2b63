"""Define Pydantic models for request payloads."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WriteCharacteristicRequest(BaseModel):
    """Payload for writing a characteristic value over HTTP.

    ``value`` is a hex string; it is validated by the route so that a missing
    or malformed value gets the same 400 response the MCP surface reports.
    """

    model_config = ConfigDict(populate_by_name=True)

    value: Optional[str] = None
    without_response: bool = Field(False, alias="withoutResponse")
