"""Tool registry: static mapping of tool id to metadata and handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exception import McpError, ToolRegistrationError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Any], None]
ToolHandler = Callable[
    [Any, Dict[str, Any], ProgressCallback], Union[Awaitable[Any], Any]
]


class ToolMetadata(BaseModel):
    """Client-facing description of a tool."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(..., min_length=1)
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object"}, alias="inputSchema"
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with wire field names."""
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class ToolRegistration:
    """A registered tool."""

    id: str
    metadata: ToolMetadata
    handler: ToolHandler

    def describe(self) -> Dict[str, Any]:
        """Return ``{id, ...metadata}`` as sent to clients."""
        return {"id": self.id, **self.metadata.to_dict()}


class ToolRegistry:
    """Registry populated by the hosting process before the server listens."""

    def __init__(self) -> None:
        """Create an empty, writable registry."""
        self._tools: Dict[str, ToolRegistration] = {}
        self._frozen = False

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    @property
    def frozen(self) -> bool:
        """Whether registration has been closed."""
        return self._frozen

    def freeze(self) -> None:
        """Close registration; the table is read-only from here on."""
        self._frozen = True

    def register(
        self,
        tool_id: str,
        metadata: Union[ToolMetadata, Dict[str, Any]],
        handler: ToolHandler,
    ) -> str:
        """Register ``handler`` under ``tool_id`` and return the id.

        Raises:
            ToolRegistrationError: empty or duplicate id, invalid metadata,
                non-callable handler, or registration after ``freeze``.
        """
        if self._frozen:
            raise ToolRegistrationError("tool_registry_frozen")
        if not tool_id or not isinstance(tool_id, str):
            raise ToolRegistrationError("tool_def_missing_id")
        if tool_id in self._tools:
            raise ToolRegistrationError("tool_already_registered")
        if not callable(handler):
            raise ToolRegistrationError("tool_handler_not_callable")

        if not isinstance(metadata, ToolMetadata):
            fields = {k: v for k, v in dict(metadata).items() if k != "id"}
            try:
                metadata = ToolMetadata.model_validate(
                    {"name": tool_id, **fields}
                )
            except ValidationError as exc:
                raise ToolRegistrationError(
                    f"Invalid metadata for '{tool_id}': {exc}"
                ) from exc

        self._tools[tool_id] = ToolRegistration(tool_id, metadata, handler)
        logger.info("Registered tool %s", tool_id)
        return tool_id

    def get(self, tool_id: str) -> Optional[ToolRegistration]:
        """Return the registration for ``tool_id`` or ``None``."""
        return self._tools.get(tool_id)

    def list(self) -> List[Dict[str, Any]]:
        """Return ``{id, ...metadata}`` for every registered tool."""
        return [tool.describe() for tool in self._tools.values()]

    def describe(self, tool_id: str) -> Dict[str, Any]:
        """Return ``{id, ...metadata}`` for one tool.

        Raises:
            McpError: ``tool_not_found`` when the id is unknown.
        """
        tool = self._tools.get(tool_id)
        if tool is None:
            raise McpError("tool_not_found")
        return tool.describe()
