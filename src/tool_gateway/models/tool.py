"""Tool descriptor models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ToolDeclaration(BaseModel):
    """A tool as a provider declares it (MCP ``tools/list`` entry)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1)
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        alias="inputSchema",
    )

    def to_wire(self) -> dict[str, Any]:
        """Shape sent to clients in ``tools/list`` and snapshots."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolDescriptor(ToolDeclaration):
    """A registered tool, bound to the provider that owns it."""

    provider_id: str = Field(alias="providerId")

    @classmethod
    def from_declaration(cls, declaration: ToolDeclaration, provider_id: str) -> "ToolDescriptor":
        return cls(
            name=declaration.name,
            description=declaration.description,
            input_schema=declaration.input_schema,
            provider_id=provider_id,
        )
