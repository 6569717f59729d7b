"""Tool registry mapping tool names to the providers that own them.

Writers are serialized through a single lock and publish a fresh immutable
snapshot on every mutation. Readers only ever dereference the current
snapshot, so ``tools/list`` always sees a self-consistent set and lookups
never wait on registration churn.
"""

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from tool_gateway.exceptions import DuplicateToolError, ToolNotFoundError
from tool_gateway.models.tool import ToolDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable published view of the registry."""

    generation: int = 0
    tools: tuple[ToolDescriptor, ...] = ()
    by_name: Mapping[str, ToolDescriptor] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def build(cls, generation: int, tools: Iterable[ToolDescriptor]) -> "RegistrySnapshot":
        ordered = tuple(tools)
        return cls(
            generation=generation,
            tools=ordered,
            by_name=MappingProxyType({t.name: t for t in ordered}),
        )


class ToolRegistry:
    """Single-writer registry of tool descriptors."""

    def __init__(self) -> None:
        self._snapshot = RegistrySnapshot()
        self._write_lock = threading.Lock()

    # -- Reads ----------------------------------------------------------------

    def snapshot(self) -> RegistrySnapshot:
        """Current published snapshot."""
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def lookup(self, name: str) -> ToolDescriptor:
        """Find a tool by name.

        Raises:
            ToolNotFoundError: If no tool with that name is registered
        """
        descriptor = self._snapshot.by_name.get(name)
        if descriptor is None:
            raise ToolNotFoundError(name)
        return descriptor

    def list_all(self) -> list[ToolDescriptor]:
        """All tools in registration order."""
        return list(self._snapshot.tools)

    def tools_for(self, provider_id: str) -> list[ToolDescriptor]:
        return [t for t in self._snapshot.tools if t.provider_id == provider_id]

    def __contains__(self, name: str) -> bool:
        return name in self._snapshot.by_name

    def __len__(self) -> int:
        return len(self._snapshot.tools)

    # -- Writes ---------------------------------------------------------------

    def register(self, descriptor: ToolDescriptor) -> None:
        """Register a tool.

        Raises:
            DuplicateToolError: If the name is taken. The registry is left
                unchanged; callers must ``unregister`` first.
        """
        with self._write_lock:
            current = self._snapshot
            if descriptor.name in current.by_name:
                raise DuplicateToolError(descriptor.name, descriptor.provider_id)
            self._publish(current, (*current.tools, descriptor))
        logger.info(f"Tool registered: {descriptor.name} (provider {descriptor.provider_id})")

    def unregister(self, name: str) -> bool:
        """Remove a tool by name.

        Returns:
            True if the tool was found and removed
        """
        with self._write_lock:
            current = self._snapshot
            if name not in current.by_name:
                return False
            self._publish(current, (t for t in current.tools if t.name != name))
        logger.info(f"Tool unregistered: {name}")
        return True

    def replace_provider_tools(
        self,
        provider_id: str,
        descriptors: Iterable[ToolDescriptor],
    ) -> list[str]:
        """Atomically swap the set of tools owned by one provider.

        Tools the provider still exposes keep their position; new ones are
        appended. Names owned by a different provider are skipped. An
        unchanged tool set publishes nothing and keeps the generation.

        Returns:
            Names that were skipped as duplicates
        """
        with self._write_lock:
            current = self._snapshot
            incoming: dict[str, ToolDescriptor] = {}
            skipped: list[str] = []
            for descriptor in descriptors:
                owner = current.by_name.get(descriptor.name)
                if (owner is not None and owner.provider_id != provider_id) or descriptor.name in incoming:
                    skipped.append(descriptor.name)
                    continue
                incoming[descriptor.name] = descriptor.model_copy(update={"provider_id": provider_id})

            tools: list[ToolDescriptor] = []
            for tool in current.tools:
                if tool.provider_id != provider_id:
                    tools.append(tool)
                elif tool.name in incoming:
                    tools.append(incoming.pop(tool.name))
            tools.extend(incoming.values())
            changed = tuple(tools) != current.tools
            if changed:
                self._publish(current, tools)

        for name in skipped:
            logger.warning(f"Provider {provider_id} exposes duplicate tool '{name}', skipped")
        if changed:
            logger.info(
                f"Provider {provider_id} now owns {len(self.tools_for(provider_id))} tools"
            )
        return skipped

    def unregister_provider(self, provider_id: str) -> int:
        """Remove every tool owned by a provider. Returns the count removed."""
        with self._write_lock:
            current = self._snapshot
            kept = [t for t in current.tools if t.provider_id != provider_id]
            removed = len(current.tools) - len(kept)
            if removed:
                self._publish(current, kept)
        return removed

    def _publish(self, current: RegistrySnapshot, tools: Iterable[ToolDescriptor]) -> None:
        self._snapshot = RegistrySnapshot.build(current.generation + 1, tools)
