"""HTTP surface of the Tool Gateway.

Routes live in ``tool_gateway.api.routes``; they are not imported here
because the managers depend on ``tool_gateway.api.events``.
"""

from tool_gateway.api.events import EventBus

__all__ = ["EventBus"]
