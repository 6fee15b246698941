"""Host plugin entry point.

Wires the gate into a host that offers hook registration and tool
registration. The host object only needs two methods::

    host.on(hook_name, handler, priority=...)
    host.register_tool(tool)
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Protocol

from . import __version__
from .approval import ApprovalTool
from .config import GA_PRIORITY, GuardConfig
from .diagnostics import run_startup_diagnostics
from .gate import GuardianGate

logger = logging.getLogger("guardian_gateway")

PLUGIN_ID = "guardian-angel"


class PluginHost(Protocol):
    def on(self, hook_name: str, handler: Callable[..., Any], priority: int = 0) -> None:
        ...

    def register_tool(self, tool: Any) -> None:
        ...


def register(host: PluginHost, plugin_config: Optional[Mapping[str, Any]] = None) -> Optional[GuardianGate]:
    """Register the gate hook, the approval tool and startup diagnostics.

    Returns the gate, or None when disabled by configuration.
    """
    config = GuardConfig.from_dict(plugin_config or {})
    if not config.enabled:
        logger.info("[GA] Guardian Angel is disabled via configuration")
        return None

    gate = GuardianGate(config)
    host.on("before_tool_call", gate.before_tool_call, priority=GA_PRIORITY)
    host.register_tool(ApprovalTool(gate.store))
    host.on("gateway_start", lambda *args, **kwargs: run_startup_diagnostics(config), priority=0)

    logger.info("[GA] Guardian Angel v%s active (hook priority: %d)", __version__, GA_PRIORITY)
    return gate
