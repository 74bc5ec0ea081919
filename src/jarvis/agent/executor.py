"""Tool executor: validation, dispatch, and the confirmation policy.

Handlers never leak exceptions past this module: anything they raise is
logged and returned as a failed ``ToolResult`` so the model can recover.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from jarvis.agent.state import AgentContext, ToolResult
from jarvis.agent.tools import get_tool
from jarvis.config import Settings
from jarvis.config import settings as default_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    error: str | None = None


def validate_tool_params(tool_name: str, params: dict[str, Any]) -> ValidationResult:
    """Check every schema-required parameter is present and not null."""
    tool = get_tool(tool_name)
    if tool is None:
        return ValidationResult(valid=False, error=f"Unknown tool: {tool_name}")

    for field in tool.required:
        if params.get(field) is None:
            return ValidationResult(valid=False, error=f"Missing required parameter: {field}")

    return ValidationResult(valid=True)


async def execute_tool(
    tool_name: str,
    params: dict[str, Any] | None,
    context: AgentContext,
    settings: Settings | None = None,
) -> ToolResult:
    """Validate, run and post-process one tool call."""
    settings = settings or default_settings
    params = params or {}

    tool = get_tool(tool_name)
    if tool is None:
        return ToolResult.fail(f"Unknown tool: {tool_name}")

    validation = validate_tool_params(tool_name, params)
    if not validation.valid:
        return ToolResult.fail(validation.error or "Invalid parameters.")

    try:
        result = await tool.handler(params, context)
    except Exception as e:
        logger.exception("Tool %s failed", tool_name)
        return ToolResult.fail(str(e) or "Tool execution failed.")

    # Confirmation policy is centralized: a gated tool cannot opt out
    if result.success and settings.needs_confirmation(tool_name):
        result = result.model_copy(update={"requires_confirmation": True})

    logger.debug("Tool %s params=%s success=%s", tool_name, params, result.success)
    return result
