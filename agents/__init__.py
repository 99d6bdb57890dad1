"""Framework selection, LLM integration, tools and the agent network.

This module exports the key components needed for agent execution:
- Framework profiles and the one-shot framework classifier
- LLM client utilities with retry logic and fallback model support
- The three sandbox tools exposed to the code agent
- The router state machine that drives the code agent
"""

from agents.classifier import FrameworkSelection, classify_framework
from agents.frameworks import (
    DEFAULT_FRAMEWORK,
    FRAMEWORK_PROFILES,
    Framework,
    FrameworkProfile,
    get_profile,
    parse_framework,
)
from agents.llm import (
    LLMClient,
    LLMResponse,
    MockLLMClient,
    ToolCallData,
    format_assistant_message_with_tools,
    format_tool_result_for_llm,
)
from agents.network import (
    AgentNetwork,
    AgentState,
    NetworkRun,
    Route,
    create_agent_state,
    extract_summary_text,
    synthesize_summary,
)
from agents.prompts import get_code_agent_prompt
from agents.tools import (
    TOOL_DEFINITIONS,
    CodeAgentTools,
    ToolCall,
    ToolResult,
    get_tool_definitions_for_llm,
)

__all__ = [
    # Frameworks
    "DEFAULT_FRAMEWORK",
    "FRAMEWORK_PROFILES",
    "Framework",
    "FrameworkProfile",
    "FrameworkSelection",
    "classify_framework",
    "get_profile",
    "parse_framework",
    # LLM
    "LLMClient",
    "LLMResponse",
    "MockLLMClient",
    "ToolCallData",
    "format_assistant_message_with_tools",
    "format_tool_result_for_llm",
    # Tools
    "TOOL_DEFINITIONS",
    "CodeAgentTools",
    "ToolCall",
    "ToolResult",
    "get_tool_definitions_for_llm",
    # Network
    "AgentNetwork",
    "AgentState",
    "NetworkRun",
    "Route",
    "create_agent_state",
    "extract_summary_text",
    "synthesize_summary",
    # Prompts
    "get_code_agent_prompt",
]
