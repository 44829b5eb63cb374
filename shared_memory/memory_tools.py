"""
Memory Tools for MCP/FastMCP

Exposes the memory manager to a host process as five tools:
- store_conversation_memory: Record a user/assistant exchange
- store_operational_memory: Record an incident and its resolution
- search_conversation_memory: Find related past conversations
- search_operational_memory: Find similar past incidents
- get_session_context: Summarize a session

Three ways in: `memory_tool_schemas()` for hosts that register tools
themselves, `create_memory_handlers()` for dict-in/dict-out dispatch, and
`register_memory_tools()` for a FastMCP server.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import SharedMemoryError
from .extractors import extract_context, extract_tags
from .models import ConversationRecord, Environment, OperationalRecord, SearchResult

if TYPE_CHECKING:
    from fastmcp import FastMCP

    from .memory_manager import MemoryManager

Handler = Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]


# ===== Tool inputs =====


class _ToolArgs(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class StoreConversationArgs(_ToolArgs):
    session_id: str = Field(min_length=1, description="Unique session identifier")
    user_message: str = Field(description="The user's message")
    assistant_response: str = Field(description="The assistant's response")
    context: list[str] = Field(default_factory=list, description="Additional context items (optional)")
    tags: list[str] = Field(default_factory=list, description="Tags for categorizing this memory (optional)")
    auto_extract: bool = Field(
        default=True, description="Automatically extract tags and context from messages"
    )


class StoreOperationalArgs(_ToolArgs):
    incident_id: str = Field(min_length=1, description="Unique incident identifier")
    symptoms: list[str] = Field(min_length=1, description="List of observed symptoms")
    environment: Environment = Field(description="Environment where incident occurred")
    root_cause: str | None = Field(default=None, description="Root cause analysis")
    resolution: str | None = Field(default=None, description="How the issue was resolved")
    affected_resources: list[str] = Field(default_factory=list, description="List of affected resources")
    diagnostic_steps: list[str] = Field(
        default_factory=list, description="Steps taken to diagnose the issue"
    )
    tags: list[str] = Field(default_factory=list, description="Tags for categorizing this incident")


class SearchConversationArgs(_ToolArgs):
    query: str = Field(description="Search query")
    limit: int = Field(default=5, ge=1, description="Maximum results to return")
    session_id: str | None = Field(default=None, description="Optional: limit search to specific session")


class SearchOperationalArgs(_ToolArgs):
    query: str = Field(description="Search query describing current issue")
    limit: int = Field(default=5, ge=1, description="Maximum results to return")
    environment: Environment | None = Field(default=None, description="Filter by environment")
    domain: str | None = Field(default=None, description="Filter by domain (openshift, kubernetes, etc.)")


class SessionContextArgs(_ToolArgs):
    session_id: str = Field(min_length=1, description="Session identifier")


TOOL_SPECS: dict[str, tuple[str, type[_ToolArgs]]] = {
    "store_conversation_memory": (
        "Store a conversation exchange in vector memory for future retrieval",
        StoreConversationArgs,
    ),
    "store_operational_memory": (
        "Store operational incident or pattern in memory for future reference",
        StoreOperationalArgs,
    ),
    "search_conversation_memory": (
        "Search previous conversations for relevant context",
        SearchConversationArgs,
    ),
    "search_operational_memory": (
        "Search for similar operational incidents or patterns",
        SearchOperationalArgs,
    ),
    "get_session_context": (
        "Get contextual summary of a conversation session",
        SessionContextArgs,
    ),
}


def memory_tool_schemas() -> list[dict[str, Any]]:
    """Return `{name, description, inputSchema}` for each memory tool."""
    return [
        {
            "name": name,
            "description": description,
            "inputSchema": args_model.model_json_schema(by_alias=True),
        }
        for name, (description, args_model) in TOOL_SPECS.items()
    ]


# ===== Handlers =====


def _merge(*groups: list[str]) -> list[str]:
    return list(dict.fromkeys(item for group in groups for item in group))


def _error(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


def _format_results(results: list[SearchResult], degraded: bool) -> dict[str, Any]:
    return {
        "results": [
            {
                "content": r.content,
                "metadata": r.metadata,
                "similarity": r.similarity,
                "kind": r.kind,
            }
            for r in results
        ],
        "degraded": degraded,
    }


def create_memory_handlers(memory: MemoryManager) -> dict[str, Handler]:
    """
    Build dict-in/dict-out handlers bound to a memory manager.

    Invalid arguments and failed writes come back as
    `{"success": False, "error": ...}` rather than raising.
    """

    async def store_conversation_memory(args: Mapping[str, Any]) -> dict[str, Any]:
        try:
            a = StoreConversationArgs.model_validate(dict(args))
        except PydanticValidationError as e:
            return _error(f"Invalid arguments: {e}")

        tags, context = list(a.tags), list(a.context)
        if a.auto_extract:
            tags = _merge(tags, extract_tags(f"{a.user_message} {a.assistant_response}"))
            context = _merge(context, extract_context(a.user_message, a.assistant_response))

        try:
            memory_id = await memory.store_conversation(
                ConversationRecord(
                    session_id=a.session_id,
                    user_message=a.user_message,
                    assistant_response=a.assistant_response,
                    context=context,
                    tags=tags,
                )
            )
        except SharedMemoryError as e:
            return _error(str(e))

        return {
            "success": True,
            "memoryId": memory_id,
            "extractedTags": tags,
            "extractedContext": context,
        }

    async def store_operational_memory(args: Mapping[str, Any]) -> dict[str, Any]:
        try:
            a = StoreOperationalArgs.model_validate(dict(args))
        except PydanticValidationError as e:
            return _error(f"Invalid arguments: {e}")

        try:
            memory_id = await memory.store_operational(
                OperationalRecord(
                    incident_id=a.incident_id,
                    symptoms=a.symptoms,
                    environment=a.environment,
                    root_cause=a.root_cause,
                    resolution=a.resolution,
                    affected_resources=a.affected_resources,
                    diagnostic_steps=a.diagnostic_steps,
                    tags=a.tags,
                )
            )
        except SharedMemoryError as e:
            return _error(str(e))

        return {"success": True, "memoryId": memory_id}

    async def search_conversation_memory(args: Mapping[str, Any]) -> dict[str, Any]:
        try:
            a = SearchConversationArgs.model_validate(dict(args))
        except PydanticValidationError as e:
            return _error(f"Invalid arguments: {e}")
        results = await memory.search_conversations(a.query, a.limit, a.session_id)
        return _format_results(results, memory.fallback_mode)

    async def search_operational_memory(args: Mapping[str, Any]) -> dict[str, Any]:
        try:
            a = SearchOperationalArgs.model_validate(dict(args))
        except PydanticValidationError as e:
            return _error(f"Invalid arguments: {e}")
        results = await memory.search_operational(a.query, a.limit, a.environment, a.domain)
        return _format_results(results, memory.fallback_mode)

    async def get_session_context(args: Mapping[str, Any]) -> dict[str, Any]:
        try:
            a = SessionContextArgs.model_validate(dict(args))
        except PydanticValidationError as e:
            return _error(f"Invalid arguments: {e}")
        context = await memory.get_session_context(a.session_id)
        return context.model_dump(by_alias=True)

    return {
        "store_conversation_memory": store_conversation_memory,
        "store_operational_memory": store_operational_memory,
        "search_conversation_memory": search_conversation_memory,
        "search_operational_memory": search_operational_memory,
        "get_session_context": get_session_context,
    }


# ===== FastMCP =====


def _present(**kwargs: Any) -> dict[str, Any]:
    return {key: value for key, value in kwargs.items() if value is not None}


def register_memory_tools(mcp: FastMCP, memory: MemoryManager) -> None:
    """Register memory tools with the MCP server."""
    handlers = create_memory_handlers(memory)

    @mcp.tool()
    async def store_conversation_memory(
        sessionId: str,  # noqa: N803
        userMessage: str,  # noqa: N803
        assistantResponse: str,  # noqa: N803
        context: list[str] | None = None,
        tags: list[str] | None = None,
        autoExtract: bool = True,  # noqa: N803
    ) -> dict:
        """
        Store a conversation exchange in vector memory for future retrieval.

        Args:
            sessionId: Unique session identifier
            userMessage: The user's message
            assistantResponse: The assistant's response
            context: Additional context items (file paths, resource names)
            tags: Tags for categorizing this memory
            autoExtract: Automatically extract tags and context from messages

        Returns:
            Dict with memoryId and the final tags/context stored
        """
        return await handlers["store_conversation_memory"](
            _present(
                sessionId=sessionId,
                userMessage=userMessage,
                assistantResponse=assistantResponse,
                context=context,
                tags=tags,
                autoExtract=autoExtract,
            )
        )

    @mcp.tool()
    async def store_operational_memory(
        incidentId: str,  # noqa: N803
        symptoms: list[str],
        environment: Environment,
        rootCause: str | None = None,  # noqa: N803
        resolution: str | None = None,
        affectedResources: list[str] | None = None,  # noqa: N803
        diagnosticSteps: list[str] | None = None,  # noqa: N803
        tags: list[str] | None = None,
    ) -> dict:
        """
        Store an operational incident in memory for future reference.

        Args:
            incidentId: Unique incident identifier
            symptoms: Observed symptoms (at least one)
            environment: One of dev, test, staging, prod
            rootCause: Root cause analysis
            resolution: How the issue was resolved
            affectedResources: Affected resources
            diagnosticSteps: Steps taken to diagnose the issue
            tags: Tags for categorizing this incident

        Returns:
            Dict with memoryId
        """
        return await handlers["store_operational_memory"](
            _present(
                incidentId=incidentId,
                symptoms=symptoms,
                environment=environment,
                rootCause=rootCause,
                resolution=resolution,
                affectedResources=affectedResources,
                diagnosticSteps=diagnosticSteps,
                tags=tags,
            )
        )

    @mcp.tool()
    async def search_conversation_memory(
        query: str,
        limit: int = 5,
        sessionId: str | None = None,  # noqa: N803
    ) -> dict:
        """
        Search previous conversations for relevant context.

        Args:
            query: Search query (natural language)
            limit: Max results to return
            sessionId: Limit search to one session

        Returns:
            Dict with results (content, metadata, similarity, kind) and a
            degraded flag set when ChromaDB was unavailable
        """
        return await handlers["search_conversation_memory"](
            _present(query=query, limit=limit, sessionId=sessionId)
        )

    @mcp.tool()
    async def search_operational_memory(
        query: str,
        limit: int = 5,
        environment: Environment | None = None,
        domain: str | None = None,
    ) -> dict:
        """
        Search for similar operational incidents.

        Search before diagnosing a new incident to check for known
        root causes and proven resolutions.

        Args:
            query: Description of the current issue
            limit: Max results to return
            environment: Filter by environment
            domain: Filter by owning domain (openshift, kubernetes, etc.)

        Returns:
            Dict with results and a degraded flag
        """
        return await handlers["search_operational_memory"](
            _present(query=query, limit=limit, environment=environment, domain=domain)
        )

    @mcp.tool()
    async def get_session_context(sessionId: str) -> dict:  # noqa: N803
        """
        Get contextual summary of a conversation session.

        Args:
            sessionId: Session identifier

        Returns:
            Dict with messageCount, domains, commonTags, lastActivity, summary
        """
        return await handlers["get_session_context"](_present(sessionId=sessionId))
