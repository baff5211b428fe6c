"""
Processing engine backed by the Claude Agent SDK.
"""

import logging
import sys
from pathlib import Path
from typing import Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
)
from claude_agent_sdk.types import McpServerConfig as SdkMcpServerConfig

from chatgate.config.schema import Config, McpServerConfig
from chatgate.protocol.types import Capability
from chatgate.routing.engine import EngineReply

logger = logging.getLogger(__name__)

TOOL_DESCRIPTIONS = {
    "Read": "Read files in the workspace",
    "Write": "Create files in the workspace",
    "Edit": "Edit files in the workspace",
    "Bash": "Run shell commands",
    "Glob": "Find files by pattern",
    "Grep": "Search file contents",
    "WebSearch": "Search the web",
    "WebFetch": "Fetch web pages",
    "Task": "Spawn subagents for parallel work",
}


def build_provider_env(config: Config) -> dict[str, str]:
    """Build provider environment variables from config."""
    env = {}
    if config.provider.base_url:
        env["ANTHROPIC_BASE_URL"] = config.provider.base_url
    if config.provider.auth_token:
        env["ANTHROPIC_AUTH_TOKEN"] = config.provider.auth_token
    if config.provider.model_override:
        env["ANTHROPIC_DEFAULT_SONNET_MODEL"] = config.provider.model_override
        env["ANTHROPIC_DEFAULT_CLAUDE_MODEL"] = config.provider.model_override
        env["ANTHROPIC_DEFAULT_OPUS_MODEL"] = config.provider.model_override
    return env


class ClaudeAgentEngine:
    """
    Engine that answers native updates with a Claude agent.

    The SDK runs the agent loop. This class manages:
    - SDK session resumption per gateway session
    - MCP server wiring from config
    - Capability listing from the allowed tool set
    """

    def __init__(
        self,
        workspace: Path,
        model: str = "sonnet",
        provider_env: dict[str, str] | None = None,
        mcp_servers: dict[str, McpServerConfig] | None = None,
        env: dict[str, str] | None = None,
        system_prompt: str | None = None,
        allowed_tools: list[str] | None = None,
    ):
        self.workspace = Path(workspace).expanduser().resolve()
        self.model = model
        self._provider_env = (provider_env or {}).copy()
        self._custom_provider = bool(self._provider_env)
        if env:
            self._provider_env.update(env)
        self._mcp_config = mcp_servers or {}
        self._system_prompt = system_prompt
        self.allowed_tools = list(allowed_tools or [])

        # gateway session id -> SDK session id
        self._resume: dict[str, str] = {}

    @classmethod
    def from_config(cls, config: Config) -> "ClaudeAgentEngine":
        return cls(
            workspace=config.workspace,
            model=config.model,
            provider_env=build_provider_env(config),
            mcp_servers=config.mcp_servers,
            env=config.env,
            system_prompt=config.engine.system_prompt,
            allowed_tools=config.engine.allowed_tools,
        )

    def _build_system_prompt(self) -> str:
        if self._system_prompt:
            return self._system_prompt
        return f"""You are a helpful assistant reachable from several chat platforms.

Your workspace is {self.workspace}.

## Guidelines

- Be concise and direct
- Replies may be shown on small screens, keep formatting light
- Ask for clarification when requests are ambiguous
"""

    def _mcp_servers(self) -> dict[str, SdkMcpServerConfig]:
        servers: dict[str, SdkMcpServerConfig] = {}
        for name, cfg in self._mcp_config.items():
            if cfg.type == "stdio":
                servers[name] = {
                    "type": "stdio",
                    "command": cfg.command or "",
                    "args": cfg.args,
                    "env": cfg.env,
                }
            elif cfg.type == "sse":
                servers[name] = {
                    "type": "sse",
                    "url": cfg.url or "",
                }
        return servers

    def _get_agent_options(self, session_key: str | None = None) -> ClaudeAgentOptions:
        """Build agent options for a query."""
        opts = ClaudeAgentOptions(
            system_prompt=self._build_system_prompt(),
            model=self.model,
            allowed_tools=self.allowed_tools,
            mcp_servers=self._mcp_servers(),
            permission_mode="bypassPermissions",
            cwd=self.workspace,
            env=self._provider_env,
            debug_stderr=sys.stderr,
        )

        # Custom providers don't support session resumption
        if not self._custom_provider and session_key and session_key in self._resume:
            opts.resume = self._resume[session_key]

        return opts

    @staticmethod
    def _build_query(update: dict[str, Any]) -> str:
        gateway = update.get("gateway", {})
        context = (
            f"[Context: platform={gateway.get('origin', 'unknown')}, "
            f"chat_id={gateway.get('chat_ref', update['message']['chat']['id'])}]\n"
        )
        query = f"{context}{update['message'].get('text', '')}"

        attachments = gateway.get("attachments") or []
        if attachments:
            refs = "\n".join(
                f"[Attached {a.get('kind', 'file')}: {a.get('file_name') or a.get('url') or a.get('file_id')}]"
                for a in attachments
            )
            query = f"{query}\n\n{refs}"
        return query

    async def handle(self, update: dict[str, Any]) -> EngineReply:
        session_key = update.get("gateway", {}).get("session_id")
        opts = self._get_agent_options(session_key)

        result = ""
        tools_used: list[str] = []
        tokens_used: int | None = None

        async with ClaudeSDKClient(options=opts) as client:
            await client.query(self._build_query(update))

            async for response in client.receive_response():
                # Capture session ID for resumption
                sid = getattr(response, "session_id", None)
                if sid is not None and session_key:
                    self._resume[session_key] = sid

                if isinstance(response, AssistantMessage):
                    for block in response.content:
                        if isinstance(block, TextBlock):
                            result += block.text
                        elif isinstance(block, ToolUseBlock):
                            tools_used.append(block.name)
                elif isinstance(response, ResultMessage) and response.usage:
                    tokens_used = int(response.usage.get("input_tokens", 0)) + int(
                        response.usage.get("output_tokens", 0)
                    )

        logger.debug(
            "Agent answered session %s with %d chars, tools=%s", session_key, len(result), tools_used
        )
        return EngineReply(
            text=result,
            tools_used=tuple(dict.fromkeys(tools_used)),
            tokens_used=tokens_used,
        )

    def forget(self, session_key: str) -> None:
        """Drop the SDK session tied to a gateway session."""
        self._resume.pop(session_key, None)

    async def list_capabilities(self) -> list[Capability]:
        capabilities = [
            Capability(name=tool, description=TOOL_DESCRIPTIONS.get(tool, ""))
            for tool in self.allowed_tools
        ]
        for name, cfg in self._mcp_config.items():
            capabilities.append(
                Capability(name=f"mcp:{name}", description="MCP server", metadata={"type": cfg.type})
            )
        return capabilities
