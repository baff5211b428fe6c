"""Claude Agent SDK engine."""

import pytest
from claude_agent_sdk import AssistantMessage, ResultMessage, TextBlock, ToolUseBlock

from chatgate import agent as agent_module
from chatgate.agent import ClaudeAgentEngine, build_provider_env
from chatgate.config import Config
from chatgate.config.schema import McpServerConfig


def result_message(session_id: str, usage: dict) -> ResultMessage:
    message = ResultMessage.__new__(ResultMessage)
    message.session_id = session_id
    message.usage = usage
    return message


class FakeClient:
    """Stands in for ClaudeSDKClient; replays a scripted response stream."""

    script: list = []
    instances: list = []

    def __init__(self, options):
        self.options = options
        self.queries = []
        FakeClient.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def query(self, prompt):
        self.queries.append(prompt)

    async def receive_response(self):
        for message in self.script:
            yield message


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    FakeClient.script = [
        AssistantMessage(
            content=[
                TextBlock(text="Hello "),
                ToolUseBlock(id="t1", name="Read", input={}),
                ToolUseBlock(id="t2", name="Read", input={}),
            ],
            model="sonnet",
        ),
        AssistantMessage(content=[TextBlock(text="there")], model="sonnet"),
        result_message("sdk-session-1", {"input_tokens": 10, "output_tokens": 5}),
    ]
    monkeypatch.setattr(agent_module, "ClaudeSDKClient", FakeClient)
    return FakeClient


def update(text: str = "hi", session_id: str = "tg_session_42_42", attachments=()) -> dict:
    return {
        "update_id": 1,
        "message": {"message_id": 1, "chat": {"id": 42}, "text": text},
        "gateway": {
            "origin": "telegram",
            "session_id": session_id,
            "chat_ref": "42",
            "attachments": list(attachments),
        },
    }


@pytest.fixture
def engine(tmp_path):
    return ClaudeAgentEngine(workspace=tmp_path, allowed_tools=["Read", "WebSearch"])


class TestClaudeAgentEngine:
    async def test_handle_collects_reply(self, engine, fake_client):
        reply = await engine.handle(update("what's up"))

        assert reply.text == "Hello there"
        assert reply.tools_used == ("Read",)
        assert reply.tokens_used == 15
        assert fake_client.instances[0].queries == [
            "[Context: platform=telegram, chat_id=42]\nwhat's up"
        ]

    async def test_session_is_resumed(self, engine, fake_client):
        await engine.handle(update())
        await engine.handle(update())

        assert fake_client.instances[0].options.resume is None
        assert fake_client.instances[1].options.resume == "sdk-session-1"

    async def test_forget(self, engine, fake_client):
        await engine.handle(update())
        engine.forget("tg_session_42_42")
        await engine.handle(update())

        assert fake_client.instances[1].options.resume is None

    def test_custom_provider_never_resumes(self, tmp_path):
        engine = ClaudeAgentEngine(workspace=tmp_path, provider_env={"ANTHROPIC_BASE_URL": "http://proxy"})
        engine._resume["s"] = "sdk"
        assert engine._get_agent_options("s").resume is None

    def test_options(self, engine):
        options = engine._get_agent_options()
        assert options.model == "sonnet"
        assert options.allowed_tools == ["Read", "WebSearch"]
        assert options.permission_mode == "bypassPermissions"
        assert str(engine.workspace) in options.system_prompt

    def test_query_lists_attachments(self):
        query = ClaudeAgentEngine._build_query(
            update("see this", attachments=[{"kind": "image", "file_id": "abc"}])
        )
        assert query.endswith("see this\n\n[Attached image: abc]")

    def test_mcp_servers(self, tmp_path):
        engine = ClaudeAgentEngine(
            workspace=tmp_path,
            mcp_servers={
                "files": McpServerConfig(command="mcp-files", args=["--ro"]),
                "remote": McpServerConfig(type="sse", url="http://mcp"),
            },
        )
        servers = engine._mcp_servers()
        assert servers["files"] == {"type": "stdio", "command": "mcp-files", "args": ["--ro"], "env": {}}
        assert servers["remote"] == {"type": "sse", "url": "http://mcp"}

    async def test_list_capabilities(self, tmp_path):
        engine = ClaudeAgentEngine(
            workspace=tmp_path,
            allowed_tools=["Read"],
            mcp_servers={"files": McpServerConfig(command="mcp-files")},
        )
        capabilities = await engine.list_capabilities()
        assert [(c.name, c.description) for c in capabilities] == [
            ("Read", "Read files in the workspace"),
            ("mcp:files", "MCP server"),
        ]


class TestProviderEnv:
    def test_empty_by_default(self):
        assert build_provider_env(Config()) == {}

    def test_model_override(self):
        config = Config(provider={"base_url": "http://proxy", "auth_token": "t", "model_override": "m"})
        env = build_provider_env(config)
        assert env["ANTHROPIC_BASE_URL"] == "http://proxy"
        assert env["ANTHROPIC_AUTH_TOKEN"] == "t"
        assert env["ANTHROPIC_DEFAULT_OPUS_MODEL"] == "m"

    def test_from_config(self, tmp_path):
        config = Config(workspace=tmp_path, model="opus", engine={"allowed_tools": ["Grep"]})
        engine = ClaudeAgentEngine.from_config(config)
        assert engine.model == "opus"
        assert engine.allowed_tools == ["Grep"]
