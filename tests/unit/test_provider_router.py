"""Tests for ProviderRouter mode resolution and message handling."""

import asyncio
from unittest.mock import MagicMock

import pytest

from agent_pipeline.core.config import FrameworkConfig
from agent_pipeline.errors.exceptions import AgentExecutionError
from agent_pipeline.llm.auth import AuthStatus
from agent_pipeline.llm.base import ExecutionBackend, ExecutionMode, ExecutionRequest
from agent_pipeline.llm.claude_cli_backend import ClaudeCLIBackend
from agent_pipeline.llm.litellm_backend import LiteLLMBackend
from agent_pipeline.llm.messages import AssistantMessage, ErrorMessage, ResultMessage, TextBlock
from agent_pipeline.llm.provider_router import ProviderRouter


class RecordingBackend(ExecutionBackend):
    """Backend that replays fixed messages and records requests."""

    def __init__(self, messages):
        self.messages = messages
        self.requests = []

    async def stream(self, request):
        self.requests.append(request)
        for message in self.messages:
            yield message


def assistant(text):
    return AssistantMessage(content=[TextBlock(text=text)])


def make_auth(get_status):
    auth = MagicMock()
    auth.get_status = get_status
    return auth


@pytest.fixture
def backends():
    return {
        ExecutionMode.CLI: RecordingBackend([assistant("from cli"), ResultMessage(subtype="success", result="cli")]),
        ExecutionMode.API_KEY: RecordingBackend([assistant("from api"), ResultMessage(subtype="success", result="api")]),
    }


class TestModeResolution:

    @pytest.mark.asyncio
    async def test_explicit_mode_skips_lookup(self, backends):
        async def get_status():
            raise AssertionError("lookup should not run")

        router = ProviderRouter(backends, auth_manager=make_auth(get_status))

        mode = await router.resolve_mode(ExecutionRequest(prompt="x", mode=ExecutionMode.CLI))

        assert mode == ExecutionMode.CLI

    @pytest.mark.asyncio
    async def test_detected_mode_is_used(self, backends):
        async def get_status():
            return AuthStatus(configured_mode="auto", mode=ExecutionMode.CLI)

        router = ProviderRouter(backends, auth_manager=make_auth(get_status), fallback_mode=ExecutionMode.API_KEY)

        assert await router.resolve_mode(ExecutionRequest(prompt="x")) == ExecutionMode.CLI

    @pytest.mark.asyncio
    async def test_hung_lookup_falls_back(self, backends):
        """A lookup that never returns is bounded and the fallback is used."""
        async def get_status():
            await asyncio.sleep(60)

        router = ProviderRouter(
            backends,
            auth_manager=make_auth(get_status),
            auth_lookup_timeout=0.05,
            fallback_mode=ExecutionMode.CLI,
        )

        mode = await asyncio.wait_for(router.resolve_mode(ExecutionRequest(prompt="x")), timeout=5)

        assert mode == ExecutionMode.CLI

    @pytest.mark.asyncio
    async def test_failed_lookup_falls_back(self, backends):
        async def get_status():
            raise OSError("settings unreadable")

        router = ProviderRouter(backends, auth_manager=make_auth(get_status))

        assert await router.resolve_mode(ExecutionRequest(prompt="x")) == ExecutionMode.API_KEY

    @pytest.mark.asyncio
    async def test_no_authenticated_mode_falls_back(self, backends):
        async def get_status():
            return AuthStatus(configured_mode="auto", mode=None)

        router = ProviderRouter(backends, auth_manager=make_auth(get_status), fallback_mode=ExecutionMode.CLI)

        assert await router.resolve_mode(ExecutionRequest(prompt="x")) == ExecutionMode.CLI

    def test_missing_backend_rejected(self):
        with pytest.raises(ValueError, match="No backend registered"):
            ProviderRouter({ExecutionMode.CLI: RecordingBackend([])})


class TestQuery:

    @pytest.mark.asyncio
    async def test_routes_to_chosen_backend_with_defaults(self, backends):
        router = ProviderRouter(backends, default_allowed_tools=["Read"], default_max_turns=7)

        messages = [m async for m in router.query(ExecutionRequest(prompt="x", mode=ExecutionMode.CLI))]

        assert [m.type for m in messages] == ["assistant", "result"]
        sent = backends[ExecutionMode.CLI].requests[0]
        assert sent.allowed_tools == ["Read"]
        assert sent.max_turns == 7
        assert backends[ExecutionMode.API_KEY].requests == []

    @pytest.mark.asyncio
    async def test_request_values_override_defaults(self, backends):
        router = ProviderRouter(backends, default_allowed_tools=["Read"], default_max_turns=7)

        request = ExecutionRequest(prompt="x", mode=ExecutionMode.API_KEY, allowed_tools=["Bash"], max_turns=2)
        [m async for m in router.query(request)]

        sent = backends[ExecutionMode.API_KEY].requests[0]
        assert sent.allowed_tools == ["Bash"]
        assert sent.max_turns == 2

    @pytest.mark.asyncio
    async def test_query_text_prefers_result(self, backends):
        router = ProviderRouter(backends)

        assert await router.query_text(ExecutionRequest(prompt="x", mode=ExecutionMode.CLI)) == "cli"

    @pytest.mark.asyncio
    async def test_query_text_falls_back_to_assistant_text(self):
        only_text = RecordingBackend([assistant("a"), assistant("b"), ResultMessage(subtype="success")])
        router = ProviderRouter({ExecutionMode.CLI: only_text, ExecutionMode.API_KEY: only_text})

        assert await router.query_text(ExecutionRequest(prompt="x", mode=ExecutionMode.CLI)) == "ab"

    @pytest.mark.asyncio
    async def test_query_text_error_message_raises(self):
        failing = RecordingBackend([assistant("partial"), ErrorMessage(error="Invalid API key")])
        router = ProviderRouter({ExecutionMode.CLI: failing, ExecutionMode.API_KEY: failing})

        with pytest.raises(AgentExecutionError, match="Invalid API key"):
            await router.query_text(ExecutionRequest(prompt="x", mode=ExecutionMode.CLI))

    @pytest.mark.asyncio
    async def test_query_text_error_result_raises(self):
        failing = RecordingBackend([ResultMessage(subtype="error", result="max turns reached")])
        router = ProviderRouter({ExecutionMode.CLI: failing, ExecutionMode.API_KEY: failing})

        with pytest.raises(AgentExecutionError, match="max turns reached"):
            await router.query_text(ExecutionRequest(prompt="x", mode=ExecutionMode.CLI))

    @pytest.mark.asyncio
    async def test_query_structured_extracts_json(self):
        backend = RecordingBackend([
            ResultMessage(subtype="success", result='Sure! {"approved": true, "score": 9} Hope that helps.'),
        ])
        router = ProviderRouter({ExecutionMode.CLI: backend, ExecutionMode.API_KEY: backend})
        schema = {"type": "object", "properties": {"approved": {"type": "boolean"}, "score": {"type": "number"}}}

        result = await router.query_structured(ExecutionRequest(prompt="Rate it", mode=ExecutionMode.CLI), schema)

        assert result.ok
        assert result.data == {"approved": True, "score": 9}
        assert "approved" in backend.requests[0].prompt


class TestFromConfig:

    def test_builds_both_backends(self):
        config = FrameworkConfig(
            execution={"mode": "cli", "auth_lookup_timeout": 2, "fallback_mode": "cli"},
            cli={"executable": "/usr/local/bin/claude", "protocol": "text", "idle_timeout": 60},
            api={"default_model": "claude-haiku"},
        )

        router = ProviderRouter.from_config(config)

        cli_backend = router.backends[ExecutionMode.CLI]
        api_backend = router.backends[ExecutionMode.API_KEY]
        assert isinstance(cli_backend, ClaudeCLIBackend)
        assert cli_backend.executable == "/usr/local/bin/claude"
        assert cli_backend.idle_timeout == 60
        assert isinstance(api_backend, LiteLLMBackend)
        assert api_backend.default_model == "claude-haiku"
        assert router.fallback_mode == ExecutionMode.CLI
        assert router.auth_lookup_timeout == 2
        assert router.auth_manager.configured_mode == "cli"
