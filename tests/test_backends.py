"""Tests for generator backends with the subprocess and SDK boundaries faked out."""

import asyncio
import json
from types import SimpleNamespace

import pytest

from storyflow.backends import BlockingBackend, CliBackend, SimulatedBackend, create_backend
from storyflow.backends.base import BackendResult
from storyflow.backends.simulated import render_placeholder
from storyflow.config import Settings
from storyflow.generation.errors import BackendUnavailableError, GeneratorError, MalformedPayloadError


class FakeProcess:
    def __init__(self, stdout=b"", stderr=b"", returncode=0, delay=0.0):
        self._stdout = stdout
        self._stderr = stderr
        self._final_code = returncode
        self.returncode = None
        self.delay = delay
        self.pid = 4242
        self.stdin_data = None
        self.killed = False

    async def communicate(self, data=None):
        self.stdin_data = data
        await asyncio.sleep(self.delay)
        self.returncode = self._final_code
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def _envelope(**overrides):
    payload = {
        "type": "result", "subtype": "success", "is_error": False, "result": "Hello",
        "usage": {"input_tokens": 10, "output_tokens": 3},
    }
    payload.update(overrides)
    return json.dumps(payload).encode()


@pytest.fixture
def spawn(monkeypatch):
    """Replace subprocess creation; returns the list of spawned (args, process)."""
    spawned = []

    def install(process=None, error=None):
        async def fake_exec(*args, **kwargs):
            if error is not None:
                raise error
            spawned.append((args, process))
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
        return spawned

    return install


class TestCliBackend:
    @pytest.mark.asyncio
    async def test_success_parses_envelope(self, spawn):
        proc = FakeProcess(stdout=_envelope())
        spawned = spawn(proc)
        result = await CliBackend(model="opus").invoke("be terse", "write hello")

        assert result.text == "Hello"
        assert result.usage.input_tokens == 10 and result.usage.output_tokens == 3
        args = spawned[0][0]
        assert args[:6] == ("claude", "-p", "--output-format", "json", "--model", "opus")
        assert args[-2:] == ("--append-system-prompt", "be terse")
        assert proc.stdin_data == b"write hello"

    def test_no_system_prompt_flag_when_empty(self):
        assert "--append-system-prompt" not in CliBackend().build_args("")

    @pytest.mark.asyncio
    async def test_nonzero_exit_keeps_stderr(self, spawn):
        spawn(FakeProcess(stderr=b"not logged in", returncode=1))
        with pytest.raises(BackendUnavailableError) as info:
            await CliBackend().invoke("", "x")
        assert "code 1" in info.value.reason
        assert info.value.detail == "not logged in"

    @pytest.mark.asyncio
    async def test_missing_executable(self, spawn):
        spawn(error=FileNotFoundError("claude"))
        with pytest.raises(BackendUnavailableError, match="PATH"):
            await CliBackend().invoke("", "x")

    @pytest.mark.asyncio
    async def test_garbage_output_is_malformed(self, spawn):
        spawn(FakeProcess(stdout=b"<html>oops</html>"))
        with pytest.raises(MalformedPayloadError) as info:
            await CliBackend().invoke("", "x")
        assert "oops" in info.value.detail

    @pytest.mark.asyncio
    async def test_is_error_envelope_is_malformed(self, spawn):
        spawn(FakeProcess(stdout=_envelope(is_error=True, result="rate limited")))
        with pytest.raises(MalformedPayloadError, match="rate limited"):
            await CliBackend().invoke("", "x")

    def test_missing_usage_is_allowed(self):
        result = CliBackend.parse_envelope(json.dumps({"is_error": False, "result": "ok"}))
        assert result == BackendResult(text="ok", usage=None)

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, spawn):
        proc = FakeProcess(stdout=_envelope(), delay=5)
        spawn(proc)
        task = asyncio.create_task(CliBackend().invoke("", "x"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert proc.killed is True

    @pytest.mark.asyncio
    async def test_availability_needs_history_file(self, monkeypatch, tmp_path):
        monkeypatch.setattr("storyflow.backends.cli.shutil.which", lambda cmd: "/usr/bin/claude")
        monkeypatch.setattr("storyflow.backends.cli.cli_history_path", lambda: tmp_path / "history.jsonl")
        backend = CliBackend()
        assert await backend.is_available() is False
        (tmp_path / "history.jsonl").write_text("{}\n")
        assert await backend.is_available() is True


class TestGeminiBackend:
    @pytest.mark.asyncio
    async def test_success_and_usage(self):
        from storyflow.backends.gemini import GeminiBackend

        seen = {}

        async def generate_content(model, contents, config):
            seen.update(model=model, contents=contents, config=config)
            return SimpleNamespace(
                text="Hello",
                candidates=[],
                usage_metadata=SimpleNamespace(prompt_token_count=7, candidates_token_count=2),
            )

        backend = GeminiBackend(api_key="k", model="gemini-2.5-flash")
        backend.__dict__["client"] = SimpleNamespace(
            aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate_content))
        )
        result = await backend.invoke("system", "user")
        assert result.text == "Hello"
        assert (result.usage.input_tokens, result.usage.output_tokens) == (7, 2)
        assert seen["contents"] == "user"
        assert seen["model"] == "gemini-2.5-flash"
        assert seen["config"].max_output_tokens == 8192

    @pytest.mark.asyncio
    async def test_empty_text_is_malformed(self):
        from storyflow.backends.gemini import GeminiBackend

        async def generate_content(**_):
            return SimpleNamespace(text=None, candidates=[SimpleNamespace(finish_reason="SAFETY")],
                                   usage_metadata=None)

        backend = GeminiBackend(api_key="k")
        backend.__dict__["client"] = SimpleNamespace(
            aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate_content))
        )
        with pytest.raises(MalformedPayloadError) as info:
            await backend.invoke("", "x")
        assert "SAFETY" in info.value.detail

    @pytest.mark.asyncio
    async def test_missing_key_is_unavailable(self):
        from storyflow.backends.gemini import GeminiBackend

        backend = GeminiBackend(api_key="")
        assert await backend.is_available() is False
        with pytest.raises(BackendUnavailableError):
            await backend.invoke("", "x")


class TestBlockingBackend:
    @pytest.mark.asyncio
    async def test_wraps_plain_strings(self):
        backend = BlockingBackend(lambda system, user: f"{system}|{user}")
        result = await backend.invoke("s", "u")
        assert result.text == "s|u"
        assert backend.interruptible is False

    @pytest.mark.asyncio
    async def test_wraps_exceptions(self):
        def boom(system, user):
            raise ConnectionError("socket closed")

        with pytest.raises(GeneratorError, match="socket closed"):
            await BlockingBackend(boom).invoke("", "")

    @pytest.mark.asyncio
    async def test_rejects_non_text(self):
        with pytest.raises(MalformedPayloadError):
            await BlockingBackend(lambda s, u: 42).invoke("", "")


class TestSimulatedBackend:
    @pytest.mark.asyncio
    async def test_renders_placeholder(self):
        result = await SimulatedBackend(delay_seconds=0).invoke("sys", "## Write chapter 3\nmore")
        assert result.text.startswith("[Simulated response: Write chapter 3]")
        assert result.usage.output_tokens > 0

    def test_renderer_is_deterministic(self):
        assert render_placeholder("Expand this") == render_placeholder("Expand this")


class TestFactory:
    def test_builds_each_kind(self):
        assert isinstance(create_backend(Settings(generator_backend="cli")), CliBackend)
        assert isinstance(create_backend(Settings(generator_backend="simulated")), SimulatedBackend)
        assert create_backend(Settings(generator_backend="gemini", gemini_api_key="k")).name == "gemini"
