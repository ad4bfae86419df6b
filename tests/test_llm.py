import pytest

from polymath.llm import (
    NullLLMClient,
    PacedLLMClient,
    RequestPacer,
    is_rate_limit_error,
    parse_json_response,
    safe_generate,
    safe_invoke_llm,
    strip_code_fences,
)

from helpers import ScriptedLLM


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class RateLimited(Exception):
    status_code = 429


class FlakyLLM(ScriptedLLM):
    def __init__(self, failures, error):
        super().__init__(default='{"ok": true}')
        self.failures = failures
        self.error = error

    def generate(self, prompt, system=None):
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return super().generate(prompt, system)


class TestJsonExtraction:
    def test_think_block_and_fences_are_stripped(self):
        text = '<think>plan {"no": 1}</think>\n```json\n{"decision": "none"}\n```'
        assert parse_json_response(text) == {"decision": "none"}

    def test_prose_around_object(self):
        assert parse_json_response('Sure! {"a": {"b": 2}} hope this helps') == {"a": {"b": 2}}

    @pytest.mark.parametrize("text", ["", "   ", "no json here", "[1, 2]", "{broken"])
    def test_unusable_replies_are_none(self, text):
        assert parse_json_response(text) is None

    def test_strip_code_fences(self):
        assert strip_code_fences("```html\n<div></div>\n```") == "<div></div>"


class TestSafeInvoke:
    def test_disabled_client_returns_default(self):
        assert safe_invoke_llm(NullLLMClient(), "x", default={"d": 1}) == {"d": 1}
        assert safe_generate(NullLLMClient(), "x") == ""

    def test_exception_returns_default(self):
        llm = ScriptedLLM({"boom": RuntimeError("down")})
        assert safe_invoke_llm(llm, "boom") is None

    def test_system_prompt_is_forwarded(self):
        llm = ScriptedLLM(default='{"x": 1}')
        assert safe_invoke_llm(llm, "prompt", system="SYSTEM") == {"x": 1}
        assert llm.calls == [("prompt", "SYSTEM")]


def test_null_client_previews_prompt():
    reply = NullLLMClient().generate("a" * 500)
    assert reply.startswith("LLM disabled. Prompt preview: ")
    assert len(reply) < 300


class TestRateLimitDetection:
    def test_status_code(self):
        assert is_rate_limit_error(RateLimited())

    def test_message(self):
        assert is_rate_limit_error(RuntimeError("Rate limit reached for requests"))

    def test_other_errors(self):
        assert not is_rate_limit_error(ValueError("bad request"))


class TestRequestPacer:
    def test_minimum_interval_between_calls(self):
        fake = FakeTime()
        pacer = RequestPacer(min_interval=0.5, clock=fake.clock, sleep=fake.sleep)
        assert pacer.call(lambda: 1) == 1
        assert pacer.call(lambda: 2) == 2
        assert fake.sleeps == [0.5]

    def test_no_wait_after_long_gap(self):
        fake = FakeTime()
        pacer = RequestPacer(min_interval=0.5, clock=fake.clock, sleep=fake.sleep)
        pacer.call(lambda: None)
        fake.now += 3
        pacer.call(lambda: None)
        assert fake.sleeps == []


class TestPacedClient:
    def _client(self, inner, fake):
        pacer = RequestPacer(min_interval=0, clock=fake.clock, sleep=fake.sleep)
        return PacedLLMClient(inner, pacer=pacer, max_attempts=3, sleep=fake.sleep)

    def test_retries_rate_limits_with_backoff(self):
        fake = FakeTime()
        client = self._client(FlakyLLM(2, RateLimited()), fake)
        assert client.generate("hi") == '{"ok": true}'
        assert fake.sleeps == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        fake = FakeTime()
        client = self._client(FlakyLLM(5, RateLimited()), fake)
        with pytest.raises(RateLimited):
            client.generate("hi")
        assert fake.sleeps == [1.0, 2.0]

    def test_other_errors_are_not_retried(self):
        fake = FakeTime()
        client = self._client(FlakyLLM(1, ValueError("bad")), fake)
        with pytest.raises(ValueError):
            client.generate("hi")
        assert fake.sleeps == []

    def test_enabled_follows_inner(self):
        fake = FakeTime()
        assert self._client(ScriptedLLM(), fake).enabled
        assert not self._client(NullLLMClient(), fake).enabled
