"""Test doubles and signal builders shared across the suite"""

from polymath.llm import LLMClient


class ScriptedLLM(LLMClient):
    """
    Replies with the first scripted response whose key appears in the
    system prompt or prompt; ``default`` otherwise. Exception replies are raised.
    """

    enabled = True

    def __init__(self, responses=None, default="", image_url="https://images.example/infographic.png"):
        self.responses = list((responses or {}).items())
        self.default = default
        self.image_url = image_url
        self.calls = []
        self.image_calls = []

    def generate(self, prompt, system=None):
        self.calls.append((prompt, system))
        haystack = f"{system or ''}\n{prompt}"
        for key, reply in self.responses:
            if key in haystack:
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return self.default

    def generate_image(self, prompt):
        self.image_calls.append(prompt)
        return self.image_url


class FixedClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def ui_signal(action, data=None, signal_id="sig-ui"):
    return {
        "id": signal_id,
        "user_id": "user-1",
        "goal_id": "goal-1",
        "type": "direct",
        "observed_at": 0,
        "payload": {"kind": "ui-intent", "action": action, "data": data or {}},
    }


def signal(kind, signal_id="sig-1", **payload):
    return {
        "id": signal_id,
        "user_id": "user-1",
        "goal_id": "goal-1",
        "type": "direct",
        "observed_at": 0,
        "payload": {"kind": kind, **payload},
    }
