"""
Shared fakes: a scripted provider completion, a recording sleep, and a
gateway wired up around them.
"""

import json
from types import SimpleNamespace

import pytest

from iching_gateway.gateway import ReadingGateway, build_gateway
from iching_gateway.models import AppConfig
from iching_gateway.prompt_loader import ReadingPrompt


class Throttled(Exception):
    """Stand-in for a provider 429."""
    status_code = 429


def make_response(
    reading=None,
    *,
    content=None,
    prompt_tokens=100,
    completion_tokens=50,
    remaining_tokens=None,
    response_id="resp-1",
):
    """Build an object shaped like a litellm ModelResponse."""
    if content is None:
        content = json.dumps({"reading": reading if reading is not None else {"score": 7}})
    hidden = {}
    if remaining_tokens is not None:
        hidden["additional_headers"] = {"x-ratelimit-remaining-tokens": str(remaining_tokens)}
    return SimpleNamespace(
        id=response_id,
        choices=[SimpleNamespace(message=SimpleNamespace(content=content, parsed=None))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        _hidden_params=hidden,
    )


class FakeCompletion:
    """Async callable returning (or raising) scripted outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_prompt(**overrides) -> ReadingPrompt:
    data = {
        "version": "v1",
        "system_prompt": "You are a diviner.",
        "user_prompt_template": "Question: {{ question }}",
        "response_schema": {"name": "iching_reading", "schema": {"type": "object"}},
        "stub_reading": {"summary": "stub", "score": 5},
    }
    data.update(overrides)
    return ReadingPrompt.model_validate(data)


def make_gateway(completion, config: AppConfig | None = None, sleep=None) -> ReadingGateway:
    return build_gateway(
        config or AppConfig(),
        make_prompt(),
        completion=completion,
        sleep=sleep or FakeSleep(),
    )


@pytest.fixture
def fake_sleep():
    return FakeSleep()
