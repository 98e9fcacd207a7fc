from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from intelligence.llm import BaseLLM, LLMResponse, Message

Reply = Union[str, LLMResponse, Exception, Callable[[List[Message]], str]]


class FakeLLM(BaseLLM):
    """Replays canned replies in order; the last reply repeats once the list runs out."""

    def __init__(self, replies: Optional[List[Reply]] = None) -> None:
        super().__init__(model="fake-model")
        self.replies: List[Reply] = list(replies or [])
        self.calls: List[List[Message]] = []
        self.requests: List[Dict[str, Any]] = []

    @property
    def provider(self) -> str:
        return "fake"

    async def acomplete(
        self,
        messages: List[Message],
        tools: Optional[List[Dict]] = None,
        json_schema: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> LLMResponse:
        self.calls.append(list(messages))
        self.requests.append({"tools": tools, "json_schema": json_schema})
        if not self.replies:
            raise AssertionError("FakeLLM has no reply configured")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, LLMResponse):
            return reply
        if callable(reply):
            reply = reply(messages)
        return LLMResponse(content=reply, model=self.model)


@pytest.fixture
def fake_llm_factory() -> Callable[..., FakeLLM]:
    return FakeLLM


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
