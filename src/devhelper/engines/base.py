"""Engine protocol and dataclasses."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Literal, Protocol

from ..config import ModelSpec
from ..prompts import build_messages


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


@dataclass
class CompletionRequest:
    system_prompt: str
    user_prompt: str
    stream: bool = False
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    max_context: int = 4096

    def messages(self) -> list[dict[str, str]]:
        return build_messages(self.system_prompt, self.user_prompt)


@dataclass
class ChatMessage:
    role: str = "assistant"
    content: str | None = None


@dataclass
class Choice:
    message: ChatMessage | None = None


@dataclass
class CompletionResponse:
    choices: list[Choice] = field(default_factory=list)

    def text(self) -> str | None:
        """Content of the first choice, or None when the engine returned nothing usable."""
        if not self.choices:
            return None
        message = self.choices[0].message
        if message is None or not message.content:
            return None
        return message.content


@dataclass
class DeltaContent:
    content: str | None = None


@dataclass
class ChunkChoice:
    delta: DeltaContent | None = None


@dataclass
class CompletionDelta:
    choices: list[ChunkChoice] = field(default_factory=list)

    def text(self) -> str:
        if not self.choices or self.choices[0].delta is None:
            return ""
        return self.choices[0].delta.content or ""


def text_response(text: str | None) -> CompletionResponse:
    return CompletionResponse(choices=[Choice(message=ChatMessage(content=text))])


def text_delta(text: str | None) -> CompletionDelta:
    return CompletionDelta(choices=[ChunkChoice(delta=DeltaContent(content=text))])


class InferenceEngine(Protocol):
    async def initialize(self, model: ModelSpec, device: DeviceSpec) -> None:
        ...

    def unload(self) -> None:
        ...

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        ...

    def complete_streaming(self, request: CompletionRequest) -> AsyncIterator[CompletionDelta]:
        ...
