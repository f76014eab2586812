"""Prompt builders."""
from __future__ import annotations

from typing import Any


SYSTEM_PROMPT = "You are a helpful code assistant."


def build_answer_prompt(code_context: str, question: str) -> str:
    return (
        "Given the following code:\n\n"
        f"{code_context}"
        "\n\nAnd the question: "
        f"{question}"
        "\n\nAnswer:"
    )


def build_chat_prompt(code_context: str, prior_user_turns: str, message: str) -> str:
    return (
        "Given the following code:\n\n"
        f"{code_context}"
        "\n\nAnd the conversation:\n"
        f"{prior_user_turns}"
        "\nUser: "
        f"{message}"
        "\n\nAnswer:"
    )


def build_messages(system_prompt: str, user_prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt},
    ]


def _render_chatml(messages: list[dict[str, str]]) -> str:
    parts = [f"<|im_start|>{msg.get('role', 'user')}\n{msg.get('content', '')}<|im_end|>\n" for msg in messages]
    parts.append("<|im_start|>assistant\n")
    return "".join(parts)


def _render_llama3(messages: list[dict[str, str]]) -> str:
    parts = ["<|begin_of_text|>"]
    for msg in messages:
        parts.append(
            f"<|start_header_id|>{msg.get('role', 'user')}<|end_header_id|>\n\n{msg.get('content', '')}<|eot_id|>"
        )
    parts.append("<|start_header_id|>assistant<|end_header_id|>\n\n")
    return "".join(parts)


# used when the tokenizer ships without a chat template
FAMILY_RENDERERS = {
    "qwen": _render_chatml,
    "chatml": _render_chatml,
    "llama": _render_llama3,
    "llama3": _render_llama3,
}


def render_prompt(tokenizer: Any, messages: list[dict[str, str]], family_hint: str | None = None) -> str:
    if getattr(tokenizer, "chat_template", None) and hasattr(tokenizer, "apply_chat_template"):
        return tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
    renderer = FAMILY_RENDERERS.get((family_hint or "").lower())
    if renderer is not None:
        return renderer(messages)
    lines = []
    for msg in messages:
        role = msg.get("role", "user").capitalize()
        lines.append(f"{role}: {msg.get('content','')}")
    lines.append("Assistant:")
    return "\n".join(lines)
