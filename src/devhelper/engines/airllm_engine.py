"""AirLLM engine implementation."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, AsyncIterator

import torch
from airllm import AutoModel
from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

from .base import CompletionDelta, CompletionRequest, CompletionResponse, DeviceSpec, text_delta, text_response
from ..config import ModelSpec
from ..errors import EngineInitFailed, EngineNotReady
from ..prompts import render_prompt

logger = logging.getLogger("devhelper.engine")

_STREAM_END = object()


def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    weight_map: dict[str, str] = {}
    with safe_open(str(st_path), framework="pt") as f:
        for key in f.keys():
            weight_map[key] = st_path.name
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)


def resolve_cache_dir(base_dir: str, model_key: str) -> str:
    if not base_dir:
        return base_dir
    if "{model_key}" in base_dir:
        return base_dir.replace("{model_key}", model_key)
    base = os.path.basename(base_dir.rstrip("/\\"))
    if base != model_key:
        return os.path.join(base_dir, model_key)
    return base_dir


class _StopWhenSet(StoppingCriteria):
    def __init__(self, event: threading.Event) -> None:
        self._event = event

    def __call__(self, input_ids: Any, scores: Any, **kwargs: Any) -> Any:
        return torch.full((input_ids.shape[0],), self._event.is_set(), dtype=torch.bool, device=input_ids.device)


class AirLLMEngine:
    """Runs a layer-sharded local model; blocking work is pushed off the event loop."""

    def __init__(self) -> None:
        self._model: Any | None = None
        self._tokenizer: Any | None = None
        self._device: torch.device | None = None
        self._family_hint: str | None = None

    async def initialize(self, model: ModelSpec, device: DeviceSpec) -> None:
        await asyncio.to_thread(self._load, model, device)

    def _load(self, model: ModelSpec, device: DeviceSpec) -> None:
        if not os.path.exists(model.local_path):
            raise EngineInitFailed(f"Model path not found: {model.local_path}")

        if device.kind == "cuda" and torch.cuda.is_available():
            index = device.gpu_index if device.gpu_index is not None else 0
            self._device = torch.device(f"cuda:{index}")
        else:
            self._device = torch.device("cpu")

        if os.path.isdir(model.local_path):
            _ensure_safetensors_index(model.local_path)

        cache_dir = resolve_cache_dir(model.layer_cache_dir, model.key)
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

        logger.info("Loading %s from %s on %s", model.key, model.local_path, self._device)
        self._model = AutoModel.from_pretrained(
            model.local_path,
            layer_shards_saving_path=cache_dir,
            compression=model.compression,
        )
        self._tokenizer = getattr(self._model, "tokenizer", None)
        if self._tokenizer is None:
            self._model = None
            raise EngineInitFailed("Model tokenizer not available")
        self._family_hint = model.family_hint

    def unload(self) -> None:
        self._model = None
        self._tokenizer = None
        self._device = None
        self._family_hint = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _encode(self, request: CompletionRequest) -> dict[str, Any]:
        if self._model is None or self._tokenizer is None or self._device is None:
            raise EngineNotReady("Engine not loaded")
        prompt = render_prompt(self._tokenizer, request.messages(), self._family_hint)
        inputs = self._tokenizer(
            prompt,
            return_tensors="pt",
            truncation=True,
            max_length=request.max_context,
        )
        encoded = {"input_ids": inputs["input_ids"].to(self._device)}
        attention_mask = inputs.get("attention_mask")
        if attention_mask is not None:
            encoded["attention_mask"] = attention_mask.to(self._device)
        return encoded

    def _generate_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        return {
            "max_new_tokens": request.max_tokens,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "do_sample": request.temperature > 0,
            "use_cache": False,
        }

    def _generate_text(self, request: CompletionRequest) -> str:
        encoded = self._encode(request)
        output_ids = self._model.generate(**encoded, **self._generate_kwargs(request))
        if isinstance(output_ids, (list, tuple)):
            if len(output_ids) == 0:
                return ""
            output_ids = output_ids[0]
        if output_ids.ndim == 1:
            output_ids = output_ids.unsqueeze(0)
        prompt_tokens = int(encoded["input_ids"].shape[-1])
        return self._tokenizer.decode(output_ids[0][prompt_tokens:], skip_special_tokens=True)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        text = await asyncio.to_thread(self._generate_text, request)
        return text_response(text or None)

    async def complete_streaming(self, request: CompletionRequest) -> AsyncIterator[CompletionDelta]:
        encoded = self._encode(request)
        streamer = TextIteratorStreamer(self._tokenizer, skip_prompt=True, skip_special_tokens=True)
        stop = threading.Event()
        stopping = StoppingCriteriaList([_StopWhenSet(stop)])

        def _run() -> None:
            try:
                self._model.generate(
                    **encoded, **self._generate_kwargs(request), streamer=streamer, stopping_criteria=stopping
                )
            finally:
                # unblock the consumer even when generate() raises
                streamer.end()

        generation = asyncio.create_task(asyncio.to_thread(_run))
        iterator = iter(streamer)
        try:
            while True:
                piece = await asyncio.to_thread(next, iterator, _STREAM_END)
                if piece is _STREAM_END:
                    break
                if piece:
                    yield text_delta(piece)
            await generation
        finally:
            # closing early stops generate() at the next token; the engine stays held until it returns
            stop.set()
            await asyncio.wait({generation})
