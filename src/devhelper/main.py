"""Dev Helper Agent UI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
from typing import Any

import gradio as gr
import torch

from .config import AppConfig, RootConfig, load_config
from .engines.airllm_engine import AirLLMEngine
from .engines.base import DeviceSpec
from .errors import EngineNotReady
from .ingest import read_code_file
from .metrics import Instrumentation, metrics_markdown
from .registry import ModelRegistry
from .session import EngineHandle, EntryKind, Mode, Readiness, SessionController

logger = logging.getLogger("devhelper")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dev Helper Agent UI")
    parser.add_argument("--config", default="configs/devhelper.yaml")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--title")
    parser.add_argument("--model", help="Model key to load at startup")
    parser.add_argument("--concurrency-limit", type=int)
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--log-level")
    parser.add_argument("--offline", action="store_true")
    parser.add_argument("--share", action="store_true")
    return parser.parse_args()


def load_root_config(path: str) -> RootConfig:
    if not os.path.exists(path):
        return RootConfig()
    return load_config(path)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.title:
        cfg.app.title = args.title
    if args.host:
        cfg.app.host = args.host
    if args.port is not None:
        cfg.app.port = args.port
    if args.model:
        cfg.app.default_model = args.model
    if args.concurrency_limit is not None:
        cfg.app.concurrency_limit = args.concurrency_limit
    if args.gpu_index is not None:
        cfg.app.gpu_index = args.gpu_index
    if args.log_level:
        cfg.app.log_level = args.log_level
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def configure_logging(cfg: AppConfig) -> None:
    level = logging.getLevelName(cfg.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def ensure_offline(cfg: AppConfig) -> None:
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def _build_device(cfg: AppConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def _readiness_markdown(handle: EngineHandle) -> str:
    if handle.readiness is Readiness.READY:
        return f"**engine:** ready (`{handle.model_key}`)"
    if handle.readiness is Readiness.FAILED:
        return f"**engine:** failed to load `{handle.model_key}`: {handle.error}"
    if handle.model_key is None:
        return "**engine:** no model loaded"
    return f"**engine:** loading `{handle.model_key}`..."


def _error_markdown(ctl: SessionController) -> str:
    return f"**error:** {ctl.last_error}" if ctl.last_error else ""


def _chat_messages(ctl: SessionController) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    for entry in ctl.entries():
        if entry.kind is EntryKind.CODE_CONTEXT:
            messages.append({"role": "user", "content": f"```\n{entry.content}\n```"})
        elif entry.kind is EntryKind.USER_TEXT:
            messages.append({"role": "user", "content": entry.content})
        else:
            messages.append({"role": "assistant", "content": entry.content or "..."})
    return messages


def _read_upload(path: str | None) -> str:
    if not path:
        return ""
    try:
        return read_code_file(path)
    except (OSError, ValueError) as exc:
        raise gr.Error(str(exc)) from exc


def build_app(cfg: RootConfig, handle: EngineHandle) -> tuple[gr.Blocks, SessionController, SessionController]:
    instr = Instrumentation(cfg.app.sampling_interval_ms, cfg.app.gpu_index)
    answer_ctl = SessionController(handle, Mode.SINGLE_SHOT, cfg.generation, instr)
    chat_ctl = SessionController(handle, Mode.MULTI_TURN, cfg.generation, instr)

    model_choices = [(m.display_name, m.key) for m in handle.registry.list()]
    default_model = handle.registry.default_key(cfg.app.default_model)

    with gr.Blocks(title=cfg.app.title) as demo:
        gr.Markdown(f"# {cfg.app.title}")

        with gr.Row():
            model_dd = gr.Dropdown(label="Model", choices=model_choices, value=default_model)
            load_btn = gr.Button("Load model")
        engine_md = gr.Markdown(_readiness_markdown(handle))

        with gr.Tab("Answer"):
            code_box = gr.Textbox(
                label="Paste your code or upload a file:",
                lines=8,
                placeholder="Paste code here or upload a file...",
            )
            code_file = gr.File(label="Code file", type="filepath")
            question_box = gr.Textbox(
                label="Your question:",
                lines=2,
                placeholder="What do you want to ask about this code?",
            )
            ask_btn = gr.Button("Ask", interactive=False)
            answer_md = gr.Markdown("")
            answer_error = gr.Markdown("")
            answer_metrics = gr.Markdown("No metrics yet.")

        with gr.Tab("Chatbot"):
            chat_code_box = gr.Textbox(label="Code context", lines=6, placeholder="Paste code to discuss...")
            chat_code_file = gr.File(label="Code file", type="filepath")
            add_code_btn = gr.Button("Add code")
            chatbot = gr.Chatbot(label="Chat")
            message_box = gr.Textbox(label="Message", placeholder="Type a message...")
            with gr.Row():
                send_btn = gr.Button("Send", interactive=False)
                clear_btn = gr.Button("Clear")
            chat_error = gr.Markdown("")
            chat_metrics = gr.Markdown("No metrics yet.")

        def _ask_update(code: str = "", question: str = "") -> dict[str, Any]:
            busy = answer_ctl.session.in_flight
            return gr.update(
                value="Thinking..." if busy else "Ask",
                interactive=answer_ctl.can_submit and bool(code) and bool(question),
            )

        def _send_update() -> dict[str, Any]:
            return gr.update(interactive=chat_ctl.can_submit)

        async def _load_model(model_key: str | None, code: str, question: str):
            if model_key:
                try:
                    await handle.initialize(model_key)
                except EngineNotReady as exc:
                    gr.Warning(str(exc))
            return _readiness_markdown(handle), _ask_update(code, question), _send_update()

        async def _ask(code: str, question: str):
            if not answer_ctl.can_submit:
                metrics = metrics_markdown(answer_ctl.session.last_metrics)
                yield "", _error_markdown(answer_ctl), metrics, _ask_update(code, question)
                return
            task = asyncio.create_task(answer_ctl.submit(question, code=code))
            await asyncio.sleep(0)
            yield "", "", metrics_markdown(None), _ask_update(code, question)
            await task
            yield (
                f"**Answer:**\n\n{answer_ctl.answer}" if answer_ctl.answer else "",
                _error_markdown(answer_ctl),
                metrics_markdown(answer_ctl.session.last_metrics),
                _ask_update(code, question),
            )

        async def _send(message: str):
            accepted = chat_ctl.can_submit and bool(message and message.strip())
            if not accepted:
                metrics = metrics_markdown(chat_ctl.session.last_metrics)
                yield _chat_messages(chat_ctl), message, _error_markdown(chat_ctl), _send_update(), metrics
                return
            changed: asyncio.Queue[None] = asyncio.Queue()
            unsubscribe = chat_ctl.subscribe(lambda _ctl: changed.put_nowait(None))
            task = asyncio.create_task(chat_ctl.submit(message))
            try:
                while not task.done():
                    getter = asyncio.ensure_future(changed.get())
                    await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                    getter.cancel()
                    yield _chat_messages(chat_ctl), "", _error_markdown(chat_ctl), _send_update(), gr.update()
                await task
            finally:
                unsubscribe()
                if not task.done():
                    task.cancel()
            metrics = metrics_markdown(chat_ctl.session.last_metrics)
            yield _chat_messages(chat_ctl), "", _error_markdown(chat_ctl), _send_update(), metrics

        def _add_code(code: str):
            chat_ctl.append_code(code)
            return _chat_messages(chat_ctl), ""

        def _clear_chat():
            chat_ctl.reset()
            return _chat_messages(chat_ctl), "", metrics_markdown(None)

        load_outputs = [engine_md, ask_btn, send_btn]
        load_inputs = [model_dd, code_box, question_box]
        load_btn.click(_load_model, inputs=load_inputs, outputs=load_outputs)
        demo.load(_load_model, inputs=load_inputs, outputs=load_outputs)

        code_file.upload(_read_upload, inputs=[code_file], outputs=[code_box])
        code_box.change(_ask_update, inputs=[code_box, question_box], outputs=[ask_btn])
        question_box.change(_ask_update, inputs=[code_box, question_box], outputs=[ask_btn])
        ask_btn.click(
            _ask,
            inputs=[code_box, question_box],
            outputs=[answer_md, answer_error, answer_metrics, ask_btn],
        )

        chat_code_file.upload(_read_upload, inputs=[chat_code_file], outputs=[chat_code_box])
        add_code_btn.click(_add_code, inputs=[chat_code_box], outputs=[chatbot, chat_code_box])
        chat_outputs = [chatbot, message_box, chat_error, send_btn, chat_metrics]
        send_btn.click(_send, inputs=[message_box], outputs=chat_outputs)
        message_box.submit(_send, inputs=[message_box], outputs=chat_outputs)
        clear_btn.click(_clear_chat, outputs=[chatbot, chat_error, chat_metrics])

    return demo, answer_ctl, chat_ctl


def main() -> None:
    args = parse_args()
    cfg = load_root_config(args.config)
    cfg = apply_overrides(cfg, args)
    configure_logging(cfg.app)
    ensure_offline(cfg.app)

    handle = EngineHandle(AirLLMEngine(), ModelRegistry(cfg.models), _build_device(cfg.app))
    app, answer_ctl, chat_ctl = build_app(cfg, handle)
    app.queue(default_concurrency_limit=cfg.app.concurrency_limit)
    logger.info("Starting %s on %s:%s", cfg.app.title, cfg.app.host, cfg.app.port)
    try:
        app.launch(server_name=cfg.app.host, server_port=cfg.app.port, share=args.share)
    finally:
        answer_ctl.close()
        chat_ctl.close()
        handle.teardown()


if __name__ == "__main__":
    main()
