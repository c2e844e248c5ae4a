"""
Transcript summarization.

Three providers behind one entry point:
  - ollama:  local `ollama run <model>`, prompt on stdin
  - openai:  Chat Completions API
  - claude:  Anthropic Messages API

The model setting is "<provider>:<model>" and is parsed once into a
ModelSelector; the rest of the code only sees the parsed form.
"""

import enum
import json
import logging
import re
from dataclasses import dataclass
from typing import Callable

import requests

from videoinsight.core.constants import (
    ErrorCode, Stage, OLLAMA_BIN, SUMMARY_PROMPT, OLLAMA_TIMEOUT_SEC,
    HTTP_TIMEOUT_SEC, SUMMARY_MAX_TOKENS, OPENAI_TEMPERATURE,
    OPENAI_CHAT_URL, CLAUDE_MESSAGES_URL, CLAUDE_API_VERSION,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.process_runner import CancelScope, ProcessRunner, run_in_scope
from videoinsight.core.progress_parse import ProgressEvent

logger = logging.getLogger(__name__)

# CSI sequences from ollama's spinner (cursor moves, erase line, colours)
_ANSI_ESCAPE = re.compile(r'\x1b\[[0-9;?]*[ -/]*[@-~]')
_STDERR_WINDOW = 512

# Percent within the summarize stage for each phase
_PHASE_PERCENT = {
    'connecting': 5.0,
    'requesting': 10.0,
    'generating': 50.0,
}


class Provider(enum.Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    CLAUDE = "claude"

    @property
    def label(self) -> str:
        return {"ollama": "Ollama", "openai": "OpenAI", "claude": "Claude"}[self.value]


@dataclass(frozen=True)
class ModelSelector:
    provider: Provider
    model: str

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.model}"


@dataclass
class SummarizeResult:
    summary: str


def parse_model_selector(value: str) -> ModelSelector:
    """
    Parse "<provider>:<model>", splitting on the first colon only
    ("ollama:qwen3:30b" → ollama / "qwen3:30b").
    Raises TaskError(ERR_UNSUPPORTED_PROVIDER) for anything else.
    """
    provider_name, sep, model = (value or "").strip().partition(':')
    try:
        provider = Provider(provider_name.strip().lower())
    except ValueError:
        raise TaskError(ErrorCode.UNSUPPORTED_PROVIDER,
                        f"Unsupported model type: '{value}'. "
                        "Use ollama:<model>, openai:<model> or claude:<model>")
    model = model.strip()
    if not sep or not model:
        raise TaskError(ErrorCode.UNSUPPORTED_PROVIDER,
                        f"No model name given in '{value}'")
    return ModelSelector(provider=provider, model=model)


def build_prompt(text: str) -> str:
    return SUMMARY_PROMPT.format(text=text)


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub('', text)


def phase_event(phase: str, message: str) -> ProgressEvent:
    return ProgressEvent(stage=Stage.SUMMARIZE, percent=_PHASE_PERCENT.get(phase),
                         phase=phase, message=message)


def classify_ollama_stderr(text: str, model: str) -> TaskError | None:
    """Map a known ollama stderr signature to a user-actionable error."""
    lowered = text.lower()
    if 'model' in lowered and 'not found' in lowered:
        return TaskError(ErrorCode.OLLAMA_MODEL_NOT_FOUND,
                         f"Model '{model}' not found. "
                         f"Please install it with: ollama pull {model}")
    if 'connection refused' in lowered:
        return TaskError(ErrorCode.OLLAMA_UNREACHABLE,
                         "Cannot connect to Ollama. Please make sure Ollama is running.")
    return None


def summarize(text: str, selector: ModelSelector | str,
              api_keys: dict | None = None,
              on_progress: Callable[[ProgressEvent], None] | None = None,
              scope: CancelScope | None = None,
              timeout: float = OLLAMA_TIMEOUT_SEC,
              http_timeout: float = HTTP_TIMEOUT_SEC,
              binary: str = OLLAMA_BIN) -> SummarizeResult:
    """Summarize a transcript with the selected provider.  Raises TaskError."""
    if isinstance(selector, str):
        selector = parse_model_selector(selector)

    def emit(event: ProgressEvent):
        if on_progress:
            on_progress(event)

    prompt = build_prompt(text)
    logger.info("Summarizing with %s (prompt %d chars)", selector, len(prompt))

    if selector.provider is Provider.OLLAMA:
        summary = _summarize_ollama(prompt, selector.model, emit, scope, timeout, binary)
    else:
        api_key = (api_keys or {}).get(selector.provider.value)
        if not api_key:
            raise TaskError(ErrorCode.API_KEY_MISSING,
                            f"{selector.provider.label} API key not provided")
        if scope is not None:
            scope.check()
        emit(phase_event('requesting', f"Requesting summary from {selector.provider.label}"))
        if selector.provider is Provider.OPENAI:
            summary = _summarize_openai(prompt, selector.model, api_key, http_timeout)
        else:
            summary = _summarize_claude(prompt, selector.model, api_key, http_timeout)
        if scope is not None:
            scope.check()

    logger.info("%s summarization completed (%d chars in, %d chars out)",
                selector, len(text), len(summary))
    return SummarizeResult(summary=summary)


# ── Local engine ──────────────────────────────────────────────────────

def _summarize_ollama(prompt: str, model: str, emit, scope: CancelScope | None,
                      timeout: float, binary: str) -> str:
    detected: list[TaskError] = []
    state = {'tail': '', 'generating': False}
    runner: ProcessRunner | None = None

    def on_output(stream: str, chunk: str):
        if stream == 'stderr':
            logger.debug("ollama stderr: %s", chunk.rstrip())
            if detected:
                return
            # Signatures may straddle chunk boundaries
            window = state['tail'] + chunk
            state['tail'] = window[-_STDERR_WINDOW:]
            error = classify_ollama_stderr(strip_ansi(window), model)
            if error is not None:
                logger.error("ollama reported: %s", error.message)
                detected.append(error)
                runner.terminate()
        elif not state['generating'] and strip_ansi(chunk).strip():
            state['generating'] = True
            emit(phase_event('generating', "Generating summary..."))

    runner = ProcessRunner(binary, ["run", model], input_text=prompt,
                           on_output=on_output, timeout=timeout)
    emit(phase_event('connecting', f"Connecting to Ollama model: {model}"))
    result = run_in_scope(runner, scope)

    if detected:
        raise detected[0]

    if result.timed_out:
        raise TaskError(ErrorCode.OLLAMA_TIMEOUT,
                        f"Ollama request timed out after {int(timeout)} seconds. "
                        f"Please check if Ollama is running and the model '{model}' is available.")

    if result.exit_code != 0:
        stderr = strip_ansi(result.stderr).strip()
        error = classify_ollama_stderr(stderr, model)
        if error is not None:
            raise error
        raise TaskError(ErrorCode.SUMMARIZE_FAILED,
                        stderr[-300:] or f"ollama exited with code {result.exit_code}")

    summary = strip_ansi(result.stdout).strip()
    if not summary:
        raise TaskError(ErrorCode.SUMMARIZE_FAILED,
                        f"Ollama failed to generate summary. "
                        f"Please check if the model '{model}' is working correctly.")
    return summary


# ── Cloud providers ───────────────────────────────────────────────────

def _post_json(provider: Provider, url: str, headers: dict, payload: dict,
               timeout: float) -> dict:
    try:
        resp = requests.post(url, headers=headers, json=payload, timeout=timeout)
    except requests.exceptions.Timeout:
        raise TaskError(ErrorCode.NETWORK, f"{provider.label} request timed out")
    except requests.exceptions.RequestException as e:
        raise TaskError(ErrorCode.NETWORK, f"{provider.label} API call failed: {e}")

    if not resp.ok:
        # Never log request headers here: they carry the API key
        try:
            detail = (resp.json().get('error') or {}).get('message')
        except (ValueError, AttributeError):
            detail = None
        raise TaskError(ErrorCode.PROVIDER_HTTP,
                        f"{provider.label} API error: {resp.status_code} - "
                        f"{detail or resp.reason}")

    try:
        return resp.json()
    except (json.JSONDecodeError, ValueError):
        raise TaskError(ErrorCode.SUMMARIZE_FAILED,
                        f"Failed to parse {provider.label} response JSON")


def _summarize_openai(prompt: str, model: str, api_key: str, timeout: float) -> str:
    data = _post_json(
        Provider.OPENAI,
        OPENAI_CHAT_URL,
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        },
        payload={
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": SUMMARY_MAX_TOKENS,
            "temperature": OPENAI_TEMPERATURE,
        },
        timeout=timeout,
    )
    try:
        summary = (data['choices'][0]['message']['content'] or '').strip()
    except (KeyError, IndexError, TypeError):
        summary = ''
    if not summary:
        raise TaskError(ErrorCode.SUMMARIZE_FAILED, "No summary generated by OpenAI")
    return summary


def _summarize_claude(prompt: str, model: str, api_key: str, timeout: float) -> str:
    data = _post_json(
        Provider.CLAUDE,
        CLAUDE_MESSAGES_URL,
        headers={
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": CLAUDE_API_VERSION,
        },
        payload={
            "model": model,
            "max_tokens": SUMMARY_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        },
        timeout=timeout,
    )
    try:
        summary = (data['content'][0]['text'] or '').strip()
    except (KeyError, IndexError, TypeError):
        summary = ''
    if not summary:
        raise TaskError(ErrorCode.SUMMARIZE_FAILED, "No summary generated by Claude")
    return summary
