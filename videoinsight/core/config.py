"""
Application configuration manager.
Stores settings in a JSON file under ~/.videoinsight.
"""

import json
import logging
from pathlib import Path

from videoinsight.core.constants import (
    CONFIG_PATH, DEFAULT_TEMP_DIR, DEFAULT_LLM_MODEL, DEFAULT_WHISPER_MODEL,
    WHISPER_MODELS, DEFAULT_MAX_CONCURRENT_TASKS, OLLAMA_TIMEOUT_SEC,
    HTTP_TIMEOUT_SEC,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.summarize_llm import parse_model_selector

# Validation bounds
_MAX_CONCURRENT_MIN = 1
_MAX_CONCURRENT_MAX = 8
_OLLAMA_TIMEOUT_MIN = 30
_OLLAMA_TIMEOUT_MAX = 3600
_HTTP_TIMEOUT_MIN = 10
_HTTP_TIMEOUT_MAX = 600
_OUTPUT_FORMATS = ('md', 'txt')

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'llm_model': DEFAULT_LLM_MODEL,
    'whisper_model': DEFAULT_WHISPER_MODEL,
    'api_keys': {},
    'cookies_file': '',
    'temp_directory': str(DEFAULT_TEMP_DIR),
    'max_concurrent_tasks': DEFAULT_MAX_CONCURRENT_TASKS,
    'ollama_timeout_sec': OLLAMA_TIMEOUT_SEC,
    'http_timeout_sec': HTTP_TIMEOUT_SEC,
    'keep_artifacts': False,
    'output_format': 'md',
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    # api_keys is written through set_api_key only
    SETTABLE_KEYS = tuple(k for k in _DEFAULTS if k != 'api_keys')

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        self._data['api_keys'] = {}
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def set_api_key(self, provider: str, api_key: str | None):
        keys = dict(self._data.get('api_keys') or {})
        if api_key:
            keys[provider] = api_key
        else:
            keys.pop(provider, None)
        self._data['api_keys'] = keys
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'llm_model':
            try:
                parse_model_selector(str(value))
            except TaskError:
                logger.warning("Invalid llm_model %r — using default", value)
                return DEFAULT_LLM_MODEL
            return str(value)

        if key == 'whisper_model':
            if value not in WHISPER_MODELS:
                logger.warning("Invalid whisper_model %r — using default", value)
                return DEFAULT_WHISPER_MODEL

        if key == 'max_concurrent_tasks':
            return _clamp_int(value, _MAX_CONCURRENT_MIN, _MAX_CONCURRENT_MAX,
                              DEFAULT_MAX_CONCURRENT_TASKS, key)

        if key == 'ollama_timeout_sec':
            return _clamp_int(value, _OLLAMA_TIMEOUT_MIN, _OLLAMA_TIMEOUT_MAX,
                              OLLAMA_TIMEOUT_SEC, key)

        if key == 'http_timeout_sec':
            return _clamp_int(value, _HTTP_TIMEOUT_MIN, _HTTP_TIMEOUT_MAX,
                              HTTP_TIMEOUT_SEC, key)

        if key == 'api_keys':
            if not isinstance(value, dict):
                logger.warning("Invalid api_keys (expected object) — ignoring")
                return {}
            return {k: v for k, v in value.items() if isinstance(v, str) and v}

        if key == 'output_format':
            if value not in _OUTPUT_FORMATS:
                logger.warning("Invalid output_format %r — using md", value)
                return 'md'

        if key == 'keep_artifacts':
            return bool(value)

        if key in ('cookies_file', 'temp_directory'):
            return str(value or '')

        return value

    def as_dict(self) -> dict:
        data = dict(self._data)
        data['api_keys'] = dict(self._data.get('api_keys') or {})
        return data

    @property
    def llm_model(self) -> str:
        return self._data.get('llm_model', DEFAULT_LLM_MODEL)

    @llm_model.setter
    def llm_model(self, value: str):
        self.set('llm_model', value)

    @property
    def whisper_model(self) -> str:
        return self._data.get('whisper_model', DEFAULT_WHISPER_MODEL)

    @whisper_model.setter
    def whisper_model(self, value: str):
        self.set('whisper_model', value)

    @property
    def cookies_file(self) -> str:
        return self._data.get('cookies_file', '')

    @cookies_file.setter
    def cookies_file(self, value: str):
        self.set('cookies_file', value)


def _clamp_int(value, low: int, high: int, default: int, key: str) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r — using default", key, value)
        return default
    return max(low, min(high, value))
