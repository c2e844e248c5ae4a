"""
Shared constants for VideoInsight.
Single source of truth — imported by every other module.
"""

import pathlib
import tempfile

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "VideoInsight"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_SUPPORT_DIR = HOME / ".videoinsight"
LOG_DIR = APP_SUPPORT_DIR / "logs"
DB_PATH = APP_SUPPORT_DIR / "tasks.db"
CONFIG_PATH = APP_SUPPORT_DIR / "config.json"
DEFAULT_TEMP_DIR = pathlib.Path(tempfile.gettempdir()) / "videoinsight"
DEFAULT_EXPORT_DIR = HOME / "Downloads" / "VideoInsight"

# ── External tools ────────────────────────────────────────────────────
YTDLP_BIN = "yt-dlp"
FFMPEG_BIN = "ffmpeg"
WHISPER_BIN = "whisper"
OLLAMA_BIN = "ollama"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE_PREFIX = "VideoInsight"
KEYCHAIN_ACCOUNT = "default"


# ── Task status values (ordered) ──────────────────────────────────────
class TaskStatus:
    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"


# Forward-only pipeline order; FAILED is reachable from any non-terminal state.
STATUS_ORDER = [
    TaskStatus.PENDING,
    TaskStatus.DOWNLOADING,
    TaskStatus.EXTRACTING,
    TaskStatus.TRANSCRIBING,
    TaskStatus.SUMMARIZING,
    TaskStatus.COMPLETED,
]

TERMINAL_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED}

ACTIVE_STATUSES = {
    TaskStatus.DOWNLOADING,
    TaskStatus.EXTRACTING,
    TaskStatus.TRANSCRIBING,
    TaskStatus.SUMMARIZING,
}


# ── Stage names (as they appear in progress events) ───────────────────
class Stage:
    DOWNLOAD = "download"
    EXTRACT = "extract"
    TRANSCRIBE = "transcribe"
    SUMMARIZE = "summarize"


STAGE_STATUS = {
    Stage.DOWNLOAD: TaskStatus.DOWNLOADING,
    Stage.EXTRACT: TaskStatus.EXTRACTING,
    Stage.TRANSCRIBE: TaskStatus.TRANSCRIBING,
    Stage.SUMMARIZE: TaskStatus.SUMMARIZING,
}


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    INVALID_URL = "ERR_INVALID_URL"
    INVALID_SETTINGS = "ERR_INVALID_SETTINGS"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"

    # Process level
    SPAWN_FAILED = "ERR_SPAWN_FAILED"
    CANCELLED = "ERR_CANCELLED"
    INTERRUPTED = "ERR_INTERRUPTED"

    # Download
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    DOWNLOAD_FILE_MISSING = "ERR_DOWNLOAD_FILE_MISSING"

    # Extraction
    FFMPEG_EXTRACT = "ERR_FFMPEG_EXTRACT"
    AUDIO_MISSING = "ERR_AUDIO_MISSING"

    # Transcription
    WHISPER_FAILED = "ERR_WHISPER_FAILED"
    TRANSCRIPT_MISSING = "ERR_TRANSCRIPT_MISSING"

    # Summarization
    UNSUPPORTED_PROVIDER = "ERR_UNSUPPORTED_PROVIDER"
    OLLAMA_MODEL_NOT_FOUND = "ERR_OLLAMA_MODEL_NOT_FOUND"
    OLLAMA_UNREACHABLE = "ERR_OLLAMA_UNREACHABLE"
    OLLAMA_TIMEOUT = "ERR_OLLAMA_TIMEOUT"
    API_KEY_MISSING = "ERR_API_KEY_MISSING"
    PROVIDER_HTTP = "ERR_PROVIDER_HTTP"
    NETWORK = "ERR_NETWORK"
    SUMMARIZE_FAILED = "ERR_SUMMARIZE_FAILED"

    UNEXPECTED = "ERR_UNEXPECTED"


# Conditions the user can fix themselves (install a model, start a service,
# enter a key) rather than a generic "process failed".
USER_ACTIONABLE_ERRORS = {
    ErrorCode.SPAWN_FAILED,
    ErrorCode.UNSUPPORTED_PROVIDER,
    ErrorCode.OLLAMA_MODEL_NOT_FOUND,
    ErrorCode.OLLAMA_UNREACHABLE,
    ErrorCode.API_KEY_MISSING,
}

MAX_ERROR_MESSAGE_LEN = 2000

# ── Progress mapping (blended 0–100) ──────────────────────────────────
# (start, end) of each stage's share.  100 is written only on COMPLETED.
PROGRESS_RANGES = {
    Stage.DOWNLOAD: (0.0, 30.0),
    Stage.EXTRACT: (30.0, 60.0),
    Stage.TRANSCRIBE: (60.0, 80.0),
    Stage.SUMMARIZE: (80.0, 99.0),
}
PROGRESS_COMPLETE = 100.0

# ── Download ──────────────────────────────────────────────────────────
PRIMARY_FORMAT = "best[height<=1080]/best[height<=720]/best"
FALLBACK_FORMAT_SORT = "height:720"
METADATA_TIMEOUT_SEC = 60
PARTIAL_DOWNLOAD_SUFFIXES = (".part", ".ytdl", ".temp")

# ── Audio extraction target (matches whisper's expected input) ────────
AUDIO_CHANNELS = 1
AUDIO_SAMPLE_RATE = 16000
AUDIO_CODEC = "pcm_s16le"
AUDIO_FORMAT = "wav"

# ── Speech recognition ────────────────────────────────────────────────
WHISPER_MODELS = ("tiny", "base", "small", "medium", "large", "turbo")
DEFAULT_WHISPER_MODEL = "base"

# ── Summarization ─────────────────────────────────────────────────────
DEFAULT_LLM_MODEL = "ollama:qwen3:30b"
SUMMARY_PROMPT = (
    "Please provide a concise summary (maximum 200 words) of the following "
    "video transcript and list 3 key points:\n\n{text}"
)
OLLAMA_TIMEOUT_SEC = 300
HTTP_TIMEOUT_SEC = 120
SUMMARY_MAX_TOKENS = 500
OPENAI_TEMPERATURE = 0.7

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
CLAUDE_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
CLAUDE_API_VERSION = "2023-06-01"

# ── Process runner ────────────────────────────────────────────────────
TERMINATE_GRACE_SEC = 5
READ_CHUNK_SIZE = 4096

# ── Workers / maintenance ─────────────────────────────────────────────
DEFAULT_MAX_CONCURRENT_TASKS = 2
FAILED_TASK_RETENTION_DAYS = 30

# ── URL detection ─────────────────────────────────────────────────────
PLATFORM_URL_PATTERNS = {
    "YouTube": [
        r'^https?://(?:www\.|m\.)?(?:youtube\.com/(?:watch\?v=|embed/|v/|shorts/)|youtu\.be/)',
        r'^https?://(?:www\.)?youtube\.com/playlist\?list=',
    ],
    "Bilibili": [
        r'^https?://(?:www\.|m\.)?bilibili\.com/video/[A-Za-z0-9]+',
        r'^https?://b23\.tv/[A-Za-z0-9]+',
    ],
}

# ── Export ────────────────────────────────────────────────────────────
EXPORT_FORMATS = ("md", "txt")
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*\x00-\x1f]'
MAX_FILENAME_LEN = 120
