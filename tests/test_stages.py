#!/usr/bin/env python3
"""
Unit tests for the stage executors: download, extract, transcribe, summarize.
External tools are replaced by fake shell scripts; HTTP is mocked.
"""

import os
import sys
import tempfile
import time
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

import requests

from videoinsight.core.constants import (
    ErrorCode, Stage, OPENAI_CHAT_URL, CLAUDE_MESSAGES_URL, CLAUDE_API_VERSION,
)
from videoinsight.core.error_codes import TaskError
from videoinsight.core.video_metadata import cookie_args, parse_metadata_json, fetch_metadata
from videoinsight.core.download_video import download_video, find_downloaded_file
from videoinsight.core.extract_audio import extract_audio, build_extract_args
from videoinsight.core.transcribe_whisper import transcribe_audio
from videoinsight.core.summarize_llm import (
    Provider, parse_model_selector, build_prompt, summarize, strip_ansi,
)
import fake_tools
from fake_tools import read_log

URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class _ToolTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmpdir.name)
        self.bin_dir = self.dir / "bin"
        self.bin_dir.mkdir()
        self.work_dir = self.dir / "work"
        self.log = self.dir / "calls.log"
        self.events = []

    def tearDown(self):
        self.tmpdir.cleanup()


class TestMetadata(unittest.TestCase):
    """Test the metadata lookup helpers."""

    def test_parse_metadata(self):
        meta = parse_metadata_json('{"title": "Hello", "duration": 12}')
        self.assertEqual(meta.title, "Hello")
        self.assertEqual(meta.duration, 12.0)

    def test_parse_malformed(self):
        meta = parse_metadata_json("not json at all")
        self.assertIsNone(meta.title)
        self.assertIsNone(meta.duration)
        self.assertIsNone(parse_metadata_json("[1, 2]").title)

    def test_cookie_args(self):
        self.assertEqual(cookie_args(None), [])
        self.assertEqual(cookie_args("/nonexistent/cookies.txt"), [])
        with tempfile.NamedTemporaryFile(suffix=".txt") as f:
            self.assertEqual(cookie_args(f.name), ["--cookies", f.name])


@unittest.skipUnless(os.name == "posix", "fake tools are POSIX shell scripts")
class TestDownload(_ToolTestCase):
    """Test the two-attempt download state machine."""

    def _download(self, tool, **kwargs):
        return download_video(URL, self.work_dir, on_progress=self.events.append,
                              binary=tool, **kwargs)

    def _attempts(self):
        return [line.split()[0] for line in read_log(self.log)]

    def test_primary_success(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log)
        result = self._download(tool, timestamp=111)
        self.assertEqual(self._attempts(), ["primary"])
        self.assertTrue(Path(result.video_path).exists())
        self.assertEqual(Path(result.video_path).name, "video_111_abc123.mp4")
        self.assertEqual(result.title, "Test Video")
        self.assertEqual(result.duration, 63.0)
        self.assertEqual(result.file_size, len("video"))
        percents = [e.percent for e in self.events if e.percent is not None]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(percents[-1], 100.0)
        self.assertTrue(all(e.stage == Stage.DOWNLOAD for e in self.events))

    def test_primary_arguments(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log)
        self._download(tool)
        args = read_log(self.log)[0]
        self.assertIn("-f best[height<=1080]/best[height<=720]/best", args)
        for flag in ("--newline", "--no-playlist", "--no-check-certificate", URL):
            self.assertIn(flag, args)
        self.assertNotIn("--cookies", args)

    def test_cookies_passed_when_file_exists(self):
        cookies = self.dir / "cookies.txt"
        cookies.write_text("# Netscape HTTP Cookie File\n")
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log)
        self._download(tool, cookies_file=str(cookies))
        self.assertIn(f"--cookies {cookies}", read_log(self.log)[0])

    def test_fallback_runs_once_after_failure(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log, primary=fake_tools.dl_fail(1))
        result = self._download(tool)
        self.assertEqual(self._attempts(), ["primary", "fallback"])
        fallback_args = read_log(self.log)[1]
        self.assertIn("--format-sort height:720", fallback_args)
        self.assertIn("--ignore-errors", fallback_args)
        self.assertTrue(Path(result.video_path).exists())
        resets = [e for e in self.events if e.reset]
        self.assertEqual(len(resets), 1)
        self.assertEqual(resets[0].percent, 0.0)

    def test_fallback_events_are_tagged(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log, primary=fake_tools.dl_fail(1))
        self._download(tool)
        reset_at = next(i for i, e in enumerate(self.events) if e.reset)
        before, after = self.events[:reset_at], self.events[reset_at + 1:-1]
        self.assertTrue(all('attempt' not in e.extra for e in before))
        parsed = [e for e in after if e.percent is not None]
        self.assertTrue(parsed)
        self.assertTrue(all(e.extra.get('attempt') == "fallback" for e in parsed))

    def test_both_attempts_fail(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log,
                                     primary=fake_tools.dl_fail(1),
                                     fallback=fake_tools.dl_fail(2))
        with self.assertRaises(TaskError) as ctx:
            self._download(tool)
        self.assertEqual(ctx.exception.code, ErrorCode.DOWNLOAD_FAILED)
        self.assertIn("Both primary and fallback downloads failed", ctx.exception.message)
        self.assertIn("Last exit code: 2", ctx.exception.message)
        self.assertEqual(self._attempts(), ["primary", "fallback"])

    def test_zero_exit_without_file(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log, primary=fake_tools.DL_NO_FILE)
        with self.assertRaises(TaskError) as ctx:
            self._download(tool)
        self.assertEqual(ctx.exception.code, ErrorCode.DOWNLOAD_FILE_MISSING)
        self.assertEqual(self._attempts(), ["primary"])

    def test_path_found_by_scan(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log,
                                     primary=fake_tools.DL_SILENT_SUCCESS)
        result = self._download(tool, timestamp=222)
        self.assertEqual(Path(result.video_path).name, "video_222_abc123.mp4")

    def test_metadata_failure_is_not_fatal(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log, meta=fake_tools.META_FAIL)
        result = self._download(tool)
        self.assertIsNone(result.title)
        self.assertTrue(Path(result.video_path).exists())

    def test_missing_binary(self):
        with self.assertRaises(TaskError) as ctx:
            self._download(str(self.bin_dir / "no-yt-dlp"))
        self.assertEqual(ctx.exception.code, ErrorCode.SPAWN_FAILED)

    def test_scan_ignores_partial_files(self):
        self.work_dir.mkdir()
        (self.work_dir / "video_5_x.mp4.part").write_text("partial")
        self.assertIsNone(find_downloaded_file(self.work_dir, "video_5"))
        (self.work_dir / "video_5_x.mp4").write_text("done")
        self.assertEqual(find_downloaded_file(self.work_dir, "video_5").name, "video_5_x.mp4")

    def test_fetch_metadata_direct(self):
        tool = fake_tools.make_ytdlp(self.bin_dir, self.log)
        meta = fetch_metadata(URL, binary=tool)
        self.assertEqual(meta.title, "Test Video")


@unittest.skipUnless(os.name == "posix", "fake tools are POSIX shell scripts")
class TestExtract(_ToolTestCase):
    """Test audio extraction."""

    def setUp(self):
        super().setUp()
        self.work_dir.mkdir()
        self.video = self.work_dir / "video_1_abc.mp4"
        self.video.write_text("video")

    def test_arguments(self):
        self.assertEqual(
            build_extract_args("in.mp4", "out.wav"),
            ["-i", "in.mp4", "-vn", "-acodec", "pcm_s16le", "-ar", "16000",
             "-ac", "1", "-y", "out.wav"],
        )

    def test_success_with_progress(self):
        tool = fake_tools.make_ffmpeg(self.bin_dir, self.log)
        result = extract_audio(str(self.video), self.work_dir, on_progress=self.events.append,
                               binary=tool, timestamp=333)
        self.assertEqual(Path(result.audio_path).name, "audio_333.wav")
        self.assertTrue(Path(result.audio_path).exists())
        percents = [e.percent for e in self.events if e.percent is not None]
        self.assertEqual(percents, [50.0, 100.0])

    def test_non_zero_exit(self):
        tool = fake_tools.make_ffmpeg(self.bin_dir, self.log, exit_code=1, create_file=False)
        with self.assertRaises(TaskError) as ctx:
            extract_audio(str(self.video), self.work_dir, binary=tool)
        self.assertEqual(ctx.exception.code, ErrorCode.FFMPEG_EXTRACT)

    def test_zero_exit_without_output(self):
        tool = fake_tools.make_ffmpeg(self.bin_dir, self.log, create_file=False)
        with self.assertRaises(TaskError) as ctx:
            extract_audio(str(self.video), self.work_dir, binary=tool)
        self.assertEqual(ctx.exception.code, ErrorCode.AUDIO_MISSING)
        self.assertEqual(ctx.exception.message, "Audio file was not created")

    def test_missing_input_checked_before_spawn(self):
        tool = fake_tools.make_ffmpeg(self.bin_dir, self.log)
        with self.assertRaises(TaskError) as ctx:
            extract_audio(str(self.work_dir / "missing.mp4"), self.work_dir, binary=tool)
        self.assertEqual(ctx.exception.code, ErrorCode.FFMPEG_EXTRACT)
        self.assertEqual(read_log(self.log), [])


@unittest.skipUnless(os.name == "posix", "fake tools are POSIX shell scripts")
class TestTranscribe(_ToolTestCase):
    """Test whisper transcription."""

    def setUp(self):
        super().setUp()
        self.work_dir.mkdir()
        self.audio = self.work_dir / "audio_1.wav"
        self.audio.write_text("RIFF")

    def test_success(self):
        tool = fake_tools.make_whisper(self.bin_dir, self.log)
        result = transcribe_audio(str(self.audio), model="tiny", output_dir=self.work_dir,
                                  on_progress=self.events.append, binary=tool)
        self.assertEqual(result.text, "Hello from the transcript.")
        self.assertFalse((self.work_dir / "audio_1.txt").exists())
        self.assertEqual([e.percent for e in self.events], [50.0, 100.0])
        args = read_log(self.log)[0]
        self.assertIn("--model tiny --output_format txt", args)
        self.assertIn("--verbose False", args)

    def test_failure_includes_stderr(self):
        tool = fake_tools.make_whisper(self.bin_dir, self.log, body=fake_tools.WHISPER_FAIL)
        with self.assertRaises(TaskError) as ctx:
            transcribe_audio(str(self.audio), binary=tool)
        self.assertEqual(ctx.exception.code, ErrorCode.WHISPER_FAILED)
        self.assertIn("CUDA out of memory", ctx.exception.message)

    def test_missing_transcript(self):
        tool = fake_tools.make_whisper(self.bin_dir, self.log, body=fake_tools.WHISPER_NO_FILE)
        with self.assertRaises(TaskError) as ctx:
            transcribe_audio(str(self.audio), binary=tool)
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIPT_MISSING)

    def test_unknown_model_rejected_before_spawn(self):
        tool = fake_tools.make_whisper(self.bin_dir, self.log)
        with self.assertRaises(TaskError) as ctx:
            transcribe_audio(str(self.audio), model="gigantic", binary=tool)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_SETTINGS)
        self.assertEqual(read_log(self.log), [])


class TestModelSelector(unittest.TestCase):
    """Test provider/model parsing."""

    def test_splits_on_first_colon(self):
        selector = parse_model_selector("ollama:qwen3:30b")
        self.assertIs(selector.provider, Provider.OLLAMA)
        self.assertEqual(selector.model, "qwen3:30b")
        self.assertEqual(str(selector), "ollama:qwen3:30b")

    def test_cloud_providers(self):
        self.assertIs(parse_model_selector("openai:gpt-4o-mini").provider, Provider.OPENAI)
        self.assertIs(parse_model_selector("claude:claude-3-haiku").provider, Provider.CLAUDE)

    def test_rejects_unknown_or_empty(self):
        for value in ("gemini:pro", "qwen3", "ollama:", "", ":model"):
            with self.assertRaises(TaskError) as ctx:
                parse_model_selector(value)
            self.assertEqual(ctx.exception.code, ErrorCode.UNSUPPORTED_PROVIDER, value)

    def test_prompt(self):
        prompt = build_prompt("TRANSCRIPT")
        self.assertTrue(prompt.startswith("Please provide a concise summary (maximum 200 words)"))
        self.assertTrue(prompt.endswith("list 3 key points:\n\nTRANSCRIPT"))

    def test_strip_ansi(self):
        self.assertEqual(strip_ansi("\x1b[?25l\x1b[2KHello\x1b[0m"), "Hello")


@unittest.skipUnless(os.name == "posix", "fake tools are POSIX shell scripts")
class TestOllama(_ToolTestCase):
    """Test local summarization through the ollama CLI."""

    def _summarize(self, tool, **kwargs):
        return summarize("A transcript.", "ollama:test-model", on_progress=self.events.append,
                         binary=tool, **kwargs)

    def test_success(self):
        tool = fake_tools.make_ollama(self.bin_dir, self.log)
        result = self._summarize(tool)
        self.assertEqual(result.summary, "This video explains how tests work.")
        self.assertEqual(read_log(self.log)[0], "run test-model")
        prompt = Path(f"{self.log}.prompt").read_text()
        self.assertEqual(prompt, build_prompt("A transcript."))
        self.assertEqual([e.phase for e in self.events], ["connecting", "generating"])

    def test_model_not_found(self):
        tool = fake_tools.make_ollama(self.bin_dir, self.log,
                                      body=fake_tools.OLLAMA_MODEL_NOT_FOUND)
        started = time.monotonic()
        with self.assertRaises(TaskError) as ctx:
            self._summarize(tool)
        self.assertLess(time.monotonic() - started, 10)
        self.assertEqual(ctx.exception.code, ErrorCode.OLLAMA_MODEL_NOT_FOUND)
        self.assertIn("ollama pull test-model", ctx.exception.message)
        self.assertTrue(ctx.exception.user_actionable)

    def test_connection_refused(self):
        tool = fake_tools.make_ollama(self.bin_dir, self.log, body=fake_tools.OLLAMA_REFUSED)
        with self.assertRaises(TaskError) as ctx:
            self._summarize(tool)
        self.assertEqual(ctx.exception.code, ErrorCode.OLLAMA_UNREACHABLE)
        self.assertEqual(ctx.exception.message,
                         "Cannot connect to Ollama. Please make sure Ollama is running.")

    def test_timeout_terminates_child(self):
        tool = fake_tools.make_ollama(self.bin_dir, self.log, body=fake_tools.OLLAMA_HANG)
        started = time.monotonic()
        with self.assertRaises(TaskError) as ctx:
            self._summarize(tool, timeout=0.5)
        self.assertLess(time.monotonic() - started, 10)
        self.assertEqual(ctx.exception.code, ErrorCode.OLLAMA_TIMEOUT)
        pid = int(Path(f"{self.log}.pid").read_text().strip())
        with self.assertRaises(ProcessLookupError):
            os.kill(pid, 0)

    def test_empty_output(self):
        tool = fake_tools.make_ollama(self.bin_dir, self.log, body=fake_tools.OLLAMA_EMPTY)
        with self.assertRaises(TaskError) as ctx:
            self._summarize(tool)
        self.assertEqual(ctx.exception.code, ErrorCode.SUMMARIZE_FAILED)

    def test_non_zero_exit(self):
        tool = fake_tools.make_ollama(self.bin_dir, self.log, body=fake_tools.OLLAMA_CRASH)
        with self.assertRaises(TaskError) as ctx:
            self._summarize(tool)
        self.assertEqual(ctx.exception.code, ErrorCode.SUMMARIZE_FAILED)


def _response(status: int = 200, payload=None, reason: str = "OK"):
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.reason = reason
    resp.json.return_value = payload if payload is not None else {}
    return resp


class TestCloudProviders(unittest.TestCase):
    """Test OpenAI and Claude summarization with HTTP mocked."""

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_openai_success(self, post):
        post.return_value = _response(payload={
            "choices": [{"message": {"content": "  OpenAI summary. "}}],
        })
        result = summarize("Text.", "openai:gpt-4o-mini", api_keys={"openai": "sk-test"})
        self.assertEqual(result.summary, "OpenAI summary.")
        args, kwargs = post.call_args
        self.assertEqual(args[0], OPENAI_CHAT_URL)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(kwargs["json"]["model"], "gpt-4o-mini")
        self.assertEqual(kwargs["json"]["max_tokens"], 500)
        self.assertEqual(kwargs["json"]["temperature"], 0.7)
        self.assertEqual(kwargs["json"]["messages"][0]["content"], build_prompt("Text."))

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_claude_success(self, post):
        post.return_value = _response(payload={"content": [{"type": "text", "text": "Claude summary."}]})
        result = summarize("Text.", "claude:claude-3-haiku", api_keys={"claude": "sk-ant"})
        self.assertEqual(result.summary, "Claude summary.")
        args, kwargs = post.call_args
        self.assertEqual(args[0], CLAUDE_MESSAGES_URL)
        self.assertEqual(kwargs["headers"]["x-api-key"], "sk-ant")
        self.assertEqual(kwargs["headers"]["anthropic-version"], CLAUDE_API_VERSION)
        self.assertEqual(kwargs["json"]["max_tokens"], 500)

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_missing_key_makes_no_request(self, post):
        with self.assertRaises(TaskError) as ctx:
            summarize("Text.", "openai:gpt-4o-mini", api_keys={})
        self.assertEqual(ctx.exception.code, ErrorCode.API_KEY_MISSING)
        self.assertEqual(ctx.exception.message, "OpenAI API key not provided")
        post.assert_not_called()

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_http_error(self, post):
        post.return_value = _response(401, {"error": {"message": "Invalid API key"}},
                                      reason="Unauthorized")
        with self.assertRaises(TaskError) as ctx:
            summarize("Text.", "openai:gpt-4o-mini", api_keys={"openai": "bad"})
        self.assertEqual(ctx.exception.code, ErrorCode.PROVIDER_HTTP)
        self.assertEqual(ctx.exception.message, "OpenAI API error: 401 - Invalid API key")

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_http_error_without_body(self, post):
        resp = _response(529, reason="Overloaded")
        resp.json.side_effect = ValueError("no json")
        post.return_value = resp
        with self.assertRaises(TaskError) as ctx:
            summarize("Text.", "claude:claude-3-haiku", api_keys={"claude": "k"})
        self.assertEqual(ctx.exception.message, "Claude API error: 529 - Overloaded")

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_network_error(self, post):
        post.side_effect = requests.exceptions.ConnectionError("dns failure")
        with self.assertRaises(TaskError) as ctx:
            summarize("Text.", "claude:claude-3-haiku", api_keys={"claude": "k"})
        self.assertEqual(ctx.exception.code, ErrorCode.NETWORK)

    @mock.patch("videoinsight.core.summarize_llm.requests.post")
    def test_empty_content(self, post):
        post.return_value = _response(payload={"choices": []})
        with self.assertRaises(TaskError) as ctx:
            summarize("Text.", "openai:gpt-4o-mini", api_keys={"openai": "k"})
        self.assertEqual(ctx.exception.code, ErrorCode.SUMMARIZE_FAILED)


if __name__ == "__main__":
    unittest.main()
