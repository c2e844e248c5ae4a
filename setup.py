"""
VideoInsight — setup script.

Usage:
    # Development install:
    pip install -e .

    # macOS .app bundle (standalone, fully self-contained):
    python3 setup.py py2app
"""

import os
import sys
from setuptools import setup, find_namespace_packages

APP = ["main.py"]
APP_NAME = "VideoInsight"
VERSION = "1.0.0"

PY2APP_OPTIONS = {
    "argv_emulation": False,
    "plist": {
        "CFBundleName": APP_NAME,
        "CFBundleDisplayName": APP_NAME,
        "CFBundleIdentifier": "com.local.videoinsight",
        "CFBundleVersion": VERSION,
        "CFBundleShortVersionString": VERSION,
        "CFBundlePackageType": "APPL",
        "LSMinimumSystemVersion": "10.15",
        "NSHumanReadableCopyright": "Local use only",
        "LSEnvironment": {
            "PYTHONDONTWRITEBYTECODE": "1",
        },
    },
    "packages": [
        "videoinsight",
        "requests",
    ],
    "includes": [
        "videoinsight.core.constants",
        "videoinsight.core.config",
        "videoinsight.core.db_sqlite",
        "videoinsight.core.models_sqlite",
        "videoinsight.core.task_pipeline",
        "videoinsight.core.process_runner",
        "videoinsight.core.progress_parse",
        "videoinsight.core.url_parse",
        "videoinsight.core.video_metadata",
        "videoinsight.core.download_video",
        "videoinsight.core.extract_audio",
        "videoinsight.core.transcribe_whisper",
        "videoinsight.core.summarize_llm",
        "videoinsight.core.output_writer",
        "videoinsight.core.cleanup",
        "videoinsight.core.security_utils",
        "videoinsight.core.error_codes",
        "videoinsight.core.diagnostics",
        "sqlite3",
    ],
    "excludes": [
        "tkinter", "PyQt5", "PyQt6", "PySide2", "PySide6",
        "matplotlib", "numpy", "scipy", "pandas",
        "PIL", "cv2", "torch", "tensorflow",
        "pytest", "unittest",
    ],
    "site_packages": True,
}

if os.path.exists("AppIcon.icns"):
    PY2APP_OPTIONS["iconfile"] = "AppIcon.icns"

# py2app is only needed (and only importable on macOS) for bundle builds
bundle_kwargs = {}
if "py2app" in sys.argv:
    bundle_kwargs = {
        "app": APP,
        "options": {"py2app": PY2APP_OPTIONS},
        "setup_requires": ["py2app"],
    }

setup(
    name="videoinsight",
    version=VERSION,
    description="Download, transcribe and summarize online videos",
    packages=find_namespace_packages(include=["videoinsight", "videoinsight.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    python_requires=">=3.10",
    entry_points={
        "console_scripts": ["videoinsight=main:main"],
    },
    **bundle_kwargs,
)
