"""Bridge to the OS: clipboard writes, paste, and opening files and URLs."""

import asyncio
import logging
import os
import shlex
import subprocess
import sys
import tempfile
import webbrowser
from typing import Optional

import pyperclip

from clip_history.core.errors import TransientIOError

logger = logging.getLogger(__name__)


class ClipboardBridge:
    """Blocking OS calls run in a worker thread or an asyncio subprocess."""

    def __init__(self, paste_command: Optional[str] = None):
        self.paste_command = paste_command

    async def copy(self, text: str):
        try:
            await asyncio.to_thread(pyperclip.copy, text)
        except pyperclip.PyperclipException as e:
            logger.error(f"Clipboard write failed: {e}")
            raise TransientIOError(f"Clipboard write failed: {e}") from e

    async def paste(self):
        """Send the paste keystroke to the focused window via PASTE_COMMAND."""
        if not self.paste_command:
            logger.debug("No paste command configured, clip left on the clipboard")
            return

        args = shlex.split(self.paste_command)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as e:
            logger.error(f"Paste command {args[0]!r} failed to start: {e}")
            raise TransientIOError(f"Paste command failed: {e}") from e

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise TransientIOError(f"Paste command exited {process.returncode}: {message}")

    async def open_path(self, path: str):
        """Open a file with the platform's default application."""
        if not os.path.exists(path):
            raise TransientIOError(f"File does not exist: {path}")

        try:
            if sys.platform.startswith("win"):
                await asyncio.to_thread(os.startfile, path)
                return
            opener = "open" if sys.platform == "darwin" else "xdg-open"
            await asyncio.to_thread(
                subprocess.Popen,
                [opener, path],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Failed to open {path}: {e}")
            raise TransientIOError(f"Failed to open {path}: {e}") from e

    async def open_text_in_editor(self, text: str, extension: str = "txt") -> str:
        """Write text to a temp file and open it. Returns the file path."""
        suffix = "." + (extension or "txt").lstrip(".")
        with tempfile.NamedTemporaryFile(
            "w", suffix=suffix, prefix="clip-", delete=False, encoding="utf-8"
        ) as handle:
            handle.write(text)
            path = handle.name

        await self.open_path(path)
        return path

    async def open_url(self, url: str):
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            raise TransientIOError(f"No browser available to open {url}")
