#!/usr/bin/env python3
"""
Operator-facing status output shared by the import and calculate commands.
Progress goes to a live status line; warnings and errors go to stderr.
"""

from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.text import Text


class StatusDisplay:
    """Handle status updates with a rich live line and a separate error stream"""

    def __init__(self, console: Optional[Console] = None, error_console: Optional[Console] = None):
        self.console = console or Console()
        self.error_console = error_console or Console(stderr=True)
        self.live = None
        self.current_status = ""
        self.warning_count = 0
        self.error_count = 0

    def start(self, initial_message: str = "Starting..."):
        """Start the status display"""
        self.current_status = initial_message
        text = Text(initial_message, style="cyan")
        self.live = Live(text, console=self.console, refresh_per_second=4, transient=True)
        self.live.start()

    def update(self, message: str, style: str = "cyan"):
        """Update the status message"""
        self.current_status = message
        if self.live:
            self.live.update(Text(message, style=style))

    def stop(self, final_message: Optional[str] = None):
        """Stop the status display"""
        if self.live:
            self.live.stop()
            self.live = None
        if final_message:
            self.console.print(final_message)

    def _emit(self, console: Console, message: str, style: Optional[str]):
        # Pause the live line so messages don't get overwritten
        if self.live:
            self.live.stop()
            console.print(message, style=style)
            text = Text(self.current_status, style="cyan")
            self.live = Live(text, console=self.console, refresh_per_second=4, transient=True)
            self.live.start()
        else:
            console.print(message, style=style)

    def print(self, message: str, style: Optional[str] = None):
        """Print a message without disrupting status display"""
        self._emit(self.console, message, style)

    def warn(self, message: str):
        """Report a recoverable problem on the error stream"""
        self.warning_count += 1
        self._emit(self.error_console, f"⚠️  {message}", "yellow")

    def error(self, message: str):
        """Report a failure on the error stream"""
        self.error_count += 1
        self._emit(self.error_console, f"❌ {message}", "red")
