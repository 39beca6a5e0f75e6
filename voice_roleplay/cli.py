"""
Terminal front end for realtime role-play sessions.

Commands:
    broker      Run the credential broker (uvicorn)
    scenarios   List available scenarios
    talk        Start a voice session for a scenario
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from typing import Optional

from voice_roleplay.config import Settings, get_settings
from voice_roleplay.models import ConnectionState, Scenario, TranscriptEntry
from voice_roleplay.scenarios import SCENARIOS, get_scenario
from voice_roleplay.session import SessionController

logger = logging.getLogger(__name__)

LEVEL_LABELS = {
    "beginner": "Beginner",
    "intermediate": "Intermediate",
    "advanced": "Advanced",
}

HELP_TEXT = """
Commands:
  /mute            - Toggle the microphone
  /scenario <id>   - Switch to another scenario
  /scenarios       - List scenarios
  /quit            - Disconnect and exit
  /help            - Show this help

Anything else is sent to the assistant as a text message.
"""


class TranscriptLog:
    """Append-only transcript for the current connection."""

    def __init__(self) -> None:
        self.entries: list[TranscriptEntry] = []

    def append(self, text: str, is_user: bool) -> TranscriptEntry:
        entry = TranscriptEntry(text=text, is_user=is_user, timestamp=datetime.now(timezone.utc))
        self.entries.append(entry)
        return entry

    def clear(self) -> None:
        self.entries.clear()


def format_entry(entry: TranscriptEntry) -> str:
    speaker = "You" if entry.is_user else "Assistant"
    stamp = entry.timestamp.astimezone().strftime("%H:%M:%S")
    return f"[{stamp}] {speaker}: {entry.text}"


def format_scenario(scenario: Scenario) -> str:
    return (
        f"{scenario.icon}  {scenario.id:<18} {scenario.title} "
        f"({LEVEL_LABELS[scenario.level]}) - {scenario.description}"
    )


class TerminalApp:
    """Presentation layer: renders transcripts and routes typed commands."""

    def __init__(self, settings: Settings, controller: Optional[SessionController] = None):
        self.settings = settings
        self.transcripts = TranscriptLog()
        self.last_error: Optional[str] = None
        self.running = True
        self._shutdown = asyncio.Event()
        self.controller = controller or SessionController.from_settings(settings)
        self.controller.on_transcript = self.handle_transcript
        self.controller.on_connection_state_change = self.handle_state_change
        self.controller.on_error = self.handle_error

    def handle_transcript(self, text: str, is_user: bool) -> None:
        entry = self.transcripts.append(text, is_user)
        print(format_entry(entry))

    def handle_state_change(self, state: ConnectionState) -> None:
        print(f"-- {state.value}")
        if state == ConnectionState.DISCONNECTED:
            self.transcripts.clear()

    def handle_error(self, error: Exception) -> None:
        self.last_error = str(error)
        print(f"!! {type(error).__name__}: {error}")

    async def start(self, scenario: Scenario) -> bool:
        """Connect to ``scenario``; returns False if the connection failed."""
        self.last_error = None
        self.transcripts.clear()
        print(f"\n{format_scenario(scenario)}\n")
        try:
            await self.controller.connect(scenario)
        except Exception:
            print("Connection failed. Please try again.")
            return False
        return True

    async def handle_input(self, text: str) -> None:
        text = text.strip()
        if not text:
            return

        if not text.startswith("/"):
            self.controller.send_message(text)
            return

        command, _, argument = text[1:].partition(" ")
        command = command.lower()

        if command == "quit":
            self.stop()
        elif command == "mute":
            muted = self.controller.toggle_mute()
            print("-- microphone muted" if muted else "-- microphone on")
        elif command == "scenario":
            scenario = get_scenario(argument.strip())
            if scenario is None:
                print(f"Unknown scenario: {argument.strip()}")
                return
            await self.controller.disconnect()
            await self.start(scenario)
        elif command == "scenarios":
            for scenario in SCENARIOS:
                print(format_scenario(scenario))
        elif command == "help":
            print(HELP_TEXT)
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    def stop(self) -> None:
        """Stop the input loop; the session is torn down by ``run``."""
        self.running = False
        self._shutdown.set()

    def _start_stdin_reader(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
        # Daemon thread: a pending readline must not block interpreter exit
        lines: asyncio.Queue = asyncio.Queue()

        def read() -> None:
            try:
                for line in iter(sys.stdin.readline, ""):
                    loop.call_soon_threadsafe(lines.put_nowait, line)
                loop.call_soon_threadsafe(lines.put_nowait, "")
            except RuntimeError:
                # Event loop already closed
                return

        threading.Thread(target=read, name="stdin-reader", daemon=True).start()
        return lines

    async def input_loop(self, lines: Optional[asyncio.Queue] = None) -> None:
        """Handle typed lines until EOF, /quit or ``stop()``."""
        if lines is None:
            lines = self._start_stdin_reader(asyncio.get_running_loop())

        while self.running:
            next_line = asyncio.ensure_future(lines.get())
            shutdown = asyncio.ensure_future(self._shutdown.wait())
            done, pending = await asyncio.wait(
                {next_line, shutdown}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()

            if next_line not in done:
                break
            text = next_line.result()
            if text == "":
                break
            await self.handle_input(text)

    async def run(self, scenario: Scenario) -> None:
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

        try:
            async with self.controller:
                if not await self.start(scenario):
                    return
                print(HELP_TEXT)
                await self.input_loop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)


def run_broker(settings: Settings) -> None:
    import uvicorn

    uvicorn.run("voice_roleplay.broker:app", host=settings.host, port=settings.port)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="voice_roleplay",
        description="Realtime voice role-play practice over WebRTC",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("broker", help="Run the credential broker")
    subparsers.add_parser("scenarios", help="List available scenarios")
    talk = subparsers.add_parser("talk", help="Start a voice session")
    talk.add_argument(
        "--scenario",
        default=SCENARIOS[0].id,
        help=f"Scenario id (default: {SCENARIOS[0].id})",
    )

    args = parser.parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "scenarios":
        for scenario in SCENARIOS:
            print(format_scenario(scenario))
        return 0

    if args.command == "broker":
        run_broker(settings)
        return 0

    scenario = get_scenario(args.scenario)
    if scenario is None:
        print(f"Unknown scenario: {args.scenario}", file=sys.stderr)
        return 2

    try:
        asyncio.run(TerminalApp(settings).run(scenario))
    except KeyboardInterrupt:
        print("\nExiting...")
    return 0
