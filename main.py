"""Application entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from compressor import AudioCompressor, detect_ffmpeg
from config import JsonConfigStore
from error_logger import ErrorLogger
from errors import UploadCancelledError, VoiceMessageError
from interfaces import ConfigStore
from models import PlayerState, SentVoiceMessage, SessionState
from playback import MAX_RETRIES, VoiceMessageAPI, VoicePlayer
from recorder import SoundDeviceRecorder
from session_controller import RecordingSession
from upload_manager import VoiceUploadManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

HELP = """Commands:
  r              start recording
  s              stop recording and preview
  x              discard and record again
  send           upload the recording to the current conversation
  c              cancel everything
  play <id>      play a sent voice message
  status         show the session state
  q              quit"""


class App:
    def __init__(self, conversation_id: str, config_store: Optional[ConfigStore] = None) -> None:
        self.config_store = config_store or JsonConfigStore()
        self.conversation_id = conversation_id
        self.error_logger = ErrorLogger()

        api_url = self.config_store.get_api_url()
        self.uploader = VoiceUploadManager(base_url=api_url, auth_token=self.config_store.get_auth_token)
        self.api = VoiceMessageAPI(base_url=api_url, auth_token=self.config_store.get_auth_token)
        self.session = RecordingSession(
            recorder=SoundDeviceRecorder(device=self.config_store.get_input_device()),
            compressor=AudioCompressor(),
            uploader=self.uploader,
            error_logger=self.error_logger,
            max_duration_s=self.config_store.get_max_duration_s(),
            on_state_change=self._on_state_change,
            on_duration=self._on_duration,
            on_progress=self._on_progress,
            on_error=self._on_error,
        )
        self.player: Optional[VoicePlayer] = None
        self._send_task: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _on_state_change(self, from_state: SessionState, to_state: SessionState) -> None:
        if to_state == SessionState.RECORDING:
            print("Recording... (s to stop)")
        elif to_state == SessionState.PREVIEWING:
            print(f"Preview: {self.session.preview_url}")
            print("send to upload, x to re-record, c to discard")
        elif to_state == SessionState.UPLOADING:
            print("Uploading...")

    def _on_duration(self, seconds: int) -> None:
        print(f"  {seconds // 60}:{seconds % 60:02d}")

    def _on_progress(self, percent: int) -> None:
        print(f"  upload {percent}%")

    def _on_error(self, code: str, message: str) -> None:
        print(f"{code}: {message}")

    def _on_send_done(self, task: asyncio.Future[SentVoiceMessage]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            sent = task.result()
            print(f"Sent message {sent.message_id} ({sent.audio_path})")
        elif isinstance(exc, UploadCancelledError):
            print("Upload cancelled.")
        elif not isinstance(exc, VoiceMessageError):
            logger.error("Send failed", exc_info=exc)
        # other VoiceMessageErrors were already reported through on_error

    def _on_player_state(self, from_state: PlayerState, to_state: PlayerState) -> None:
        if to_state == PlayerState.PLAYING:
            print("Playing...")
        elif to_state == PlayerState.READY and from_state == PlayerState.LOADING and self.player:
            print(f"Loaded {self.player.duration:.1f}s")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle(self, line: str) -> bool:
        command, _, arg = line.strip().partition(" ")
        if command == "r":
            await self.session.start_recording()
        elif command == "s":
            await self.session.stop_recording()
        elif command == "x":
            await self.session.re_record()
        elif command == "send":
            if self._send_task is not None and not self._send_task.done():
                print("Upload already in progress")
                return True
            # Runs in the background so "c" stays readable during the upload.
            self._send_task = asyncio.ensure_future(self.session.send(self.conversation_id))
            self._send_task.add_done_callback(self._on_send_done)
        elif command == "c":
            self.session.cancel()
        elif command == "play" and arg:
            await self.play(arg.strip())
        elif command == "status":
            snap = self.session.snapshot()
            status = f"{snap.state.value} duration={snap.duration_seconds}s progress={snap.upload_progress}%"
            if snap.upload_status is not None:
                status += f" ({snap.upload_status.value})"
            print(status)
        elif command == "q":
            return False
        else:
            print(HELP)
        return True

    async def play(self, message_id: str) -> None:
        if self.player is not None:
            self.player.close()
        self.player = VoicePlayer(
            message_id,
            self.api,
            error_logger=self.error_logger,
            on_state_change=self._on_player_state,
            on_error=lambda message: print(f"Playback: {message}"),
            on_ended=lambda: print("Playback finished"),
        )
        await self.player.load()
        while self.player.state == PlayerState.ERROR and self.player.retry_count < MAX_RETRIES:
            await self.player.retry()
        await self.player.play()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> int:
        if detect_ffmpeg() is None:
            logger.warning("ffmpeg not found; recordings are uploaded without re-encoding")
        print(HELP)
        try:
            while True:
                line = await asyncio.to_thread(input, "> ")
                if not await self.handle(line):
                    break
        except (EOFError, KeyboardInterrupt):
            pass
        finally:
            await self.quit()
        return 0

    async def quit(self) -> None:
        if self.player is not None:
            self.player.close()
        await self.session.close()
        if self._send_task is not None:
            await asyncio.gather(self._send_task, return_exceptions=True)
        await self.uploader.aclose()
        await self.api.aclose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Record and send voice messages from the terminal.")
    parser.add_argument("conversation_id", help="conversation that sent messages are attached to")
    args = parser.parse_args(argv)

    config_store = JsonConfigStore()
    logging.basicConfig(level=config_store.get_log_level(), format=LOG_FORMAT)
    app = App(args.conversation_id, config_store)
    return asyncio.run(app.run())


if __name__ == "__main__":
    raise SystemExit(main())
