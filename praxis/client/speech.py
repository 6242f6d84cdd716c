"""Client-side speech handling.

``PushToTalk`` turns a stream of recognizer callbacks into whole utterances.
States::

    IDLE --press--> LISTENING --final result--> ACCUMULATING
    ACCUMULATING --silence timeout--> FINALIZING --recognizer end--> IDLE (utterance emitted)

The recognizer is anything with ``start()`` and ``stop()`` that reports back
through ``on_result``, ``on_error`` and ``on_end``. Timing is driven by
``poll()`` so the machine can run under any loop or a fake clock.
"""
import abc
import enum
import json
import time
from pathlib import Path
from typing import Callable, Optional

from praxis import config

logger = config.configure_logger("praxis.client.speech")

DEFAULT_SILENCE_TIMEOUT = 2.5
MIN_SILENCE_TIMEOUT = 1.5
MAX_SILENCE_TIMEOUT = 2.5
NO_SPEECH_RESTART_DELAY = 0.25


class TalkState(enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    ACCUMULATING = "accumulating"
    FINALIZING = "finalizing"


class Recognizer(abc.ABC):
    @abc.abstractmethod
    def start(self) -> None:
        ...

    @abc.abstractmethod
    def stop(self) -> None:
        ...


class PushToTalk:
    def __init__(
        self,
        recognizer: Recognizer,
        on_utterance: Callable[[str], None],
        *,
        silence_timeout: float = DEFAULT_SILENCE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        playback: Optional["PlaybackController"] = None,
    ):
        if not MIN_SILENCE_TIMEOUT <= silence_timeout <= MAX_SILENCE_TIMEOUT:
            raise ValueError(
                f"silence_timeout must be between {MIN_SILENCE_TIMEOUT} and {MAX_SILENCE_TIMEOUT} seconds"
            )
        self.recognizer = recognizer
        self.on_utterance = on_utterance
        self.silence_timeout = silence_timeout
        self._clock = clock
        self.playback = playback
        self.state = TalkState.IDLE
        self.buffer = ""
        self.heard_speech = False
        self._recognizer_running = False
        self._silence_deadline: Optional[float] = None
        self._restart_at: Optional[float] = None

    @property
    def active(self) -> bool:
        return self.state is not TalkState.IDLE

    def press(self) -> None:
        """Talk button. Interrupts reply audio, then starts listening or cancels the talk session.

        Cancelling drops anything heard so far; only the silence timeout sends an utterance.
        """
        if self.playback is not None:
            self.playback.stop()
        if not self.active:
            self._begin()
        else:
            self.cancel()

    def _begin(self) -> None:
        self.buffer = ""
        self.heard_speech = False
        self._silence_deadline = None
        self._restart_at = None
        self.state = TalkState.LISTENING
        self._start_recognizer()

    def _start_recognizer(self) -> None:
        try:
            self.recognizer.start()
        except Exception as e:
            logger.warning(json.dumps({"event": "stt_start_failed", "error": str(e)[:200]}))
            self._reset()
            return
        self._recognizer_running = True

    def on_result(self, transcript: str, is_final: bool = True) -> None:
        if not self.active or self.state is TalkState.FINALIZING or not is_final:
            return
        text = (transcript or "").strip()
        if not text:
            return
        self.heard_speech = True
        self.buffer = f"{self.buffer} {text}" if self.buffer else text
        self.state = TalkState.ACCUMULATING
        self._silence_deadline = self._clock() + self.silence_timeout

    def poll(self) -> None:
        """Advance timers: the silence timeout and the no-speech restart."""
        now = self._clock()
        if self.state is TalkState.ACCUMULATING and self._silence_deadline is not None and now >= self._silence_deadline:
            self._finalize()
            return
        if self._restart_at is not None and now >= self._restart_at:
            self._restart_at = None
            if self.state is TalkState.LISTENING and not self._recognizer_running:
                self._start_recognizer()

    def _finalize(self) -> None:
        self.state = TalkState.FINALIZING
        self._silence_deadline = None
        if self._recognizer_running:
            self.recognizer.stop()
        else:
            self.on_end()

    def on_error(self, error: str) -> None:
        if error == "no-speech" and self.active and not self.heard_speech:
            return
        if error != "aborted":
            logger.warning(json.dumps({"event": "stt_error", "error": error}))
        self._reset()

    def on_end(self) -> None:
        """Recognizer stopped (on its own, on error, or after ``stop()``)."""
        self._recognizer_running = False
        if not self.active:
            self._reset()
            return
        if self.heard_speech:
            utterance = self.buffer.strip()
            self._reset()
            if utterance:
                self.on_utterance(utterance)
            return
        # Talk session still open but nothing heard yet; restart shortly
        self._restart_at = self._clock() + NO_SPEECH_RESTART_DELAY

    def cancel(self) -> None:
        """Abort the talk session and drop anything heard so far."""
        running = self._recognizer_running
        self._reset()
        if running:
            self.recognizer.stop()

    def _reset(self) -> None:
        self.state = TalkState.IDLE
        self.buffer = ""
        self.heard_speech = False
        self._silence_deadline = None
        self._restart_at = None


class PlaybackHandle(abc.ABC):
    @abc.abstractmethod
    def stop(self) -> None:
        ...


class AudioSink(abc.ABC):
    @abc.abstractmethod
    def play(self, data: bytes, mime: str) -> PlaybackHandle:
        ...


class PlaybackController:
    """Keeps at most one audio source active; new audio stops the current one first."""

    def __init__(self, sink: Optional[AudioSink] = None):
        self.sink = sink
        self.current: Optional[PlaybackHandle] = None

    def play(self, data: bytes, mime: str) -> Optional[PlaybackHandle]:
        self.stop()
        if self.sink is None or not data:
            return None
        self.current = self.sink.play(data, mime)
        return self.current

    def stop(self) -> None:
        handle, self.current = self.current, None
        if handle is not None:
            handle.stop()

    @property
    def playing(self) -> bool:
        return self.current is not None


_MIME_SUFFIX = {"audio/mpeg": ".mp3", "audio/wav": ".wav", "audio/ogg": ".ogg"}


class _FileHandle(PlaybackHandle):
    def __init__(self, path: Path):
        self.path = path
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FileAudioSink(AudioSink):
    """Writes each reply's audio to ``directory`` instead of a speaker."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._count = 0

    def play(self, data: bytes, mime: str) -> PlaybackHandle:
        self._count += 1
        path = self.directory / f"reply-{self._count:04d}{_MIME_SUFFIX.get(mime, '.bin')}"
        path.write_bytes(data)
        logger.info(json.dumps({"event": "audio_written", "path": str(path), "bytes": len(data)}))
        return _FileHandle(path)
