"""praxis-chat: talk to the gateway from a terminal.

Typed lines stand in for recognized speech: lines typed in quick succession
are joined into one utterance, which is sent once the silence timeout passes.
Reply audio is written to --audio-dir when given.
"""
import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .render import QuizItem, youtube_video_id
from .session import VoiceClient
from .speech import DEFAULT_SILENCE_TIMEOUT, FileAudioSink, PlaybackController, PushToTalk, Recognizer

POLL_INTERVAL = 0.1


class TypedRecognizer(Recognizer):
    """Recognizer fed by terminal lines. ``stop()`` ends recognition immediately."""

    def __init__(self) -> None:
        self.running = False
        self.ptt: Optional[PushToTalk] = None

    def start(self) -> None:
        self.running = True

    def stop(self) -> None:
        self.running = False
        if self.ptt is not None:
            self.ptt.on_end()

    def feed(self, line: str) -> None:
        if self.ptt is None:
            return
        if not self.ptt.active:
            self.ptt.press()
        self.ptt.on_result(line)


def _print_event(kind: str, payload: Dict[str, Any], quiz_offset: int = 0) -> None:
    if kind == "ready":
        print("[ready] Session ready. Type to talk; /answer N A-D for quizzes; /quit to stop.")
    elif kind == "assistant":
        if payload.get("text"):
            print(f"Praxis: {payload['text']}")
        for i, quiz in enumerate(payload.get("quizzes") or [], quiz_offset + 1):
            print(f"  Q{i}. {quiz.question}")
            for j, opt in enumerate(quiz.options):
                print(f"      {'ABCD'[j]}) {opt}")
        for link in payload.get("links") or []:
            vid = youtube_video_id(link)
            print(f"  [video {vid}] {link}" if vid else f"  [video] {link}")
    elif kind == "error":
        print(f"[error] {payload.get('error')}")
    elif kind == "reconnecting":
        print(f"[reconnecting] attempt {payload.get('attempt')} in {payload.get('delay'):.0f}s")
    elif kind == "closed":
        print(f"[closed] {payload.get('reason')}")
    sys.stdout.flush()


async def run(args: argparse.Namespace) -> int:
    sink = FileAudioSink(Path(args.audio_dir)) if args.audio_dir else None
    client = VoiceClient(
        args.url,
        args.email,
        args.lms_key,
        playback=PlaybackController(sink),
    )

    def on_event(kind: str, payload: Dict[str, Any]) -> None:
        # quizzes are numbered across the whole session so /answer can address any of them
        _print_event(kind, payload, quiz_offset=len(client.quizzes) - len(payload.get("quizzes") or []))

    client.on_event = on_event
    pending: Set[asyncio.Task] = set()

    def submit(text: str) -> None:
        print(f"You: {text}")
        task = asyncio.create_task(client.say(text))
        pending.add(task)
        task.add_done_callback(pending.discard)

    recognizer = TypedRecognizer()
    ptt = PushToTalk(recognizer, submit, silence_timeout=args.silence, playback=client.playback)
    recognizer.ptt = ptt

    async def ticker() -> None:
        while True:
            ptt.poll()
            await asyncio.sleep(POLL_INTERVAL)

    runner = asyncio.create_task(client.run())
    tick = asyncio.create_task(ticker())
    loop = asyncio.get_running_loop()
    try:
        while not runner.done():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line in ("/quit", "/exit"):
                break
            if line.startswith("/answer"):
                print(answer_quiz(client.quizzes, line))
                continue
            if line:
                recognizer.feed(line)
    finally:
        await client.stop()
        tick.cancel()
        await asyncio.gather(tick, *pending, return_exceptions=True)
        await asyncio.gather(runner, return_exceptions=True)
    return 1 if client.refused else 0


def answer_quiz(quizzes: List[QuizItem], command: str) -> str:
    """``/answer <question number> <A-D>`` against the quizzes received so far."""
    parts = command.split()
    if len(parts) != 3 or not parts[1].isdigit() or parts[2].upper() not in ("A", "B", "C", "D"):
        return "Usage: /answer <question number> <A-D>"
    number = int(parts[1])
    if not 1 <= number <= len(quizzes):
        return f"No question {number}."
    quiz = quizzes[number - 1]
    choice = "ABCD".index(parts[2].upper())
    verdict = "Correct!" if quiz.is_correct(choice) else f"Not quite. The answer is {'ABCD'[quiz.correct_index]}."
    return f"{verdict} {quiz.explanation}".strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="praxis-chat", description="Text-mode client for the Praxis tutor gateway")
    parser.add_argument("--url", default=os.getenv("PRAXIS_WS_URL", "ws://localhost:8080/ws"), help="Gateway WebSocket URL")
    parser.add_argument("--email", required=True, help="Student email used for enrollment lookup")
    parser.add_argument("--lms-key", default=os.getenv("MY_LMS_API_KEY"), help="Shared LMS key, if the gateway requires one")
    parser.add_argument("--audio-dir", help="Write reply audio files here")
    parser.add_argument(
        "--silence",
        type=float,
        default=DEFAULT_SILENCE_TIMEOUT,
        help="Seconds of quiet that end an utterance (1.5-2.5)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not 1.5 <= args.silence <= 2.5:
        parser.error("--silence must be between 1.5 and 2.5")
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
