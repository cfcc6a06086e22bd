#!/usr/bin/env python3
"""Interview listener: live captions, final transcripts and answers from the command line."""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import queue
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence

from answer_workflow import AnswerEngine, QAItem
from audio_capture import WAV_MIME, AudioCapture, ChunkAssembler, pick_default_mic
from config import PipelineConfig, load_pipeline_config
from pipeline import CapturePipeline, TranscriptRecord
from stt_core import AudioChunk, CredentialContext, ErrorKind, PipelineError


# ---------------------------------------------------------------------------
# Knowledge loading

KNOWLEDGE_MAX_FILE_BYTES = 256_000

MIME_BY_SUFFIX = {
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/m4a",
    ".mp4": "audio/mp4",
    ".flac": "audio/flac",
}


def _load_knowledge_file(path: Path) -> Optional[str]:
    if not path.exists():
        print(f"Knowledge file not found: {path}", file=sys.stderr)
        return None
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Failed to read knowledge file {path}: {exc}", file=sys.stderr)
        return None


def _load_knowledge_dir(directory: Path, max_chars: int) -> Optional[str]:
    if not directory.is_dir():
        print(f"Knowledge directory not found: {directory}", file=sys.stderr)
        return None

    files: List[Path] = []
    for pattern in ("*.txt", "*.md"):
        files.extend(directory.rglob(pattern))
    files = sorted({f.resolve() for f in files})
    if not files:
        print(f"No text knowledge files under {directory}", file=sys.stderr)
        return None

    buffer: List[str] = []
    total_chars = 0
    for file_path in files:
        try:
            if file_path.stat().st_size > KNOWLEDGE_MAX_FILE_BYTES:
                print(f"Skipping large knowledge file: {file_path}", file=sys.stderr)
                continue
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            print(f"Failed to read knowledge file {file_path}: {exc}", file=sys.stderr)
            continue
        if not content.strip():
            continue
        buffer.append(content)
        total_chars += len(content)
        if total_chars >= max_chars:
            print(f"Knowledge truncated to {max_chars} characters; remaining files ignored.", file=sys.stderr)
            break

    return "\n\n".join(buffer) if buffer else None


def _merge_knowledge(parts: Sequence[Optional[str]]) -> str:
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def _knowledge_from_args(args: argparse.Namespace, cfg: PipelineConfig) -> str:
    parts: List[Optional[str]] = []
    if args.knowledge_file:
        parts.append(_load_knowledge_file(Path(args.knowledge_file)))
    if args.knowledge_dir:
        parts.append(_load_knowledge_dir(Path(args.knowledge_dir), cfg.answers.knowledge_max_chars))
    return _merge_knowledge(parts)


def _guess_mime(path: Path) -> str:
    return MIME_BY_SUFFIX.get(path.suffix.lower()) or mimetypes.guess_type(str(path))[0] or "audio/webm"


# ---------------------------------------------------------------------------
# Console output


def _print_answers(answers: Sequence[QAItem]) -> None:
    if not answers:
        print("No questions detected.")
        return
    for item in answers:
        marker = " [knowledge base]" if item.source == "knowledge_base" else ""
        print(f"Q: {item.question}")
        print(f"A: {item.answer}{marker}")
        print()


def _print_record(record: TranscriptRecord) -> None:
    stamp = time.strftime("%H:%M:%S")
    if record.pending_answers:
        print(f"[{stamp}] Generating answers to detected questions…")
    elif record.answer_error:
        # already reported through the error callback
        return
    elif record.answered_at:
        _print_answers(record.answers)
    else:
        print(f"[{stamp}] === {record.title} ===")
        print(record.text)
        print()


def _print_error(error: PipelineError) -> None:
    print(f"Error ({error.kind.value}): {error}", file=sys.stderr)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    # SUPPRESS keeps a top-level --quiet from being reset by the subcommand default
    parser.add_argument("--quiet", action="store_true", default=argparse.SUPPRESS, help="Reduce console logs")
    parser.add_argument("--knowledge-file", default=None, help="Text file made available to the answers")
    parser.add_argument("--knowledge-dir", default=None, help="Directory of knowledge snippets (.txt/.md)")


# ---------------------------------------------------------------------------
# Commands


def listen_main(args: argparse.Namespace, cfg: PipelineConfig) -> int:
    live_line = {"text": ""}

    def _on_partial(text: str, is_final: bool) -> None:
        if args.quiet or not text or text == live_line["text"]:
            return
        live_line["text"] = text
        print(f"[{time.strftime('%H:%M:%S')}] {'(final) ' if is_final else ''}… {text}", flush=True)

    pipeline = CapturePipeline(config=cfg, on_partial=_on_partial, on_record=_print_record, on_error=_print_error)
    if not pipeline.credential_status()["has_key"]:
        print("No API key configured. Set OPENAI_API_KEY or OPENAI_API_KEY_FILE.", file=sys.stderr)
        return 2

    mic_idx = args.device_index if args.device_index is not None else pick_default_mic()
    if mic_idx is None:
        print("No microphone input device found.", file=sys.stderr)
        return 2

    pipeline.set_knowledge(_knowledge_from_args(args, cfg))
    try:
        pipeline.start_capture(realtime=args.realtime)
    except PipelineError as exc:
        _print_error(exc)
        return 2

    frame_queue: "queue.Queue[bytes]" = queue.Queue(maxsize=256)
    assembler = ChunkAssembler(cfg.capture)
    cap = AudioCapture("MIC", mic_idx, frame_queue)
    cap.start()

    max_seconds = args.max_seconds if args.max_seconds is not None else cfg.capture.max_recording_s
    deadline = time.monotonic() + max(1.0, max_seconds)
    if not args.quiet:
        print("Listening… (Ctrl+C to stop)")

    try:
        while time.monotonic() < deadline:
            if not pipeline.capture_enabled:
                break
            try:
                frame = frame_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            chunk = assembler.add_frame(frame)
            if chunk is None:
                continue
            if args.realtime:
                chunk = AudioChunk(data=assembler.last_window, mime_type=WAV_MIME, sequence=chunk.sequence)
            try:
                pipeline.enqueue(chunk)
            except PipelineError as exc:
                logging.getLogger("stt_pipeline").warning("live chunk #%d not sent: %s", chunk.sequence, exc)
    except KeyboardInterrupt:
        pass
    finally:
        cap.stop()
        cap.join(timeout=1)
        pipeline.stop_capture()

    if not pipeline.capture_enabled:
        print("Capture stopped: the API key was rejected.", file=sys.stderr)
        return 2

    while True:
        try:
            assembler.add_frame(frame_queue.get_nowait())
        except queue.Empty:
            break

    blob = assembler.merged()
    if not blob:
        print("No audio captured.", file=sys.stderr)
        return 1
    if not args.quiet:
        print(f"Processing transcription of {assembler.captured_seconds:.1f}s…")
    result = pipeline.finalize(blob, WAV_MIME, answer=True, wait=True)
    if result.ok and not result.text:
        print("No speech detected.")
    return 0 if result.ok else 1


def transcribe_main(args: argparse.Namespace, cfg: PipelineConfig) -> int:
    path = Path(args.file)
    try:
        data = path.read_bytes()
    except OSError as exc:
        print(f"Cannot read {path}: {exc}", file=sys.stderr)
        return 1

    pipeline = CapturePipeline(config=cfg, on_record=_print_record, on_error=_print_error)
    pipeline.set_knowledge(_knowledge_from_args(args, cfg))
    result = pipeline.finalize(data, args.mime or _guess_mime(path), answer=not args.no_answers, wait=True)
    if not result.ok:
        return 2 if result.error_kind is ErrorKind.UNAUTHORIZED else 1
    if not result.text:
        print("No speech detected.")
    return 0


def answer_main(args: argparse.Namespace, cfg: PipelineConfig) -> int:
    transcript = args.transcript if args.transcript is not None else sys.stdin.read()
    if not transcript.strip():
        print("Empty transcript.", file=sys.stderr)
        return 1

    credentials = CredentialContext.from_env(base_url=cfg.answers.base_url)
    engine = AnswerEngine(credentials, cfg.answers)
    try:
        items = engine.extract(transcript, _knowledge_from_args(args, cfg))
    except PipelineError as exc:
        _print_error(exc)
        return 2 if exc.kind is ErrorKind.UNAUTHORIZED else 1
    for item in items:
        print(json.dumps(item.model_dump(), ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live interview transcription with answer extraction")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    sub = parser.add_subparsers(dest="command", required=True)

    listen = sub.add_parser("listen", help="Capture the microphone with live captions")
    listen.add_argument("--device-index", type=int, default=None, help="Mic device index (default: first input)")
    listen.add_argument("--realtime", action="store_true", help="Stream over the realtime websocket instead of HTTP")
    listen.add_argument("--max-seconds", type=float, default=None, help="Stop capturing after this many seconds")
    _add_common_args(listen)
    listen.set_defaults(handler=listen_main)

    transcribe = sub.add_parser("transcribe", help="Transcribe an audio file and answer its questions")
    transcribe.add_argument("file", help="Audio file (webm, ogg, wav, mp3, m4a, flac)")
    transcribe.add_argument("--mime", default=None, help="Override the detected MIME type")
    transcribe.add_argument("--no-answers", action="store_true", help="Skip answer extraction")
    _add_common_args(transcribe)
    transcribe.set_defaults(handler=transcribe_main)

    answer = sub.add_parser("answer", help="Answer the questions in a transcript (stdin by default)")
    answer.add_argument("--transcript", default=None, help="Transcript text")
    _add_common_args(answer)
    answer.set_defaults(handler=answer_main)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.handler(args, load_pipeline_config())


if __name__ == "__main__":
    raise SystemExit(main())
