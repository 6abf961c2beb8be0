import argparse
import asyncio
import json
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

EXPORT_FORMATS = ("text", "vtt", "json")


def _render(segments, to: str) -> str:
    from lectern import normalize
    if to == "vtt":
        return normalize.to_vtt(segments)
    if to == "json":
        return json.dumps([s.to_dict() for s in segments], indent=2)
    return normalize.format_with_timestamps(segments)


async def _transcribe(settings, video_id: str, url: str, force: bool, to: str):
    from lectern import runtime, transcribe
    from lectern.queue import TranscriptQueue
    from lectern.store import JsonFileStore

    store = JsonFileStore(runtime.data_dir(settings) / "transcripts")
    provider = transcribe.select_provider(settings)
    queue = TranscriptQueue(store, provider, settings.max_concurrent, settings.batch_pause)
    try:
        if force:
            queued = await queue.regenerate(video_id, url)
        else:
            queued = await queue.enqueue(video_id, url, "high")
        if not queued:
            print(f"[{video_id}] Already transcribed, use --force to regenerate")
        await queue.wait_idle()
    finally:
        await provider.aclose()

    transcript = await store.find_transcript(video_id)
    if transcript is None or transcript.status.value != "COMPLETED":
        error = transcript.error if transcript else "no transcript stored"
        print(f"[{video_id}] FAILED: {error}", file=sys.stderr)
        sys.exit(1)
    print(_render(transcript.segments, to))


async def _upload(settings, video_id: str, path: Path, fmt: str | None, duration: float | None):
    from lectern import runtime, upload
    from lectern.store import JsonFileStore

    store = JsonFileStore(runtime.data_dir(settings) / "transcripts")
    transcript = await upload.ingest(
        store, video_id, path.read_bytes(),
        fmt=fmt, filename=path.name, duration=duration, language=settings.language,
    )
    print(f"[{video_id}] Stored {len(transcript.segments)} segments ({transcript.provider})")


def main():
    parser = argparse.ArgumentParser(prog="lectern")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)

    p_transcribe = sub.add_parser("transcribe", help="Transcribe one video through the queue")
    p_transcribe.add_argument("video_id")
    p_transcribe.add_argument("url")
    p_transcribe.add_argument("--force", action="store_true", help="Regenerate an existing transcript")
    p_transcribe.add_argument("--to", choices=EXPORT_FORMATS, default="text")

    p_upload = sub.add_parser("upload", help="Store a transcript file for a video")
    p_upload.add_argument("video_id")
    p_upload.add_argument("path", type=Path)
    p_upload.add_argument("--format", dest="fmt", default=None)
    p_upload.add_argument("--duration", type=float, default=None)

    p_convert = sub.add_parser("convert", help="Normalize a transcript file and print it")
    p_convert.add_argument("path", type=Path)
    p_convert.add_argument("--format", dest="fmt", default=None)
    p_convert.add_argument("--to", choices=EXPORT_FORMATS, default="text")
    p_convert.add_argument("--duration", type=float, default=None)
    p_convert.add_argument("--merge-gap", type=float, default=None, help="Merge segments closer than this many seconds")

    sub.add_parser("check", help="Report configuration problems")

    args = parser.parse_args()

    from lectern import runtime
    from lectern.errors import PipelineError

    runtime.configure_logging()
    try:
        settings = runtime.Settings.from_env()
    except PipelineError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "serve":
        runtime.require(settings)
        import uvicorn
        from lectern import server
        app = server.create_app(settings)
        uvicorn.run(app, host=args.host, port=args.port)

    elif args.command == "transcribe":
        runtime.require(settings)
        try:
            asyncio.run(_transcribe(settings, args.video_id, args.url, args.force, args.to))
        except PipelineError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "upload":
        try:
            asyncio.run(_upload(settings, args.video_id, args.path, args.fmt, args.duration))
        except PipelineError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    elif args.command == "convert":
        from lectern import normalize
        try:
            fmt = args.fmt or normalize.detect_format(args.path.name)
            segments = normalize.parse(args.path.read_bytes(), fmt, duration=args.duration)
        except PipelineError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if args.merge_gap is not None:
            segments = normalize.merge_segments(segments, max_gap=args.merge_gap)
        print(_render(segments, args.to))

    elif args.command == "check":
        errors, warnings = runtime.check(settings)
        for w in warnings:
            print(f"  warning: {w}")
        for e in errors:
            print(f"  error: {e}")
        if errors:
            sys.exit(1)
        print(f"OK: provider={settings.provider}")

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
