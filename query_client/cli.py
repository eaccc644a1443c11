"""
Submit a query to the analysis backend from the command line.

Prints ingestion progress, each agent step as it streams in, and the final
result. Exits 1 when the query could not be submitted or ended in failure.

    query-client "Assess growth opportunities in SME lending" \\
        --project proj-123 --file q3_report.pdf
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from query_client.config import Settings, get_settings
from query_client.models.errors import ErrorCategory, QueryError
from query_client.models.responses import StreamingStatusEvent
from query_client.services.error_parser import get_validation_suggestions
from query_client.services.ingestion import LocalFile
from query_client.services.orchestrator import (
    QuerySubmissionHandle,
    QuerySubmissionOrchestrator,
)


def _trunc(text: str, max_len: int = 150) -> str:
    text = str(text)
    return (text[:max_len] + "…") if len(text) > max_len else text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="query-client",
        description="Submit a query, stream its progress, and print the result.",
    )
    parser.add_argument("query", nargs="*", help="Query text")
    parser.add_argument("--project", help="Project id (defaults to DEFAULT_PROJECT_ID)")
    parser.add_argument(
        "--file", dest="files", action="append", default=[],
        help="Attach a local file (repeatable)",
    )
    parser.add_argument("--followup", metavar="QUERY_ID", help="Ask a follow-up to this query")
    parser.add_argument("--url", help="Backend base URL (overrides API_BASE_URL)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def _print_event(event: StreamingStatusEvent, seen_steps: set[tuple[str, str]]) -> None:
    for step in event.steps:
        key = (step.step_id, step.status)
        if key in seen_steps:
            continue
        seen_steps.add(key)
        print(f"  [{step.status}] {step.agent}: {_trunc(step.action, 100)}", flush=True)

    if event.progress is not None:
        print(f"Progress: {event.progress}% ({event.status})", flush=True)


def _print_result(event: StreamingStatusEvent) -> None:
    print("---", flush=True)
    print("Status:", event.status, flush=True)
    if event.status == "rejected" and event.rejection_reason:
        print("Rejected:", event.rejection_reason, flush=True)
    if event.error:
        print("Error:", event.error, file=sys.stderr)
    result = event.structured_response or event.result
    if result is not None:
        print("Result:", flush=True)
        if isinstance(result, (dict, list)):
            print(json.dumps(result, indent=2), flush=True)
        else:
            print(result, flush=True)


def _print_query_error(error: QueryError) -> None:
    parsed = error.error
    print(parsed.user_message, file=sys.stderr)
    if parsed.type == ErrorCategory.VALIDATION.value:
        suggestions = get_validation_suggestions(parsed.code)
        if suggestions:
            print("Try instead:", file=sys.stderr)
            for suggestion in suggestions:
                print(f"  - {suggestion}", file=sys.stderr)
    if parsed.error_id:
        print(f"(error id: {parsed.error_id})", file=sys.stderr)


async def _follow(handle: QuerySubmissionHandle) -> StreamingStatusEvent | None:
    """Consume the channel until a terminal status; returns the last event."""
    seen_steps: set[tuple[str, str]] = set()
    last: StreamingStatusEvent | None = None

    handle.channel.on("error", lambda reason: print(f"Stream error: {reason}", file=sys.stderr))
    try:
        async for event in handle.channel:
            last = event
            _print_event(event, seen_steps)
            if event.is_terminal:
                break
    finally:
        await handle.channel.close()
    return last


async def run(args: argparse.Namespace, settings: Settings) -> int:
    query = " ".join(args.query).strip()
    project_id = args.project or settings.default_project_id
    files = [LocalFile.from_path(path) for path in args.files]

    def on_progress(percent: int) -> None:
        print(f"Uploading files: {percent}%", flush=True)

    async with QuerySubmissionOrchestrator.from_settings(settings) as orchestrator:
        try:
            if args.followup and not files:
                handle = await orchestrator.submit_followup(args.followup, query)
            elif args.followup:
                handle = await orchestrator.submit_followup_with_files(
                    project_id or "", args.followup, query, files, on_progress=on_progress
                )
            else:
                handle = await orchestrator.submit_with_files(
                    project_id or "", query, files, on_progress=on_progress
                )
        except QueryError as e:
            _print_query_error(e)
            return 1

        print("Query ID:", handle.query_id, flush=True)
        print("Entry ID:", handle.entry_id, flush=True)
        if handle.failed_files:
            print("Failed files:", ", ".join(handle.failed_files), file=sys.stderr)
        print("---", flush=True)

        last = await _follow(handle)
        if last is None:
            print("No status received before the stream closed.", file=sys.stderr)
            return 1

        if not last.is_terminal:
            # Stream dropped early; the stored result may still be available.
            try:
                last = await orchestrator.fetch_full_result(handle.query_id, query)
            except QueryError as e:
                _print_query_error(e)
                return 1

        _print_result(last)
        return 0 if last.status == "completed" else 1


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    query = " ".join(args.query).strip()
    if not query:
        print('Usage: query-client "Your question here" [--project ID]', file=sys.stderr)
        sys.exit(1)

    settings = get_settings()
    if args.url:
        settings = settings.model_copy(update={"api_base_url": args.url})

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sys.exit(asyncio.run(run(args, settings)))
    except OSError as e:
        print(e, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
