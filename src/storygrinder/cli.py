"""CLI bootstrap entry point for StoryGrinder."""

import argparse
import asyncio
import logging
import sys
import time
from typing import Optional, TextIO

from .ai.catalog import get_provider_ids, get_provider_info, get_providers_for_display
from .ai.events import CanonicalStreamEvent
from .errors import ConfigurationError
from .logging import log_event, sanitize_error_message, setup_logging
from .orchestration.types import RunRequest, RunStatus
from .settings import Settings
from .workbench import Workbench

__all__ = ["main", "build_parser"]

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="storygrinder",
        description="StoryGrinder - run manuscript tools against LLM providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-s", "--settings", help="Path to settings file (optional)")
    parser.add_argument("-l", "--log", help="Path to log file (optional; logging is off without it)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    provider_choices = get_provider_ids()

    run_parser = subparsers.add_parser("run", help="Run a tool against a manuscript")
    run_parser.add_argument("-t", "--tool", required=True, help="Tool id (names the output file)")
    run_parser.add_argument("-m", "--manuscript", required=True, help="Manuscript text file")
    instruction = run_parser.add_mutually_exclusive_group(required=True)
    instruction.add_argument("-i", "--instruction", help="Instruction text")
    instruction.add_argument("-f", "--instruction-file", help="File holding the instruction")
    run_parser.add_argument("-p", "--provider", choices=provider_choices)
    run_parser.add_argument("--model", help="Model name (default: from settings)")
    run_parser.add_argument("-o", "--output-dir", help="Directory for the output file")
    run_parser.add_argument(
        "--show-thinking", action="store_true", help="Print model reasoning to stderr"
    )
    run_parser.add_argument(
        "--no-metadata", action="store_true", help="Do not request rate-limit headers"
    )

    verify_parser = subparsers.add_parser("verify", help="Check API keys and model access")
    verify_parser.add_argument("-p", "--provider", choices=provider_choices)

    models_parser = subparsers.add_parser("models", help="List available models")
    models_parser.add_argument("-p", "--provider", choices=provider_choices)

    return parser


def _read_instruction(args: argparse.Namespace) -> str:
    if args.instruction is not None:
        return args.instruction
    with open(args.instruction_file, "r", encoding="utf-8") as f:
        return f.read()


async def run_tool(
    workbench: Workbench,
    args: argparse.Namespace,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
) -> int:
    """Run one tool, streaming visible text to ``out``."""
    out = out or sys.stdout
    err = err or sys.stderr
    result = await workbench.prepare_manuscript(args.manuscript, args.provider, args.model)
    for message in result.messages:
        print(message, file=err)
    if not result.ok:
        for error in result.errors:
            print(f"Error: {error}", file=err)
        return EXIT_ERROR

    request = RunRequest(
        instruction=_read_instruction(args),
        include_reasoning=args.show_thinking,
        include_metadata=not args.no_metadata,
    )

    def on_event(run_id: str, event: CanonicalStreamEvent) -> None:
        if event.kind == "text-delta":
            out.write(event.text)
            out.flush()
        elif event.kind == "reasoning-delta":
            err.write(event.text)
            err.flush()
        elif event.kind == "budget-warning":
            print(event.message, file=err)
        elif event.kind == "run-error":
            print(f"\nError ({event.category}): {event.message}", file=err)

    unsubscribe = workbench.subscribe(on_event)
    try:
        run_id = workbench.start_run(
            args.tool,
            request,
            provider_id=args.provider,
            model=args.model,
            output_dir=args.output_dir,
        )
        try:
            snapshot = await workbench.wait_run(run_id)
        except asyncio.CancelledError:
            # Ctrl-C: asyncio.run() cancels the main task
            workbench.cancel_run(run_id)
            snapshot = await workbench.wait_run(run_id)
    finally:
        unsubscribe()

    out.write("\n")
    for path in snapshot.output_file_paths:
        print(f"Saved: {path}", file=err)

    if snapshot.status is RunStatus.COMPLETED:
        return EXIT_OK
    if snapshot.status is RunStatus.CANCELLED:
        print("Cancelled", file=err)
        return EXIT_CANCELLED
    return EXIT_ERROR


async def verify_providers(
    workbench: Workbench, provider_id: Optional[str], out: Optional[TextIO] = None
) -> int:
    """Check connectivity for one provider, or all of them."""
    out = out or sys.stdout
    providers = (
        [get_provider_info(provider_id)] if provider_id else get_providers_for_display()
    )
    all_ok = True
    for info in providers:
        ok = await workbench.verify_connectivity(info.provider_id)
        all_ok = all_ok and ok
        model = workbench.settings.model_for(info.provider_id)
        print(f"{info.display_name} [{model}]: {'OK' if ok else 'FAILED'}", file=out)
    return EXIT_OK if all_ok else EXIT_ERROR


async def list_models(
    workbench: Workbench, provider_id: Optional[str], out: Optional[TextIO] = None
) -> int:
    out = out or sys.stdout
    models = await workbench.list_available_models(provider_id)
    for model in models:
        print(model, file=out)
    return EXIT_OK if models else EXIT_ERROR


async def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    workbench = Workbench(settings)
    try:
        if args.command == "run":
            return await run_tool(workbench, args)
        if args.command == "verify":
            return await verify_providers(workbench, args.provider)
        return await list_models(workbench, args.provider)
    finally:
        await workbench.aclose()


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for StoryGrinder CLI."""
    args = build_parser().parse_args(argv)
    app_started = time.perf_counter()
    setup_logging(args.log)

    try:
        settings = Settings.load(args.settings)
        log_event(
            "app_start",
            level=logging.INFO,
            command=args.command,
            settings_file=settings.settings_file,
            log_file=args.log,
            provider=getattr(args, "provider", None) or settings.selected_provider,
        )
        exit_code = asyncio.run(_dispatch(args, settings))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        exit_code = EXIT_CANCELLED
    except (ConfigurationError, OSError) as e:
        print(f"Error: {sanitize_error_message(str(e))}", file=sys.stderr)
        exit_code = EXIT_ERROR

    log_event(
        "app_stop",
        level=logging.INFO,
        command=args.command,
        exit_code=exit_code,
        uptime_ms=round((time.perf_counter() - app_started) * 1000, 1),
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
