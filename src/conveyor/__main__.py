"""CLI entrypoint for `python -m conveyor` / `conveyor` command."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, NoReturn

# ---------------------------------------------------------------------------
# Terminal output
# ---------------------------------------------------------------------------

class _C:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    GRAY = "\033[90m"

    @staticmethod
    def enabled() -> bool:
        """Colors are off when NO_COLOR is set or stdout is not a TTY."""
        if os.getenv("NO_COLOR"):
            return False
        isatty = getattr(sys.stdout, "isatty", None)
        return bool(isatty and isatty())


_STATUS_COLORS = {
    "completed": _C.GREEN,
    "succeeded": _C.GREEN,
    "failed": _C.RED,
    "running": _C.YELLOW,
    "pending": _C.YELLOW,
    "skipped": _C.GRAY,
}


def _color(text: str, color: str) -> str:
    return f"{color}{text}{_C.RESET}" if _C.enabled() else text


def _status_color(status: str) -> str:
    color = _STATUS_COLORS.get(status.lower())
    return _color(status, color) if color else status


def _table(headers: list[str], rows: list[list[str]], *, max_col: int = 40) -> str:
    """Render *rows* under *headers* as left-aligned columns.

    Cells wider than *max_col* are cut and end in an ellipsis.
    """
    if not rows:
        return "(no data)"

    def clip(cell: str) -> str:
        return cell if len(cell) <= max_col else cell[: max_col - 1] + "…"

    body = [[clip(cell) for cell in row] for row in rows]
    widths = [
        max([len(header)] + [len(row[i]) for row in body])
        for i, header in enumerate(headers)
    ]

    def line(cells: list[str]) -> str:
        return "  ".join(cell.ljust(width) for cell, width in zip(cells, widths))

    out = [_color(line(headers), _C.BOLD), line(["-" * w for w in widths])]
    out.extend(line(row) for row in body)
    return "\n".join(out)


# ---------------------------------------------------------------------------
# Run input
# ---------------------------------------------------------------------------

def _fail(message: str) -> NoReturn:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _parse_input_pairs(pairs: list[str] | None) -> dict[str, Any]:
    """Turn ``KEY=VALUE`` arguments into run input.

    A value is decoded as JSON when it parses (``x=1`` gives an int, ``xs=[1]``
    a list); anything else is kept as the raw string.
    """
    run_input: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            _fail(f"expected KEY=VALUE, got '{pair}'")
        try:
            run_input[key] = json.loads(raw)
        except ValueError:
            run_input[key] = raw
    return run_input


def _load_input_file(path: str) -> dict[str, Any]:
    """Read run input from a JSON file holding a single object."""
    try:
        with open(path) as fh:
            data = json.load(fh)
    except FileNotFoundError:
        _fail(f"input file not found: {path}")
    except ValueError as exc:
        _fail(f"input file is not valid JSON: {exc}")
    if not isinstance(data, dict):
        _fail(f"input file must hold a JSON object, not {type(data).__name__}")
    return data


def _load_workflow(path: str) -> Any:
    """Parse and validate a workflow file, exiting with a message on failure."""
    from conveyor.engine.dag import ensure_valid, parse
    from conveyor.engine.errors import InvalidWorkflowError

    try:
        workflow = parse(path)
        ensure_valid(workflow)
    except FileNotFoundError:
        _fail(f"workflow file not found: {path}")
    except InvalidWorkflowError as exc:
        print(_color("Invalid workflow:", _C.RED), file=sys.stderr)
        for err in exc.errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)
    return workflow


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _print_run_detail(run: dict[str, Any]) -> None:
    """Pretty-print a finished run with its step log."""
    print()
    print(f"  {_color('Run', _C.BOLD)}:      {run.get('run_id', '?')}")
    print(f"  {_color('Workflow', _C.BOLD)}: {run.get('workflow_name', '?')}")
    print(f"  {_color('Status', _C.BOLD)}:   {_status_color(run.get('status', 'unknown'))}")
    print(f"  {_color('Duration', _C.BOLD)}: {run.get('duration_ms', 0)}ms")

    if run.get("error"):
        err = run["error"]
        print(f"  {_color('Error', _C.RED)}:    [{err['kind']}] {err['message']} "
              f"(step '{run.get('failed_step_id')}')")

    log = run.get("log")
    if log:
        print()
        headers = ["STEP", "TOOL", "STATUS", "ATTEMPT", "DURATION (ms)", "FINAL"]
        rows = [
            [
                s["step_id"],
                s.get("tool", ""),
                _status_color(s["status"]),
                str(s["attempt_count"]),
                str(s["duration_ms"]),
                "yes" if s.get("final", True) else "no",
            ]
            for s in log
        ]
        print(_table(headers, rows))

    outputs = run.get("outputs")
    if outputs:
        print()
        print(_color("  Outputs:", _C.BOLD))
        print(json.dumps(outputs, indent=2, default=str))
    print()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _execute_workflow(workflow: Any, run_input: dict[str, Any]) -> dict[str, Any]:
    from conveyor.config import settings
    from conveyor.engine.runner import WorkflowRunner
    from conveyor.engine.tools import create_default_registry

    recorder = None
    if settings.persist_runs:
        from conveyor.engine.recorder import SqlRecorder
        from conveyor.models.db import engine, init_db

        await init_db()
        recorder = SqlRecorder()

    runner = WorkflowRunner(create_default_registry(settings), recorder=recorder, settings=settings)
    try:
        run = await runner.execute(workflow, run_input)
    finally:
        if settings.persist_runs:
            await engine.dispose()
    return run.to_dict()


def _cmd_run(args: argparse.Namespace) -> None:
    """Run a workflow file in-process."""
    workflow = _load_workflow(args.workflow)
    run_input: dict[str, Any] = {}
    if args.input_file:
        run_input.update(_load_input_file(args.input_file))
    run_input.update(_parse_input_pairs(args.input))

    run = asyncio.run(_execute_workflow(workflow, run_input))

    if args.json:
        print(json.dumps(run, indent=2, default=str))
    else:
        _print_run_detail(run)
    if run["status"] != "completed":
        sys.exit(1)


def _cmd_validate(args: argparse.Namespace) -> None:
    """Parse and statically validate a workflow file."""
    workflow = _load_workflow(args.workflow)
    print(_color(f"Workflow '{workflow.name}' is valid ({len(workflow.steps)} steps)", _C.GREEN))


def _cmd_tools(args: argparse.Namespace) -> None:
    """List the registered tools."""
    from conveyor.config import settings
    from conveyor.engine.tools import create_default_registry

    registry = create_default_registry(settings)
    rows = [[t["name"], t["description"]] for t in registry.describe()]
    print(_table(["TOOL", "DESCRIPTION"], rows, max_col=60))


def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the Conveyor API server."""
    import uvicorn

    uvicorn.run(
        "conveyor.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def _build_parser() -> argparse.ArgumentParser:
    """Argument parser with the run, validate, tools and serve commands."""
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Conveyor - workflow runner CLI",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- run ---
    p_run = subparsers.add_parser("run", help="Run a workflow file")
    p_run.add_argument("workflow", help="Path to workflow .yaml file")
    p_run.add_argument("--input", "-i", action="append", metavar="KEY=VALUE",
                       help="Run input as KEY=VALUE; values are decoded as JSON when possible")
    p_run.add_argument("--input-file", "-f", metavar="FILE",
                       help="JSON object file merged into the run input")
    p_run.add_argument("--json", action="store_true", help="Print the run as JSON")

    # --- validate ---
    p_validate = subparsers.add_parser("validate", help="Validate a workflow file")
    p_validate.add_argument("workflow", help="Path to workflow .yaml file")

    # --- tools ---
    subparsers.add_parser("tools", help="List available tools")

    # --- serve ---
    p_serve = subparsers.add_parser("serve", help="Serve the HTTP API")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p_serve.add_argument("--port", type=int, default=8080, help="Port to listen on (default: 8080)")
    p_serve.add_argument("--reload", action="store_true", default=False,
                         help="Enable auto-reload")

    return parser


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    """Route CLI commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    from conveyor.config import settings

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    dispatch: dict[str, Any] = {
        "run": _cmd_run,
        "validate": _cmd_validate,
        "tools": _cmd_tools,
        "serve": _cmd_serve,
    }
    dispatch[args.command](args)


if __name__ == "__main__":
    main()
