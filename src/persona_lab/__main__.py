"""CLI entrypoint for Persona Lab."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import TypeAdapter, ValidationError

from persona_lab.config import DEFAULT_MODEL, MAX_STEPS_DEFAULT, Settings
from persona_lab.errors import PersonaLabError, ReasoningValidationError
from persona_lab.file_io import atomic_write_text
from persona_lab.reasoning.validator import validate_reasoning
from persona_lab.schemas import Flow, FlowMode, Persona, RunConfig, RunStatus

logger = logging.getLogger(__name__)


def _load_dotenv() -> None:
    """Load .env from the working directory or its parent."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _read_json(path: str) -> object:
    if path == "-":
        return json.load(sys.stdin)
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _run_simulate(args: argparse.Namespace) -> int:
    from persona_lab.worker import Simulation

    try:
        flow = Flow.model_validate(_read_json(args.flow))
        personas = TypeAdapter(list[Persona]).validate_python(_read_json(args.personas))
        config = RunConfig(model=args.model, max_steps=args.max_steps, seed=args.seed)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        print(f"Error: invalid input: {exc}", file=sys.stderr)
        return 2

    settings = Settings.from_env()
    if args.data_dir:
        settings = settings.model_copy(update={"data_dir": Path(args.data_dir)})
    if args.screenshots_dir:
        settings = settings.model_copy(update={"screenshots_dir": Path(args.screenshots_dir)})

    with Simulation(settings) as sim:
        sim.store.put_flow(flow)
        for persona in personas:
            sim.store.put_persona(persona)
        try:
            run = sim.run(flow.id, [p.id for p in personas], config, timeout=args.timeout)
        except PersonaLabError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    if run.status != RunStatus.COMPLETED or run.report_json is None:
        print(f"Error: run {run.id} ended as {run.status.value} without a report", file=sys.stderr)
        return 1

    payload = run.report_json.model_dump_json(by_alias=True, indent=2)
    if args.out:
        atomic_write_text(Path(args.out), payload + "\n")
        logger.info("Report written to %s", args.out)
    else:
        print(payload)
    summary = run.report_json.summary
    print(
        f"Run {run.id}: {summary.completed_episodes}/{summary.total_episodes} completed, "
        f"{summary.abandoned_episodes} abandoned, {len(run.report_json.findings)} finding(s)",
        file=sys.stderr,
    )
    return 0


def _run_validate(args: argparse.Namespace) -> int:
    try:
        raw = sys.stdin.read() if args.file == "-" else Path(args.file).read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    try:
        reasoning = validate_reasoning(FlowMode(args.mode.upper()), raw)
    except ReasoningValidationError as exc:
        print(f"Invalid {args.mode} reasoning: {exc}", file=sys.stderr)
        return 1
    print(reasoning.model_dump_json(by_alias=True, exclude_none=True, indent=2))
    return 0


def _run_fix(args: argparse.Namespace) -> int:
    from persona_lab.fixes import FixAdvisor
    from persona_lab.reasoning.client import create_reasoning_client
    from persona_lab.store import SimulationStore

    settings = Settings.from_env()
    store = SimulationStore(args.data_dir)
    advisor = FixAdvisor(
        store,
        lambda model: create_reasoning_client(model, settings),
        model=args.model,
    )
    try:
        fix = advisor.recommend_sync(args.finding_id, regenerate=args.regenerate)
    except PersonaLabError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(fix)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="persona-lab",
        description="Simulate synthetic personas through a UX flow and report usability findings.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    sub = p.add_subparsers(dest="command")

    sim_p = sub.add_parser("simulate", help="Run every persona through a flow and print the report.")
    sim_p.add_argument("--flow", required=True, help="Flow JSON file ('-' for stdin).")
    sim_p.add_argument("--personas", required=True, help="JSON file with a list of personas.")
    sim_p.add_argument("--model", default=DEFAULT_MODEL, help=f"Model id (default: {DEFAULT_MODEL}).")
    sim_p.add_argument(
        "--max-steps",
        type=int,
        default=MAX_STEPS_DEFAULT,
        help=f"Step budget per episode, 1-30 (default: {MAX_STEPS_DEFAULT}).",
    )
    sim_p.add_argument("--seed", type=int, default=None, help="Optional seed recorded on each episode.")
    sim_p.add_argument("--out", default="", help="Write the report JSON here instead of stdout.")
    sim_p.add_argument("--data-dir", default="", help="Persist run data as JSONL in this directory.")
    sim_p.add_argument("--screenshots-dir", default="", help="Save agent-mode step screenshots here.")
    sim_p.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Give up waiting for the run after this many seconds (default: wait).",
    )

    val_p = sub.add_parser("validate", help="Validate one raw reasoning output.")
    val_p.add_argument("--mode", choices=["screenshot", "agent"], required=True)
    val_p.add_argument("file", help="JSON file with the model output ('-' for stdin).")

    fix_p = sub.add_parser("fix", help="Generate (or show the cached) recommended fix for a finding.")
    fix_p.add_argument("finding_id")
    fix_p.add_argument("--data-dir", required=True, help="Directory of a persisted run.")
    fix_p.add_argument("--model", default=DEFAULT_MODEL)
    fix_p.add_argument("--regenerate", action="store_true", help="Ignore the cached fix.")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the subcommand."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.command == "simulate":
        return _run_simulate(args)
    if args.command == "validate":
        return _run_validate(args)
    if args.command == "fix":
        return _run_fix(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
