from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor.agents import GeneralAgent, build_role_agents
from conductor.backends import (
    AgentBackend,
    BackendExecutionError,
    ClaudeCodeBackend,
    RetryingBackend,
    RetryPolicy,
)
from conductor.collaborators import BackendPlanGenerator, BackendReflector
from conductor.complexity import ComplexityEvaluator
from conductor.config import (
    DEFAULT_CONFIG_FILE,
    LOG_LEVELS,
    WORKFLOW_MODES,
    ConductorConfig,
    load_config,
    save_config,
)
from conductor.errors import ConductorError
from conductor.executors import ToolRegistry, build_tool_executor
from conductor.models import (
    Allow,
    Deny,
    InterventionRequest,
    InterventionResponse,
    ModifyPlan,
    Phase,
    PlanStep,
    Suggest,
)
from conductor.orchestrator import Orchestrator
from conductor.store import RunStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    store: RunStore
    orchestrator: Orchestrator
    direct_agent: GeneralAgent


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)


def _log_backend_event(event: dict[str, Any]) -> None:
    if event.get("event") == "backend_retry":
        logger.info(
            "Retrying %s backend (attempt %s) in %.1fs",
            event.get("backend"),
            event.get("attempt"),
            float(event.get("delay_seconds", 0.0)),
        )
    else:
        logger.debug("Backend event: %s", event)


def _log_run_event(event: dict[str, Any]) -> None:
    logger.debug("Run event: %s", event)


def _build_backend(config: ConductorConfig, repo_root: Path) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return RetryingBackend(
        ClaudeCodeBackend(binary=config.backend.binary, working_directory=repo_root),
        policy,
        event_hook=_log_backend_event,
    )


def _build_tools() -> ToolRegistry:
    return ToolRegistry()


def _load_runtime(
    repo_root: Path, config_path: Path, *, max_iterations: int | None = None
) -> Runtime:
    config = load_config(config_path)
    if max_iterations is not None:
        config.workflow.max_iterations = max(1, max_iterations)
    store = RunStore(config.state_root(repo_root))
    backend = _build_backend(config, repo_root)
    registry = _build_tools()
    subagent_model = config.agents.subagent_model or None
    orchestrator = Orchestrator(
        BackendPlanGenerator(
            backend,
            model=config.agents.planner_model or None,
            available_tools=registry.names(),
        ),
        BackendReflector(backend, model=config.agents.reflector_model or None),
        build_tool_executor(
            registry,
            build_role_agents(backend, model=subagent_model),
            backend,
            model=subagent_model,
        ),
        max_iterations=config.workflow.max_iterations,
        max_parallel_tasks=config.workflow.max_parallel_tasks,
        store=store if config.state.persist else None,
        event_hook=_log_run_event,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=orchestrator,
        direct_agent=GeneralAgent(backend, model=subagent_model),
    )


def _describe_intervention(request: InterventionRequest) -> None:
    reflection = request.reflection
    click.echo("")
    click.echo(f"Run {request.run_id} needs your input (progress {reflection.progress:.0%}).")
    if request.error:
        click.echo(f"Error: {request.error}")
    elif reflection.analysis:
        click.echo(reflection.analysis)
    for issue in reflection.issues:
        click.echo(f"  - {issue}")
    if reflection.next_action:
        click.echo(f"Suggested next action: {reflection.next_action}")


def _prompt_replacement_steps() -> tuple[PlanStep, ...]:
    click.echo("Enter replacement tasks, one per line. Finish with an empty line.")
    steps: list[PlanStep] = []
    while True:
        line = click.prompt("", default="", show_default=False, prompt_suffix="> ").strip()
        if not line:
            break
        key = f"user_{len(steps) + 1}"
        depends_on = (steps[-1].key,) if steps else ()
        steps.append(PlanStep(key=key, description=line, depends_on=depends_on))
    return tuple(steps)


def _prompt_intervention(request: InterventionRequest) -> InterventionResponse:
    _describe_intervention(request)
    choice = click.prompt(
        "Response",
        type=click.Choice([option.value for option in request.options]),
        default="allow",
    )
    if choice == "deny":
        return Deny(click.prompt("Reason", default="", show_default=False))
    if choice == "suggest":
        return Suggest(click.prompt("Guidance"))
    if choice == "modify_plan":
        steps = _prompt_replacement_steps()
        if steps:
            return ModifyPlan(steps)
        click.echo("No tasks entered; continuing as suggested.")
    return Allow()


@click.group()
def cli() -> None:
    """Conductor: plan, act, observe and reflect until a request is done."""


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    state_root = config.state_root(repo_root)
    (state_root / "runs").mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {state_root}")


@cli.command("run")
@click.argument("request")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None)
@click.option(
    "--auto-approve",
    is_flag=True,
    default=False,
    help="Answer every intervention with allow instead of prompting.",
)
@click.option(
    "--mode",
    type=click.Choice(WORKFLOW_MODES),
    default=None,
    help="auto picks between the full loop and a single direct answer by request complexity.",
)
def run_command(
    request: str,
    config_value: str,
    max_iterations: int | None,
    log_level: str | None,
    auto_approve: bool,
    mode: str | None,
) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    runtime = _load_runtime(repo_root, config_path, max_iterations=max_iterations)
    _configure_logging(log_level or runtime.config.logging.level)

    mode = mode or runtime.config.workflow.mode
    if mode == "direct" or (mode == "auto" and not ComplexityEvaluator().should_use_workflow(request)):
        logger.info("Answering directly without the plan loop (mode=%s)", mode)
        try:
            response = asyncio.run(runtime.direct_agent.run(request))
        except BackendExecutionError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(response.content)
        return

    handler = (lambda _request: Allow()) if auto_approve else _prompt_intervention
    orchestrator = runtime.orchestrator
    try:
        state = asyncio.run(orchestrator.run(request, on_intervention=handler))
    except (ConductorError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(orchestrator.get_run(state.run_id).render_summary())
    click.echo("")
    click.echo(f"Run ID: {state.run_id}")
    if state.phase == Phase.FAILED:
        raise click.ClickException(f"Run {state.run_id} failed: {state.failure_reason}")


@cli.command("status")
@click.argument("run_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(run_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = RunStore(config.state_root(repo_root))
    try:
        payload = store.load_state(run_id)
    except (ConductorError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("tasks")
@click.argument("run_id")
@click.option("--all", "include_deleted", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def tasks_command(run_id: str, include_deleted: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = RunStore(config.state_root(repo_root))
    try:
        tasks = store.load_tasks(run_id)
    except (ConductorError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    if not include_deleted:
        tasks = [task for task in tasks if task.status.value != "deleted"]
    if not tasks:
        click.echo("No tasks recorded.")
        return
    for task in tasks:
        click.echo(f"{task.id} {task.status.value:<9} {task.subject}")


@cli.command("runs")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def runs_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    run_ids = RunStore(config.state_root(repo_root)).list_runs()
    if not run_ids:
        click.echo("No runs found.")
        return
    for run_id in run_ids:
        click.echo(run_id)
