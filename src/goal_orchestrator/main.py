"""CLI entrypoint for goal-orchestrator."""

from pathlib import Path

import rich_click as click

from goal_orchestrator import __version__
from goal_orchestrator.controllers import (
    GoalOrchestratorCliController,
    LessonsCommand,
    OptimizeCommand,
    OrderCommand,
    PlanCommand,
    RecommendCommand,
    RunCommand,
    StatsCommand,
)
from goal_orchestrator.learning.models import LessonType
from goal_orchestrator.planning.models import OptimizationObjective, PlanValidationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GoalOrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="goal-orchestrator")
def goal_orchestrator() -> None:
    """Plan, execute and learn from multi-agent development goals."""


@goal_orchestrator.command("plan")
@click.argument("goal")
def plan(goal: str) -> None:
    """Generate an execution plan: tasks, layers, critical path and risks."""

    _emit_lines(CONTROLLER.plan(PlanCommand(goal=goal)))


@goal_orchestrator.command("validate")
@click.argument("goal")
def validate(goal: str) -> None:
    """Generate a plan and report structural errors, warnings and suggestions."""

    _emit_lines(CONTROLLER.validate(PlanCommand(goal=goal)))


@goal_orchestrator.command("optimize")
@click.argument("goal")
@click.option(
    "--strategy",
    type=click.Choice([objective.value for objective in OptimizationObjective]),
    default=OptimizationObjective.BALANCED.value,
    show_default=True,
    help="Optimization objective.",
)
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound for concurrently running tasks.",
)
def optimize(goal: str, strategy: str, max_parallel: int | None) -> None:
    """Optimize a generated plan and compare it with the original."""

    _emit_lines(
        CONTROLLER.optimize(
            OptimizeCommand(goal=goal, strategy=strategy, max_parallel=max_parallel),
        ),
    )


@goal_orchestrator.command("order")
@click.argument("goal")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=4,
    show_default=True,
    help="Maximum tasks per wave.",
)
def order(goal: str, max_parallel: int) -> None:
    """Show the dependency-respecting execution waves of a plan."""

    _emit_lines(CONTROLLER.order(OrderCommand(goal=goal, max_parallel=max_parallel)))


@goal_orchestrator.command("run")
@click.argument("goal")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=None,
    help="Override GOAL_ORCHESTRATOR_MAX_PARALLEL_TASKS.",
)
@click.option(
    "--learning/--no-learning",
    default=True,
    show_default=True,
    help="Apply recommendations and run pattern analysis.",
)
def run(goal: str, db_path: Path | None, max_parallel: int | None, learning: bool) -> None:
    """Execute a plan with the dry-run agent and record execution history."""

    try:
        lines = CONTROLLER.run(
            RunCommand(goal=goal, db_path=db_path, max_parallel=max_parallel, learning=learning),
        )
    except PlanValidationError as error:
        raise click.ClickException(f"Plan is not executable: {error}") from error
    _emit_lines(lines)


@goal_orchestrator.command("lessons")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "lesson_type",
    type=click.Choice([lesson_type.value for lesson_type in LessonType]),
    default=None,
    help="Only show lessons of this type.",
)
@click.option(
    "--min-confidence",
    type=click.FloatRange(min=0.0, max=1.0),
    default=0.0,
    show_default=True,
    help="Hide lessons below this confidence.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many lessons to display.",
)
def lessons(
    db_path: Path | None,
    lesson_type: str | None,
    min_confidence: float,
    limit: int,
) -> None:
    """List learned lessons ordered by confidence."""

    _emit_lines(
        CONTROLLER.lessons(
            LessonsCommand(
                db_path=db_path,
                lesson_type=lesson_type,
                min_confidence=min_confidence,
                limit=limit,
            ),
        ),
    )


@goal_orchestrator.command("recommend")
@click.argument("goal")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-type", default=None, help="Task type, for example api_implementation.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="How many recommendations to display.",
)
def recommend(goal: str, db_path: Path | None, task_type: str | None, limit: int) -> None:
    """Show history-based recommendations for a goal."""

    _emit_lines(
        CONTROLLER.recommend(
            RecommendCommand(goal=goal, db_path=db_path, task_type=task_type, limit=limit),
        ),
    )


@goal_orchestrator.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def stats(db_path: Path | None) -> None:
    """Show learning statistics and optimization potential."""

    _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    goal_orchestrator()
