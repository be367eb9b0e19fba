# cli.py
from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path
from typing import List

import click

from matrixci.dag import Scheduler, default_workers
from matrixci.dsl import Matrix, expand_all
from matrixci.model import ConfigurationError, SchedulingError
from matrixci.provision import CommandProvisioner, PlatformProvisioner, ToolProvisioner, chain
from matrixci.report import aggregate
from matrixci.runner import load_workflow
from matrixci.ui.console import Console, get_console, set_console


DEFAULT_WORKFLOW = "matrixci_workflow.py"


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []

    default_workflow = root / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in root.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(2)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(2)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(2)

    return workflow_files[0]


def select_families(families: List[Matrix], wanted: tuple[str, ...]) -> List[Matrix]:
    """Keep the wanted families plus everything they (transitively) need."""
    if not wanted:
        return families

    by_name = {f.family: f for f in families}
    unknown = sorted(set(wanted) - set(by_name))
    if unknown:
        raise ConfigurationError(f"unknown job families: {unknown}", known=sorted(by_name))

    keep: set[str] = set()
    stack = list(wanted)
    while stack:
        name = stack.pop()
        if name in keep or name not in by_name:
            continue
        keep.add(name)
        stack.extend(by_name[name].needs)

    return [f for f in families if f.family in keep]


def _load_jobs(ctx, workflow: str | None, families: tuple[str, ...]):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        selected = select_families(load_workflow(workflow_path), families)
        return workflow_path, expand_all(selected)
    except ConfigurationError as e:
        console.print_error(
            "Invalid workflow configuration",
            e.message,
            details=[f"{k}={v}" for k, v in e.details.items()] or None,
            suggestion=f"Fix the matrix declared in {workflow_path}; no job was run.",
        )
        sys.exit(2)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(2)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    envvar="MATRIXCI_DEBUG",
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Print captured output of every job")
@click.pass_context
def cli(ctx, debug, verbose):
    """matrixci: build-matrix verification runner."""
    console = Console(debug=debug, verbose=verbose)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, envvar="MATRIXCI_WORKFLOW", help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--family", "families", multiple=True, help="Only this job family (repeatable); needed families are kept")
@click.pass_context
def plan(ctx, workflow, families):
    """Print the expanded job matrix without running anything."""
    console = get_console()
    workflow_path, jobs = _load_jobs(ctx, workflow, families)

    console.print_header(f"{workflow_path.name}: {len(jobs)} job(s)")
    for job in jobs:
        console.print_plan_job(job.name, [s.name for s in job.steps])
    console.print_info(f"\nDefault workers: {default_workers(jobs)}")


@cli.command()
@click.option("--workflow", default=None, envvar="MATRIXCI_WORKFLOW", help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--family", "families", multiple=True, help="Only this job family (repeatable); needed families are kept")
@click.option("--workers", default=None, type=click.IntRange(min=1), envvar="MATRIXCI_WORKERS", help="Max parallel jobs (defaults to the platform count)")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(exists=True, file_okay=False), help="Checked-out project to verify")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), envvar="MATRIXCI_REPORT", help="Write the JSON report here")
@click.option("--platform-axis", default="os", show_default=True, help="Axis naming the target platform")
@click.option("--platform-check/--no-platform-check", default=True, show_default=True, help="Skip jobs whose platform differs from this host")
@click.option("--toolchain-axis", default="rust", show_default=True, help="Axis naming the toolchain channel")
@click.option("--toolchain-install", default=None, envvar="MATRIXCI_TOOLCHAIN_INSTALL", help="Command template run once per toolchain, e.g. 'rustup toolchain install {rust}'")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the expanded jobs before running")
@click.pass_context
def run(ctx, workflow, families, workers, repo_root, report_path, platform_axis, platform_check,
        toolchain_axis, toolchain_install, print_plan):
    """Run every job of a workflow and report the verdict."""
    console = get_console()
    workflow_path, jobs = _load_jobs(ctx, workflow, families)

    provisioners = [ToolProvisioner()]
    if platform_check:
        provisioners.append(PlatformProvisioner(axis=platform_axis))
    if toolchain_install:
        provisioners.append(CommandProvisioner(toolchain_axis, toolchain_install))

    scheduler = Scheduler(
        max_workers=workers,
        repo_root=repo_root,
        provisioner=chain(*provisioners),
    )

    def _on_signal(signum, frame):
        # first signal: cooperative cancel; second one interrupts for real
        signal.signal(signal.SIGINT, signal.default_int_handler)
        scheduler.cancel()

    # signal handlers can only be installed from the main thread
    in_main = threading.current_thread() is threading.main_thread()
    previous = signal.signal(signal.SIGINT, _on_signal) if in_main else None

    try:
        console.print_run_started(
            repository=Path(repo_root).resolve().name,
            workflow=workflow_path.name,
            job_count=len(jobs),
            workers=workers or default_workers(jobs),
        )
        if print_plan:
            for job in jobs:
                console.print_plan_job(job.name, [s.name for s in job.steps])
            console.print_info("")

        results = scheduler.run(jobs)
        report = aggregate(jobs, results)

        console.print_results(report)
        if report_path:
            written = report.write(report_path)
            console.print_info(f"Report written to {written}")

        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except SchedulingError as e:
        console.print_error("Scheduling failed", e.message, details=[f"job={e.job}"] if e.job else None)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        if in_main:
            signal.signal(signal.SIGINT, previous)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
