import click
import json
import logging
import os
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from ..models.config import RetryPolicy, RunConfig
from ..models.job import JobEvent, JobSpec, JobState
from ..storage.database import RunStore
from ..workers.cancellation import CancellationCoordinator
from ..workers.scheduler import Scheduler

console = Console()
err_console = Console(stderr=True)

EXIT_INVALID_INPUT = 2

# Stored in ~/.batchrun/config.json unless BATCHRUN_CONFIG points elsewhere
DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".batchrun", "config.json")

# config key -> (nested model, RunConfig/RetryPolicy field)
CONFIG_KEYS = {
    "concurrency": (None, "concurrency_limit"),
    "timeout": (None, "default_timeout"),
    "max-attempts": (None, "default_max_attempts"),
    "grace-period": (None, "grace_period"),
    "output-limit": (None, "output_limit"),
    "base-delay": ("retry_policy", "base_delay"),
    "max-delay": ("retry_policy", "max_delay"),
    "jitter": ("retry_policy", "jitter_fraction"),
}

# RunConfig/RetryPolicy field names are accepted as well, e.g. concurrency_limit
FIELD_KEYS = {field: key for key, (_, field) in CONFIG_KEYS.items()}

STATE_STYLES = {
    JobState.PENDING: "white",
    JobState.RUNNING: "cyan",
    JobState.AWAITING_RETRY: "yellow",
    JobState.SUCCEEDED: "green",
    JobState.FAILED: "red",
    JobState.TIMED_OUT: "magenta",
    JobState.CANCELLED: "bright_black",
}


def config_path():
    return os.environ.get("BATCHRUN_CONFIG", DEFAULT_CONFIG_PATH)


def load_config():
    path = config_path()
    if not os.path.exists(path):
        return {}
    with open(path, 'r') as f:
        return json.load(f)


def save_config(config):
    path = config_path()
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)


def build_run_config(*layers) -> RunConfig:
    """Merge config layers, later layers winning. None values are skipped."""
    settings = {}
    for layer in layers:
        layer = layer or {}
        if not isinstance(layer, dict):
            raise ValueError("Configuration must be a JSON object")
        if isinstance(layer.get("retry_policy"), dict):
            layer = {**{k: v for k, v in layer.items() if k != "retry_policy"}, **layer["retry_policy"]}
        for key, value in layer.items():
            name = FIELD_KEYS.get(key, key.replace("_", "-"))
            if name not in CONFIG_KEYS:
                raise ValueError(f"Unknown configuration key '{key}'")
            if value is not None:
                settings[name] = value

    fields = {}
    policy = {}
    for name, value in settings.items():
        nested, field = CONFIG_KEYS[name]
        if nested == "retry_policy":
            policy[field] = value
        else:
            fields[field] = value
    return RunConfig(retry_policy=RetryPolicy(**policy), **fields)


def load_batch(text):
    """Parse a jobs file: a list of jobs, or {"config": {...}, "jobs": [...]}"""
    data = json.loads(text)
    batch_config = {}
    if isinstance(data, dict):
        batch_config = data.get("config") or {}
        if not isinstance(batch_config, dict):
            raise ValueError("The config block must be a JSON object")
        data = data.get("jobs")
    if not isinstance(data, list):
        raise ValueError("Job file must contain a list of jobs")
    return [JobSpec.model_validate(job) for job in data], batch_config


def setup_logging(level):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def print_event(event: JobEvent):
    style = STATE_STYLES[event.state]
    line = f"[dim]{event.timestamp.strftime('%H:%M:%S')}[/dim] {escape(event.job_id)}: "
    if event.previous is not None:
        line += f"{event.previous.value} → "
    line += f"[{style}]{event.state.value}[/{style}]"
    if event.state == JobState.RUNNING:
        line += f" (attempt {event.attempt_number})"
    if event.delay is not None:
        line += f" (retry in {event.delay:.2f}s)"
    console.print(line)


def print_report(report, show_output=False, title="Run Report"):
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Command", style="magenta")
    table.add_column("State")
    table.add_column("Attempts", style="yellow")
    table.add_column("Exit Code", style="blue")
    table.add_column("Last Error", style="red")

    for result in report.jobs:
        command = " ".join(result.command)
        last = result.last_attempt
        style = STATE_STYLES[result.final_state]
        table.add_row(
            result.job_id,
            escape(command[:50] + "..." if len(command) > 50 else command),
            f"[{style}]{result.final_state.value}[/{style}]",
            str(result.attempt_count),
            str(last.exit_code) if last and last.exit_code is not None else "-",
            escape(last.error or "") if last else "",
        )
    console.print(table)

    if show_output:
        for result in report.jobs:
            for attempt in result.attempts:
                console.print(Panel(
                    Text(attempt.output) if attempt.output else "[dim](no output)[/dim]",
                    title=f"{result.job_id} · attempt {attempt.attempt_number} · {attempt.outcome.value}",
                    title_align="left",
                ))

    s = report.summary
    console.print(
        f"submitted: {s.submitted}  [green]succeeded: {s.succeeded}[/green]  "
        f"[red]failed: {s.failed}[/red]  [magenta]timed out: {s.timed_out}[/magenta]  "
        f"cancelled: {s.cancelled}  ({report.duration:.2f}s)"
    )


@click.group()
def cli():
    """batchrun - Run batches of commands in parallel with timeouts and retries"""
    pass


@cli.command()
@click.argument('jobs_file', type=click.File('r'))
@click.option('--concurrency', type=click.IntRange(min=1), help='Maximum jobs running at once')
@click.option('--timeout', type=click.FloatRange(min=0), help='Default per-attempt timeout in seconds')
@click.option('--max-attempts', type=click.IntRange(min=1), help='Default attempts per job')
@click.option('--base-delay', type=click.FloatRange(min=0), help='First retry delay in seconds')
@click.option('--max-delay', type=click.FloatRange(min=0), help='Upper bound on retry delay')
@click.option('--jitter', type=click.FloatRange(0, 1), help='Jitter as a fraction of the delay')
@click.option('--grace-period', type=click.FloatRange(min=0), help='Seconds between SIGTERM and SIGKILL')
@click.option('--output-limit', type=click.IntRange(min=0), help='Bytes of output kept per attempt')
@click.option('--record/--no-record', default=False, help='Save the report to run history')
@click.option('--db', 'db_path', type=click.Path(dir_okay=False), help='Run history database')
@click.option('--show-output', is_flag=True, help='Print captured output of every attempt')
@click.option('--log-level', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def run(ctx, jobs_file, concurrency, timeout, max_attempts, base_delay, max_delay, jitter,
        grace_period, output_limit, record, db_path, show_output, log_level):
    """Run every job in JOBS_FILE (JSON, '-' for stdin)"""
    setup_logging(log_level)
    overrides = {
        "concurrency": concurrency,
        "timeout": timeout,
        "max-attempts": max_attempts,
        "base-delay": base_delay,
        "max-delay": max_delay,
        "jitter": jitter,
        "grace-period": grace_period,
        "output-limit": output_limit,
    }
    coordinator = CancellationCoordinator()
    try:
        specs, batch_config = load_batch(jobs_file.read())
        config = build_run_config(load_config(), batch_config, overrides)
        scheduler = Scheduler(config, coordinator=coordinator, on_event=print_event)
        jobs = scheduler.build_jobs(specs)
    except ValueError as e:
        err_console.print(f"[red]Invalid job file: {str(e)}[/red]")
        ctx.exit(EXIT_INVALID_INPUT)

    with coordinator.handle_signals():
        report = scheduler.run(specs)

    print_report(report, show_output=show_output)

    if record:
        try:
            store = RunStore(db_path)
            run_id = store.save_report(report)
            console.print(f"[green]Recorded run {run_id} ({len(jobs)} jobs)[/green]")
        except Exception as e:
            err_console.print(f"[red]Error recording run: {str(e)}[/red]")

    ctx.exit(report.exit_code)


@cli.command()
@click.option('--limit', default=20, type=click.IntRange(min=1), help='Number of runs to show')
@click.option('--db', 'db_path', type=click.Path(dir_okay=False), help='Run history database')
def history(limit, db_path):
    """List recorded runs, newest first"""
    try:
        runs = RunStore(db_path).list_runs(limit=limit)

        if not runs:
            console.print("[yellow]No recorded runs[/yellow]")
            return

        table = Table(title="Run History")
        table.add_column("Run ID", style="cyan")
        table.add_column("Started At", style="blue")
        table.add_column("Jobs", style="magenta")
        table.add_column("Succeeded", style="green")
        table.add_column("Failed", style="red")
        table.add_column("Timed Out", style="magenta")
        table.add_column("Cancelled")
        table.add_column("Exit", style="yellow")

        for r in runs:
            table.add_row(
                r.id,
                r.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                str(r.submitted),
                str(r.succeeded),
                str(r.failed),
                str(r.timed_out),
                str(r.cancelled),
                str(r.exit_code),
            )

        console.print(table)

    except Exception as e:
        console.print(f"[red]Error listing runs: {str(e)}[/red]")


@cli.command()
@click.argument('run_id')
@click.option('--db', 'db_path', type=click.Path(dir_okay=False), help='Run history database')
@click.option('--show-output', is_flag=True, help='Print captured output of every attempt')
def show(run_id, db_path, show_output):
    """Show a recorded run with its full attempt history"""
    try:
        report = RunStore(db_path).get_report(run_id)
    except KeyError:
        console.print(f"[red]Run {run_id} not found[/red]")
        return
    except Exception as e:
        console.print(f"[red]Error loading run: {str(e)}[/red]")
        return

    print_report(report, show_output=show_output, title=f"Run {run_id}")

    table = Table(title="Attempts")
    table.add_column("Job", style="cyan")
    table.add_column("#", style="yellow")
    table.add_column("Outcome")
    table.add_column("Exit Code", style="blue")
    table.add_column("Duration", style="magenta")
    table.add_column("Error", style="red")
    for result in report.jobs:
        for attempt in result.attempts:
            table.add_row(
                result.job_id,
                str(attempt.attempt_number),
                attempt.outcome.value,
                str(attempt.exit_code) if attempt.exit_code is not None else "-",
                f"{attempt.duration:.2f}s",
                escape(attempt.error or ""),
            )
    console.print(table)


@cli.group()
def config():
    """Manage default run settings"""
    pass


@config.command('get')
@click.argument('key')
def config_get(key):
    """Get a configuration value"""
    try:
        config = load_config()
        value = config.get(key)
        if value is None:
            console.print(f"[yellow]Configuration key '{key}' not set[/yellow]")
        else:
            console.print(f"{key}: {value}")
    except Exception as e:
        console.print(f"[red]Error getting configuration: {str(e)}[/red]")


@config.command('set')
@click.argument('key', type=click.Choice(sorted(CONFIG_KEYS)))
@click.argument('value')
def config_set(key, value):
    """Set a configuration value"""
    try:
        config = load_config()

        # Convert value to the appropriate type
        if value.isdigit():
            value = int(value)
        elif value.replace('.', '', 1).isdigit():
            value = float(value)

        config[key] = value
        build_run_config(config)  # reject values RunConfig would not accept
        save_config(config)
        console.print(f"[green]Set {key} to {value}[/green]")
    except Exception as e:
        console.print(f"[red]Error setting configuration: {str(e)}[/red]")


@config.command('show')
def config_show():
    """Show the effective defaults"""
    try:
        stored = load_config()
        effective = build_run_config(stored)

        table = Table(title="Configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="magenta")
        table.add_column("Source", style="blue")
        for key, (nested, field) in CONFIG_KEYS.items():
            holder = effective.retry_policy if nested == "retry_policy" else effective
            table.add_row(key, str(getattr(holder, field)), "config" if key in stored else "default")
        console.print(table)
    except Exception as e:
        console.print(f"[red]Error reading configuration: {str(e)}[/red]")


if __name__ == '__main__':
    cli()
