#!/usr/bin/env python
"""jobs_done - Show the SLURM jobs that finished since you last looked.

Queries ``sacct`` for one user, appends every finished job to an audit log,
prints a grouped summary (array jobs collapsed under their parent id) and
remembers when it last ran so the next call only shows what is new.

Part of the [jobs-done](https://github.com/chem-william/slurm_jd) tool.
"""
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "typer>=0.9",
#     "pydantic>=2.0",
#     "rich>=13.0",
#     "polars>=1.0",
#     "pyyaml>=6.0",
# ]
# ///

from __future__ import annotations

import os
import subprocess
import sys
from datetime import datetime, time, timedelta
from getpass import getuser
from pathlib import Path
from typing import Annotated, Any, NamedTuple, Sequence

import polars as pl
import typer
import yaml
from pydantic import BaseModel, Field, ValidationError, computed_field, field_validator
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

app = typer.Typer(help="Show SLURM jobs that finished since the last check")
console = Console()
err_console = Console(stderr=True)

# Replay a captured sacct output file instead of calling SLURM
MOCK_SACCT_ENV = "JOBS_DONE_MOCK_SACCT"

# Format used for --since and by sacct for Start/End
INPUT_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
# Format of the watermark file
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# Compact form used on screen
START_END_FORMAT = "%b-%d %H:%M"

# Columns requested from sacct; the tokenizer relies on exactly this many fields per row
SACCT_FIELDS = [
    "jobid%20",
    "jobname%30",
    "alloccpus",
    "elapsed",
    "start",
    "end",
    "state",
]
N_FIELDS = len(SACCT_FIELDS)

HEADER_LABELS = {
    "jobid%20": "Job ID          ",
    "jobname%30": "Job Name",
    "alloccpus": "CPUs   ",
    "elapsed": "Elapsed       ",
    "start": "Start         ",
    "end": "End            ",
    "state": "State    ",
}

WIDTH = 24
ID_WIDTH = 15

RUNNING_STATE = "RUNNING"
COMPLETED_STATE = "COMPLETED"
# Finished jobs that are logged but not shown
SKIP_STATES = ["PENDING", "CANCELLED+"]

# sacct placeholders: not yet started (Unknown) / never started (None)
NOT_STARTED_VALUES = ("Unknown", "None")
# sacct placeholder for a job that has not ended
NOT_FINISHED_VALUES = ("Unknown",)

LOG_COLUMNS = ["jobid", "jobname", "alloccpus", "elapsed", "start", "end", "state"]
LOG_SEPARATOR = ";"
LOG_NULL_VALUE = "none"

DATE_FILE_NAME = "date_file"
LOG_FILE_NAME = "log_file"


class ParseError(ValueError):
    """Raised when sacct output or the watermark file cannot be parsed."""


class SacctError(RuntimeError):
    """Raised when sacct cannot be executed or fails."""


def _now() -> datetime:
    """Current local time, truncated to whole seconds."""
    return datetime.now().replace(microsecond=0)


# ============================================================================
# Configuration Management
# ============================================================================


def _get_config_path() -> Path | None:
    """Find the jobs-done config.yaml, per-user first, then /etc/jobs-done."""
    config_paths = []

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        config_paths.append(Path(xdg_config_home) / "jobs-done" / "config.yaml")
    else:
        config_paths.append(Path.home() / ".config" / "jobs-done" / "config.yaml")

    config_paths.append(Path("/etc/jobs-done/config.yaml"))

    for config_path in config_paths:
        if config_path.exists():
            return config_path
    return None


def _load_config_file() -> tuple[dict[str, Any], Path | None]:
    """Load configuration from the first existing config file.

    Returns a tuple of (config dict, config file path).
    Returns ({}, None) if no configuration file is found.
    """
    config_path = _get_config_path()

    if config_path is None:
        return {}, None

    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        err_console.print(f"[yellow]Warning: Failed to load {config_path}: {escape(str(e))}[/yellow]")
        return {}, None

    if not isinstance(config, dict):
        if config is not None:
            err_console.print(f"[yellow]Warning: Ignoring malformed configuration in {config_path}[/yellow]")
        return {}, config_path
    return config, config_path


def _default_data_dir() -> Path:
    """Directory holding the running executable."""
    return Path(sys.argv[0]).resolve().parent


class Config(BaseModel):
    """Where state lives and which finished jobs stay off the screen."""

    data_dir: Path
    skip_states: list[str] = Field(default_factory=lambda: list(SKIP_STATES))

    @classmethod
    def create(cls, data_dir: Path | None = None, skip_states: list[str] | None = None) -> Config:
        """Create a Config instance.

        Args:
            data_dir: Explicit state directory (overrides the config file)
            skip_states: Explicit display skip-set (overrides the config file)

        Returns:
            Configured Config instance

        """
        file_config, config_path = _load_config_file()

        default_skip_states = list(SKIP_STATES) if skip_states is None else skip_states
        default_data_dir = _default_data_dir() if data_dir is None else data_dir

        # 1. Explicit parameter, 2. config file, 3. defaults (state next to the executable)
        file_skip_states = file_config.get("skip_states")
        file_data_dir = file_config.get("data_dir")
        try:
            return cls(
                data_dir=file_data_dir if data_dir is None and file_data_dir not in (None, "") else default_data_dir,
                skip_states=file_skip_states if skip_states is None and file_skip_states is not None else default_skip_states,
            )
        except ValidationError as e:
            fields = ", ".join(str(error["loc"][0]) for error in e.errors())
            err_console.print(f"[yellow]Warning: Invalid {escape(fields)} in {config_path}, using defaults[/yellow]")
        return cls(data_dir=default_data_dir, skip_states=default_skip_states)

    @field_validator("data_dir")
    @classmethod
    def _expand_user(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def date_file(self) -> Path:
        """Get the watermark file path."""
        return self.data_dir / DATE_FILE_NAME

    @property
    def log_file(self) -> Path:
        """Get the audit log path."""
        return self.data_dir / LOG_FILE_NAME

    def ensure_data_dir(self) -> None:
        """Ensure the state directory exists."""
        self.data_dir.mkdir(parents=True, exist_ok=True)


# ============================================================================
# SLURM Commands
# ============================================================================


class CommandResult(NamedTuple):
    """Result from a command execution."""

    stdout: str
    stderr: str
    returncode: int
    command: str = ""  # The command that was executed


def _maybe_run_mock(cmd: list[str]) -> CommandResult | None:
    mock_file = os.environ.get(MOCK_SACCT_ENV)
    if not mock_file:
        return None
    cmd_str = " ".join(cmd)
    if cmd[0] != "sacct":
        return CommandResult("", "", 1, cmd_str)
    return CommandResult(Path(mock_file).read_text(), "", 0, cmd_str)


def _run(cmd: list[str]) -> CommandResult:
    """Run a command or return mock data if configured."""
    if (r := _maybe_run_mock(cmd)) is not None:
        return r

    result = subprocess.run(cmd, capture_output=True, text=True, check=False)  # noqa: S603
    return CommandResult(result.stdout, result.stderr, result.returncode, " ".join(cmd))


def build_sacct_command(user: str, window_start: datetime) -> list[str]:
    """Build the sacct invocation listing ``user``'s jobs since ``window_start``."""
    return [
        "sacct",
        "-u",
        user,
        "-n",
        "-S",
        window_start.strftime(INPUT_DATE_FORMAT),
        f"--format={','.join(SACCT_FIELDS)}",
    ]


def run_sacct(user: str, window_start: datetime) -> str:
    """Run sacct and return its raw columnar output.

    Raises:
        SacctError: sacct is missing or exited with a non-zero status

    """
    try:
        result = _run(build_sacct_command(user, window_start))
    except FileNotFoundError as e:
        msg = "sacct command not found"
        raise SacctError(msg) from e
    if result.returncode != 0:
        msg = f"sacct returned non-zero exit code {result.returncode}: {result.stderr.strip()}"
        raise SacctError(msg)
    return result.stdout


# ============================================================================
# Job Model
# ============================================================================


class ParsedJobId(NamedTuple):
    """A job identifier; ``index`` is set for array-job elements only."""

    base: int
    index: int | None = None


class Job(BaseModel):
    """One finished (or queued) job as reported by sacct.

    Two jobs are equal when they share ``jobid_base`` and ``array_index``;
    name, state and timestamps are not part of the identity.
    """

    jobid_base: int = Field(ge=0)
    array_index: int | None = Field(default=None, ge=0)
    jobname: str
    alloccpus: int = Field(ge=0)
    elapsed: str
    start: datetime | None = None
    end: datetime | None = None
    state: str

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Job):
            return NotImplemented
        return (self.jobid_base, self.array_index) == (other.jobid_base, other.array_index)

    def __hash__(self) -> int:
        return hash((self.jobid_base, self.array_index))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def jobid_display(self) -> str:
        """Job id as sacct prints it, e.g. ``123`` or ``123_4``."""
        if self.array_index is not None:
            return f"{self.jobid_base}_{self.array_index}"
        return str(self.jobid_base)

    def is_displayable(self, skip_states: Sequence[str] = SKIP_STATES) -> bool:
        """Check whether the job belongs in the printed table."""
        return self.state not in skip_states

    @classmethod
    def from_fields(cls, jobid_base: int, array_index: int | None, fields: Sequence[str]) -> Job:
        """Build a job from one row of sacct fields (in ``SACCT_FIELDS`` order).

        Raises:
            ParseError: the CPU count or a timestamp is malformed

        """
        if len(fields) != N_FIELDS:
            msg = f"expected {N_FIELDS} fields for job {fields[0] if fields else '?'}, got {len(fields)}"
            raise ParseError(msg)

        alloccpus = _parse_uint(fields[2])
        if alloccpus is None:
            msg = f"could not parse alloccpus {fields[2]!r} of job {fields[0]}"
            raise ParseError(msg)

        return cls(
            jobid_base=jobid_base,
            array_index=array_index,
            jobname=fields[1],
            alloccpus=alloccpus,
            elapsed=fields[3],
            start=_parse_timestamp(fields[4], NOT_STARTED_VALUES, "start"),
            end=_parse_timestamp(fields[5], NOT_FINISHED_VALUES, "end"),
            state=fields[6],
        )


# ============================================================================
# Parsing
# ============================================================================


def _parse_uint(value: str) -> int | None:
    """Parse a plain non-negative decimal integer, None otherwise."""
    if value.isascii() and value.isdigit():
        return int(value)
    return None


def _parse_timestamp(value: str, placeholders: Sequence[str], field: str) -> datetime | None:
    if value in placeholders:
        return None
    try:
        return datetime.strptime(value, INPUT_DATE_FORMAT)
    except ValueError as e:
        msg = f"unable to parse {field} {value!r}"
        raise ParseError(msg) from e


def check_job(token: str) -> ParsedJobId | None:
    """Classify a sacct job id.

    Returns ``None`` for anything that is not a job of its own: steps such as
    ``123.batch``/``123_4.extern`` and ids with junk such as ``123_4+``.
    """
    if "." in token:
        return None

    if "_" in token:
        base_str, _, index_str = token.partition("_")
        base, index = _parse_uint(base_str), _parse_uint(index_str)
        if base is None or index is None:
            return None
        return ParsedJobId(base, index)

    job_id = _parse_uint(token)
    if job_id is None:
        return None
    return ParsedJobId(job_id)


def split_records(sacct_output: str, n_fields: int = N_FIELDS) -> list[list[str]]:
    """Split whitespace separated sacct output into rows of ``n_fields`` tokens.

    A trailing group shorter than ``n_fields`` is dropped.
    """
    tokens = sacct_output.split()
    return [tokens[i : i + n_fields] for i in range(0, len(tokens) - n_fields + 1, n_fields)]


def get_finished_jobs(sacct_output: str) -> list[Job]:
    """Extract all non-running jobs from sacct output, in output order.

    Raises:
        ParseError: a job row carries a malformed CPU count or timestamp

    """
    jobs: list[Job] = []
    for fields in split_records(sacct_output):
        parsed = check_job(fields[0])
        if parsed is None:
            continue
        job = Job.from_fields(parsed.base, parsed.index, fields)
        if job.state != RUNNING_STATE:
            jobs.append(job)
    return jobs


# ============================================================================
# Display
# ============================================================================


def format_job_line(jobid: str, job: Job, indent: str = "") -> Text:
    """Format a single job (or array element) as one table row."""
    if job.start is not None:
        start, start_style = job.start.strftime(START_END_FORMAT), "white"
    else:
        start, start_style = "NOT STARTED", "yellow"
    if job.end is not None:
        end, end_style = job.end.strftime(START_END_FORMAT), "white"
    else:
        end, end_style = "UNKNOWN", "yellow"
    state_style = "green" if job.state == COMPLETED_STATE else "red"
    id_width = ID_WIDTH - len(indent)
    return Text.assemble(
        f"{indent}{jobid:<{id_width}} {job.jobname:<{WIDTH - 1}} {job.alloccpus:<6} {job.elapsed:<13} ",
        (f"{start:<13}", start_style),
        " ",
        (f"{end:<14}", end_style),
        " ",
        (job.state, state_style),
    )


def format_parent_line(jobid_base: int, jobname: str) -> Text:
    """Header row of an array job: id and name only."""
    return Text(f"{jobid_base:<{ID_WIDTH}} {jobname:<{WIDTH - 1}}")


def create_print(jobs: Sequence[Job], skip_states: Sequence[str] = SKIP_STATES) -> list[Text]:
    """Arrange jobs into display lines, grouping array elements under their parent.

    Array elements are expected to be contiguous in ``jobs`` (sacct emits
    them that way); an interleaved array simply shows up as several groups.
    """
    lines: list[Text] = []
    i = 0
    while i < len(jobs):
        job = jobs[i]
        if job.array_index is None:
            if job.is_displayable(skip_states):
                lines.append(format_job_line(job.jobid_display, job))
            i += 1
            continue

        start = i
        while i < len(jobs) and jobs[i].jobid_base == job.jobid_base and jobs[i].array_index is not None:
            i += 1
        shown = [child for child in jobs[start:i] if child.is_displayable(skip_states)]
        if shown:
            lines.append(format_parent_line(job.jobid_base, shown[0].jobname))
            lines.extend(format_job_line(str(child.array_index), child, indent="  ") for child in shown)

    return lines


def header_row() -> Text:
    """Column titles matching ``format_job_line``."""
    header = Text()
    for field in SACCT_FIELDS:
        label = HEADER_LABELS[field]
        if field == "jobname%30":
            label = f"{label:<{WIDTH}}"
        header.append(label, style="bold")
    return header


# ============================================================================
# Persistence: watermark and audit log
# ============================================================================


def _write_date(date_file: Path, when: datetime) -> None:
    with open(date_file, "w") as f:
        f.write(when.strftime(LOG_DATE_FORMAT))


def _read_last_session(date_file: Path) -> datetime | None:
    """Parse the watermark file; None when it is empty."""
    contents = date_file.read_text().strip()
    if not contents:
        return None
    try:
        return datetime.strptime(contents, LOG_DATE_FORMAT)
    except ValueError as e:
        msg = f"unable to parse date {contents!r} from {date_file}"
        raise ParseError(msg) from e


def get_last_session(date_file: Path, now: datetime | None = None) -> datetime:
    """Return the watermark: jobs that ended after it have not been reported yet.

    Without a watermark file this is today's midnight. An empty file is
    repaired by writing ``now`` into it.
    """
    now = now or _now()
    if not date_file.exists():
        return datetime.combine(now.date(), time.min)

    last_session = _read_last_session(date_file)
    if last_session is None:
        _write_date(date_file, now)
        return now
    return last_session


def save_date(date_file: Path, now: datetime | None = None) -> None:
    """Advance the watermark to ``now``."""
    _write_date(date_file, now or _now())


def _jobs_to_dataframe(jobs: Sequence[Job]) -> pl.DataFrame:
    return pl.DataFrame(
        {
            "jobid": [job.jobid_display for job in jobs],
            "jobname": [job.jobname for job in jobs],
            "alloccpus": [job.alloccpus for job in jobs],
            "elapsed": [job.elapsed for job in jobs],
            "start": [job.start for job in jobs],
            "end": [job.end for job in jobs],
            "state": [job.state for job in jobs],
        },
        schema={
            "jobid": pl.String,
            "jobname": pl.String,
            "alloccpus": pl.Int64,
            "elapsed": pl.String,
            "start": pl.Datetime("us"),
            "end": pl.Datetime("us"),
            "state": pl.String,
        },
    )


def log_jobs(jobs: Sequence[Job], log_file: Path) -> None:
    """Append one line per job to the audit log.

    Lines look like ``123_4;name;2;00:01:00;2023-04-22T16:15:05;none;FAILED``.
    Fields holding the separator or a double quote are CSV-quoted
    (``1;"a;b";...``) so ``read_log`` gets the name back intact. The file
    is created even when there is nothing to append.
    """
    df = _jobs_to_dataframe(jobs)
    with open(log_file, "ab") as f:
        if not df.is_empty():
            df.write_csv(
                f,
                separator=LOG_SEPARATOR,
                include_header=False,
                datetime_format=INPUT_DATE_FORMAT,
                null_value=LOG_NULL_VALUE,
                quote_style="necessary",
            )


def read_log(log_file: Path) -> pl.DataFrame:
    """Load the audit log with every column as text."""
    if not log_file.exists() or log_file.stat().st_size == 0:
        return pl.DataFrame(schema=dict.fromkeys(LOG_COLUMNS, pl.String))
    return pl.read_csv(
        log_file,
        separator=LOG_SEPARATOR,
        has_header=False,
        new_columns=LOG_COLUMNS,
        infer_schema=False,
    )


# ============================================================================
# Query window
# ============================================================================


def _check_window_options(*, day: bool, hours: int | None, days: int | None, since: datetime | None) -> None:
    chosen = [
        name
        for name, given in (("--day", day), ("--hours", hours is not None), ("--days", days is not None), ("--since", since is not None))
        if given
    ]
    if len(chosen) > 1:
        msg = f"{' and '.join(chosen)} cannot be used together"
        raise typer.BadParameter(msg)


def resolve_window_start(
    last_session: datetime,
    now: datetime,
    *,
    day: bool = False,
    hours: int | None = None,
    days: int | None = None,
    since: datetime | None = None,
) -> datetime:
    """Pick the start of the sacct query window; the watermark unless overridden."""
    _check_window_options(day=day, hours=hours, days=days, since=since)
    if since is not None:
        return since
    if hours is not None:
        return now - timedelta(hours=hours)
    if days is not None:
        return now - timedelta(days=days)
    if day:
        return now - timedelta(days=1)
    return last_session


# ============================================================================
# CLI Commands
# ============================================================================


def _print_report(lines: Sequence[Text], window_start: datetime) -> None:
    window = escape(window_start.strftime(START_END_FORMAT))
    if not lines:
        console.print(f"[bold underline]No jobs have finished since[/bold underline] [yellow]{window}[/yellow]")
        return

    console.print(f"[bold underline]Jobs completed since:[/bold underline] [yellow]{window}[/yellow]")
    console.print(header_row(), soft_wrap=True)
    for line in lines:
        console.print(line, soft_wrap=True)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    day: Annotated[bool, typer.Option("--day", help="Get finished jobs from the last 24 hours")] = False,  # noqa: FBT002
    hours: Annotated[int | None, typer.Option("--hours", min=0, help="Get finished jobs from the last N hours")] = None,
    days: Annotated[int | None, typer.Option("--days", min=0, help="Get finished jobs from the last N days")] = None,
    since: Annotated[
        datetime | None,
        typer.Option("--since", formats=[INPUT_DATE_FORMAT], help="Get finished jobs since a specific time (YYYY-MM-DDTHH:MM:SS)"),
    ] = None,
    user: Annotated[str | None, typer.Option("--user", "-u", help="SLURM username (default: current user)")] = None,
    data_dir: Annotated[Path | None, typer.Option("--data-dir", help="Directory holding date_file and log_file")] = None,
) -> None:
    """Show jobs that finished since the last run (or in the chosen window)."""
    if ctx.invoked_subcommand is not None:
        return

    _check_window_options(day=day, hours=hours, days=days, since=since)

    config = Config.create(data_dir=data_dir)
    try:
        config.ensure_data_dir()
        now = _now()
        last_session = get_last_session(config.date_file, now)
        window_start = resolve_window_start(last_session, now, day=day, hours=hours, days=days, since=since)

        sacct_output = run_sacct(user or getuser(), window_start)
        jobs = get_finished_jobs(sacct_output)
        lines = create_print(jobs, config.skip_states)

        log_jobs(jobs, config.log_file)
    except (ParseError, SacctError, OSError) as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    _print_report(lines, window_start)

    try:
        save_date(config.date_file)
    except OSError as e:
        err_console.print(f"[red]Error: unable to write {config.date_file}: {escape(str(e))}[/red]")
        raise typer.Exit(1) from e


@app.command()
def status(
    data_dir: Annotated[Path | None, typer.Option("--data-dir", help="Directory holding date_file and log_file")] = None,
) -> None:
    """Show the watermark and what the audit log holds."""
    console.print(Panel.fit("[bold cyan]jobs_done status[/bold cyan]", border_style="cyan"))

    config = Config.create(data_dir=data_dir)

    if not config.data_dir.exists():
        console.print("[yellow]No data directory found[/yellow]")
        return

    try:
        last_session = _read_last_session(config.date_file) if config.date_file.exists() else None
        log = read_log(config.log_file)
    except (ParseError, OSError, pl.exceptions.ComputeError) as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1) from e

    status_table = Table(title="State Files", box=box.ROUNDED)
    status_table.add_column("Component", style="cyan")
    status_table.add_column("Value", justify="right")
    status_table.add_column("Details", style="dim")

    status_table.add_row("Data Directory", "[green]✓[/green]", str(config.data_dir))
    status_table.add_row(
        "Last Session",
        last_session.strftime(LOG_DATE_FORMAT) if last_session else "[yellow]never[/yellow]",
        str(config.date_file),
    )
    status_table.add_row("Logged Jobs", f"[cyan]{len(log):,}[/cyan]", str(config.log_file))
    console.print(status_table)

    if log.is_empty():
        return

    state_stats = log.group_by("state").agg(pl.len().alias("count")).sort(["count", "state"], descending=[True, False])
    state_table = Table(box=box.SIMPLE)
    state_table.add_column("State", style="yellow")
    state_table.add_column("Count", justify="right")
    for row in state_stats.iter_rows(named=True):
        state_table.add_row(row["state"], f"{row['count']:,}")
    console.print("\n[bold]Logged States:[/bold]")
    console.print(state_table)


if __name__ == "__main__":
    app()
