"""LSF scheduler boundary.

Submits a JobDescriptor as an LSF job and answers the two questions the
launcher asks the scheduler: "is this job still running?" and "which
accounts can I charge?". All commands run through a ClusterShell, so the
same code works from a laptop (over ssh) and from a cluster node.

The job payload is this tool's own ``agent`` subcommand, which starts the
server inside the container and writes the status record.
"""

import logging
import re
import shlex

from hpcsession.errors import SubmissionError
from hpcsession.models import JobDescriptor, LauncherSettings, SessionPaths
from hpcsession.modules.cluster_shell import ClusterShell
from hpcsession.modules.job_descriptor import AccountBalance

logger = logging.getLogger(__name__)

JOB_ID_RE = re.compile(r"Job <(\d+)> is submitted")


def parse_job_id(stdout: str) -> str | None:
    """Extract the job id from bsub output, or None if not found.

    Example:
        >>> parse_job_id("Job <4242> is submitted to queue <premium>.")
        '4242'
    """
    match = JOB_ID_RE.search(stdout)
    if match:
        return match.group(1)
    return None


def parse_balances(output: str) -> list[AccountBalance]:
    """Parse account balance output into AccountBalance rows.

    Expects whitespace-separated ``name balance [category]`` rows. Header
    rows, separator rows and rows without a numeric balance are skipped.
    """
    accounts: list[AccountBalance] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or set(line.strip()) <= {"-", "=", " "}:
            continue
        try:
            balance = float(parts[1].replace(",", ""))
        except ValueError:
            logger.debug(f"Skipping balance row: {line.strip()}")
            continue
        category = parts[2] if len(parts) > 2 else None
        accounts.append(AccountBalance(name=parts[0], balance=balance, category=category))
    return accounts


def build_agent_command(
    descriptor: JobDescriptor, paths: SessionPaths, settings: LauncherSettings
) -> list[str]:
    """Command line of the job payload."""
    cmd = [
        settings.remote_command,
        "agent",
        "--app",
        descriptor.app.value,
        "--session-dir",
        str(paths.remote_dir),
        "--isolation",
        descriptor.isolation.value,
        "--port-start",
        str(settings.remote_port_start),
        "--port-end",
        str(settings.remote_port_end),
        "--lock-root",
        settings.lock_root,
        "--image-cache",
        settings.image_cache_dir,
    ]
    if descriptor.image:
        cmd.extend(["--image", descriptor.image])
    if descriptor.env_path:
        cmd.extend(["--env-path", descriptor.env_path])
    for bind in settings.binds:
        cmd.extend(["--bind", bind])
    return cmd


def render_submission_script(
    descriptor: JobDescriptor, paths: SessionPaths, settings: LauncherSettings
) -> str:
    """Render the LSF job script for a descriptor."""
    directives = [
        f"-J {descriptor.job_name}",
        f"-P {descriptor.account}",
        f"-q {descriptor.queue}",
        f"-n {descriptor.cores}",
        f"-W {descriptor.wall_clock}",
        f'-R "rusage[mem={descriptor.memory_per_core}]"',
        '-R "span[hosts=1]"',
        *(f"-R {tag}" for tag in descriptor.resources),
        f"-oo {paths.job_log}",
        "-L /bin/bash",
    ]
    lines = ["#!/bin/bash", *(f"#BSUB {directive}" for directive in directives), ""]
    lines.append(f"exec {shlex.join(build_agent_command(descriptor, paths, settings))}")
    return "\n".join(lines) + "\n"


class LSFScheduler:
    """Submit and query LSF jobs through a ClusterShell."""

    def __init__(self, shell: ClusterShell, settings: LauncherSettings):
        self.shell = shell
        self.settings = settings

    def submit(self, descriptor: JobDescriptor, paths: SessionPaths) -> str:
        """Submit one job and return its id.

        Raises:
            SubmissionError: If bsub fails or its output carries no job id
        """
        script = render_submission_script(descriptor, paths, self.settings)
        logger.debug(f"Submission script:\n{script}")
        self.shell.make_dirs(paths.remote_dir)

        result = self.shell.run(["bsub"], input_text=script)
        job_id = parse_job_id(result.stdout)
        if job_id is None:
            detail = (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"
            raise SubmissionError(f"Scheduler did not accept the job: {detail}")

        logger.info(f"Submitted LSF job {job_id} to queue {descriptor.queue}")
        return job_id

    def is_running(self, job_id: str) -> bool:
        """Check whether the scheduler reports the job as running."""
        result = self.shell.run(["bjobs", "-noheader", "-o", "stat", job_id])
        state = result.stdout.strip()
        logger.debug(f"Job {job_id} state: {state or 'unknown'}")
        return state == "RUN"

    def list_accounts(self) -> list[AccountBalance]:
        """Query the accounts the user may charge."""
        result = self.shell.run(["mybalance"])
        if not result.success:
            logger.warning(f"Account lookup failed: {result.stderr.strip()}")
            return []
        return parse_balances(result.stdout)


__all__ = [
    "LSFScheduler",
    "build_agent_command",
    "parse_balances",
    "parse_job_id",
    "render_submission_script",
]
