"""Job descriptor builder.

Turns a user's SessionRequest into a fully resolved JobDescriptor: validates
every field, picks a queue from the wall-clock time when asked to, looks up
an account to charge when none is given, and adds the resource tags the
request implies.

The builder never talks to the scheduler itself; account balances come from
an injected lookup so the result is a pure function of its inputs.

Queues:
- express: up to 12h, standard-memory nodes only
- premium: up to 144h
- long: up to 336h, requires explicit opt-in
- gpu: up to 144h, adds the gpu resource tag
"""

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from hpcsession.errors import NoEntitlementError, ValidationError
from hpcsession.models import JobDescriptor, LauncherSettings, SessionApp, SessionRequest

logger = logging.getLogger(__name__)

MAX_CORES = 64
MAX_WALL_MINUTES = 20160  # 336 hours
HIGHMEM_THRESHOLD_MB = 180000
MAX_TOTAL_MEMORY_MB = 1500000
HIGHMEM_TAG = "himem"
GPU_TAG = "gpu"

# Auto-resolution brackets on total wall-clock minutes
EXPRESS_BRACKET_MINUTES = 720
PREMIUM_BRACKET_MINUTES = 8640

WALL_CLOCK_RE = re.compile(r"^(\d{1,3}):([0-5]\d)$")
SESSION_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

RSTUDIO_IMAGE = "oras://ghcr.io/befh/rstudio-server-conda:latest"
VSCODE_IMAGE_NAME = "vscode_rocky.sif"


@dataclass(frozen=True)
class QueueSpec:
    """Limits of one scheduler queue."""

    name: str
    max_minutes: int
    requires_opt_in: bool = False
    resources: tuple[str, ...] = ()


QUEUES: dict[str, QueueSpec] = {
    "express": QueueSpec("express", max_minutes=720),
    "premium": QueueSpec("premium", max_minutes=8640),
    "long": QueueSpec("long", max_minutes=20160, requires_opt_in=True),
    "gpu": QueueSpec("gpu", max_minutes=8640, resources=(GPU_TAG,)),
}


@dataclass(frozen=True)
class AccountBalance:
    """One row of the account balance lookup."""

    name: str
    balance: float = 0.0
    category: str | None = None


def parse_wall_clock(value: str) -> int:
    """Parse H[H[H]]:MM into minutes.

    Raises:
        ValidationError: If the format is wrong or the limit is out of range

    Example:
        >>> parse_wall_clock("4:00")
        240
    """
    match = WALL_CLOCK_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValidationError("time", f"'{value}' is not in H[H[H]]:MM format")

    minutes = int(match.group(1)) * 60 + int(match.group(2))
    if minutes <= 0:
        raise ValidationError("time", "wall-clock limit must be positive")
    if minutes > MAX_WALL_MINUTES:
        raise ValidationError(
            "time", f"'{value}' exceeds the maximum of {MAX_WALL_MINUTES // 60}:00"
        )
    return minutes


def resolve_queue(wall_minutes: int) -> str:
    """Choose a queue bracket from total requested wall-clock time."""
    if wall_minutes < EXPRESS_BRACKET_MINUTES:
        return "express"
    if wall_minutes <= PREMIUM_BRACKET_MINUTES:
        return "premium"
    return "long"


def merge_resources(resources: Iterable[str], *extra: str) -> tuple[str, ...]:
    """Append resource tags, keeping order and dropping duplicates."""
    merged: list[str] = []
    for tag in (*resources, *extra):
        if tag not in merged:
            merged.append(tag)
    return tuple(merged)


def choose_account(
    accounts: list[AccountBalance],
    default_account: str | None = None,
    preferred_category: str | None = None,
) -> str:
    """Pick the account to charge from a balance snapshot.

    Priority:
    1. The designated default account, if present
    2. The first account in the preferred category
    3. The first account listed

    Raises:
        NoEntitlementError: If no accounts are available
    """
    if not accounts:
        raise NoEntitlementError(
            "No scheduler accounts available. Request an allocation before launching a session."
        )

    if default_account:
        for account in accounts:
            if account.name == default_account:
                return account.name

    if preferred_category:
        for account in accounts:
            if account.category and account.category.lower() == preferred_category.lower():
                return account.name

    return accounts[0].name


def resolve_env_path(env: str | None, conda_envs_root: str) -> str | None:
    """Resolve a conda environment name to its prefix path on the cluster."""
    if not env:
        return None
    if env.startswith(("/", "~")):
        return env.rstrip("/")
    if "/" in env:
        raise ValidationError("env", f"'{env}' must be an environment name or an absolute path")
    return f"{conda_envs_root.rstrip('/')}/{env}"


class JobDescriptorBuilder:
    """Build JobDescriptors from SessionRequests.

    Example:
        >>> builder = JobDescriptorBuilder(LauncherSettings(), account_lookup=lambda: [])
        >>> descriptor = builder.build(SessionRequest(cores=4, time="12:00", account="acc_x"))
        >>> descriptor.queue
        'premium'
    """

    def __init__(
        self,
        settings: LauncherSettings,
        account_lookup: Callable[[], list[AccountBalance]],
    ):
        self.settings = settings
        self.account_lookup = account_lookup

    def build(self, request: SessionRequest) -> JobDescriptor:
        """Validate and resolve a request.

        Raises:
            ValidationError: Naming the offending field
            NoEntitlementError: If no account is given and none can be found
        """
        cores = self._validate_cores(request.cores)
        wall_minutes = parse_wall_clock(request.time)
        memory = self._validate_memory(request.memory)
        total_memory = cores * memory
        if total_memory > MAX_TOTAL_MEMORY_MB:
            raise ValidationError(
                "memory",
                f"{cores} cores x {memory} MB = {total_memory} MB exceeds "
                f"the largest node ({MAX_TOTAL_MEMORY_MB} MB)",
            )

        queue = self._resolve_queue(request, wall_minutes)
        spec = QUEUES[queue]
        self._check_queue_caps(request, spec, wall_minutes)

        resources = merge_resources(self._validate_resources(request.resources), *spec.resources)
        if total_memory > HIGHMEM_THRESHOLD_MB:
            resources = merge_resources(resources, HIGHMEM_TAG)

        self._validate_session_name(request.session_name)
        env_path = resolve_env_path(request.env, self.settings.conda_envs_root)
        if request.app is SessionApp.RSTUDIO and not env_path:
            raise ValidationError("env", "RStudio sessions need a conda environment (--env)")

        descriptor = JobDescriptor(
            app=request.app,
            cores=cores,
            wall_minutes=wall_minutes,
            memory_per_core=memory,
            queue=queue,
            account=request.account or self._resolve_account(),
            resources=resources,
            session_name=request.session_name,
            env_path=env_path,
            image=request.image or self._default_image(request.app),
            isolation=request.isolation,
        )
        logger.debug(f"Built job descriptor: {descriptor}")
        return descriptor

    @staticmethod
    def _validate_cores(cores: int) -> int:
        if isinstance(cores, bool) or not isinstance(cores, int):
            raise ValidationError("cores", f"'{cores}' is not an integer")
        if cores < 1 or cores > MAX_CORES:
            raise ValidationError("cores", f"{cores} is outside 1-{MAX_CORES}")
        return cores

    @staticmethod
    def _validate_memory(memory: int) -> int:
        if isinstance(memory, bool) or not isinstance(memory, int) or memory <= 0:
            raise ValidationError("memory", f"'{memory}' is not a positive integer (MB per core)")
        return memory

    @staticmethod
    def _validate_resources(resources: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = []
        for tag in resources:
            tag = tag.strip()
            if not tag or any(ch.isspace() for ch in tag):
                raise ValidationError("resources", f"invalid resource tag {tag!r}")
            cleaned.append(tag)
        return merge_resources(cleaned)

    @staticmethod
    def _validate_session_name(name: str | None) -> None:
        if name is not None and not SESSION_NAME_RE.match(name):
            raise ValidationError(
                "session_name", f"'{name}' may only contain letters, digits, '.', '_' and '-'"
            )

    @staticmethod
    def _resolve_queue(request: SessionRequest, wall_minutes: int) -> str:
        if request.queue == "auto":
            queue = resolve_queue(wall_minutes)
            logger.debug(f"Resolved queue '{queue}' for {wall_minutes} minutes")
            return queue
        if request.queue not in QUEUES:
            valid = ", ".join(["auto", *sorted(QUEUES)])
            raise ValidationError("queue", f"'{request.queue}' is not one of: {valid}")
        return request.queue

    @staticmethod
    def _check_queue_caps(request: SessionRequest, spec: QueueSpec, wall_minutes: int) -> None:
        if spec.requires_opt_in and not request.long_queue:
            raise ValidationError(
                "queue", f"the {spec.name} queue requires explicit opt-in (--long)"
            )
        if wall_minutes > spec.max_minutes:
            raise ValidationError(
                "time",
                f"{request.time} exceeds the {spec.name} queue limit of "
                f"{spec.max_minutes // 60}:{spec.max_minutes % 60:02d}",
            )
    def _resolve_account(self) -> str:
        accounts = self.account_lookup()
        account = choose_account(
            accounts,
            default_account=self.settings.default_account,
            preferred_category=self.settings.preferred_account_category,
        )
        logger.info(f"Charging account {account}")
        return account

    def _default_image(self, app: SessionApp) -> str:
        if app is SessionApp.RSTUDIO:
            return RSTUDIO_IMAGE
        return f"{self.settings.image_cache_dir.rstrip('/')}/{VSCODE_IMAGE_NAME}"


__all__ = [
    "QUEUES",
    "AccountBalance",
    "JobDescriptorBuilder",
    "QueueSpec",
    "choose_account",
    "merge_resources",
    "parse_wall_clock",
    "resolve_env_path",
    "resolve_queue",
]
