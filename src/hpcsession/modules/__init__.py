"""hpcsession modules - Self-contained bricks following the brick philosophy

Each module is a self-contained component with clear contracts:
- Port Allocator: Find a free local or remote port
- Status Channel: Encode and decode the job's status record
- Job Descriptor Builder: Validate a request and resolve queue, tags and account
- Cluster Shell: Run commands and move files across the login boundary
- LSF Scheduler: Submission script, bsub, bjobs and account balances
- Submission Controller: Submit, wait for start and status, retry on BUSY
- Reconnect Store: Persist and validate reattach information
- Tunnel Manager: Create or reuse the local SSH forward
- Contention Guard: Advisory per-node lock for session servers
- Container Runtime: Singularity/Apptainer command construction
- Remote Agent: Job payload that starts the server on the compute node
"""

from . import (
    cluster_shell,
    container_runtime,
    contention_guard,
    job_descriptor,
    lsf_scheduler,
    port_allocator,
    reconnect_store,
    remote_agent,
    status_channel,
    submission_controller,
    tunnel_manager,
)

__all__ = [
    "cluster_shell",
    "container_runtime",
    "contention_guard",
    "job_descriptor",
    "lsf_scheduler",
    "port_allocator",
    "reconnect_store",
    "remote_agent",
    "status_channel",
    "submission_controller",
    "tunnel_manager",
]
