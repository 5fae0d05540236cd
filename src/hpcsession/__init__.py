"""hpcsession - interactive IDE sessions on a batch-scheduled HPC cluster

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Reattach before relaunch
- Fail fast with helpful guidance

The hpcsession CLI submits a VS Code or RStudio server as an LSF job, waits
for it to report back through a status file on shared storage, and forwards
it to the local machine over an SSH tunnel.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
