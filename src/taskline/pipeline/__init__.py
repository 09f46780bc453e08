"""Ticket pipeline: work items in, merged branches out.

Why not Airflow / Prefect?
~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not scheduling, it is the boundary with a CLI coding
agent that streams JSON on stdout and edits a git worktree:

- One isolated worktree per work item, created and torn down with git.
- Step conditions driven by agent output (blocking-finding markers).
- Retry of transient network/capacity failures, never of real ones.
- Process-group supervision so that an interrupt reaps every agent.
- Checkpoints that let a failed item resume at the first unfinished step.

A workflow engine would add a server and a database for a single-machine
tool while still requiring all of the above as custom task code. A thread
pool per batch plus a sequential merge loop is enough for this scope.
"""
