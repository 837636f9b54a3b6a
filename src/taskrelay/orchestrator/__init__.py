"""Resumable orchestration of coding tasks across external AI executors.

Why not a workflow engine (Prefect, Temporal, Celery)?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Those engines retry a failed step by running the same code again. The failure
modes here are different: an executor hits its usage limit, runs out of context
window, or produces output that does not pass the project's checks. Recovering
from each needs domain logic that a generic engine leaves to the task body:

- A bounded checkpoint per task that is small enough to hand to the next
  executor as its resume context.
- A failure classifier that separates rate limits and context exhaustion from
  crashes and drives a per-outcome transition table.
- Per-category fallback chains with session-level overrides.
- An explicit operator choice on resume and on escalation, with no silent loss.

All state fits in one SQLite row per session, so a single-machine CLI with an
atomic read-modify-write is enough.
"""
