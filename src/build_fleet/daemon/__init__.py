"""Dispatch daemon: the scheduler loop behind build-fleet.

Why not a task queue (Celery/RQ) or a workflow engine?

Every job here is a long-lived OS child process (a full delivery pipeline
that builds, tests and reviews one issue in its own git worktree). The
daemon never executes work in-process, it only admits, launches, probes and
reconciles. The coordination surface is one JSON document guarded by an
advisory file lock, which several daemons on a shared volume can race on
safely. A broker would add a service to operate without removing the need
for that document, because completion is still observed through process
liveness and log tails rather than through acknowledgements.

One tick is strictly sequential: reap, then dispatch. Parallelism comes
from the worker processes, never from threads inside the daemon.
"""
