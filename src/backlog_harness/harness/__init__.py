"""Iteration harness for stateless CLI generative workers.

Why not a workflow engine (Prefect, Airflow)?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The backlog is a flat list of independent tasks processed strictly one at a
time.  What the harness has to get right is not scheduling but the boundary
between an untrusted worker and durable state:

- Deterministic task selection from a manifest cross-checked against an
  append-only progress ledger.
- Exact sentinel matching as the only contract between worker output and
  harness action.
- All-or-nothing checkpoints (artifact, manifest flag, ledger entry, git
  commit) with a journal that makes a crash mid-commit recoverable.
- Stall and iteration-cap bounds so an unproductive worker cannot loop
  forever.

The select -> invoke -> parse -> commit loop in ``loop.py`` is the whole
scheduler.
"""
