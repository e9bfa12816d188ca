"""Scan orchestration: queue claiming, credit ledger, chunked execution and scoring.

Why a database-backed queue instead of a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Workers are short-lived invocations (an HTTP trigger, a one-minute tick)
with a hard wall-clock ceiling and no shared memory. What has to be
coordinated between them is small and already lives in the database:

- Which scan is being worked on: one conditional UPDATE on the queue row.
- How far it got: progress counters and the persisted results per
  (query, model) chain, which let a resumed or re-claimed scan skip work.
- Who pays: reservations settled against the same database the queue
  lives in.

A broker would still need all of the above as task logic, while adding an
operational dependency and a second source of truth for job status.
"""
