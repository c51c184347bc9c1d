"""Task orchestration engine for photo generation jobs.

Why a polling state machine over SQLite?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Each job walks a fixed pipeline (download inputs, call inference, post-process,
upload) and the slow step, inference, reports back out of band. What has to
hold across crashes and races is small and row-local:

- a task never leaves a terminal status once it reaches one;
- a retry budget with exponential backoff per task;
- exactly one credit refund per failed or cancelled task;
- a late or duplicate inference result never completes a task twice.

Every write is a single-row compare-and-set on ``(task_id, status[, state])``,
so one scheduler loop plus worker threads for inference is enough; no broker
is required.
"""
