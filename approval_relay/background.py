"""Thread-pool helper for work that must not hold up a Slack acknowledgement.

Fan-out, alert close-out and Bolt dispatch all run here. Nobody waits on
the returned futures in production, so a job that raises is logged with
the trace id it ran under before the error is stored on the future.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from contextvars import copy_context
from typing import Any, Callable

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="relay-bg")


def _job_name(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or repr(func)


def run_async(
    func: Callable[..., Any],
    /,
    *args: Any,
    trace_id: str | None = None,
    **kwargs: Any,
) -> Future:
    """Run *func* on the shared pool inside a copy of the caller's context.

    Bound structlog context (``trace_id`` included) travels with the job;
    an explicit *trace_id* overrides whatever the caller had bound.
    """

    context = copy_context()
    if trace_id is not None and context.run(lambda: get_contextvars().get("trace_id")) != trace_id:
        context.run(bind_contextvars, trace_id=trace_id)

    def guarded() -> Any:
        try:
            return func(*args, **kwargs)
        except Exception:
            structlog.get_logger().exception("background_job_failed", job=_job_name(func))
            raise

    return _executor.submit(context.run, guarded)
