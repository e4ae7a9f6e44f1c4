"""
Route definitions for runtime introspection under ``/debug``.

Profiling endpoints (``/debug/pprof/...``):

- ``GET /debug/pprof/`` — plain-text index of the endpoints below.
- ``GET /debug/pprof/cmdline`` — the process command line, NUL separated.
- ``GET /debug/pprof/profile?seconds=N`` — runs ``cProfile`` on the event
  loop thread for ``N`` seconds and returns the ``pstats`` report sorted
  by cumulative time.  Only one profile may run at a time; a concurrent
  request receives HTTP 409.
- ``GET /debug/pprof/heap`` — ``tracemalloc`` top allocation sites when
  tracing is enabled (``PYTHONTRACEMALLOC``), otherwise a census of live
  objects grouped by type.
- ``GET /debug/pprof/threads`` — the current stack of every thread.
- ``GET /debug/pprof/tasks`` — the current stack of every asyncio task.

Live variables:

- ``GET /debug/vars`` — JSON snapshot of process-level variables.

These endpoints expose process internals and should not be reachable
from untrusted networks.
"""

import asyncio
import cProfile
import collections
import gc
import io
import os
import platform
import pstats
import sys
import threading
import traceback
import tracemalloc
import typing

import fastapi
import psutil

MAXIMUM_PROFILE_SECONDS = 300
DEFAULT_PROFILE_SECONDS = 30

# Number of entries shown in the heap and profile reports.
REPORT_ENTRY_LIMIT = 50

_PROFILE_ENDPOINT_DESCRIPTIONS: dict[str, str] = {
    "cmdline": "The command line invocation of the current process.",
    "profile": "cProfile of the event loop. Duration set by the seconds query parameter (default 30).",
    "heap": "tracemalloc allocation sites, or a live-object census when tracing is off.",
    "threads": "Stack traces of all threads.",
    "tasks": "Stack traces of all asyncio tasks.",
}

debug_router = fastapi.APIRouter(prefix="/debug", tags=["Debug"])

# cProfile refuses to run two profilers at once on Python 3.12+.
_profile_lock = asyncio.Lock()


def _plain_text(content: str) -> fastapi.responses.PlainTextResponse:
    return fastapi.responses.PlainTextResponse(
        content=content,
        headers={"X-Content-Type-Options": "nosniff"},
    )


@debug_router.get("/pprof/", summary="Profiling index")
async def get_profiling_index() -> fastapi.responses.PlainTextResponse:
    lines = ["Profiling endpoints:", ""]
    for name, description in _PROFILE_ENDPOINT_DESCRIPTIONS.items():
        lines.append(f"/debug/pprof/{name}: {description}")
    return _plain_text("\n".join(lines) + "\n")


@debug_router.get("/pprof/cmdline", summary="Process command line")
async def get_command_line() -> fastapi.responses.PlainTextResponse:
    return _plain_text("\x00".join(sys.argv))


@debug_router.get("/pprof/profile", summary="Profile the event loop")
async def get_profile(
    seconds: int = fastapi.Query(default=DEFAULT_PROFILE_SECONDS, ge=1, le=MAXIMUM_PROFILE_SECONDS),
) -> fastapi.responses.PlainTextResponse:
    """
    Profile everything the event loop runs for ``seconds`` seconds.

    The profiler observes the thread the event loop runs on, so the
    report covers every request served during the interval but not work
    offloaded to the thread pool.
    """
    if _profile_lock.locked():
        raise fastapi.HTTPException(
            status_code=409,
            detail="A profile is already being collected.",
        )

    async with _profile_lock:
        profiler = cProfile.Profile()
        profiler.enable()
        try:
            await asyncio.sleep(seconds)
        finally:
            profiler.disable()

    report = io.StringIO()
    statistics = pstats.Stats(profiler, stream=report)
    statistics.sort_stats(pstats.SortKey.CUMULATIVE).print_stats(REPORT_ENTRY_LIMIT)
    return _plain_text(report.getvalue())


@debug_router.get("/pprof/heap", summary="Memory allocation report")
async def get_heap() -> fastapi.responses.PlainTextResponse:
    if tracemalloc.is_tracing():
        snapshot = tracemalloc.take_snapshot()
        lines = [f"tracemalloc top {REPORT_ENTRY_LIMIT} allocation sites:", ""]
        lines.extend(str(statistic) for statistic in snapshot.statistics("lineno")[:REPORT_ENTRY_LIMIT])
        return _plain_text("\n".join(lines) + "\n")

    object_counts = collections.Counter(type(tracked).__qualname__ for tracked in gc.get_objects())
    lines = [
        "tracemalloc is not tracing; set PYTHONTRACEMALLOC=1 for allocation sites.",
        f"live objects tracked by the garbage collector, top {REPORT_ENTRY_LIMIT} types:",
        "",
    ]
    lines.extend(f"{count:>10} {type_name}" for type_name, count in object_counts.most_common(REPORT_ENTRY_LIMIT))
    return _plain_text("\n".join(lines) + "\n")


@debug_router.get("/pprof/threads", summary="Thread stacks")
async def get_thread_stacks() -> fastapi.responses.PlainTextResponse:
    thread_names = {thread.ident: thread.name for thread in threading.enumerate()}
    sections = []
    for thread_identifier, frame in sys._current_frames().items():
        thread_name = thread_names.get(thread_identifier, "unknown")
        stack = "".join(traceback.format_stack(frame))
        sections.append(f"thread {thread_identifier} [{thread_name}]:\n{stack}")
    return _plain_text("\n".join(sections))


@debug_router.get("/pprof/tasks", summary="Asyncio task stacks")
async def get_task_stacks() -> fastapi.responses.PlainTextResponse:
    report = io.StringIO()
    for task in asyncio.all_tasks():
        task.print_stack(file=report)
        report.write("\n")
    return _plain_text(report.getvalue())


def collect_process_variables() -> dict[str, typing.Any]:
    """
    Snapshot of live process-level variables for ``GET /debug/vars``.
    """
    process_variables: dict[str, typing.Any] = {
        "cmdline": list(sys.argv),
        "pid": os.getpid(),
        "python_version": platform.python_version(),
        "threads": threading.active_count(),
        "gc": {
            "counts": list(gc.get_count()),
            "thresholds": list(gc.get_threshold()),
            "generations": gc.get_stats(),
            "tracked_objects": len(gc.get_objects()),
        },
    }
    try:
        process_variables["tasks"] = len(asyncio.all_tasks())
    except RuntimeError:
        process_variables["tasks"] = 0
    current_process = psutil.Process()
    memory_information = current_process.memory_info()
    cpu_times = current_process.cpu_times()
    process_variables["memory"] = {
        "resident_set_size_bytes": memory_information.rss,
        "virtual_memory_size_bytes": memory_information.vms,
    }
    process_variables["cpu_seconds"] = {"user": cpu_times.user, "system": cpu_times.system}
    process_variables["open_file_descriptors"] = (
        current_process.num_fds() if hasattr(current_process, "num_fds") else None
    )
    return process_variables


@debug_router.get("/vars", summary="Live process variables")
async def get_process_variables() -> fastapi.responses.JSONResponse:
    return fastapi.responses.JSONResponse(content=collect_process_variables())
