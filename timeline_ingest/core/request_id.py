# timeline_ingest/core/request_id.py
from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

_run_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("run_id", default=None)
_connector_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("connector_id", default=None)

# -------- Run ID (one per ingestion run) -------------------------------------

def set_run_id(run_id: Optional[str]) -> None:
    _run_id_ctx.set(run_id)

def get_run_id() -> Optional[str]:
    return _run_id_ctx.get()

def new_correlation_id() -> str:
    return uuid.uuid4().hex

@contextmanager
def with_run_id(run_id: Optional[str] = None) -> Iterator[str]:
    """
    Scope a run id to the current task tree:
        with with_run_id() as rid:
            ... run the pipeline ...
    Tasks created inside the block inherit the id.
    """
    previous = _run_id_ctx.get()
    rid = run_id or new_correlation_id()
    _run_id_ctx.set(rid)
    try:
        yield rid
    finally:
        _run_id_ctx.set(previous)

# -------- Connector scope (per fetch task) -----------------------------------

def get_connector_id() -> Optional[str]:
    return _connector_ctx.get()

@contextmanager
def with_connector_id(connector_id: str) -> Iterator[str]:
    token = _connector_ctx.set(connector_id)
    try:
        yield connector_id
    finally:
        _connector_ctx.reset(token)
