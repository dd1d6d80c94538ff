from __future__ import annotations

from contextvars import ContextVar

# Correlates every log line emitted while serving one caller request.
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    return request_id_var.get()
