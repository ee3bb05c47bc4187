from __future__ import annotations

import logging
from collections.abc import Mapping, MutableMapping
from typing import Any
from uuid import uuid4


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the bound ``key=value`` context.

    The adapter is created once per request and handed to the services that
    run on its behalf, so log lines carry the request identity without any
    task-local state.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        context = self.extra or {}
        prefix = " ".join(
            f"{key}={value}" for key, value in context.items() if value is not None
        )
        extra = dict(kwargs.get("extra") or {})
        extra.update(context)
        kwargs["extra"] = extra
        if not prefix:
            return msg, kwargs
        return f"[{prefix}] {msg}", kwargs

    def bind(self, **context: Any) -> ContextLoggerAdapter:
        merged = dict(self.extra or {})
        merged.update(context)
        return ContextLoggerAdapter(self.logger, merged)


def bind_logger(logger: logging.Logger, **context: Any) -> ContextLoggerAdapter:
    return ContextLoggerAdapter(logger, dict(context))


def resolve_request_id(headers: Mapping[str, str]) -> str:
    request_id = (headers.get("x-request-id") or "").strip()
    return request_id or str(uuid4())
