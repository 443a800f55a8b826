from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
automation_depth_var: ContextVar[int] = ContextVar("automation_depth", default=0)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_automation_depth(value: int) -> Token[int]:
    return automation_depth_var.set(value)


def reset_automation_depth(token: Token[int]) -> None:
    automation_depth_var.reset(token)


def get_automation_depth() -> int:
    return automation_depth_var.get()
