"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    user_id: str | None = None,
    chat_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = user_id
    if chat_id:
        context["chat_id"] = mask_chat_id(chat_id)
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context


def mask_chat_id(chat_id: str | None) -> str:
    """Keep the last four digits of an external chat identity."""
    if not chat_id:
        return ""
    chat_id = str(chat_id)
    if len(chat_id) <= 4:
        return "****"
    return f"***{chat_id[-4:]}"
