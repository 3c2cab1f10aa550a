import os
from typing import Any, Iterable

COACH_CONTEXT_MESSAGES = int(os.getenv("COACH_CONTEXT_MESSAGES", "12"))

LANGUAGE_NAMES = {
    "en": "English",
    "sv": "Swedish",
    "no": "Norwegian",
    "da": "Danish",
    "fi": "Finnish",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "ar": "Arabic",
}

FORWARDED_ROLES = {"user", "assistant"}


def language_name(lang: str) -> str:
    base = (lang or "en").strip().lower().split("-")[0]
    return LANGUAGE_NAMES.get(base, lang or "English")


def coach_system_instruction(lang: str) -> str:
    return (
        "You are Auri, a practical, warm AI coach.\n"
        f"- Reply in {language_name(lang)}.\n"
        "- Structure EVERY reply:\n"
        "  1) one-sentence empathy (at most 20 words),\n"
        "  2) ACTION PLAN: exactly 3 numbered steps, concrete and personalized,\n"
        "  3) ONE focused follow-up question.\n"
        "- Avoid repeating earlier wording. Vary verbs and structure.\n"
        "- You may call at most ONE tool when a plan, timed exercises or a journal prompt would help.\n"
        "- No medical diagnosis. If the user signals crisis, tell them to open the Crisis page."
    )


def trim_context(messages: Iterable[dict[str, Any]], limit: int = COACH_CONTEXT_MESSAGES) -> list[dict[str, str]]:
    """Keep the newest ``limit`` user/assistant messages, oldest first.

    System messages from callers are dropped; the server owns the instruction.
    """
    forwarded = [
        {"role": str(m["role"]), "content": str(m.get("content") or "")}
        for m in messages
        if m.get("role") in FORWARDED_ROLES
    ]
    if limit <= 0:
        return []
    return forwarded[-limit:]


def build_upstream_messages(messages: Iterable[dict[str, Any]], lang: str) -> list[dict[str, str]]:
    return [{"role": "system", "content": coach_system_instruction(lang)}, *trim_context(messages)]


def latest_user_text(messages: Iterable[dict[str, Any]]) -> str:
    text = ""
    for message in messages:
        if message.get("role") == "user":
            text = str(message.get("content") or "")
    return text
