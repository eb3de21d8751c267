"""Render mailbox messages as prompt text and splice them into a prompt.

Output format::

    <observer-context>

    [INSIGHT confidence=85%]
    The user mentioned "cheapest"; prioritize budget airlines.

    [WARNING confidence=70%]
    Previous search timed out, consider retry.

    </observer-context>
"""
from __future__ import annotations

from typing import Callable, List, Literal, Optional, Sequence, Tuple, get_args

from .sanitization import sanitize as default_sanitize
from .types import Message, PromptMessage

InjectionTarget = Literal["system-prompt", "user-message", "end-of-history"]
INJECTION_TARGETS: Tuple[str, ...] = get_args(InjectionTarget)

OPEN_TAG = "<observer-context>"
CLOSE_TAG = "</observer-context>"


def format_messages(
    messages: Sequence[Message],
    *,
    sanitize: bool = True,
    sanitizer: Optional[Callable[[str], str]] = None,
) -> str:
    """Format messages for injection; content is sanitized unless told otherwise."""
    if not messages:
        return ""
    clean = sanitizer or default_sanitize
    blocks: List[str] = []
    for m in messages:
        body = clean(m.content) if sanitize else m.content
        # round half up, like a percentage readout
        pct = int(m.confidence * 100 + 0.5)
        blocks.append(f"[{m.category.upper()} confidence={pct}%]\n{body}")
    return f"{OPEN_TAG}\n\n" + "\n\n".join(blocks) + f"\n\n{CLOSE_TAG}"


def inject_into_prompt(
    prompt: Sequence[PromptMessage],
    context: str,
    target: InjectionTarget = "end-of-history",
) -> List[PromptMessage]:
    """Return a new prompt with ``context`` placed at ``target``.

    - "system-prompt": appended to the first system message (or prepended as one)
    - "user-message": a user message inserted before the last user message
    - "end-of-history": a user message inserted before the final message
    """
    out: List[PromptMessage] = [dict(m) for m in prompt]  # type: ignore[misc]
    if not context:
        return out
    if target not in INJECTION_TARGETS:
        raise ValueError(f"unknown injection target {target!r}")

    if target == "system-prompt":
        for i, m in enumerate(out):
            if m.get("role") == "system":
                out[i] = {**m, "content": f"{m.get('content', '')}\n\n{context}"}  # type: ignore[misc]
                return out
        out.insert(0, {"role": "system", "content": context})
        return out

    if target == "user-message":
        note: PromptMessage = {"role": "user", "content": f"[Observer Notes]\n{context}"}
        last_user = max((i for i, m in enumerate(out) if m.get("role") == "user"), default=None)
        if last_user is None:
            out.append(note)
        else:
            out.insert(last_user, note)
        return out

    note = {"role": "user", "content": f"[Observer Context]\n{context}"}
    if out:
        out.insert(len(out) - 1, note)
    else:
        out.append(note)
    return out


def inject_messages(
    prompt: Sequence[PromptMessage],
    messages: Sequence[Message],
    target: InjectionTarget = "end-of-history",
    *,
    sanitize: bool = True,
) -> List[PromptMessage]:
    """Format and inject in one call."""
    return inject_into_prompt(prompt, format_messages(messages, sanitize=sanitize), target)
