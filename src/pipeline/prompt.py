# src/pipeline/prompt.py — v1
"""Jinja2 chat prompt templates.

Templates live in ``pipeline/prompts/<name>.j2`` and describe a whole
conversation with call blocks and an image helper::

    {% call chat("system") %}You are a typesetter.{% endcall %}
    {% call chat("user") %}
      Page {{ page.page_number }}: {{ image(page.image_base64) }}
    {% endcall %}

Rendering yields the system prompt plus a list of Messages whose user turns
carry text and image parts in template order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from bookweb.llm.models import ContentPart, ImagePart, Message, TextPart

PROMPTS_DIR = Path(__file__).parent / "prompts"

_CHAT_START = "\x01CHAT:"
_CHAT_END = "\x01ENDCHAT\x01"
_IMAGE_START = "\x00IMG:"
_IMAGE_END = "\x00"

_CHAT_RE = re.compile(r"\x01CHAT:(system|user|assistant)\x01(.*?)\x01ENDCHAT\x01", re.DOTALL)
_IMAGE_RE = re.compile(r"\x00IMG:(.*?)\x00", re.DOTALL)


class TemplateError(Exception):
    """Error loading or rendering a prompt template."""


@dataclass(frozen=True)
class RenderedPrompt:
    system: str | None
    messages: list[Message]


def _chat(role: str, caller: Any = None) -> str:
    if role not in ("system", "user", "assistant"):
        raise TemplateError(f'chat() role must be system, user or assistant, got {role!r}')
    if caller is None:
        raise TemplateError("chat() must be used as {% call chat(role) %}...{% endcall %}")
    return f"{_CHAT_START}{role}\x01{caller()}{_CHAT_END}"


def _image(data: str) -> str:
    return f"{_IMAGE_START}{data}{_IMAGE_END}"


class PromptRenderer:
    """Sandboxed renderer over one or more prompt directories."""

    def __init__(self, search_path: list[Path] | None = None) -> None:
        paths = [str(p) for p in (search_path or [])] + [str(PROMPTS_DIR)]
        self._env = SandboxedEnvironment(
            loader=FileSystemLoader(paths),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=False,
        )
        self._env.globals["chat"] = _chat
        self._env.globals["image"] = _image

    def render(self, name: str, context: dict[str, Any]) -> RenderedPrompt:
        """Render ``<name>.j2`` into a system prompt and messages.

        Raises:
            TemplateError: If the template is missing, invalid or renders no turns.
        """
        try:
            raw = self._env.get_template(f"{name}.j2").render(**context)
        except JinjaTemplateError as e:
            raise TemplateError(f"Failed to render prompt {name!r}: {e}") from e
        return parse_chat(raw, name)


def parse_chat(raw: str, name: str = "<string>") -> RenderedPrompt:
    system_parts: list[str] = []
    messages: list[Message] = []

    for match in _CHAT_RE.finditer(raw):
        role, body = match.group(1), match.group(2)
        if role == "system":
            system_parts.append(_IMAGE_RE.sub("", body).strip())
            continue
        messages.append(Message(role=role, content=_content(body)))

    if not system_parts and not messages:
        raise TemplateError(f"Prompt {name!r} produced no chat blocks")

    system = "\n\n".join(p for p in system_parts if p) or None
    return RenderedPrompt(system=system, messages=messages)


def _content(body: str) -> str | list[ContentPart]:
    parts: list[ContentPart] = []
    last = 0
    for match in _IMAGE_RE.finditer(body):
        before = body[last:match.start()].strip()
        if before:
            parts.append(TextPart(text=before))
        parts.append(ImagePart(data=match.group(1)))
        last = match.end()
    rest = body[last:].strip()
    if rest:
        parts.append(TextPart(text=rest))

    if all(isinstance(p, TextPart) for p in parts):
        return "\n\n".join(p.text for p in parts)  # type: ignore[union-attr]
    return parts


_default_renderer: PromptRenderer | None = None


def render_prompt(name: str, context: dict[str, Any]) -> RenderedPrompt:
    """Render a packaged prompt template."""
    global _default_renderer
    if _default_renderer is None:
        _default_renderer = PromptRenderer()
    return _default_renderer.render(name, context)
