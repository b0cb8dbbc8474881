"""Provider abstractions for the language-model collaborator."""

from __future__ import annotations

import asyncio
import inspect
import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Protocol

from rich.console import Console

from ..errors import EngineError


class ProviderError(EngineError):
    """The language-model backend failed or returned an unusable payload."""

    kind = "provider_error"


@dataclass
class PromptContext:
    """Metadata about the prompt being generated."""

    task_id: str
    subtask_id: str | None
    iteration: int
    purpose: str = "decide"


class LLMProvider(Protocol):
    """Interface for language model providers.

    ``generate`` may be a plain method or a coroutine function.
    """

    def generate(self, prompt: str, context: PromptContext) -> str:  # pragma: no cover - interface
        """Return a response for the given prompt."""


async def call_provider(provider: LLMProvider, prompt: str, context: PromptContext, *, timeout: float) -> str:
    """Await one response under a deadline; sync providers run in a worker thread."""

    if inspect.iscoroutinefunction(provider.generate):
        pending = provider.generate(prompt, context)
    else:
        pending = asyncio.to_thread(provider.generate, prompt, context)
    try:
        response = await asyncio.wait_for(pending, timeout=timeout)
    except asyncio.TimeoutError:
        raise ProviderError(f"Model did not answer within {timeout:g}s", purpose=context.purpose) from None
    if not isinstance(response, str):
        raise ProviderError(f"Model returned {type(response).__name__}, expected text")
    return response


class ConsoleEchoProvider:
    """Fallback provider that lets a human operator play the model.

    The prompt is shown on the console and the reply is read until an empty
    line. Blocking input runs in a worker thread via :func:`call_provider`.
    """

    def __init__(self, prefix: str = "Model response", console: Console | None = None) -> None:
        self.prefix = prefix
        self.console = console or Console(highlight=False)

    def generate(self, prompt: str, context: PromptContext) -> str:
        target = context.subtask_id or context.task_id
        self.console.rule(f"{self.prefix}: {context.purpose} {target} (iteration {context.iteration})")
        self.console.print(prompt, markup=False)
        self.console.print("[dim]Type JSON response (end with empty line):[/]")
        lines = []
        while True:
            try:
                line = self.console.input()
            except EOFError:  # pragma: no cover - console only
                break
            if not line:
                break
            lines.append(line)
        return "\n".join(lines)


class StaticResponseProvider:
    """Replays a finite list of responses and records every prompt (useful for tests).

    Responses may be strings or mappings; mappings are serialized to JSON.
    """

    def __init__(self, responses: Iterable[Any]):
        self._responses = iter(list(responses))
        self.prompts: list[str] = []

    def generate(self, prompt: str, context: PromptContext) -> str:
        self.prompts.append(prompt)
        try:
            response = next(self._responses)
        except StopIteration as exc:
            raise ProviderError("StaticResponseProvider exhausted") from exc
        return response if isinstance(response, str) else json.dumps(response)


DEFAULT_SYSTEM_PROMPT = (
    "You are the planner of a task-execution engine working on task {task}"
    " (subtask {subtask}, iteration {iteration}). Reply with a single JSON object and nothing else."
)


class OllamaProvider:
    """Chat completion against a locally hosted Ollama server, constrained to JSON output."""

    def __init__(
        self,
        model: str,
        *,
        host: str = "http://localhost:11434",
        options: Dict[str, Any] | None = None,
        system_prompt: str | None = DEFAULT_SYSTEM_PROMPT,
        timeout: float = 120.0,
    ) -> None:
        self.model = model
        self.host = host.rstrip("/")
        self.options = options or {}
        self.system_prompt = system_prompt
        self.timeout = timeout

    def _messages(self, prompt: str, context: PromptContext) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            system = self.system_prompt.format(
                task=context.task_id, subtask=context.subtask_id or "-", iteration=context.iteration
            )
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return messages

    def generate(self, prompt: str, context: PromptContext) -> str:
        body = json.dumps(
            {
                "model": self.model,
                "messages": self._messages(prompt, context),
                "stream": False,
                "format": "json",
                "options": self.options,
            }
        ).encode("utf-8")
        request = urllib.request.Request(
            url=f"{self.host}/api/chat",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                data = json.loads(response.read().decode("utf-8"))
        except urllib.error.URLError as exc:
            raise ProviderError(f"Ollama at {self.host} is unreachable: {exc}", model=self.model) from exc
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Ollama returned a non-JSON body: {exc}", model=self.model) from exc
        if "error" in data:
            raise ProviderError(f"Ollama error: {data['error']}", model=self.model)
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, str):
            raise ProviderError("Ollama reply has no message content", model=self.model)
        return content.strip()
