"""agentflow.integrations.prompts

Prompt loading (the external prompt collaborator).

`DocumentPromptLoader.resolve(ref)` tries, in order: a document prompt with
inline `text`, a document prompt with a `file` (relative to the document
directory), an existing file path, and finally treats `ref` as inline text.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional, Protocol, Union, runtime_checkable

from ..graph.models import FlowDocument


@runtime_checkable
class PromptLoader(Protocol):
    def resolve(self, prompt_id: str) -> str: ...


class DocumentPromptLoader:
    def __init__(self, document: FlowDocument, *, base_dir: Optional[Union[str, Path]] = None):
        self._document = document
        base = base_dir if base_dir is not None else document.base_dir
        self._base_dir = Path(base) if base is not None else None
        self._cache: Dict[str, str] = {}

    def _path(self, ref: str) -> Path:
        path = Path(ref)
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        return path

    def resolve(self, prompt_id: str) -> str:
        cached = self._cache.get(prompt_id)
        if cached is not None:
            return cached
        text = self._load(prompt_id)
        self._cache[prompt_id] = text
        return text

    def _load(self, ref: str) -> str:
        prompt = self._document.prompt(ref)
        if prompt is not None:
            if prompt.text is not None:
                return prompt.text
            if prompt.file:
                path = self._path(prompt.file)
                if not path.is_file():
                    raise FileNotFoundError(f"Prompt file for '{ref}' not found: {path}")
                return path.read_text(encoding="utf-8")
            return ""
        if "\n" not in ref and len(ref) < 512:
            try:
                path = self._path(ref)
                if path.is_file():
                    return path.read_text(encoding="utf-8")
            except OSError:
                pass
        return ref


class StaticPromptLoader:
    """Prompt loader over a plain mapping; unknown ids are returned as inline text."""

    def __init__(self, prompts: Optional[Dict[str, str]] = None):
        self._prompts = dict(prompts or {})

    def resolve(self, prompt_id: str) -> str:
        return self._prompts.get(prompt_id, prompt_id)
