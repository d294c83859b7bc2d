"""Resource classification and content transformers.

A transformer is a pure function ``(raw, resource_type) -> bytes``.
Only ``ResourceType.SCRIPT`` payloads are ever changed; everything else
is handed back untouched.  Implementations must be deterministic, the
body cache relies on it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Protocol

from rewrite_bridge.errors import TransformFailure

logger = logging.getLogger(__name__)


class ResourceType(Enum):
    DOCUMENT = "document"
    SCRIPT = "script"
    OTHER = "other"

    @classmethod
    def from_cdp(cls, value: Optional[str]) -> ResourceType:
        # CDP Network.ResourceType: Document, Stylesheet, Image, Media, Font, Script, ...
        if not value:
            return cls.OTHER
        lowered = value.lower()
        if lowered == "document":
            return cls.DOCUMENT
        if lowered == "script":
            return cls.SCRIPT
        return cls.OTHER

    @classmethod
    def from_content_type(cls, content_type: Optional[str]) -> ResourceType:
        if not content_type:
            return cls.OTHER
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in SCRIPT_MIME_TYPES:
            return cls.SCRIPT
        if mime in ("text/html", "application/xhtml+xml"):
            return cls.DOCUMENT
        return cls.OTHER

    @property
    def cdp_name(self) -> str:
        return self.value.capitalize()

    @property
    def default_content_type(self) -> Optional[str]:
        """Content-Type to send when the original response carried none."""
        if self is ResourceType.SCRIPT:
            return "text/javascript; charset=utf-8"
        if self is ResourceType.DOCUMENT:
            return "text/html; charset=utf-8"
        return None


SCRIPT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "application/javascript",
        "application/x-javascript",
        "application/ecmascript",
        "text/javascript",
        "text/ecmascript",
    }
)


class ContentTransformer(Protocol):
    def transform(self, raw: bytes, resource_type: ResourceType) -> bytes: ...


class PassThroughTransformer:
    def transform(self, raw: bytes, resource_type: ResourceType) -> bytes:
        return raw


@dataclass(frozen=True)
class PatchRule:
    """A regex substitution applied to script text."""

    pattern: str
    replacement: str
    count: int = 0

    @classmethod
    def parse(cls, line: str) -> PatchRule:
        """Parse ``pattern => replacement`` as written in the config file."""
        pattern, sep, replacement = line.partition("=>")
        if not sep or not pattern.strip():
            raise ValueError(f"Patch rule must look like 'pattern => replacement': {line!r}")
        return cls(pattern.strip(), replacement.strip())


class ScriptPatchTransformer:
    """Applies an ordered list of ``PatchRule`` substitutions to scripts.

    Script bodies are decoded as strict UTF-8; anything that does not
    decode, or a rule that blows up at substitution time, raises
    ``TransformFailure`` so the caller can fall back to the raw body.
    """

    def __init__(self, rules: Iterable[PatchRule] = ()) -> None:
        self.rules: tuple[PatchRule, ...] = tuple(rules)
        self._compiled: list[tuple[re.Pattern[str], str, int]] = []
        for rule in self.rules:
            try:
                self._compiled.append((re.compile(rule.pattern), rule.replacement, rule.count))
            except re.error as e:
                raise ValueError(f"Invalid patch pattern {rule.pattern!r}: {e}") from e

    def transform(self, raw: bytes, resource_type: ResourceType) -> bytes:
        if resource_type is not ResourceType.SCRIPT or not self._compiled or not raw:
            return raw

        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TransformFailure(f"Script is not valid UTF-8: {e}") from e

        for pattern, replacement, count in self._compiled:
            try:
                text = pattern.sub(replacement, text, count=count)
            except (re.error, IndexError) as e:
                raise TransformFailure(f"Patch {pattern.pattern!r} failed: {e}") from e

        return text.encode("utf-8")
