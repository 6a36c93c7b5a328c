"""
External collaborators the engine calls but does not own: the renderer, the
readiness validator, the severity classifier and content storage.

`Collaborators` bundles them with the issuance knobs from config so service
calls take one argument instead of five.
"""
from __future__ import annotations

import io
import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.riskdocs.storage import Storage, storage_from_config

from .readiness import ReadinessResult, ReadinessValidator
from .remediation import Classification, DefaultClassifier


class Renderer(Protocol):
    content_type: str
    extension: str

    def render(self, document_kind: str, content: dict[str, Any]) -> bytes: ...


class Validator(Protocol):
    def validate(self, document_kind: str, content: dict[str, Any]) -> ReadinessResult: ...


class Classifier(Protocol):
    def classify(self, draft: dict[str, Any]) -> Classification: ...


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class TextReportRenderer:
    """
    Plain-text (markdown) report. A pure function of the payload it is given:
    the same payload always produces the same bytes.
    """

    content_type = "text/markdown; charset=utf-8"
    extension = "md"

    def render(self, document_kind: str, content: dict[str, Any]) -> bytes:
        rev = content.get("revision") or {}
        fam = content.get("family") or {}
        out = io.StringIO()
        out.write(f"# {rev.get('title') or 'Untitled'}\n\n")
        out.write(f"Document kind: {document_kind}\n")
        out.write(f"Jurisdiction: {_fmt(fam.get('jurisdiction'))}\n")
        out.write(f"Revision: {_fmt(rev.get('revision_number'))}\n")
        out.write(f"Assessment date: {_fmt(rev.get('assessment_date'))}\n")
        if rev.get("change_note"):
            out.write(f"Change note: {rev['change_note']}\n")

        ctx = content.get("context") or {}
        if ctx:
            out.write("\n## Scope\n\n")
            for key in sorted(ctx):
                out.write(f"- {key}: {_fmt(ctx[key])}\n")

        modules = content.get("modules") or {}
        out.write("\n## Sections\n")
        for key in sorted(modules):
            mod = modules[key] or {}
            state = "complete" if mod.get("completed") else "incomplete"
            out.write(f"\n### {key} ({state})\n\n")
            data = mod.get("data") or {}
            for fkey in sorted(data):
                out.write(f"- {fkey}: {_fmt(data[fkey])}\n")

        items = sorted(content.get("items") or [], key=lambda i: ((i.get("reference_number") or "~"), i.get("id") or 0))
        out.write("\n## Recommendations\n\n")
        if not items:
            out.write("No recommendations.\n")
        else:
            out.write("| Ref | Priority | Status | First raised | Description |\n")
            out.write("|---|---|---|---|---|\n")
            for i in items:
                desc = (i.get("description") or "").replace("\n", " ").replace("|", "/")
                out.write(
                    f"| {_fmt(i.get('reference_number'))} | {_fmt(i.get('priority_code'))} | {i.get('status')} "
                    f"| rev {_fmt(i.get('origin_revision_number'))} | {desc} |\n"
                )
        return out.getvalue().encode("utf-8")


@dataclass(frozen=True)
class Collaborators:
    storage: Storage
    renderer: Renderer = field(default_factory=TextReportRenderer)
    validator: Validator = field(default_factory=ReadinessValidator)
    classifier: Classifier = field(default_factory=DefaultClassifier)
    render_timeout_seconds: float = 30
    lock_retries: int = 1
    retry_backoff_seconds: float = 0.5
    url_ttl_seconds: int = 300


def collaborators_from_config(config: dict, **overrides: Any) -> Collaborators:
    opts: dict[str, Any] = {
        "storage": storage_from_config(config),
        "render_timeout_seconds": float(config.get("ARTIFACT_RENDER_TIMEOUT_SECONDS") or 30),
        "lock_retries": int(config.get("ARTIFACT_LOCK_RETRIES") if config.get("ARTIFACT_LOCK_RETRIES") is not None else 1),
        "url_ttl_seconds": int(config.get("ARTIFACT_URL_TTL_SECONDS") or 300),
    }
    opts.update(overrides)
    return Collaborators(**opts)
