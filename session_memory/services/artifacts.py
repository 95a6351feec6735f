"""Compression and composition artifacts.

Every compression version is written once as ``{label}.md`` and
``{label}.jsonl`` under ``summaries/{session_id}/`` and never rewritten.
Compositions get ``composed/{name}/{name}.md``, ``{name}.jsonl`` and
``composition.json``. Markdown artifacts carry YAML front matter.
"""

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import frontmatter

from ..models.manifest import CompositionComponent, FileSizes, OutputFile
from ..models.message import Message, utc_now_iso
from ..models.settings import TieredSettings, UniformSettings
from ..utils.file_utils import async_read_file, async_remove, async_write_file, async_write_json
from ..utils.logger import get_logger
from .messages import message_to_record, record_to_message
from .storage import StoragePaths, get_storage_paths

logger = get_logger(__name__)

ARTIFACT_FORMATS = ("md", "jsonl")


def artifact_label(
    version_id: str,
    settings: UniformSettings | TieredSettings,
    token_count: int,
    part_number: int | None = None,
) -> str:
    """``{versionId}_{mode}-{preset}_{size}k`` with size in thousands of tokens (min 1).

    Version ids without a part prefix get ``part{N}_`` in front.
    """
    size = max(1, round(token_count / 1000))
    label = f"{version_id}_{settings.mode}-{settings.preset_label}_{size}k"
    prefix = f"part{part_number}_"
    if part_number and not version_id.startswith(prefix):
        return prefix + label
    return label


def _role_heading(message: Message) -> str:
    role = {"user": "User", "system": "System"}.get(message.role, "Assistant")
    return f"{role} [SUMMARIZED]" if message.is_summarized else role


def _tier_lines(tier_results: Any) -> list[str]:
    if not isinstance(tier_results, list) or not tier_results:
        return []
    lines = ["## Tier Summary", ""]
    for tier in tier_results:
        if not isinstance(tier, dict):
            continue
        lines.append(
            f"- {tier.get('range', '?')}: {tier.get('inputMessages', '?')} -> "
            f"{tier.get('outputMessages', '?')} messages ({tier.get('compactionRatio', '?')}x)"
        )
    lines.append("")
    return lines


def render_version_markdown(
    messages: list[Message],
    metadata: dict[str, Any],
    tier_results: Any = None,
) -> str:
    lines = ["# Compressed Session", "", f"Generated: {utc_now_iso()}", ""]
    lines.extend(_tier_lines(tier_results))
    lines.extend(["---", ""])
    for message in messages:
        lines.append(f"## {_role_heading(message)}")
        if message.timestamp:
            lines.append(f"*{message.timestamp}*")
        lines.append("")
        if message.text_content:
            lines.append(message.text_content)
        lines.extend(["", "---", ""])

    post = frontmatter.Post("\n".join(lines))
    post.metadata.update({k: v for k, v in metadata.items() if v is not None})
    return frontmatter.dumps(post)


def render_original_markdown(messages: list[Message]) -> str:
    lines = ["# Original Session", "", f"Total messages: {len(messages)}", "", "---", ""]
    for message in messages:
        if message.role not in ("user", "assistant"):
            continue
        lines.append(f"## {_role_heading(message)}")
        if message.timestamp:
            lines.append(f"*{message.timestamp}*")
        lines.append("")
        if message.text_content:
            lines.append(message.text_content)
        lines.extend(["", "---", ""])
    return "\n".join(lines)


def render_version_jsonl(messages: list[Message], tier_results: Any = None) -> str:
    header = {
        "type": "compression-metadata",
        "version": "1.0",
        "createdAt": utc_now_iso(),
        "messageCount": len(messages),
        "tierResults": tier_results,
    }
    lines = [json.dumps(header, ensure_ascii=False)]
    lines.extend(json.dumps(message_to_record(m), ensure_ascii=False) for m in messages)
    return "\n".join(lines) + "\n"


@dataclass
class ComponentContent:
    """Messages of one composition component, with their provenance."""

    session_id: str
    version_id: str
    is_original: bool
    messages: list[Message]
    token_contribution: int
    compression_ratio: float | None = None
    parts: list[dict[str, Any]] | None = None

    def source_label(self) -> str:
        if self.is_original:
            return "original"
        if self.parts:
            return f"{len(self.parts)} parts"
        return f"compressed {self.compression_ratio}x"


def render_composition_markdown(name: str, contents: list[ComponentContent], created_at: str) -> str:
    total = sum(c.token_contribution for c in contents)
    lines = [
        f"# Composed Context: {name}",
        "",
        f"Generated: {created_at}",
        f"Sessions: {len(contents)}",
        f"Total Tokens: {total}",
        "",
        "---",
        "",
        "## Contents",
        "",
    ]
    for i, content in enumerate(contents, 1):
        lines.append(
            f"{i}. [Session: {content.session_id}](#session-{i}) - "
            f"{content.token_contribution} tokens ({content.source_label()})"
        )
    lines.extend(["", "---", ""])

    for i, content in enumerate(contents, 1):
        lines.extend([
            f"## Session {i}: {content.session_id} {{#session-{i}}}",
            "",
            "| Property | Value |",
            "|----------|-------|",
            f"| Version | {content.version_id} |",
            f"| Tokens | {content.token_contribution} |",
            f"| Messages | {len(content.messages)} |",
        ])
        if content.compression_ratio:
            lines.append(f"| Compression | {content.compression_ratio}x |")
        lines.append("")
        for message in content.messages:
            lines.append(f"### {_role_heading(message)}")
            if message.timestamp:
                lines.append(f"*{message.timestamp}*")
            lines.append("")
            if message.text_content:
                lines.append(message.text_content)
            lines.append("")
        lines.extend(["---", ""])

    lines.extend(["## Provenance", "", "This composed context was generated from the following sources:", ""])
    for content in contents:
        source = "Original session" if content.is_original else f"Compressed version ({content.source_label()})"
        lines.append(f"- **{content.session_id}**: {source}")

    post = frontmatter.Post("\n".join(lines))
    post.metadata.update({"composition": name, "created_at": created_at, "total_tokens": total})
    return frontmatter.dumps(post)


def _lineage(contents: list[ComponentContent]) -> list[dict[str, Any]]:
    return [
        {
            "order": i,
            "sessionId": c.session_id,
            "versionId": c.version_id,
            "isOriginal": c.is_original,
            "compressionRatio": c.compression_ratio,
            **({"parts": c.parts} if c.parts else {}),
        }
        for i, c in enumerate(contents)
    ]


def render_composition_jsonl(name: str, contents: list[ComponentContent], created_at: str) -> str:
    header = {
        "type": "composition-metadata",
        "version": "1.0",
        "compositionName": name,
        "createdAt": created_at,
        "sessionCount": len(contents),
        "totalTokens": sum(c.token_contribution for c in contents),
        "totalMessages": sum(len(c.messages) for c in contents),
        "lineage": _lineage(contents),
    }
    lines = [json.dumps(header, ensure_ascii=False)]
    for order, content in enumerate(contents):
        lines.append(json.dumps({
            "type": "session-boundary",
            "sessionId": content.session_id,
            "versionId": content.version_id,
            "order": order,
            "tokenContribution": content.token_contribution,
            "messageCount": len(content.messages),
        }))
        for message in content.messages:
            record = message_to_record(message)
            record["sessionId"] = content.session_id
            record["compositionOrder"] = order
            lines.append(json.dumps(record, ensure_ascii=False))
    return "\n".join(lines) + "\n"


def composition_metadata(
    name: str,
    created_at: str,
    components: list[CompositionComponent],
    contents: list[ComponentContent],
) -> dict[str, Any]:
    return {
        "compositionName": name,
        "createdAt": created_at,
        "components": [c.model_dump(by_alias=True, mode="json", exclude_none=True) for c in components],
        "totalTokens": sum(c.token_contribution for c in components),
        "totalMessages": sum(c.message_contribution for c in components),
        "lineage": _lineage(contents),
    }


def parse_artifact_messages(content: str) -> list[Message]:
    """Messages of a JSONL artifact, skipping metadata and boundary records."""
    messages = []
    for line in content.splitlines():
        if not line.strip():
            continue
        record = json.loads(line)
        message = record_to_message(record)
        if message is not None:
            messages.append(message)
    return messages


class ArtifactStore:
    """Reads and writes artifact files under the project layout."""

    def __init__(self, paths: StoragePaths | None = None) -> None:
        self.paths = paths or get_storage_paths()

    def version_path(self, project_id: str, session_id: str, label: str, fmt: str) -> Path:
        return self.paths.summaries_dir(project_id, session_id) / f"{label}.{fmt}"

    async def write_version(
        self,
        project_id: str,
        session_id: str,
        label: str,
        messages: list[Message],
        metadata: dict[str, Any],
        tier_results: Any = None,
    ) -> FileSizes:
        """Create both artifacts of a version; existing files are never replaced.

        Raises:
            FileExistsError: Either artifact already exists. Nothing written
                by this call is left behind.
        """
        md_path = self.version_path(project_id, session_id, label, "md")
        md_size = await async_write_file(
            md_path, render_version_markdown(messages, metadata, tier_results), exclusive=True
        )
        try:
            jsonl_size = await async_write_file(
                self.version_path(project_id, session_id, label, "jsonl"),
                render_version_jsonl(messages, tier_results),
                exclusive=True,
            )
        except OSError:
            await async_remove(md_path)
            raise
        logger.debug("Version artifacts written", extra={"session_id": session_id, "label": label})
        return FileSizes(md=md_size, jsonl=jsonl_size)

    async def remove_version(self, project_id: str, session_id: str, label: str) -> list[str]:
        removed = []
        for fmt in ARTIFACT_FORMATS:
            path = self.version_path(project_id, session_id, label, fmt)
            if await async_remove(path):
                removed.append(str(path))
        return removed

    async def read_version(self, project_id: str, session_id: str, label: str, fmt: str) -> str:
        """Raises FileNotFoundError when the artifact is gone."""
        return await async_read_file(self.version_path(project_id, session_id, label, fmt))

    async def read_version_messages(self, project_id: str, session_id: str, label: str) -> list[Message]:
        return parse_artifact_messages(await self.read_version(project_id, session_id, label, "jsonl"))

    def composition_dir(self, project_id: str, dir_name: str) -> Path:
        return self.paths.composed_dir(project_id, dir_name)

    def claim_composition_dir(self, project_id: str, dir_name: str) -> bool:
        """Create an empty output directory; False when the name is already in use."""
        self.paths.composed_dir(project_id).mkdir(parents=True, exist_ok=True)
        try:
            self.composition_dir(project_id, dir_name).mkdir(exist_ok=False)
        except FileExistsError:
            return False
        return True

    async def write_composition(
        self,
        project_id: str,
        dir_name: str,
        name: str,
        contents: list[ComponentContent],
        components: list[CompositionComponent],
        created_at: str,
        formats: Iterable[str] = ARTIFACT_FORMATS,
    ) -> dict[str, OutputFile]:
        out_dir = self.composition_dir(project_id, dir_name)
        outputs: dict[str, OutputFile] = {}
        formats = set(formats)
        if "md" in formats:
            path = out_dir / f"{dir_name}.md"
            size = await async_write_file(path, render_composition_markdown(name, contents, created_at))
            outputs["md"] = OutputFile(path=str(path), size=size)
        if "jsonl" in formats:
            path = out_dir / f"{dir_name}.jsonl"
            size = await async_write_file(path, render_composition_jsonl(name, contents, created_at))
            outputs["jsonl"] = OutputFile(path=str(path), size=size)
        path = out_dir / "composition.json"
        size = await async_write_json(path, composition_metadata(name, created_at, components, contents))
        outputs["metadata"] = OutputFile(path=str(path), size=size)
        return outputs

    def remove_composition(self, project_id: str, dir_name: str) -> bool:
        out_dir = self.composition_dir(project_id, dir_name)
        if not out_dir.is_dir():
            return False
        shutil.rmtree(out_dir)
        return True
