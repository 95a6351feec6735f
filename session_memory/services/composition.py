"""Composition engine.

Builds a named context from one or more sessions under a token budget:

1. split the budget across components (after reserving header overhead)
2. per component, use the requested version, or score the available
   versions (``auto``) or the versions of every part (``auto-parts``)
3. concatenate the chosen messages in component order, parts ascending
4. write the artifacts and record the composition in the manifest

Scoring is multiplicative, every factor in (0, 1]. Versions are never
modified; a component whose versions all score too low either gets a new
compression (``allow_new_compressions``) or fails with
NEW_COMPRESSION_REQUIRED.
"""

import math
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..config.manager import get_config
from ..models.manifest import (
    CompositionComponent,
    CompositionRecord,
    KeepitStats,
    Manifest,
    MessageRange,
    SelectedPart,
    SessionRecord,
)
from ..models.message import Message, parse_timestamp, utc_now_iso
from ..models.settings import CAMEL_CONFIG, ModelName
from ..utils.errors import (
    ContentError,
    ErrorCode,
    NotFoundError,
    SessionNotFoundError,
    ValidationError,
)
from ..utils.file_utils import async_read_file
from ..utils.logger import bind_operation_context, get_logger, log_execution
from . import delta as parts
from .artifacts import ArtifactStore, ComponentContent
from .manifest_store import ManifestStore, get_manifest_store
from .messages import MessageLoader
from .orchestrator import CompressionOrchestrator
from .versions import ORIGINAL_VERSION

logger = get_logger(__name__)

AUTO = "auto"
AUTO_PARTS = "auto-parts"
ALLOCATION_STRATEGIES = ("equal", "proportional", "recency", "inverse-recency", "custom")
CONTENT_FORMATS = {
    "md": "text/markdown",
    "jsonl": "application/x-ndjson",
    "metadata": "application/json",
}


class ComponentRequest(BaseModel):
    """One requested component: a session plus which of its versions to use."""

    session_id: str
    version_id: str = Field(default=AUTO, description="'auto', 'auto-parts', 'original' or a version id")
    use_part_selection: bool = False
    weight: float = Field(default=1.0, gt=0)
    recompress_settings: dict[str, Any] | None = None

    model_config = CAMEL_CONFIG


class CompositionRequest(BaseModel):
    name: str = ""
    description: str = ""
    components: list[ComponentRequest] = Field(default_factory=list)
    total_token_budget: int = 0
    allocation_strategy: str = "equal"
    output_format: Literal["md", "jsonl", "both"] = "both"
    model: ModelName = "opus"
    allow_new_compressions: bool = False
    preferred_ratio: float | None = Field(default=None, gt=0)
    preserve_keepits: bool = True
    prefer_recent: bool = False

    model_config = CAMEL_CONFIG


@dataclass
class SelectionCriteria:
    max_tokens: int | None = None
    preferred_ratio: float | None = None
    preserve_keepits: bool = False
    prefer_recent: bool = False


@dataclass
class Candidate:
    """A selectable version: a compression record or the unmodified original."""

    version_id: str
    output_tokens: int
    output_messages: int
    compression_ratio: float
    keepit_stats: KeepitStats | None = None
    created_at: str | None = None
    is_original: bool = False
    part_number: int | None = None
    message_range: MessageRange | None = None

    @classmethod
    def from_record(cls, record) -> "Candidate":
        return cls(
            version_id=record.version_id,
            output_tokens=record.output_tokens,
            output_messages=record.output_messages,
            compression_ratio=record.compression_ratio,
            keepit_stats=record.keepit_stats,
            created_at=record.created_at,
            part_number=record.part_number or 1,
            message_range=record.message_range,
        )

    @classmethod
    def original(cls, session: SessionRecord) -> "Candidate":
        return cls(
            version_id=ORIGINAL_VERSION,
            output_tokens=session.original_tokens,
            output_messages=session.original_messages,
            compression_ratio=1.0,
            created_at=session.registered_at,
            is_original=True,
            part_number=1,
            message_range=MessageRange(
                start_index=0,
                end_index=session.original_messages,
                message_count=session.original_messages,
                start_timestamp=session.first_timestamp,
                end_timestamp=session.last_timestamp,
            ),
        )

    def to_part(self) -> SelectedPart:
        return SelectedPart(
            part_number=self.part_number or 1,
            version_id=self.version_id,
            output_tokens=self.output_tokens,
            output_messages=self.output_messages,
            is_original=self.is_original,
            message_range=self.message_range,
        )


def score_version(candidate: Candidate, criteria: SelectionCriteria, now: datetime | None = None) -> float:
    """Score in (0, 1]; higher is better.

    Args:
        candidate: Version to score
        criteria: Budget and preferences
        now: Reference time for the recency factor
    """
    score = 1.0

    if criteria.max_tokens:
        if candidate.output_tokens > criteria.max_tokens:
            score *= 0.1
        else:
            score *= 0.5 + 0.5 * (candidate.output_tokens / criteria.max_tokens)

    if criteria.preferred_ratio:
        diff = abs(candidate.compression_ratio - criteria.preferred_ratio)
        score *= max(0.5, 1 - diff / 50)

    if criteria.preserve_keepits and candidate.keepit_stats is not None:
        rate = candidate.keepit_stats.preservation_rate
        if rate is not None:
            score *= 0.5 + 0.5 * rate

    if criteria.prefer_recent and candidate.created_at:
        created = parse_timestamp(candidate.created_at)
        if created is not None:
            age_days = ((now or datetime.now(timezone.utc)) - created).total_seconds() / 86400
            score *= max(0.9, 1 - age_days / 300)

    return score


def select_best_version(
    session: SessionRecord,
    criteria: SelectionCriteria,
    threshold: float | None = None,
) -> Candidate | None:
    """Highest-scoring version of a single-part session.

    The original competes only when it fits the budget. Returns None when
    nothing reaches ``threshold``: a new compression is needed.
    """
    if threshold is None:
        threshold = get_config().composition.acceptance_threshold
    candidates = [Candidate.from_record(r) for r in session.compressions]
    if not criteria.max_tokens or session.original_tokens <= criteria.max_tokens:
        candidates.insert(0, Candidate.original(session))
    if not candidates:
        return None
    best = max(candidates, key=lambda c: score_version(c, criteria))
    if score_version(best, criteria) >= threshold:
        return best
    return None


def find_best_fitting_version(session: SessionRecord, max_tokens: int) -> Candidate | None:
    """Largest existing version within ``max_tokens``, original first; never compresses."""
    if session.original_tokens <= max_tokens:
        return Candidate.original(session)
    fitting = [r for r in session.compressions if r.output_tokens <= max_tokens]
    if not fitting:
        return None
    return Candidate.from_record(max(fitting, key=lambda r: r.output_tokens))


def select_best_versions_for_parts(
    session: SessionRecord,
    criteria: SelectionCriteria,
    threshold: float | None = None,
) -> list[SelectedPart]:
    """One version per part, ascending part number, under an equal per-part budget.

    A part with no version reaching ``threshold`` falls back to its
    smallest version. A session without parts yields the original as part 1.
    """
    if threshold is None:
        threshold = get_config().composition.part_acceptance_threshold
    grouped = parts.parts_by_number(session)
    if not grouped:
        return [Candidate.original(session).to_part()]

    per_part = math.floor(criteria.max_tokens / len(grouped)) if criteria.max_tokens else None
    part_criteria = SelectionCriteria(
        max_tokens=per_part,
        preferred_ratio=criteria.preferred_ratio,
        preserve_keepits=criteria.preserve_keepits,
        prefer_recent=criteria.prefer_recent,
    )
    selected = []
    for number, versions in grouped.items():
        candidates = [Candidate.from_record(v) for v in versions]
        best = max(candidates, key=lambda c: score_version(c, part_criteria))
        if score_version(best, part_criteria) < threshold:
            best = min(candidates, key=lambda c: c.output_tokens)
            logger.debug(
                "No acceptable version for part, using smallest",
                extra={"session_id": session.session_id, "part_number": number, "version_id": best.version_id},
            )
        best.part_number = number
        selected.append(best.to_part())
    return selected


def total_part_tokens(selected: list[SelectedPart]) -> int:
    return sum(p.output_tokens for p in selected)


def total_part_messages(selected: list[SelectedPart]) -> int:
    return sum(p.output_messages for p in selected)


def check_parts_fit_budget(selected: list[SelectedPart], max_tokens: int) -> dict[str, Any]:
    total = total_part_tokens(selected)
    fits = total <= max_tokens
    return {
        "fits_within_budget": fits,
        "total_tokens": total,
        "max_tokens": max_tokens,
        "overage_tokens": 0 if fits else total - max_tokens,
        "utilization_percent": round(total / max_tokens * 100) if max_tokens > 0 else 0,
        "part_count": len(selected),
    }


def session_part_info(session: SessionRecord) -> dict[str, Any]:
    """Parts of a session with their versions; totals use each part's smallest version."""
    grouped = parts.parts_by_number(session)
    info = []
    total_tokens = 0
    total_messages = 0
    for number, versions in grouped.items():
        smallest = min(versions, key=lambda v: v.output_tokens)
        ranged = next((v.message_range for v in versions if v.message_range), None)
        info.append({
            "part_number": number,
            "message_range": ranged.model_dump() if ranged else None,
            "version_count": len(versions),
            "versions": [
                {
                    "version_id": v.version_id,
                    "compression_level": v.compression_level.value if v.compression_level else None,
                    "output_tokens": v.output_tokens,
                    "output_messages": v.output_messages,
                    "compression_ratio": v.compression_ratio,
                }
                for v in versions
            ],
            "smallest_tokens": smallest.output_tokens,
            "smallest_messages": smallest.output_messages,
        })
        total_tokens += smallest.output_tokens
        total_messages += smallest.output_messages
    return {
        "has_parts": bool(grouped),
        "part_count": len(grouped),
        "parts": info,
        "total_compressed_tokens": total_tokens,
        "total_compressed_messages": total_messages,
    }


@dataclass
class BudgetShare:
    """Allocation input for one component."""

    session_id: str
    original_tokens: int = 0
    weight: float = 1.0


def allocate_token_budget(
    shares: list[BudgetShare],
    total_budget: int,
    strategy: str = "equal",
    overhead_per_component: int | None = None,
) -> list[int]:
    """Split ``total_budget`` across components after reserving header overhead.

    Strategies: ``equal``, ``proportional`` (to original size), ``recency``
    (later components get more), ``inverse-recency``, ``custom`` (by weight).
    Shares are floored, so they never sum past the available budget.

    Raises:
        ValidationError: Unknown strategy
    """
    if not shares:
        return []
    if overhead_per_component is None:
        overhead_per_component = get_config().composition.overhead_tokens_per_component
    available = max(0, total_budget - len(shares) * overhead_per_component)
    count = len(shares)

    if strategy == "equal":
        weights = [1.0] * count
    elif strategy == "proportional":
        weights = [float(s.original_tokens) for s in shares]
        if sum(weights) == 0:
            weights = [1.0] * count
    elif strategy == "recency":
        weights = [float(i + 1) for i in range(count)]
    elif strategy == "inverse-recency":
        weights = [float(count - i) for i in range(count)]
    elif strategy == "custom":
        weights = [s.weight or 1.0 for s in shares]
    else:
        raise ValidationError(
            f"Unknown allocation strategy: {strategy}. Must be one of: {', '.join(ALLOCATION_STRATEGIES)}",
            field="allocation_strategy",
            value=strategy,
        )

    total_weight = sum(weights)
    return [math.floor(w / total_weight * available) for w in weights]


def suggest_allocation(shares: list[BudgetShare], total_budget: int) -> dict[str, Any]:
    """Recommend a strategy from how the sessions' sizes compare."""
    if not shares:
        return {"strategy": "equal", "reasoning": "No sessions.", "allocations": [], "per_session_budgets": []}
    sizes = [s.original_tokens for s in shares]
    smallest = min(sizes)
    variation = max(sizes) / smallest if smallest > 0 else math.inf

    if variation > 3:
        strategy = "proportional"
        reasoning = "Sessions vary significantly in size; proportional allocation preserves relative detail levels."
    elif len(shares) > 5:
        strategy = "recency"
        reasoning = "Many sessions; recency weighting prioritizes recent context."
    else:
        strategy = "equal"
        reasoning = "Sessions are similar in size; equal allocation is appropriate."

    allocations = allocate_token_budget(shares, total_budget, strategy)
    return {
        "strategy": strategy,
        "reasoning": reasoning,
        "allocations": allocations,
        "per_session_budgets": [
            {
                "session_id": s.session_id,
                "original_tokens": s.original_tokens,
                "allocated_budget": budget,
                "compression_required": s.original_tokens > budget,
            }
            for s, budget in zip(shares, allocations)
        ],
    }


def sanitize_name(name: str) -> str:
    """Lowercase, filesystem-safe directory name (max 64 chars)."""
    cleaned = re.sub(r"[^a-z0-9_-]", "-", name.lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned[:64]


def required_ratio(original_tokens: int, budget: int) -> int:
    """Compression ratio needed to fit ``budget``, clamped to 2..50."""
    needed = math.ceil(original_tokens / budget) if budget > 0 else 50
    return max(2, min(50, needed))


def preset_for_ratio(ratio: int) -> str:
    if ratio > 20:
        return "aggressive"
    if ratio > 10:
        return "standard"
    return "gentle"


@dataclass
class ComponentPlan:
    """How one component will be filled."""

    session_id: str
    order: int
    allocated_budget: int
    action: Literal["use-original", "use-existing", "use-parts", "create-new", "recompress"]
    candidate: Candidate | None = None
    selected_parts: list[SelectedPart] = field(default_factory=list)
    required_ratio: int | None = None
    settings: dict[str, Any] | None = None

    @property
    def version_id(self) -> str | None:
        if self.action == "use-parts":
            return AUTO_PARTS
        return self.candidate.version_id if self.candidate else None

    @property
    def tokens(self) -> int:
        if self.action == "use-parts":
            return total_part_tokens(self.selected_parts)
        return self.candidate.output_tokens if self.candidate else 0

    @property
    def messages(self) -> int:
        if self.action == "use-parts":
            return total_part_messages(self.selected_parts)
        return self.candidate.output_messages if self.candidate else 0


def parse_request(request: "CompositionRequest | dict[str, Any]") -> CompositionRequest:
    if isinstance(request, CompositionRequest):
        return request
    try:
        return CompositionRequest.model_validate(request)
    except PydanticValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(x) for x in first["loc"])
        raise ValidationError(f"Invalid composition request: {where}: {first['msg']}", field=where)


class CompositionEngine:
    """Composes, stores and serves compositions of a project."""

    def __init__(
        self,
        store: ManifestStore | None = None,
        artifacts: ArtifactStore | None = None,
        loader: MessageLoader | None = None,
        orchestrator: CompressionOrchestrator | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Manifest repository
            artifacts: Artifact reader/writer
            loader: Session file reader
            orchestrator: Used for on-the-fly compressions; without it
                components that need one fail with NEW_COMPRESSION_REQUIRED
        """
        self.store = store or get_manifest_store()
        self.artifacts = artifacts or ArtifactStore(self.store.paths)
        self.loader = loader or MessageLoader()
        self.orchestrator = orchestrator
        self.config = get_config().composition

    def _validate(self, request: CompositionRequest) -> None:
        if not request.name or not request.name.strip() or not sanitize_name(request.name):
            raise ValidationError("Composition name is required", field="name", code=ErrorCode.INVALID_NAME)
        if not request.components:
            raise ValidationError(
                "At least one component is required", field="components", code=ErrorCode.NO_COMPONENTS
            )
        self._validate_budget(request)

    def _validate_budget(self, request: CompositionRequest) -> None:
        if request.total_token_budget < self.config.min_total_budget:
            raise ValidationError(
                f"Total token budget must be at least {self.config.min_total_budget}",
                field="total_token_budget",
                value=request.total_token_budget,
                code=ErrorCode.INVALID_BUDGET,
            )

    @staticmethod
    def _check_references(manifest: Manifest, project_id: str, request: CompositionRequest) -> None:
        for component in request.components:
            session = manifest.sessions.get(component.session_id)
            if session is None:
                raise SessionNotFoundError(component.session_id, project_id)
            version_id = component.version_id
            if version_id in (AUTO, AUTO_PARTS, ORIGINAL_VERSION):
                continue
            if session.find_compression(version_id) is None:
                raise NotFoundError(
                    f"Version {version_id} not found for session {component.session_id}",
                    code=ErrorCode.VERSION_NOT_FOUND,
                    details={"session_id": component.session_id, "version_id": version_id},
                )

    def _allocate(self, manifest: Manifest, request: CompositionRequest) -> list[int]:
        shares = [
            BudgetShare(
                session_id=c.session_id,
                original_tokens=manifest.sessions[c.session_id].original_tokens,
                weight=c.weight,
            )
            for c in request.components
        ]
        return allocate_token_budget(
            shares,
            request.total_token_budget,
            request.allocation_strategy,
            self.config.overhead_tokens_per_component,
        )

    def _plan(
        self,
        session: SessionRecord,
        component: ComponentRequest,
        order: int,
        budget: int,
        request: CompositionRequest,
    ) -> ComponentPlan:
        plan = ComponentPlan(session_id=session.session_id, order=order, allocated_budget=budget, action="use-existing")
        criteria = SelectionCriteria(
            max_tokens=budget,
            preferred_ratio=request.preferred_ratio,
            preserve_keepits=request.preserve_keepits,
            prefer_recent=request.prefer_recent,
        )
        version_id = component.version_id

        if version_id == ORIGINAL_VERSION:
            plan.action = "use-original"
            plan.candidate = Candidate.original(session)
        elif version_id not in (AUTO, AUTO_PARTS):
            plan.candidate = Candidate.from_record(session.find_compression(version_id))
        elif component.recompress_settings is not None:
            plan.action = "recompress"
            plan.settings = component.recompress_settings
        elif component.use_part_selection or version_id == AUTO_PARTS or parts.highest_part_number(session) > 1:
            plan.action = "use-parts"
            plan.selected_parts = select_best_versions_for_parts(
                session, criteria, self.config.part_acceptance_threshold
            )
        else:
            best = select_best_version(session, criteria, self.config.acceptance_threshold)
            if best is None:
                plan.action = "create-new"
                plan.required_ratio = required_ratio(session.original_tokens, budget)
            else:
                plan.action = "use-original" if best.is_original else "use-existing"
                plan.candidate = best
        return plan

    async def _compress_for(self, project_id: str, plan: ComponentPlan, request: CompositionRequest) -> None:
        """Fill a ``create-new`` or ``recompress`` plan with a fresh version."""
        if plan.action == "create-new":
            if not request.allow_new_compressions or self.orchestrator is None:
                raise ContentError(
                    f"Session {plan.session_id} needs a new compression at about {plan.required_ratio}x "
                    f"to fit {plan.allocated_budget} tokens",
                    code=ErrorCode.NEW_COMPRESSION_REQUIRED,
                    details={
                        "session_id": plan.session_id,
                        "required_ratio": plan.required_ratio,
                        "allocated_budget": plan.allocated_budget,
                    },
                )
            settings = {"mode": "tiered", "tierPreset": preset_for_ratio(plan.required_ratio)}
        else:
            if self.orchestrator is None:
                raise ValidationError(
                    "Re-compression requested but no compression orchestrator is configured",
                    field="recompress_settings",
                )
            settings = dict(plan.settings or {})

        settings.update({"model": request.model, "sessionDistance": plan.order + 1})
        logger.info(
            "Compressing session for composition",
            extra={"session_id": plan.session_id, "settings": settings, "required_ratio": plan.required_ratio},
        )
        record = await self.orchestrator.create_compression(project_id, plan.session_id, settings)
        plan.candidate = Candidate.from_record(record)
        plan.action = "use-existing"

    async def _read_candidate(self, project_id: str, session: SessionRecord, part: SelectedPart) -> list[Message]:
        if part.is_original:
            messages = await self.loader.load(session.source_file)
            if part.message_range is None:
                return messages
            return messages[part.message_range.start_index:part.message_range.end_index]
        record = session.find_compression(part.version_id)
        if record is None:
            raise NotFoundError(
                f"Version {part.version_id} not found for session {session.session_id}",
                code=ErrorCode.VERSION_NOT_FOUND,
                details={"session_id": session.session_id, "version_id": part.version_id},
            )
        try:
            return await self.artifacts.read_version_messages(project_id, session.session_id, record.file)
        except FileNotFoundError as e:
            logger.warning(
                "Version artifact missing",
                extra={"session_id": session.session_id, "version_id": record.version_id},
            )
            raise NotFoundError(
                f"Version file not found: {record.file}.jsonl",
                code=ErrorCode.VERSION_FILE_NOT_FOUND,
                details={"session_id": session.session_id, "version_id": record.version_id},
            ) from e

    async def _content_for(self, project_id: str, session: SessionRecord, plan: ComponentPlan) -> ComponentContent:
        if plan.action == "use-parts":
            messages: list[Message] = []
            for part in sorted(plan.selected_parts, key=lambda p: p.part_number):
                messages.extend(await self._read_candidate(project_id, session, part))
            return ComponentContent(
                session_id=session.session_id,
                version_id=AUTO_PARTS,
                is_original=False,
                messages=messages,
                token_contribution=plan.tokens,
                parts=[
                    {
                        "partNumber": p.part_number,
                        "versionId": p.version_id,
                        "outputTokens": p.output_tokens,
                        "isOriginal": p.is_original,
                    }
                    for p in plan.selected_parts
                ],
            )
        candidate = plan.candidate
        messages = await self._read_candidate(project_id, session, candidate.to_part())
        return ComponentContent(
            session_id=session.session_id,
            version_id=candidate.version_id,
            is_original=candidate.is_original,
            messages=messages,
            token_contribution=plan.tokens,
            compression_ratio=None if candidate.is_original else candidate.compression_ratio,
        )

    def _claim_dir(self, manifest: Manifest, project_id: str, name: str, composition_id: str) -> str:
        """Reserve the output directory, suffixing the id when the plain name is taken."""
        base = sanitize_name(name)
        taken = {
            Path(c.output_files["metadata"].path).parent.name
            for c in manifest.compositions.values()
            if "metadata" in c.output_files
        }
        if base not in taken and self.artifacts.claim_composition_dir(project_id, base):
            return base
        suffixed = f"{base}-{composition_id[:8]}"
        if not self.artifacts.claim_composition_dir(project_id, suffixed):
            raise FileExistsError(str(self.artifacts.composition_dir(project_id, suffixed)))
        return suffixed

    @log_execution
    async def compose(self, project_id: str, request: "CompositionRequest | dict[str, Any]") -> CompositionRecord:
        """Build and record a composition.

        Raises:
            ValidationError: INVALID_NAME, NO_COMPONENTS, INVALID_BUDGET, unknown strategy
            NotFoundError: SESSION_NOT_FOUND, VERSION_NOT_FOUND, VERSION_FILE_NOT_FOUND
            ContentError: NEW_COMPRESSION_REQUIRED
        """
        request = parse_request(request)
        self._validate(request)

        with bind_operation_context(project_id=project_id, operation="composition"):
            manifest = await self.store.load(project_id)
            self._check_references(manifest, project_id, request)
            allocations = self._allocate(manifest, request)

            plans = [
                self._plan(manifest.sessions[c.session_id], c, i, allocations[i], request)
                for i, c in enumerate(request.components)
            ]
            fresh = [p for p in plans if p.action in ("create-new", "recompress")]
            for plan in fresh:
                await self._compress_for(project_id, plan, request)
            if fresh:
                manifest = await self.store.load(project_id)

            contents = [
                await self._content_for(project_id, manifest.sessions[p.session_id], p)
                for p in plans
            ]
            components = [
                CompositionComponent(
                    session_id=p.session_id,
                    version_id=p.version_id,
                    order=p.order,
                    token_contribution=p.tokens,
                    message_contribution=p.messages,
                    allocated_budget=p.allocated_budget,
                    selected_parts=p.selected_parts if p.action == "use-parts" else None,
                )
                for p in plans
            ]

            composition_id = str(uuid4())
            created_at = utc_now_iso()
            dir_name = self._claim_dir(manifest, project_id, request.name, composition_id)
            formats = ("md", "jsonl") if request.output_format == "both" else (request.output_format,)
            try:
                output_files = await self.artifacts.write_composition(
                    project_id, dir_name, request.name, contents, components, created_at, formats
                )
                record = CompositionRecord(
                    composition_id=composition_id,
                    name=request.name,
                    description=request.description,
                    created_at=created_at,
                    components=components,
                    allocation_strategy=request.allocation_strategy,
                    total_token_budget=request.total_token_budget,
                    actual_tokens=sum(c.token_contribution for c in components),
                    total_messages=sum(c.message_contribution for c in components),
                    output_files=output_files,
                )
                async with self.store.transaction(project_id) as current:
                    current.compositions[composition_id] = record
            except Exception:
                self.artifacts.remove_composition(project_id, dir_name)
                logger.warning("Composition not recorded, artifacts removed", extra={"composition_id": composition_id})
                raise

            logger.info(
                "Composition created",
                extra={
                    "composition_id": composition_id,
                    "name": request.name,
                    "components": len(components),
                    "actual_tokens": record.actual_tokens,
                    "budget": request.total_token_budget,
                    "new_compressions": len(fresh),
                },
            )
            return record

    async def preview(self, project_id: str, request: "CompositionRequest | dict[str, Any]") -> dict[str, Any]:
        """What ``compose`` would select, without compressing or writing anything."""
        request = parse_request(request)
        manifest = await self.store.load(project_id)
        missing = [c.session_id for c in request.components if c.session_id not in manifest.sessions]
        if missing:
            return {
                "valid": False,
                "error": f"Sessions not found: {', '.join(missing)}",
                "missing_sessions": missing,
            }
        allocations = self._allocate(manifest, request)

        previews = []
        total_estimated = 0
        new_needed = 0
        for i, component in enumerate(request.components):
            session = manifest.sessions[component.session_id]
            budget = allocations[i]
            selected: dict[str, Any]
            if component.version_id not in (AUTO, AUTO_PARTS, ORIGINAL_VERSION) and \
                    session.find_compression(component.version_id) is None:
                selected = {"version_id": component.version_id, "error": "Version not found"}
            else:
                plan = self._plan(session, component, i, budget, request)
                selected = {"version_id": plan.version_id, "action": plan.action}
                if plan.action in ("create-new", "recompress"):
                    new_needed += 1
                    estimated = min(budget, session.original_tokens)
                    selected.update({"estimated_tokens": estimated, "required_ratio": plan.required_ratio})
                    total_estimated += estimated
                else:
                    selected.update({
                        "tokens": plan.tokens,
                        "messages": plan.messages,
                        "fits_in_budget": plan.tokens <= budget,
                    })
                    if plan.action == "use-parts":
                        selected["parts"] = [p.model_dump() for p in plan.selected_parts]
                    elif plan.candidate is not None:
                        selected["compression_ratio"] = plan.candidate.compression_ratio
                    total_estimated += plan.tokens

            part_info = session_part_info(session)
            previews.append({
                "session_id": component.session_id,
                "allocated_budget": budget,
                "original_tokens": session.original_tokens,
                "available_versions": [{"version_id": ORIGINAL_VERSION, "tokens": session.original_tokens}] + [
                    {
                        "version_id": v.version_id,
                        "tokens": v.output_tokens,
                        "compression_ratio": v.compression_ratio,
                        "part_number": v.part_number,
                    }
                    for v in session.compressions
                ],
                "selected_version": selected,
                "part_info": part_info if part_info["has_parts"] else None,
            })

        return {
            "valid": True,
            "allocation_strategy": request.allocation_strategy,
            "total_token_budget": request.total_token_budget,
            "total_estimated_tokens": total_estimated,
            "new_compressions_needed": new_needed,
            "components": previews,
        }

    async def get(self, project_id: str, composition_id: str) -> CompositionRecord:
        composition = await self.store.get_composition(project_id, composition_id)
        if composition is None:
            raise self._not_found(composition_id)
        return composition

    @staticmethod
    def _not_found(composition_id: str) -> NotFoundError:
        return NotFoundError(
            f"Composition not found: {composition_id}",
            code=ErrorCode.COMPOSITION_NOT_FOUND,
            details={"composition_id": composition_id},
        )

    async def list(self, project_id: str) -> list[CompositionRecord]:
        """Compositions, newest first."""
        compositions = await self.store.list_compositions(project_id)
        return sorted(compositions, key=lambda c: c.created_at, reverse=True)

    async def delete(self, project_id: str, composition_id: str) -> dict[str, Any]:
        async with self.store.transaction(project_id) as manifest:
            composition = manifest.compositions.pop(composition_id, None)
            if composition is None:
                raise self._not_found(composition_id)

        files = []
        metadata = composition.output_files.get("metadata")
        if metadata is not None:
            out_dir = Path(metadata.path).parent
            if out_dir.is_dir():
                files = sorted(str(p) for p in out_dir.iterdir())
                shutil.rmtree(out_dir)

        logger.info("Composition deleted", extra={"composition_id": composition_id, "files": len(files)})
        return {"deleted": True, "composition_id": composition_id, "name": composition.name, "files_deleted": files}

    async def get_content(self, project_id: str, composition_id: str, fmt: str = "md") -> dict[str, str]:
        """Artifact text of a composition.

        Returns:
            ``{"content", "content_type", "filename"}``

        Raises:
            ValidationError: INVALID_FORMAT
            NotFoundError: COMPOSITION_NOT_FOUND, COMPOSITION_FILE_NOT_FOUND
        """
        if fmt not in CONTENT_FORMATS:
            raise ValidationError(
                f"Invalid format: {fmt}. Must be one of: {', '.join(CONTENT_FORMATS)}",
                field="format",
                value=fmt,
                code=ErrorCode.INVALID_FORMAT,
            )
        composition = await self.get(project_id, composition_id)
        output = composition.output_files.get(fmt)
        if output is None or not Path(output.path).is_file():
            raise NotFoundError(
                f"Composition file not found: {fmt}",
                code=ErrorCode.COMPOSITION_FILE_NOT_FOUND,
                details={"composition_id": composition_id, "format": fmt},
            )
        return {
            "content": await async_read_file(output.path),
            "content_type": CONTENT_FORMATS[fmt],
            "filename": Path(output.path).name,
        }

    async def record_usage(self, project_id: str, composition_id: str, session_id: str) -> bool:
        """Note that ``session_id`` was seeded from this composition.

        Returns:
            True if the session was newly recorded. A repeat leaves the
            manifest untouched.
        """
        composition = (await self.store.load(project_id)).compositions.get(composition_id)
        if composition is None:
            raise self._not_found(composition_id)
        if session_id in composition.used_in_sessions:
            return False

        async with self.store.transaction(project_id) as manifest:
            composition = manifest.compositions.get(composition_id)
            if composition is None:
                raise self._not_found(composition_id)
            if session_id not in composition.used_in_sessions:
                composition.used_in_sessions.append(session_id)
            composition.last_used = utc_now_iso()
        logger.debug("Composition usage recorded", extra={"composition_id": composition_id, "session_id": session_id})
        return True
