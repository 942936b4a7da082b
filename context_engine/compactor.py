"""
Context Compactor: pointers, not payloads.

Stores a skill's full output in external storage and hands back a compact
Reference, a short summary and a small key-data excerpt that can stay in
the sequence state without re-fetching the payload.

Usage:
    compactor = ContextCompactor(client, StorageConfig(
        backend="supabase_storage",
        bucket="skill-outputs",
        organization_id="org-123",
    ))

    compaction = await compactor.compact(RawSkillOutput(
        full_data=transcript,
        content_type="transcript",
        meta={"skill_id": "transcription", "execution_time_ms": 840},
    ))
    result = compactor.to_skill_result(
        "transcription", compaction, hints={"flags": ["competitor_mentioned"]},
    )

    # Later, when a caller really needs the full payload:
    full = await compactor.retrieve(result.references[0])
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from context_engine.config.schema import (
    DEFAULT_RULES,
    BackendKind,
    EngineRules,
    StorageConfig,
)
from context_engine.contracts import (
    Reference,
    ReferenceType,
    SkillHints,
    SkillResult,
    SkillSource,
    compact_summary,
    create_skill_result,
    estimate_tokens,
)
from context_engine.exceptions import StorageWriteError
from context_engine.storage import StorageBackend, build_backends, parse_location

logger = logging.getLogger(__name__)


class RawOutputMeta(BaseModel):
    skill_id: str
    execution_time_ms: float = 0
    tokens_used: Optional[int] = None
    model: Optional[str] = None
    sources: Optional[list[SkillSource]] = None


class RawSkillOutput(BaseModel):
    """A skill's output before compaction."""

    full_data: dict[str, Any]
    content_type: ReferenceType
    summary: Optional[str] = None
    key_data_points: Optional[dict[str, Any]] = Field(
        None, description="Kept in context as-is instead of the derived excerpt"
    )
    meta: RawOutputMeta


class CompactionResult(BaseModel):
    reference: Reference
    summary: str
    key_data: dict[str, Any]
    token_estimate: int


def _prune(data: dict[str, Any]) -> dict[str, Any]:
    """Drop None values (one nested level deep) so absent fields stay absent."""
    pruned: dict[str, Any] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, dict):
            value = {k: v for k, v in value.items() if v is not None}
        pruned[key] = value
    return pruned


def _head(value: Any, n: int) -> Optional[list[Any]]:
    return list(value[:n]) if isinstance(value, list) else None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class ContextCompactor:
    """
    Compacts skill outputs for efficient context management.

    Writes go to the backend named in StorageConfig; retrieval dispatches on
    the location's scheme so payloads written by any backend stay readable.
    """

    def __init__(
        self,
        client: Any,
        config: StorageConfig,
        *,
        rules: Optional[EngineRules] = None,
        backends: Optional[dict[BackendKind, StorageBackend]] = None,
    ):
        self.client = client
        self.config = config
        self.rules = rules or DEFAULT_RULES
        self.backends = backends or build_backends(client, config)

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compact(self, output: RawSkillOutput) -> CompactionResult:
        """
        Store the full payload externally and return reference + summary.

        Raises:
            StorageWriteError: If the backend write fails.
        """
        started = time.monotonic()
        content_type = output.content_type

        path = self.generate_storage_path(content_type, output.meta.skill_id)
        summary = compact_summary(
            output.summary or self.generate_summary(output.full_data, content_type),
            self.rules.max_summary_words,
        )
        reference = await self._store(output.full_data, content_type, path, summary)

        if output.key_data_points is not None:
            key_data = output.key_data_points
        else:
            key_data = self.extract_key_data(output.full_data, content_type)

        # Only the compact representation is counted, never the payload
        token_estimate = estimate_tokens({
            "summary": summary,
            "key_data": key_data,
            "reference": {"type": reference.type, "location": reference.location},
        })

        original_size = reference.size_bytes or 0
        logger.info(
            f"Compacted {content_type.value} output of {output.meta.skill_id}",
            extra={
                "skill_id": output.meta.skill_id,
                "original_size": original_size,
                "compact_size": token_estimate * 4,
                "compression_ratio": round(original_size / max(token_estimate * 4, 1), 2),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )

        return CompactionResult(
            reference=reference,
            summary=summary,
            key_data=key_data,
            token_estimate=token_estimate,
        )

    def to_skill_result(
        self,
        skill_id: str,
        compaction: CompactionResult,
        *,
        hints: Optional[SkillHints | dict[str, Any]] = None,
        execution_time_ms: float = 0,
        tokens_used: Optional[int] = None,
        model: Optional[str] = None,
        sources: Optional[list[dict[str, Any]]] = None,
    ) -> SkillResult:
        """Wrap a compaction result in a successful SkillResult."""
        return create_skill_result(
            skill_id,
            compaction.summary,
            compaction.key_data,
            references=[compaction.reference],
            hints=hints,
            execution_time_ms=execution_time_ms,
            tokens_used=tokens_used,
            model=model,
            sources=sources,
        )

    async def compact_or_inline(
        self,
        skill_id: str,
        raw: RawSkillOutput,
        *,
        hints: Optional[SkillHints | dict[str, Any]] = None,
    ) -> SkillResult:
        """
        Offload only when the payload is large enough to matter; small
        payloads become a SkillResult directly with no storage write.
        """
        meta = raw.meta
        sources = [s.model_dump() for s in meta.sources] if meta.sources else None
        if should_compact_data(raw.full_data, self.rules):
            compaction = await self.compact(raw)
            return self.to_skill_result(
                skill_id,
                compaction,
                hints=hints,
                execution_time_ms=meta.execution_time_ms,
                tokens_used=meta.tokens_used,
                model=meta.model,
                sources=sources,
            )

        summary = raw.summary or self.generate_summary(raw.full_data, raw.content_type)
        return quick_compact(
            skill_id,
            raw.full_data,
            summary,
            hints=hints,
            execution_time_ms=meta.execution_time_ms,
            tokens_used=meta.tokens_used,
            model=meta.model,
            max_words=self.rules.max_summary_words,
        )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def generate_storage_path(self, content_type: ReferenceType | str, skill_id: str) -> str:
        """{org}/{content_type}/{skill_id}/{timestamp}-{random}.json"""
        kind = content_type.value if isinstance(content_type, ReferenceType) else content_type
        now = datetime.now(timezone.utc)
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
        random_id = uuid.uuid4().hex[:7]
        return f"{self.config.organization_id}/{kind}/{skill_id}/{timestamp}-{random_id}.json"

    async def _store(
        self,
        data: dict[str, Any],
        content_type: ReferenceType,
        path: str,
        summary: str,
    ) -> Reference:
        body = json.dumps(data, indent=2, ensure_ascii=False, default=str)
        size_bytes = len(body.encode("utf-8"))

        kind = self.config.backend
        backend = self.backends.get(kind)
        if backend is None:
            raise StorageWriteError(
                f"Unknown storage backend: {kind}", backend=str(kind)
            )

        if kind == BackendKind.DATABASE:
            container = self.config.resolved_table
        else:
            container = self.config.resolved_bucket

        try:
            location = await backend.write(
                container,
                path,
                data,
                body=body,
                organization_id=self.config.organization_id,
                reference_type=content_type.value,
                size_bytes=size_bytes,
            )
        except Exception as e:
            logger.error(
                f"Failed to store {content_type.value} payload at {container}/{path}: {e}",
                extra={"backend": backend.scheme},
            )
            raise StorageWriteError(
                f"Failed to store payload: {e}",
                backend=backend.scheme,
                location=f"{container}/{path}",
            ) from e

        return Reference(
            type=content_type,
            location=location,
            summary=summary,
            size_bytes=size_bytes,
            content_type="application/json",
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def retrieve(self, reference: Reference | str) -> Optional[dict[str, Any]]:
        """
        Load the full payload behind a reference.

        Unknown schemes, malformed locations and read errors all return
        None: a missing payload must not crash a caller showing a summary.
        """
        location = reference.location if isinstance(reference, Reference) else reference
        parsed = parse_location(location)
        if parsed is None:
            logger.warning(f"Unknown location format: {location}")
            return None

        backend = next(
            (b for b in self.backends.values() if b.scheme == parsed.scheme), None
        )
        if backend is None:
            logger.warning(f"No storage backend for scheme '{parsed.scheme}': {location}")
            return None

        try:
            return await backend.read(parsed.container, parsed.path)
        except Exception as e:
            logger.error(f"Retrieval failed for {location}: {e}")
            return None

    # ------------------------------------------------------------------
    # Summary generation
    # ------------------------------------------------------------------

    def generate_summary(self, data: dict[str, Any], content_type: ReferenceType | str) -> str:
        summarizers: dict[str, Callable[[dict[str, Any]], list[str]]] = {
            ReferenceType.TRANSCRIPT.value: self._summarize_transcript,
            ReferenceType.ENRICHMENT.value: self._summarize_enrichment,
            ReferenceType.ANALYSIS.value: self._summarize_analysis,
            ReferenceType.DRAFT.value: self._summarize_draft,
        }
        kind = content_type.value if isinstance(content_type, ReferenceType) else content_type
        summarizer = summarizers.get(kind)
        if summarizer is None:
            return self._generic_summary(data)

        parts = summarizer(data)
        if not parts:
            return self._generic_summary(data)
        return ". ".join(parts) + "."

    def _summarize_transcript(self, data: dict[str, Any]) -> list[str]:
        parts: list[str] = []

        if data.get("duration_mins"):
            parts.append(f"{data['duration_mins']} min call")

        speakers = data.get("speakers")
        if isinstance(speakers, list):
            names = []
            for speaker in speakers:
                if not isinstance(speaker, dict) or not speaker.get("name"):
                    continue
                role = speaker.get("role")
                if role and role != "internal":
                    names.append(f"{speaker['name']} ({role})")
                else:
                    names.append(str(speaker["name"]))
            if names:
                parts.append(f"with {', '.join(names[:3])}")

        company = data.get("company_name") or _as_dict(data.get("company")).get("name")
        if company:
            parts.append(f"at {company}")

        topics = data.get("topics_discussed")
        if isinstance(topics, list) and topics:
            parts.append(f"Discussed: {', '.join(str(t) for t in topics[:4])}")

        if data.get("sentiment"):
            parts.append(f"Sentiment: {data['sentiment']}")

        return parts

    def _summarize_enrichment(self, data: dict[str, Any]) -> list[str]:
        parts: list[str] = []

        company = data.get("company")
        if isinstance(company, dict):
            if company.get("name"):
                parts.append(f"{company['name']}: {company.get('industry') or 'Unknown industry'}")
            if company.get("employee_count"):
                parts.append(f"{company['employee_count']} employees")
            if company.get("funding_stage"):
                amount = company.get("funding_amount")
                funding = ""
                if isinstance(amount, (int, float)) and not isinstance(amount, bool) and amount:
                    funding = f" (${amount / 1_000_000:.1f}M)"
                elif amount:
                    funding = f" ({amount})"
                parts.append(f"{company['funding_stage']}{funding}")

        tech_stack = data.get("tech_stack")
        if isinstance(tech_stack, list) and tech_stack:
            parts.append(f"Tech: {', '.join(str(t) for t in tech_stack[:4])}")

        hiring = _as_dict(data.get("signals")).get("hiring")
        if isinstance(hiring, list):
            parts.append(f"Hiring {len(hiring)} roles")

        icp_score = data.get("icp_score")
        if isinstance(icp_score, (int, float)) and not isinstance(icp_score, bool):
            parts.append(f"ICP score: {icp_score * 100:.0f}%")

        return parts

    def _summarize_analysis(self, data: dict[str, Any]) -> list[str]:
        parts: list[str] = []

        if data.get("meeting_type"):
            parts.append(f"{data['meeting_type']} meeting")
        if data.get("overall_sentiment"):
            parts.append(f"Overall: {data['overall_sentiment']}")
        if isinstance(data.get("objections"), list):
            parts.append(f"{len(data['objections'])} objection(s) identified")
        if isinstance(data.get("action_items"), list):
            parts.append(f"{len(data['action_items'])} action item(s)")
        if data.get("deal_stage_signal"):
            parts.append(f"Stage signal: {data['deal_stage_signal']}")
        if data.get("next_step_recommendation"):
            parts.append(f"Recommended: {data['next_step_recommendation']}")

        return parts

    def _summarize_draft(self, data: dict[str, Any]) -> list[str]:
        parts: list[str] = []

        if data.get("draft_type"):
            parts.append(f"{data['draft_type']} drafted")
        if data.get("subject"):
            parts.append(f'Subject: "{data["subject"]}"')
        if data.get("tone"):
            parts.append(f"Tone: {data['tone']}")
        if data.get("word_count"):
            parts.append(f"{data['word_count']} words")
        if isinstance(data.get("personalization_elements"), list):
            parts.append(
                f"Personalized with {len(data['personalization_elements'])} elements"
            )

        return parts

    def _generic_summary(self, data: dict[str, Any]) -> str:
        preview = []
        for key in list(data.keys())[:5]:
            value = data[key]
            if isinstance(value, list):
                preview.append(f"{key}: {len(value)} items")
            elif isinstance(value, dict):
                preview.append(f"{key}: object")
            else:
                preview.append(f"{key}: {str(value)[:30]}")
        return f"Data contains: {', '.join(preview)}"

    # ------------------------------------------------------------------
    # Key data extraction
    # ------------------------------------------------------------------

    def extract_key_data(
        self, data: dict[str, Any], content_type: ReferenceType | str
    ) -> dict[str, Any]:
        extractors: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            ReferenceType.TRANSCRIPT.value: self._transcript_key_data,
            ReferenceType.ENRICHMENT.value: self._enrichment_key_data,
            ReferenceType.ANALYSIS.value: self._analysis_key_data,
            ReferenceType.DRAFT.value: self._draft_key_data,
        }
        kind = content_type.value if isinstance(content_type, ReferenceType) else content_type
        extractor = extractors.get(kind, self._generic_key_data)
        return _prune(extractor(data))

    def _transcript_key_data(self, data: dict[str, Any]) -> dict[str, Any]:
        speakers = _head(data.get("speakers"), 5)
        return {
            "duration_mins": data.get("duration_mins"),
            "speakers": [
                {
                    "name": s.get("name"),
                    "role": s.get("role"),
                    "talk_time_pct": s.get("talk_time_pct"),
                }
                for s in speakers
                if isinstance(s, dict)
            ] if speakers is not None else None,
            "key_quotes": _head(data.get("key_quotes"), 5),
            "topics_discussed": _head(data.get("topics_discussed"), 6),
            "sentiment": data.get("sentiment"),
        }

    def _enrichment_key_data(self, data: dict[str, Any]) -> dict[str, Any]:
        company = data.get("company")
        signals = _as_dict(data.get("signals"))
        return {
            "company": {
                "name": company.get("name"),
                "industry": company.get("industry"),
                "employee_count": company.get("employee_count"),
                "funding_stage": company.get("funding_stage"),
            } if isinstance(company, dict) else None,
            "tech_stack": _head(data.get("tech_stack"), 6),
            "icp_score": data.get("icp_score"),
            "icp_match_reasons": _head(data.get("icp_match_reasons"), 4),
            "signals": {
                "hiring": _head(signals.get("hiring"), 3),
                "growth_indicators": _head(signals.get("growth_indicators"), 3),
            },
        }

    def _analysis_key_data(self, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "meeting_type": data.get("meeting_type"),
            "overall_sentiment": data.get("overall_sentiment"),
            "buying_signals": _head(data.get("buying_signals"), 3),
            "objections": _head(data.get("objections"), 3),
            "action_items": _head(data.get("action_items"), 5),
            "stakeholders": _head(data.get("stakeholders"), 4),
            "deal_stage_signal": data.get("deal_stage_signal"),
            "next_step_recommendation": data.get("next_step_recommendation"),
            "risk_flags": data.get("risk_flags"),
        }

    def _draft_key_data(self, data: dict[str, Any]) -> dict[str, Any]:
        return {
            "draft_type": data.get("draft_type"),
            "subject": data.get("subject"),
            "preview": data.get("preview"),
            "tone": data.get("tone"),
            "cta": data.get("cta"),
            "personalization_elements": _head(data.get("personalization_elements"), 5),
        }

    def _generic_key_data(self, data: dict[str, Any]) -> dict[str, Any]:
        key_data: dict[str, Any] = {}
        for key in list(data.keys())[:8]:
            value = data[key]
            if isinstance(value, list):
                key_data[key] = value[:5]
            elif isinstance(value, dict):
                # First-level properties only
                key_data[key] = {k: value[k] for k in list(value.keys())[:3]}
            else:
                key_data[key] = value
        return key_data


# ─── Module helpers ───────────────────────────────────────────────────


def create_context_compactor(
    client: Any,
    config: StorageConfig,
    rules: Optional[EngineRules] = None,
) -> ContextCompactor:
    return ContextCompactor(client, config, rules=rules)


def quick_compact(
    skill_id: str,
    data: dict[str, Any],
    summary: str,
    *,
    hints: Optional[SkillHints | dict[str, Any]] = None,
    execution_time_ms: float = 0,
    tokens_used: Optional[int] = None,
    model: Optional[str] = None,
    max_words: int = 100,
) -> SkillResult:
    """Build a SkillResult for a small payload without any storage write."""
    return create_skill_result(
        skill_id,
        compact_summary(summary, max_words),
        data,
        hints=hints,
        execution_time_ms=execution_time_ms,
        tokens_used=tokens_used,
        model=model,
    )


def should_compact_data(data: dict[str, Any], rules: Optional[EngineRules] = None) -> bool:
    """True when data would cost more than twice the per-result token budget."""
    rules = rules or DEFAULT_RULES
    return estimate_tokens(data) > rules.token_budgets.skill_result * 2
