"""
Learning Engine
===============

Learns from human approvals, rejections and edits so that gated work can be
auto-approved once the same kind of item has been approved often enough.

1. Keywords are extracted from the item text
2. Keywords are matched against stored patterns of the same kind
3. A matching pattern's confidence is moved toward 1 on success and toward 0
   on failure (asymmetric exponential update, alpha > beta)
4. Items matching a trusted approval pattern, with no trusted rejection
   pattern, are auto-approved

Patterns live in the `learned_patterns` table and are only ever mutated here.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select

from sprintforge.config import OrchestrationConfig
from sprintforge.db.models import PatternModel
from sprintforge.db.store import DurableStore
from sprintforge.events import EventEmitter
from sprintforge.models import PatternKind, as_utc, new_id, utc_now

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 4
MIN_SIMILARITY = 0.3

# Successes approach but never reach certainty
MAX_CONFIDENCE = 1.0 - 1e-6

STOP_WORDS = frozenset({
    "a", "an", "and", "as", "at", "be", "by", "for", "from", "in", "is", "it",
    "of", "on", "or", "that", "the", "to", "with", "user", "can", "should",
    "this", "these", "those", "have", "will", "would", "could", "when", "then",
    "than", "into", "onto", "about", "there", "their", "they", "them", "what",
    "which", "while", "were", "been", "being", "also", "each", "some", "such",
    "very", "your", "want", "need", "needs", "able", "must", "does", "just",
    "only", "other", "more", "most", "make", "sure", "given", "after", "before",
})

_PUNCTUATION = re.compile(r"[^\w\s]")

_USER_STORY_TEMPLATE = re.compile(r"as an? .* i want .* so that", re.IGNORECASE | re.DOTALL)
_GIVEN_WHEN_THEN = re.compile(r"given .* when .* then", re.IGNORECASE | re.DOTALL)


# =============================================================================
# Pure helpers
# =============================================================================

def extract_keywords(text: str) -> list[str]:
    """
    Normalize text into at most ten matching tokens.

    Lowercases, strips punctuation, splits on whitespace, drops short tokens and
    stop words, and deduplicates preserving first-seen order.
    """
    cleaned = _PUNCTUATION.sub(" ", (text or "").lower())
    keywords: list[str] = []
    for token in cleaned.split():
        if len(token) < MIN_KEYWORD_LENGTH or token in STOP_WORDS or token in keywords:
            continue
        keywords.append(token)
        if len(keywords) == MAX_KEYWORDS:
            break
    return keywords


def updated_confidence(confidence: float, success: bool, alpha: float, beta: float) -> float:
    """Success: c + (1 - c) * alpha. Failure: c - c * beta. Clamped to [0, MAX_CONFIDENCE]."""
    if success:
        confidence = confidence + (1.0 - confidence) * alpha
    else:
        confidence = confidence - confidence * beta
    return min(MAX_CONFIDENCE, max(0.0, confidence))


def detect_casing_style(text: str) -> str:
    if text == text.upper():
        return "UPPER_CASE"
    if text == text.lower():
        return "lower_case"
    if all(not word or word[0] == word[0].upper() for word in text.split(" ")):
        return "Title Case"
    return "Mixed Case"


def detect_format_differences(original: str, corrected: str) -> dict[str, Any]:
    """Describe how a human reshaped `original` into `corrected`."""
    differences: dict[str, Any] = {}

    if original != corrected and original.lower() == corrected.lower():
        differences["casing_changed"] = True
        differences["new_casing"] = detect_casing_style(corrected)

    original_words = original.split()
    corrected_words = corrected.split()
    if len(corrected_words) > len(original_words):
        if corrected_words[0] not in original_words:
            differences["prefix"] = corrected_words[0]
        if corrected_words[-1] not in original_words:
            differences["suffix"] = corrected_words[-1]

    if _USER_STORY_TEMPLATE.search(corrected):
        differences["format"] = "user-story-template"
    elif _GIVEN_WHEN_THEN.search(corrected):
        differences["format"] = "given-when-then"

    return differences


# =============================================================================
# Data classes
# =============================================================================

@dataclass
class Pattern:
    """A learned keyword-to-outcome association."""

    id: str
    project_id: str
    kind: PatternKind
    keywords: list[str] = field(default_factory=list)

    # Pattern statistics
    confidence: float = 0.5
    usage_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_used_at: Optional[datetime] = None

    # What was learned
    item_type: str = ""
    original_text: Optional[str] = None
    corrected_text: Optional[str] = None
    context: dict = field(default_factory=dict)

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "kind": self.kind.value,
            "keywords": list(self.keywords),
            "confidence": self.confidence,
            "usage_count": self.usage_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "item_type": self.item_type,
            "original_text": self.original_text,
            "corrected_text": self.corrected_text,
            "context": self.context,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: PatternModel) -> "Pattern":
        return cls(
            id=row.id,
            project_id=row.project_id,
            kind=PatternKind(row.kind),
            keywords=list(row.keywords or []),
            confidence=row.confidence,
            usage_count=row.usage_count or 0,
            success_count=row.success_count or 0,
            failure_count=row.failure_count or 0,
            last_used_at=as_utc(row.last_used_at),
            item_type=row.item_type or "",
            original_text=row.original_text,
            corrected_text=row.corrected_text,
            context=dict(row.context or {}),
            created_at=as_utc(row.created_at) or utc_now(),
            updated_at=as_utc(row.updated_at) or utc_now(),
        )


@dataclass
class PatternMatch:
    """A pattern together with its keyword overlap against some text."""
    pattern: Pattern
    shared_keywords: int
    similarity: float


@dataclass
class AutoApproveDecision:
    """Result of should_auto_approve()."""
    auto_approve: bool
    confidence: float = 0.0
    pattern: Optional[Pattern] = None
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "auto_approve": self.auto_approve,
            "confidence": self.confidence,
            "pattern_id": self.pattern.id if self.pattern else None,
            "reason": self.reason,
        }


# =============================================================================
# Engine
# =============================================================================

class LearningEngine:
    """
    Confidence-based pattern learner.

    Provides:
    - learn_from_approval / learn_from_rejection / learn_from_edit
    - should_auto_approve for the scheduler's approval gate
    - get_suggested_format from learned edits
    - record_outcome for auto-approved work that later succeeded or failed
    - cleanup_low_confidence_patterns
    """

    def __init__(
        self,
        store: DurableStore,
        config: Optional[OrchestrationConfig] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.store = store
        self.config = config or OrchestrationConfig()
        self.events = events or EventEmitter("learning")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_patterns(
        self,
        project_id: str,
        kind: Optional[PatternKind] = None,
        min_confidence: Optional[float] = None,
    ) -> list[Pattern]:
        stmt = select(PatternModel).where(PatternModel.project_id == project_id)
        if kind is not None:
            stmt = stmt.where(PatternModel.kind == kind.value)
        if min_confidence is not None:
            stmt = stmt.where(PatternModel.confidence >= min_confidence)
        stmt = stmt.order_by(PatternModel.updated_at.desc())

        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [Pattern.from_row(row) for row in rows]

    async def get_pattern(self, pattern_id: str) -> Optional[Pattern]:
        async with self.store.session() as session:
            row = await session.get(PatternModel, pattern_id)
        return Pattern.from_row(row) if row else None

    async def get_top_patterns(self, project_id: str, limit: int = 10) -> list[Pattern]:
        stmt = (
            select(PatternModel)
            .where(PatternModel.project_id == project_id)
            .order_by(PatternModel.confidence.desc(), PatternModel.usage_count.desc())
            .limit(limit)
        )
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [Pattern.from_row(row) for row in rows]

    async def find_matches(
        self,
        project_id: str,
        kind: PatternKind,
        keywords: list[str],
    ) -> list[PatternMatch]:
        """
        Patterns of `kind` sharing enough keywords, best first.

        A pattern matches when it shares at least `min_shared_keywords`
        keywords and the shared keywords cover at least MIN_SIMILARITY of the
        larger keyword set.
        """
        if not keywords:
            return []

        matches = []
        for pattern in await self.get_patterns(project_id, kind):
            if not pattern.keywords:
                continue
            shared = len(set(keywords) & set(pattern.keywords))
            if shared < self.config.min_shared_keywords:
                continue
            similarity = shared / max(len(keywords), len(pattern.keywords))
            if similarity < MIN_SIMILARITY:
                continue
            matches.append(PatternMatch(pattern=pattern, shared_keywords=shared, similarity=similarity))

        matches.sort(key=lambda m: (m.similarity, m.pattern.confidence), reverse=True)
        return matches

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    async def learn_from_approval(
        self,
        project_id: str,
        item_type: str,
        text: str,
        metadata: Optional[dict] = None,
    ) -> Optional[Pattern]:
        """
        Reinforce (or create) the approval pattern matching `text`.

        Text with no usable keywords is recorded as a learning event only.
        """
        await self._emit_learning_event("approval", project_id, item_type, text=text, metadata=metadata or {})
        keywords = extract_keywords(text)

        matches = await self.find_matches(project_id, PatternKind.APPROVAL, keywords)
        if matches:
            return await self.record_outcome(matches[0].pattern.id, success=True)

        if not keywords:
            logger.debug("No keywords in approved %s, nothing to learn", item_type)
            return None

        return await self._create_pattern(
            project_id,
            PatternKind.APPROVAL,
            keywords,
            item_type=item_type,
            original_text=text,
            context=dict(metadata or {}),
        )

    async def learn_from_rejection(
        self,
        project_id: str,
        item_type: str,
        text: str,
        reason: Optional[str] = None,
    ) -> Optional[Pattern]:
        """
        Weaken approval patterns matching `text` and reinforce (or create) the
        matching rejection pattern.
        """
        await self._emit_learning_event("rejection", project_id, item_type, text=text, reason=reason)
        keywords = extract_keywords(text)

        for match in await self.find_matches(project_id, PatternKind.APPROVAL, keywords):
            await self.record_outcome(match.pattern.id, success=False)

        matches = await self.find_matches(project_id, PatternKind.REJECTION, keywords)
        if matches:
            return await self.record_outcome(matches[0].pattern.id, success=True)

        if not keywords:
            logger.debug("No keywords in rejected %s, nothing to learn", item_type)
            return None

        return await self._create_pattern(
            project_id,
            PatternKind.REJECTION,
            keywords,
            item_type=item_type,
            original_text=text,
            context={"reason": reason} if reason else {},
        )

    async def learn_from_edit(
        self,
        project_id: str,
        item_type: str,
        original: str,
        corrected: str,
    ) -> Optional[Pattern]:
        """
        Learn how a human reshaped an item.

        An existing edit pattern is reinforced when it has the same detected
        template, or shares keywords with the corrected text; its suggested
        text becomes the latest correction.

        Corrections with neither keywords nor a template are not stored.
        """
        await self._emit_learning_event(
            "edit", project_id, item_type, original=original, corrected=corrected,
        )
        keywords = extract_keywords(corrected)
        differences = detect_format_differences(original, corrected)
        template = differences.get("format")

        existing: Optional[Pattern] = None
        if template:
            for pattern in await self.get_patterns(project_id, PatternKind.EDIT_FORMAT):
                if pattern.context.get("format") == template and pattern.item_type == item_type:
                    existing = pattern
                    break
        if existing is None:
            matches = await self.find_matches(project_id, PatternKind.EDIT_FORMAT, keywords)
            if matches:
                existing = matches[0].pattern

        if existing is not None:
            return await self.record_outcome(
                existing.id,
                success=True,
                corrected_text=corrected,
                context=differences,
            )

        if not keywords and not template:
            logger.debug("No keywords or template in edited %s, nothing to learn", item_type)
            return None

        return await self._create_pattern(
            project_id,
            PatternKind.EDIT_FORMAT,
            keywords,
            item_type=item_type,
            original_text=original,
            corrected_text=corrected,
            context=differences,
        )

    async def record_outcome(
        self,
        pattern_id: str,
        success: bool,
        *,
        corrected_text: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Optional[Pattern]:
        """
        Apply one success/failure observation to a pattern.

        The read-modify-write runs inside a single store write so concurrent
        updates to the same pattern cannot lose an observation.
        """
        alpha = self.config.learning_rate_success
        beta = self.config.learning_rate_failure

        async def _update(session):
            row = await session.get(PatternModel, pattern_id)
            if row is None:
                return None
            row.confidence = updated_confidence(row.confidence, success, alpha, beta)
            row.usage_count = (row.usage_count or 0) + 1
            if success:
                row.success_count = (row.success_count or 0) + 1
            else:
                row.failure_count = (row.failure_count or 0) + 1
            now = utc_now()
            row.last_used_at = now
            row.updated_at = now
            if corrected_text is not None:
                row.corrected_text = corrected_text
            if context:
                row.context = {**(row.context or {}), **context}
            return Pattern.from_row(row)

        pattern = await self.store.write(_update, label="update pattern confidence")
        if pattern is None:
            logger.warning("Pattern not found: %s", pattern_id)
            return None

        await self.events.emit("pattern-updated", {
            "pattern_id": pattern.id,
            "project_id": pattern.project_id,
            "kind": pattern.kind.value,
            "confidence": pattern.confidence,
            "success": success,
        })
        return pattern

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    async def should_auto_approve(self, project_id: str, item_type: str, text: str) -> AutoApproveDecision:
        """
        Decide whether a gated item can skip human review.

        Any matching rejection pattern at or above the rejection threshold
        vetoes approval. Otherwise the best matching approval pattern must meet
        both the approval threshold and the minimum usage count.
        """
        keywords = extract_keywords(text)

        for match in await self.find_matches(project_id, PatternKind.REJECTION, keywords):
            if match.pattern.confidence >= self.config.rejection_threshold:
                return AutoApproveDecision(
                    auto_approve=False,
                    confidence=0.0,
                    pattern=match.pattern,
                    reason="matches rejection pattern",
                )

        matches = await self.find_matches(project_id, PatternKind.APPROVAL, keywords)
        if matches:
            best = matches[0].pattern
            if (
                best.confidence >= self.config.approval_threshold
                and best.usage_count >= self.config.min_usage_for_auto_approve
            ):
                await self._touch(best.id)
                await self.events.emit("auto-approve-triggered", {
                    "pattern_id": best.id,
                    "project_id": project_id,
                    "item_type": item_type,
                    "text": text,
                    "confidence": best.confidence,
                })
                return AutoApproveDecision(
                    auto_approve=True,
                    confidence=best.confidence,
                    pattern=best,
                    reason="matches trusted approval pattern",
                )
            return AutoApproveDecision(auto_approve=False, pattern=best, reason="approval pattern not yet trusted")

        return AutoApproveDecision(auto_approve=False, reason="no matching pattern")

    async def get_suggested_format(self, project_id: str, item_type: Optional[str] = None) -> Optional[str]:
        """Corrected text of the most trusted edit pattern, if trusted enough."""
        stmt = select(PatternModel).where(
            PatternModel.project_id == project_id,
            PatternModel.kind == PatternKind.EDIT_FORMAT.value,
        )
        if item_type is not None:
            stmt = stmt.where(PatternModel.item_type == item_type)
        stmt = stmt.order_by(PatternModel.confidence.desc(), PatternModel.usage_count.desc()).limit(1)

        async with self.store.session() as session:
            row = (await session.execute(stmt)).scalars().first()

        if row is None or row.confidence < self.config.format_threshold:
            return None
        return row.corrected_text or row.original_text

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def cleanup_low_confidence_patterns(self, project_id: str, threshold: Optional[float] = None) -> int:
        """Delete patterns below `threshold`. Returns the deleted count."""
        cutoff = self.config.cleanup_threshold if threshold is None else threshold

        async def _delete(session):
            result = await session.execute(
                delete(PatternModel).where(
                    PatternModel.project_id == project_id,
                    PatternModel.confidence < cutoff,
                )
            )
            return result.rowcount or 0

        deleted = await self.store.write(_delete, label="cleanup low confidence patterns")
        if deleted > 0:
            logger.info("Removed %d low-confidence pattern(s) from %s", deleted, project_id)
            await self.events.emit("patterns-cleaned", {
                "project_id": project_id,
                "deleted_count": deleted,
                "threshold": cutoff,
            })
        return deleted

    async def get_project_stats(self, project_id: str) -> dict:
        """Get statistics about learned patterns for a project."""
        async with self.store.session() as session:
            by_kind_rows = (await session.execute(
                select(PatternModel.kind, func.count())
                .where(PatternModel.project_id == project_id)
                .group_by(PatternModel.kind)
            )).all()
            avg_confidence = (await session.execute(
                select(func.avg(PatternModel.confidence)).where(PatternModel.project_id == project_id)
            )).scalar()
            high_confidence = (await session.execute(
                select(func.count()).where(
                    PatternModel.project_id == project_id,
                    PatternModel.confidence >= self.config.rejection_threshold,
                )
            )).scalar()
            eligible = (await session.execute(
                select(func.count()).where(
                    PatternModel.project_id == project_id,
                    PatternModel.kind == PatternKind.APPROVAL.value,
                    PatternModel.confidence >= self.config.approval_threshold,
                    PatternModel.usage_count >= self.config.min_usage_for_auto_approve,
                )
            )).scalar()

        by_kind = {kind: count for kind, count in by_kind_rows}
        return {
            "total_patterns": sum(by_kind.values()),
            "high_confidence_patterns": high_confidence or 0,
            "auto_approve_eligible_patterns": eligible or 0,
            "average_confidence": float(avg_confidence or 0.0),
            "patterns_by_kind": by_kind,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _create_pattern(
        self,
        project_id: str,
        kind: PatternKind,
        keywords: list[str],
        *,
        item_type: str,
        original_text: Optional[str] = None,
        corrected_text: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> Pattern:
        pattern = Pattern(
            id=new_id("pattern"),
            project_id=project_id,
            kind=kind,
            keywords=keywords,
            confidence=self.config.initial_confidence,
            item_type=item_type,
            original_text=original_text,
            corrected_text=corrected_text,
            context=context or {},
        )

        async def _insert(session):
            session.add(PatternModel(
                id=pattern.id,
                project_id=pattern.project_id,
                kind=pattern.kind.value,
                item_type=pattern.item_type,
                keywords=pattern.keywords,
                original_text=pattern.original_text,
                corrected_text=pattern.corrected_text,
                context=pattern.context,
                confidence=pattern.confidence,
                usage_count=0,
                success_count=0,
                failure_count=0,
                created_at=pattern.created_at,
                updated_at=pattern.updated_at,
            ))

        await self.store.write(_insert, label="create pattern")
        logger.info("Learned %s pattern %s (%s)", kind.value, pattern.id, ", ".join(keywords))
        await self.events.emit("pattern-learned", {
            "pattern_id": pattern.id,
            "project_id": project_id,
            "kind": kind.value,
            "item_type": item_type,
            "keywords": list(keywords),
        })
        return pattern

    async def _touch(self, pattern_id: str) -> None:
        """Stamp last_used_at when a pattern drives an auto-approval."""
        async def _update(session):
            row = await session.get(PatternModel, pattern_id)
            if row is not None:
                row.last_used_at = utc_now()

        await self.store.write(_update, label="record pattern usage")

    async def _emit_learning_event(self, event_type: str, project_id: str, item_type: str, **data: Any) -> None:
        await self.events.emit("learning-event", {
            "type": event_type,
            "project_id": project_id,
            "item_type": item_type,
            **data,
        })


def create_learning_engine(
    store: DurableStore,
    config: Optional[OrchestrationConfig] = None,
    events: Optional[EventEmitter] = None,
) -> LearningEngine:
    """Create a LearningEngine instance."""
    return LearningEngine(store, config, events)
