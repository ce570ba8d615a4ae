"""
Insight Orchestrator

Entry point for the three admin AI operations. Each one follows the same
template:

1. validate the request
2. reserve a rate-limit slot (rejected callers incur no further work)
3. resolve the subject and build a context bundle
4. call the completion service with the prompt and context
5. parse and normalize the reply

Insight and query are generative and fail with ServiceUnavailableError
when the completion service is unconfigured, failing or timed out. Admitted
alerts always succeed: the deterministic threshold checks stand in for the LLM.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from crm_intelligence.core.exceptions import RateLimitError, ServiceUnavailableError, ValidationError
from crm_intelligence.core.models import Alert, AlertSeverity, utcnow
from crm_intelligence.middleware.logging_config import get_logger, log_business_event
from crm_intelligence.services.alerts import threshold_alerts
from crm_intelligence.services.completion import Capability, CompletionClient
from crm_intelligence.services.context_builder import ContextBuilder, ContextBundle, RequestKind
from crm_intelligence.services.rate_limiter import FixedWindowRateLimiter

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "admin-ai"
MAX_QUERY_LENGTH = 1000

QUERY_ANSWER_TYPES = ("text", "metric", "list")

# Severity words the model tends to use in place of ours
SEVERITY_ALIASES = {
    "info": AlertSeverity.INFO,
    "success": AlertSeverity.INFO,
    "warning": AlertSeverity.WARNING,
    "critical": AlertSeverity.CRITICAL,
    "urgent": AlertSeverity.CRITICAL,
}

_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
_ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")


INSIGHT_PROMPT = """You are a CRM analytics assistant for an online store.

Analyze this customer and provide insights in JSON format:

{context}

Return ONLY a JSON object with these fields:
{{
  "summary": "2-3 sentence customer behavior summary",
  "purchasePattern": "1-2 sentences about their buying patterns",
  "churnAnalysis": "1-2 sentences about retention outlook",
  "recommendations": ["action 1", "action 2", "action 3"]
}}"""

QUERY_PROMPT = """You are a business intelligence assistant for an online store.

Store context:
{context}

User question: "{query}"

Return ONLY a JSON object:
{{
  "answer": "Clear, concise answer to the question (2-4 sentences max)",
  "type": "text" or "metric" or "list",
  "data": [{{"label": "Label", "value": "Value"}}] (optional, for metrics/lists)
}}"""

ALERTS_PROMPT = """You are a business intelligence assistant for an online store.

Current store metrics:
{context}

Generate 2-{max_alerts} smart alerts for the admin dashboard. Return ONLY a JSON array:
[
  {{
    "title": "Short alert title",
    "description": "1-2 sentence explanation",
    "type": "info" or "warning" or "critical",
    "action": "Suggested action button text (optional)"
  }}
]"""


@dataclass(frozen=True)
class CustomerInsight:
    customer_id: str
    summary: str
    purchase_pattern: str
    churn_analysis: str
    recommendations: List[str] = field(default_factory=list)
    health: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customerId": self.customer_id,
            "summary": self.summary,
            "purchasePattern": self.purchase_pattern,
            "churnAnalysis": self.churn_analysis,
            "recommendations": list(self.recommendations),
            "health": self.health,
        }


@dataclass(frozen=True)
class QueryAnswer:
    answer: str
    type: str = "text"
    data: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"answer": self.answer, "type": self.type, "data": list(self.data)}


@dataclass(frozen=True)
class AlertsResult:
    alerts: List[Alert]
    source: str = "ai"
    degraded: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "alerts": [alert.to_dict() for alert in self.alerts],
            "source": self.source,
            "degraded": self.degraded,
        }
        if self.reason:
            data["reason"] = self.reason
        return data


class InsightOrchestrator:
    """Runs insight, query and alerts requests against the engine's collaborators."""

    def __init__(
        self,
        context_builder: ContextBuilder,
        completion: CompletionClient,
        rate_limiter: FixedWindowRateLimiter,
        max_alerts: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.context_builder = context_builder
        self.completion = completion
        self.rate_limiter = rate_limiter
        self.max_alerts = max_alerts
        self._clock = clock

    @property
    def capability(self) -> Capability:
        return self.completion.capability

    # ==================== Dispatch ====================

    async def handle(self, request: Mapping[str, Any], caller_id: str = "default") -> Dict[str, Any]:
        """
        Dispatch a caller-boundary request ``{type, query?, customerId?, context?}``.

        Returns the operation's JSON-ready payload.

        Raises:
            ValidationError: missing/unknown ``type`` or missing operation fields
            RateLimitError: caller's quota exhausted
            NotFoundError: insight for an unknown customer
            ServiceUnavailableError: insight/query without a working completion service
        """
        kind = request.get("type")
        if not kind:
            raise ValidationError('Missing "type" field', field="type")

        if kind == RequestKind.INSIGHT.value:
            insight = await self.insight(request.get("customerId"), caller_id)
            return insight.to_dict()
        if kind == RequestKind.QUERY.value:
            answer = await self.query(request.get("query"), caller_id, request.get("context"))
            return answer.to_dict()
        if kind == RequestKind.ALERTS.value:
            result = await self.alerts(caller_id)
            return result.to_dict()

        raise ValidationError(
            f"Unknown type: {kind}", field="type", allowed=[k.value for k in RequestKind]
        )

    # ==================== Operations ====================

    async def insight(self, customer_id: Optional[str], caller_id: str = "default") -> CustomerInsight:
        if not isinstance(customer_id, str) or not customer_id.strip():
            raise ValidationError('Missing "customerId" field', field="customerId")

        self._require_configured(RequestKind.INSIGHT)
        self._admit(caller_id)

        bundle = await self.context_builder.build(RequestKind.INSIGHT, customer_id.strip(), now=self._clock())
        prompt = INSIGHT_PROMPT.format(context=bundle.render(self.context_builder.char_budget))

        outcome = await self.completion.complete(prompt, operation="customer_insight")
        payload = self._parse_object(outcome, "customer_insight")

        recommendations = payload.get("recommendations")
        if not isinstance(recommendations, list):
            recommendations = []

        return CustomerInsight(
            customer_id=bundle.subject_id,
            summary=_text(payload.get("summary")),
            purchase_pattern=_text(payload.get("purchasePattern")),
            churn_analysis=_text(payload.get("churnAnalysis")),
            recommendations=[_text(r) for r in recommendations if _text(r)],
            health=bundle.health.to_dict() if bundle.health else None,
        )

    async def query(
        self,
        query: Optional[str],
        caller_id: str = "default",
        context: Optional[Mapping[str, Any]] = None,
    ) -> QueryAnswer:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError('Missing "query" field', field="query")
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(
                f"Query must be at most {MAX_QUERY_LENGTH} characters", field="query"
            )
        if context is not None and not isinstance(context, Mapping):
            raise ValidationError('"context" must be an object', field="context")

        self._require_configured(RequestKind.QUERY)
        self._admit(caller_id)

        bundle = await self.context_builder.build(RequestKind.QUERY, overrides=context, now=self._clock())
        prompt = QUERY_PROMPT.format(
            context=bundle.render(self.context_builder.char_budget),
            query=query.strip().replace('"', "'"),
        )

        outcome = await self.completion.complete(prompt, operation="natural_language_query")
        payload = self._parse_object(outcome, "natural_language_query")

        answer = _text(payload.get("answer"))
        if not answer:
            raise ServiceUnavailableError(
                "AI service returned an unusable response", capability=Capability.FAILED.value
            )

        answer_type = payload.get("type")
        if answer_type not in QUERY_ANSWER_TYPES:
            answer_type = "text"

        data = []
        for row in payload.get("data") or []:
            if isinstance(row, Mapping) and "label" in row and "value" in row:
                data.append({"label": _text(row["label"]), "value": _text(row["value"])})

        return QueryAnswer(answer=answer, type=answer_type, data=data)

    async def alerts(self, caller_id: str = "default") -> AlertsResult:
        """
        Dashboard alerts; never raises for completion-service problems.

        Raises:
            RateLimitError: quota exhausted, checked before any data is read
        """
        now = self._clock()

        self._admit(caller_id)
        bundle = await self.context_builder.build(RequestKind.ALERTS, now=now)

        if not self.completion.configured:
            return self._fallback_alerts(bundle, Capability.UNCONFIGURED.value)

        prompt = ALERTS_PROMPT.format(
            context=bundle.render(self.context_builder.char_budget),
            max_alerts=self.max_alerts,
        )
        outcome = await self.completion.complete(prompt, operation="smart_alerts")
        if not outcome.ok:
            return self._fallback_alerts(bundle, outcome.capability.value)

        alerts = self._parse_alerts(outcome.text, now)
        if not alerts:
            return self._fallback_alerts(bundle, "unparseable_response")

        return AlertsResult(alerts=alerts[:self.max_alerts])

    # ==================== Helpers ====================

    def _rate_limit_key(self, caller_id: str) -> str:
        return f"{RATE_LIMIT_PREFIX}:{caller_id or 'default'}"

    def _require_configured(self, kind: RequestKind) -> None:
        if not self.completion.configured:
            logger.warning("ai_request_unconfigured", kind=kind.value)
            raise ServiceUnavailableError(
                "AI features require ANTHROPIC_API_KEY to be configured",
                capability=Capability.UNCONFIGURED.value,
            )

    def _admit(self, caller_id: str) -> None:
        admission = self.rate_limiter.check(self._rate_limit_key(caller_id))
        if not admission.admitted:
            raise RateLimitError(
                key=admission.key,
                quota=admission.quota,
                reset_at=admission.reset_at_datetime,
                retry_after=admission.retry_after_seconds,
            )

    def _parse_object(self, outcome, operation: str) -> Dict[str, Any]:
        if not outcome.ok:
            raise ServiceUnavailableError(capability=outcome.capability.value, reason=outcome.error)

        payload = _extract_json(outcome.text, _OBJECT_PATTERN)
        if not isinstance(payload, dict):
            logger.warning("ai_response_unparseable", operation=operation)
            raise ServiceUnavailableError(
                "AI service returned an unusable response", capability=Capability.FAILED.value
            )
        return payload

    def _parse_alerts(self, text: Optional[str], now: datetime) -> List[Alert]:
        rows = _extract_json(text, _ARRAY_PATTERN)
        if not isinstance(rows, list):
            logger.warning("ai_response_unparseable", operation="smart_alerts")
            return []

        alerts = []
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            title = _text(row.get("title"))
            body = _text(row.get("description") or row.get("body"))
            if not title or not body:
                continue
            severity = SEVERITY_ALIASES.get(_text(row.get("type") or row.get("severity")).lower(), AlertSeverity.INFO)
            alerts.append(Alert(
                severity=severity,
                title=title,
                body=body,
                generated_at=now,
                action=_text(row.get("action")) or None,
            ))
        return alerts

    def _fallback_alerts(self, bundle: ContextBundle, reason: str) -> AlertsResult:
        alerts = threshold_alerts(bundle.signals, max_alerts=self.max_alerts)
        log_business_event("alerts_degraded_to_rules", reason=reason, alert_count=len(alerts))
        return AlertsResult(alerts=alerts, source="rules", degraded=True, reason=reason)


def _extract_json(text: Optional[str], pattern: re.Pattern) -> Any:
    """Pull the first JSON object/array out of a reply that may be wrapped in markdown."""
    if not text:
        return None
    found = pattern.search(text)
    if not found:
        return None
    try:
        return json.loads(found.group(0))
    except json.JSONDecodeError:
        return None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value)
