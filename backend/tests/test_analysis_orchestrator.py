"""
Tests for the Analysis Orchestrator.

Covers:
  - Validate-or-fallback policy (bad JSON, missing keys, transport failure)
  - One provider call per analysis, with the feedback text in the prompt
  - Insight persistence: previsit unused, postvisit follow-up flag and brief consumption
  - Trend tallies and prediction persistence
"""

import json
from datetime import datetime, timedelta

import pytest
from conftest import DEFAULT_ANALYSIS, FakeProvider

from analysis.orchestrator import (
    analyze_after_feedback,
    generate_postvisit_review,
    generate_prediction,
    generate_previsit_brief,
    generate_quick_insight,
    generate_trend_report,
    list_insights,
    mark_insight_used,
)
from core.errors import NotFoundError, ProviderError, ValidationError, VisitNotCompleted
from db.models import Insight
from feedback.store import record_store_evaluation, record_tendero_feedback
from visits.scheduler import finish_visit, schedule_visit, start_visit

NOW = datetime(2025, 6, 30, 12, 0, 0)


async def _feedback(db, **overrides):
    fields = {
        "store_id": 5,
        "collaborator_id": "c1",
        "category": "equipment",
        "type": "complaint",
        "urgency": "high",
        "title": "Refrigerador dañado",
        "description": "No enfría desde el lunes",
        "created_at": NOW - timedelta(days=2),
    }
    fields.update(overrides)
    return await record_tendero_feedback(db, fields)


def _json(**overrides) -> str:
    payload = dict(DEFAULT_ANALYSIS)
    payload.update(overrides)
    return json.dumps(payload, ensure_ascii=False)


@pytest.mark.asyncio
class TestFeedbackSummary:
    async def test_no_feedback_skips_provider(self, test_db, catalog, fake_provider):
        outcome = await analyze_after_feedback(test_db, fake_provider, 5, now=NOW)
        assert outcome.generated is False
        assert outcome.reason == "insufficient feedback"
        assert fake_provider.calls == 0
        assert await list_insights(test_db, 5) == []

    async def test_single_call_with_feedback_in_prompt(self, test_db, catalog, fake_provider):
        feedback = await _feedback(test_db)
        outcome = await analyze_after_feedback(test_db, fake_provider, 5, now=NOW)

        assert fake_provider.calls == 1
        assert "Refrigerador dañado" in fake_provider.prompts[0]
        assert "OXXO Norte" in fake_provider.prompts[0]
        assert outcome.generated is True
        assert outcome.payload["priority"] == "alta"
        assert outcome.input_refs == [str(feedback.feedback_id)]

        insights = await list_insights(test_db, 5, analysis_type="feedback_summary")
        assert len(insights) == 1
        assert insights[0].created_at > feedback.created_at

    async def test_window_is_capped_at_ten(self, test_db, catalog, fake_provider):
        for i in range(12):
            await _feedback(test_db, title=f"fb{i}", created_at=NOW - timedelta(hours=i + 1))
        outcome = await analyze_after_feedback(test_db, fake_provider, 5, limit=50, now=NOW)
        assert len(outcome.input_refs) == 10
        assert "fb11" not in fake_provider.prompts[0]

    async def test_english_priority_is_normalized(self, test_db, catalog):
        await _feedback(test_db)
        provider = FakeProvider(responses=[_json(priority="HIGH")])
        outcome = await analyze_after_feedback(test_db, provider, 5, now=NOW)
        assert outcome.payload["priority"] == "alta"

    async def test_missing_priority_falls_back(self, test_db, catalog):
        await _feedback(test_db)
        payload = dict(DEFAULT_ANALYSIS)
        del payload["priority"]
        provider = FakeProvider(responses=[json.dumps(payload)])

        outcome = await analyze_after_feedback(test_db, provider, 5, now=NOW)

        assert outcome.generated is False
        assert outcome.payload["priority"] == "media"
        insights = await list_insights(test_db, 5)
        assert insights[0].generated is False

    async def test_provider_error_falls_back(self, test_db, catalog):
        await _feedback(test_db)
        provider = FakeProvider(error=ProviderError("Gemini request timed out"))
        outcome = await analyze_after_feedback(test_db, provider, 5, now=NOW)
        assert outcome.generated is False
        assert outcome.reason == "Gemini request timed out"
        assert provider.calls == 1

    async def test_unexpected_exception_falls_back(self, test_db, catalog):
        await _feedback(test_db)
        provider = FakeProvider(error=RuntimeError("boom"))
        outcome = await analyze_after_feedback(test_db, provider, 5, now=NOW)
        assert outcome.generated is False
        assert "boom" in outcome.reason

    async def test_non_json_reply_falls_back(self, test_db, catalog):
        await _feedback(test_db)
        provider = FakeProvider(responses=["Lo siento, no puedo ayudar con eso."])
        outcome = await analyze_after_feedback(test_db, provider, 5, now=NOW)
        assert outcome.generated is False


@pytest.mark.asyncio
class TestQuickInsight:
    async def test_returns_provider_text(self, test_db):
        feedback = await _feedback(test_db)
        provider = FakeProvider(responses=["  Falla de refrigeración, atender hoy  "])
        assert await generate_quick_insight(provider, feedback) == "Falla de refrigeración, atender hoy"

    async def test_fallback_names_category(self, test_db):
        feedback = await _feedback(test_db)
        provider = FakeProvider(error=ProviderError("down"))
        text = await generate_quick_insight(provider, feedback)
        assert text == "Feedback sobre equipment - requiere revisión"


@pytest.mark.asyncio
class TestPrevisitBrief:
    async def test_brief_is_persisted_unused(self, test_db, catalog, fake_provider):
        await _feedback(test_db)
        await _feedback(test_db, title="Queja vieja", created_at=NOW - timedelta(days=200))
        await record_store_evaluation(
            test_db, {"store_id": 5, "collaborator_id": "c1", "created_at": NOW - timedelta(days=3)}
        )

        outcome = await generate_previsit_brief(test_db, fake_provider, 5, collaborator_id="c1", now=NOW)

        assert outcome.generated is True
        assert len(outcome.input_refs) == 2
        assert "Refrigerador dañado" in fake_provider.prompts[0]
        assert "Queja vieja" not in fake_provider.prompts[0]

        insight = await test_db.get(Insight, outcome.insight_id)
        assert insight.analysis_type == "previsit"
        assert insight.used is False
        assert insight.collaborator_id == "c1"

    async def test_unknown_store_still_briefs(self, test_db, catalog, fake_provider):
        outcome = await generate_previsit_brief(test_db, fake_provider, 404, collaborator_id="c1", now=NOW)
        assert outcome.generated is True
        assert "Tienda 404" in fake_provider.prompts[0]


async def _completed_visit(db, provider=None, with_brief=False):
    visit = await schedule_visit(
        db, store_id=5, collaborator_id="c1", scheduled_at=datetime.utcnow()
    )
    brief = None
    if with_brief:
        brief = await generate_previsit_brief(db, provider, 5, collaborator_id="c1")
    await start_visit(db, visit.visit_id)
    await finish_visit(db, visit.visit_id, now=datetime.utcnow() + timedelta(minutes=1))
    return visit, brief


@pytest.mark.asyncio
class TestPostvisitReview:
    async def test_requires_completed_visit(self, test_db, catalog, fake_provider):
        visit = await schedule_visit(test_db, store_id=5, collaborator_id="c1", scheduled_at=NOW)
        with pytest.raises(VisitNotCompleted):
            await generate_postvisit_review(test_db, fake_provider, visit.visit_id)
        assert fake_provider.calls == 0

    async def test_high_follow_up_flags_insight(self, test_db, catalog, fake_provider):
        visit, _ = await _completed_visit(test_db)
        outcome = await generate_postvisit_review(test_db, fake_provider, visit.visit_id)

        assert outcome.follow_up_required is True
        insight = await test_db.get(Insight, outcome.insight_id)
        assert insight.follow_up_required is True
        assert insight.visit_id == visit.visit_id

    async def test_fallback_does_not_require_follow_up(self, test_db, catalog):
        visit, _ = await _completed_visit(test_db)
        provider = FakeProvider(error=ProviderError("down"))
        outcome = await generate_postvisit_review(test_db, provider, visit.visit_id)
        assert outcome.generated is False
        assert outcome.payload["follow_up_level"] == "medio"
        assert outcome.follow_up_required is False

    async def test_previsit_brief_is_consumed(self, test_db, catalog, fake_provider):
        visit, brief = await _completed_visit(test_db, fake_provider, with_brief=True)
        await generate_postvisit_review(test_db, fake_provider, visit.visit_id)

        stored_brief = await test_db.get(Insight, brief.insight_id)
        assert stored_brief.used is True
        assert "Temperatura del refrigerador" in fake_provider.prompts[-1]


@pytest.mark.asyncio
class TestTrendsAndPredictions:
    async def test_trend_tallies(self, test_db, catalog, fake_provider):
        await _feedback(test_db, created_at=NOW - timedelta(days=5))
        await _feedback(test_db, created_at=NOW - timedelta(days=40))
        await _feedback(test_db, category="service", type="suggestion", created_at=NOW - timedelta(days=6))
        await _feedback(test_db, created_at=NOW - timedelta(days=400))

        report = await generate_trend_report(test_db, fake_provider, period="3_months", now=NOW)

        assert report.tendero_count == 3
        assert report.by_category_type == {"equipment/complaint": 2, "service/suggestion": 1}
        assert report.by_month == {"2025-05": 1, "2025-06": 2}
        assert report.generated is True
        assert await list_insights(test_db, 5) == []

    async def test_invalid_period(self, test_db, fake_provider):
        with pytest.raises(ValidationError):
            await generate_trend_report(test_db, fake_provider, period="forever")

    async def test_prediction_is_persisted(self, test_db, catalog, fake_provider):
        await _feedback(test_db)
        outcome = await generate_prediction(test_db, fake_provider, 5, now=NOW)
        assert outcome.payload["risk_level"] == "medio"
        insights = await list_insights(test_db, 5, analysis_type="prediction")
        assert [i.insight_id for i in insights] == [outcome.insight_id]

    async def test_mark_used(self, test_db, catalog, fake_provider):
        outcome = await generate_prediction(test_db, fake_provider, 5, now=NOW)
        insight = await mark_insight_used(test_db, str(outcome.insight_id))
        assert insight.used is True

    async def test_mark_used_unknown(self, test_db):
        with pytest.raises(NotFoundError):
            await mark_insight_used(test_db, "not-an-id")
