"""
Prompt builders and static fallbacks for each analysis type.

Each analysis type has:
  - a prompt builder that renders the context bundle into text
  - the minimum keys a provider response must carry
  - a static fallback returned when the provider cannot deliver
"""

import json
from datetime import datetime
from typing import Any

FEEDBACK_SUMMARY_KEYS = ("alerts", "insights", "recommendations", "priority")
PREVISIT_KEYS = ("pending_problems", "points_to_verify")
POSTVISIT_KEYS = ("executive_summary", "follow_up_level")
TREND_KEYS = ("main_trends", "strategic_recommendations")
PREDICTION_KEYS = ("risk_level",)


def _fmt_ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "sin fecha"


def _json_block(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, default=str)


def _store_metrics(store: dict[str, Any]) -> str:
    return (
        f"- NPS: {store.get('nps', 0)}\n"
        f"- Fill found rate: {store.get('fill_found_rate', 0)}\n"
        f"- Damage rate: {store.get('damage_rate', 0)}%\n"
        f"- Out of stock: {store.get('out_of_stock', 0)}%\n"
        f"- Tiempo de resolución de quejas: {store.get('complaint_resolution_hours', 0)} hrs\n"
        f"- Días desde la última visita: {store.get('days_since_visit', 'N/D')} ({store.get('visit_status', 'N/D')})"
    )


# ──────────────────────────────────────────────────────────────────────────
# Feedback summary
# ──────────────────────────────────────────────────────────────────────────


def format_feedback_lines(feedbacks: list[dict[str, Any]]) -> str:
    return "\n".join(
        f'{i}. [{_fmt_ts(f.get("created_at"))}] {f.get("collaborator_id")}: '
        f'"{f.get("title")} - {f.get("description")}" '
        f'(Categoría: {f.get("category")}, Urgencia: {f.get("urgency")})'
        for i, f in enumerate(feedbacks, start=1)
    )


def build_feedback_summary_prompt(store_name: str, feedbacks: list[dict[str, Any]]) -> str:
    return f"""
Eres un analista de retail experto. Analiza el feedback de la tienda "{store_name}":

COMENTARIOS RECIENTES:
{format_feedback_lines(feedbacks)}

INSTRUCCIONES:
- Identifica problemas recurrentes o urgentes que requieren acción inmediata
- Detecta tendencias preocupantes que puedan afectar el negocio
- Genera recomendaciones específicas y accionables
- Prioriza por impacto en ventas, seguridad y satisfacción del cliente

RESPONDE EXACTAMENTE EN ESTE FORMATO JSON (sin texto adicional):
{{
  "alerts": ["problema urgente que requiere acción inmediata"],
  "insights": ["patrones o tendencias identificadas"],
  "recommendations": ["acciones específicas recomendadas"],
  "priority": "alta|media|baja",
  "summary": "resumen ejecutivo en máximo 50 palabras"
}}"""


def feedback_summary_fallback(feedback_count: int) -> dict[str, Any]:
    return {
        "alerts": ["Error en análisis automático - revisar manualmente"],
        "insights": [f"Análisis no disponible para {feedback_count} comentario(s)"],
        "recommendations": [
            "Revisar comentarios manualmente",
            "Verificar conectividad con sistema de análisis",
        ],
        "priority": "media",
        "summary": "Análisis automático falló - requiere revisión manual",
    }


# ──────────────────────────────────────────────────────────────────────────
# Pre-visit brief
# ──────────────────────────────────────────────────────────────────────────


def build_previsit_prompt(context: dict[str, Any]) -> str:
    store = context["store"]
    return f"""
Eres un asesor de campo experto en tiendas de conveniencia. Prepara al colaborador
{context["collaborator_id"]} para una visita de tipo "{context["visit_type"]}" a la tienda "{store["name"]}".

MÉTRICAS ACTUALES:
{_store_metrics(store)}

FEEDBACK DEL TENDERO (últimos 6 meses):
{_json_block(context["tendero_feedback"])}

EVALUACIONES PREVIAS DE LA TIENDA:
{_json_block(context["evaluations"])}

VISITAS COMPLETADAS RECIENTES:
{_json_block(context["previous_visits"])}

RESPONDE EXACTAMENTE EN ESTE FORMATO JSON (sin texto adicional):
{{
  "pending_problems": ["problemas reportados que siguen sin resolverse"],
  "points_to_verify": ["aspectos a verificar físicamente en tienda"],
  "questions_for_owner": ["preguntas para el tendero"],
  "evidence_to_capture": ["fotos o evidencias a capturar"],
  "opportunity_areas": ["áreas de oportunidad"],
  "visit_priority": "alta|media|baja",
  "time_estimate_minutes": 45,
  "special_preparation": ["material o preparación especial"]
}}"""


def previsit_fallback(store_name: str) -> dict[str, Any]:
    return {
        "pending_problems": [f"Brief automático no disponible para {store_name} - revisar historial manualmente"],
        "points_to_verify": [
            "Limpieza general de la tienda",
            "Estado de exhibidores y refrigeradores",
            "Niveles de inventario en productos clave",
        ],
        "questions_for_owner": ["¿Qué problemas ha tenido desde la última visita?"],
        "evidence_to_capture": ["Fotos de exhibidores y anaqueles principales"],
        "opportunity_areas": [],
        "visit_priority": "media",
        "time_estimate_minutes": 45,
        "special_preparation": [],
    }


# ──────────────────────────────────────────────────────────────────────────
# Post-visit review
# ──────────────────────────────────────────────────────────────────────────


def build_postvisit_prompt(context: dict[str, Any]) -> str:
    return f"""
Eres un analista de operaciones de retail. Revisa la visita completada a la tienda "{context["store_name"]}".

VISITA:
{_json_block(context["visit"])}

FEEDBACK CAPTURADO DURANTE LA VISITA:
{_json_block(context["visit_feedback"])}

EVALUACIÓN DE LA TIENDA:
{_json_block(context["evaluation"])}

EVIDENCIAS:
{_json_block(context["evidence"])}

BRIEF PRE-VISITA:
{_json_block(context["previsit_brief"])}

VISITA ANTERIOR (para comparar):
{_json_block(context["previous_visit"])}

RESPONDE EXACTAMENTE EN ESTE FORMATO JSON (sin texto adicional):
{{
  "executive_summary": "resumen ejecutivo de la visita",
  "confirmed_improvements": ["mejoras confirmadas respecto a la visita anterior"],
  "new_problems": ["problemas nuevos observados"],
  "required_follow_up": ["seguimientos necesarios"],
  "recommendation_effectiveness": "evaluación de la efectividad de recomendaciones previas",
  "next_actions": ["siguientes acciones"],
  "follow_up_level": "alto|medio|bajo",
  "suggested_next_visit": "YYYY-MM-DD",
  "immediate_actions": ["acciones inmediatas"]
}}"""


def postvisit_fallback(store_name: str) -> dict[str, Any]:
    return {
        "executive_summary": f"Análisis post-visita no disponible para {store_name} - requiere revisión manual",
        "confirmed_improvements": [],
        "new_problems": [],
        "required_follow_up": ["Revisar manualmente el feedback y las evidencias de la visita"],
        "recommendation_effectiveness": "No evaluada",
        "next_actions": ["Revisar reporte de visita con el asesor"],
        "follow_up_level": "medio",
        "suggested_next_visit": None,
        "immediate_actions": [],
    }


# ──────────────────────────────────────────────────────────────────────────
# Trend report
# ──────────────────────────────────────────────────────────────────────────


def build_trend_prompt(context: dict[str, Any]) -> str:
    sector = context.get("sector") or "todas las zonas"
    return f"""
Eres un analista estratégico de una cadena de tiendas de conveniencia. Analiza las tendencias
del periodo "{context["period"]}" para {sector}.

TOTAL DE FEEDBACK DEL TENDERO: {context["tendero_count"]}
TOTAL DE EVALUACIONES: {context["evaluation_count"]}

FRECUENCIA POR CATEGORÍA/TIPO:
{_json_block(context["by_category_type"])}

FRECUENCIA POR MES:
{_json_block(context["by_month"])}

RESPONDE EXACTAMENTE EN ESTE FORMATO JSON (sin texto adicional):
{{
  "main_trends": ["tendencias principales"],
  "seasonal_problems": {{"YYYY-MM": "problema típico del mes"}},
  "systemic_opportunities": ["áreas de oportunidad sistémicas"],
  "predictions_3_months": ["predicciones para los próximos 3 meses"],
  "early_warnings": ["señales de alerta temprana"],
  "strategic_recommendations": ["recomendaciones estratégicas"]
}}"""


def trend_fallback(period: str) -> dict[str, Any]:
    return {
        "main_trends": [f"Análisis de tendencias no disponible para el periodo {period}"],
        "seasonal_problems": {},
        "systemic_opportunities": [],
        "predictions_3_months": [],
        "early_warnings": [],
        "strategic_recommendations": ["Revisar manualmente la frecuencia de problemas por categoría"],
    }


# ──────────────────────────────────────────────────────────────────────────
# Prediction
# ──────────────────────────────────────────────────────────────────────────


def build_prediction_prompt(context: dict[str, Any]) -> str:
    store = context["store"]
    return f"""
Eres un analista predictivo de retail. Anticipa problemas para la tienda "{store["name"]}".

MÉTRICAS ACTUALES:
{_store_metrics(store)}

FEEDBACK DEL TENDERO (últimos 6 meses):
{_json_block(context["tendero_feedback"])}

EVALUACIONES (últimos 6 meses):
{_json_block(context["evaluations"])}

RESPONDE EXACTAMENTE EN ESTE FORMATO JSON (sin texto adicional):
{{
  "potential_problems": ["problemas potenciales"],
  "metrics_at_risk": ["métricas en riesgo"],
  "preventive_actions": ["acciones preventivas"],
  "suggested_visit_frequency": "frecuencia sugerida de visitas",
  "risk_level": "alto|medio|bajo",
  "alert_indicators": ["indicadores a vigilar"],
  "immediate_recommendations": ["recomendaciones inmediatas"]
}}"""


def prediction_fallback(store_name: str) -> dict[str, Any]:
    return {
        "potential_problems": [f"Predicción no disponible para {store_name}"],
        "metrics_at_risk": [],
        "preventive_actions": ["Mantener calendario de visitas regular"],
        "suggested_visit_frequency": "quincenal",
        "risk_level": "medio",
        "alert_indicators": [],
        "immediate_recommendations": ["Revisar métricas de la tienda manualmente"],
    }


# ──────────────────────────────────────────────────────────────────────────
# Quick insight
# ──────────────────────────────────────────────────────────────────────────


def build_quick_insight_prompt(feedback: dict[str, Any]) -> str:
    return f"""
Analiza este feedback individual de tienda:

FEEDBACK: "{feedback.get("title")} - {feedback.get("description")}"
CATEGORÍA: {feedback.get("category")}
URGENCIA: {feedback.get("urgency")}
COLABORADOR: {feedback.get("collaborator_id")}

Genera un insight rápido en máximo 100 caracteres sobre el problema y si requiere atención inmediata.

Responde solo el insight, sin formato adicional."""


def quick_insight_fallback(category: str) -> str:
    return f"Feedback sobre {category} - requiere revisión"
