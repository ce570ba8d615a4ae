from crm_intelligence.scoring.health import (
    HealthReport,
    HealthScorer,
    health_distribution,
    label_for,
)

__all__ = ["HealthReport", "HealthScorer", "health_distribution", "label_for"]
