"""Pure health scoring for respawn controllers."""

from dataclasses import dataclass
from typing import List

from .models import CheckStatus, CheckerState, HealthScore, HealthStatus, RespawnAggregateMetrics

# Approximate context window used to decide whether /clear is worth sending
MAX_CONTEXT_TOKENS = 200000

DEFAULT_MAX_STUCK_RECOVERIES = 5

WEIGHTS = {
    "cycle_success": 0.55,
    "ai_checker": 0.25,
    "stuck_recovery": 0.20,
}


@dataclass
class HealthInputs:
    aggregate: RespawnAggregateMetrics
    checker_states: List[CheckerState]
    stuck_recovery_count: int
    max_stuck_recoveries: int = DEFAULT_MAX_STUCK_RECOVERIES


def should_skip_clear(token_count: int, threshold_percent: float, max_context_tokens: int = MAX_CONTEXT_TOKENS) -> bool:
    """Skip /clear while context usage is below the threshold. Unknown usage (0) never skips."""
    if token_count <= 0:
        return False
    usage_percent = token_count / max_context_tokens * 100
    return usage_percent < threshold_percent


def calculate_health_score(inputs: HealthInputs) -> HealthScore:
    components = {
        "cycle_success": _cycle_success_score(inputs.aggregate),
        "ai_checker": min((_checker_score(s) for s in inputs.checker_states), default=100),
        "stuck_recovery": _stuck_recovery_score(inputs.stuck_recovery_count, inputs.max_stuck_recoveries),
    }
    score = round(sum(components[name] * weight for name, weight in WEIGHTS.items()))

    if score >= 90:
        status = HealthStatus.EXCELLENT
    elif score >= 70:
        status = HealthStatus.GOOD
    elif score >= 50:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.CRITICAL

    return HealthScore(
        score=score,
        status=status,
        components=components,
        summary=_summary(score, status, components),
        recommendations=_recommendations(components),
    )


def _cycle_success_score(aggregate: RespawnAggregateMetrics) -> int:
    if aggregate.total_cycles == 0:
        return 100
    return aggregate.success_rate


def _checker_score(state: CheckerState) -> int:
    if state.status == CheckStatus.DISABLED:
        return 30
    if state.status == CheckStatus.COOLDOWN:
        return 70
    if state.consecutive_errors > 0:
        return 50
    return 100


def _stuck_recovery_score(count: int, max_count: int) -> int:
    if count == 0:
        return 100
    if count >= max_count:
        return 0
    return round(100 - count / max_count * 100)


def _recommendations(components: dict) -> List[str]:
    recommendations = []
    if components["cycle_success"] < 70:
        recommendations.append("Cycle success rate is low. Check for recurring errors or stuck states.")
    if components["ai_checker"] < 50:
        recommendations.append("AI checker has errors. Check that the agent CLI is available.")
    if components["stuck_recovery"] < 50:
        recommendations.append("Multiple stuck-state recoveries occurred. Consider increasing timeouts.")
    if not recommendations:
        recommendations.append("System is healthy. No action needed.")
    return recommendations


def _summary(score: int, status: HealthStatus, components: dict) -> str:
    lowest_name, lowest_value = min(components.items(), key=lambda item: item[1])
    if status == HealthStatus.EXCELLENT:
        return f"Respawn is operating excellently ({score}/100). All systems healthy."
    if status == HealthStatus.GOOD:
        return f"Respawn is operating well ({score}/100). Minor issues in {lowest_name}."
    if status == HealthStatus.DEGRADED:
        return f"Respawn is degraded ({score}/100). Primary issue: {lowest_name} ({lowest_value}/100)."
    return f"Respawn is in critical state ({score}/100). Immediate attention needed: {lowest_name}."
