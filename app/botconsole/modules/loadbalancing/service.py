from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.botconsole.utils import normalize_keys, parse_bool

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
    from app.botconsole.modules.robots.models import Robot


STRATEGIES = ("health", "load", "speed")
DEFAULT_STRATEGY = "health"
HEALTHY_THRESHOLD = 80

# Keys a PUT may change; scores are always recomputed afterwards.
UPDATABLE_FIELDS = {
    "current_sessions": int,
    "max_sessions": int,
    "health_score": float,
    "avg_response_time": float,
    "success_rate": float,
    "total_requests": int,
    "error_count": int,
    "is_available": bool,
}


def utilization_rate(current: int, maximum: int) -> float | None:
    if not maximum:
        return None
    return current * 100.0 / maximum


def load_level(current: int, maximum: int) -> str:
    if current >= maximum:
        return "overload"
    if current >= 0.8 * maximum:
        return "high"
    if current >= 0.5 * maximum:
        return "medium"
    return "low"


def compute_load_score(current: int, maximum: int) -> float:
    rate = utilization_rate(current, maximum)
    return max(0.0, rate) if rate is not None else 0.0


def compute_performance_score(health: float, success: float, avg_response_time: float | None) -> float:
    score = health * 0.5 + success * 0.3
    if avg_response_time:
        score += (100 - avg_response_time) * 0.2
    return score


def recompute_scores(lb: "RobotLoadBalancing") -> None:
    lb.load_score = compute_load_score(lb.current_sessions, lb.max_sessions)
    lb.performance_score = compute_performance_score(lb.health_score, lb.success_rate, lb.avg_response_time)


def selection_score(lb: "RobotLoadBalancing", weight: float | None, strategy: str) -> float:
    """Higher is better. The robot's weight scales the whole score."""
    w = 1.0 if weight is None else weight
    free = (1 - lb.current_sessions / lb.max_sessions) * 100 if lb.max_sessions else 0.0
    health = lb.health_score
    success = lb.success_rate

    if strategy == "load":
        score = free * 0.5 + health * 0.3 + success * 0.2
    elif strategy == "speed":
        speed = (100 - lb.avg_response_time) * 0.4 if lb.avg_response_time else 0.0
        score = speed + health * 0.3 + success * 0.3
    else:
        score = health * 0.4 + free * 0.3 + success * 0.3
    return score * w


def ensure_row(s: "Session", robot_id: str) -> "RobotLoadBalancing":
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing

    lb = s.query(RobotLoadBalancing).filter(RobotLoadBalancing.robot_id == robot_id).one_or_none()
    if lb is None:
        lb = RobotLoadBalancing(
            robot_id=robot_id,
            current_sessions=0,
            max_sessions=100,
            success_rate=100.0,
            health_score=100.0,
            error_count=0,
            total_requests=0,
            is_available=True,
        )
        recompute_scores(lb)
        s.add(lb)
        s.flush()
    return lb


def _coerce(field: str, value: Any) -> Any:
    kind = UPDATABLE_FIELDS[field]
    if kind is bool:
        parsed = parse_bool(value)
        if parsed is None:
            raise ValueError(f"{field} must be a boolean.")
        return parsed
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number.")
    if number < 0:
        raise ValueError(f"{field} must not be negative.")
    if field in ("health_score", "success_rate") and number > 100:
        raise ValueError(f"{field} must be between 0 and 100.")
    return number


def apply_updates(lb: "RobotLoadBalancing", updates: dict[str, Any]) -> dict[str, Any]:
    """
    Apply allowed metric updates (camelCase accepted). Returns the applied values.
    Raises ValueError when nothing allowed was supplied or a value is invalid.
    """
    normalized = normalize_keys(updates or {})
    applied = {k: _coerce(k, v) for k, v in normalized.items() if k in UPDATABLE_FIELDS}
    if not applied:
        raise ValueError(f"No updatable fields supplied. Allowed: {', '.join(UPDATABLE_FIELDS)}")
    for k, v in applied.items():
        setattr(lb, k, v)
    recompute_scores(lb)
    lb.last_updated_at = datetime.utcnow()
    return applied


@dataclass
class Selection:
    robot: "Robot"
    metrics: "RobotLoadBalancing"
    score: float
    strategy: str

    def to_dict(self) -> dict:
        data = self.robot.to_dict()
        data["load_balancing"] = self.metrics.to_dict()
        data["score"] = round(self.score, 4)
        data["strategy"] = self.strategy
        return data


def select_robot(
    s: "Session",
    *,
    group_id: int | None = None,
    role_id: int | None = None,
    required_capabilities: list[str] | None = None,
    exclude_robots: list[str] | None = None,
    strategy: str | None = None,
) -> Selection | None:
    """
    Pick the best robot for a new session.

    Candidates: active, online, available, below max sessions; filtered by group, role,
    exclusions, and holding every required capability. Ties: fewer sessions, then robot_id.
    """
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
    from app.botconsole.modules.robots.models import Robot

    strategy = strategy if strategy in STRATEGIES else DEFAULT_STRATEGY
    q = (
        s.query(Robot, RobotLoadBalancing)
        .join(RobotLoadBalancing, RobotLoadBalancing.robot_id == Robot.robot_id)
        .filter(
            Robot.is_active.is_(True),
            Robot.status == "online",
            RobotLoadBalancing.is_available.is_(True),
            RobotLoadBalancing.current_sessions < RobotLoadBalancing.max_sessions,
        )
    )
    if group_id is not None:
        q = q.filter(Robot.group_id == group_id)
    if role_id is not None:
        q = q.filter(Robot.role_id == role_id)
    if exclude_robots:
        q = q.filter(Robot.robot_id.notin_(exclude_robots))

    required = {c for c in (required_capabilities or []) if c}
    candidates: list[Selection] = []
    for robot, lb in q.all():
        if required and not required.issubset(set(robot.capabilities or [])):
            continue
        candidates.append(Selection(robot, lb, selection_score(lb, robot.load_balancing_weight, strategy), strategy))

    if not candidates:
        return None
    candidates.sort(key=lambda c: (-c.score, c.metrics.current_sessions, c.robot.robot_id))
    return candidates[0]


def list_with_stats(s: "Session", *, group_id: int | None = None, robot_id: str | None = None) -> tuple[list[dict], dict]:
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
    from app.botconsole.modules.robots.models import Robot

    q = s.query(RobotLoadBalancing, Robot).join(Robot, Robot.robot_id == RobotLoadBalancing.robot_id)
    if group_id is not None:
        q = q.filter(Robot.group_id == group_id)
    if robot_id:
        q = q.filter(Robot.robot_id == robot_id)
    rows = q.order_by(RobotLoadBalancing.load_score.asc(), RobotLoadBalancing.current_sessions.asc()).all()

    items: list[dict] = []
    for lb, robot in rows:
        data = lb.to_dict()
        data.update(
            {
                "robot_name": robot.name,
                "robot_status": robot.status,
                "robot_is_active": robot.is_active,
                "group_id": robot.group_id,
                "group_name": robot.group.name if robot.group else None,
                "group_color": robot.group.color if robot.group else None,
                "load_balancing_weight": robot.load_balancing_weight,
                "capabilities": list(robot.capabilities or []),
            }
        )
        items.append(data)

    metrics = [lb for lb, _robot in rows]
    total = len(metrics)

    def _avg(values: list[float]) -> float | None:
        return sum(values) / len(values) if values else None

    total_sessions = sum(m.current_sessions for m in metrics)
    total_capacity = sum(m.max_sessions for m in metrics)
    stats = {
        "total_robots": total,
        "available_robots": sum(1 for m in metrics if m.is_available),
        "overloaded_robots": sum(1 for m in metrics if m.current_sessions >= m.max_sessions),
        "healthy_robots": sum(1 for m in metrics if m.health_score >= HEALTHY_THRESHOLD),
        "avg_sessions": _avg([m.current_sessions for m in metrics]),
        "avg_health_score": _avg([m.health_score for m in metrics]),
        "avg_success_rate": _avg([m.success_rate for m in metrics]),
        "total_sessions": total_sessions,
        "total_capacity": total_capacity,
        "overall_utilization": round(total_sessions * 100.0 / total_capacity, 2) if total_capacity else None,
    }
    return items, stats
