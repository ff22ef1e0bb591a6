"""
Машина состояний relay-сессии.

Назначение:
- Централизованные правила переходов
- Предсказуемое поведение при ошибках и отменах
"""

from __future__ import annotations

from dataclasses import dataclass

from .enums import SessionState


# =============================================================================
# РАЗРЕШЁННЫЕ ПЕРЕХОДЫ
# =============================================================================
_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.idle: frozenset({SessionState.authenticating}),
    SessionState.authenticating: frozenset({SessionState.streaming, SessionState.failed}),
    SessionState.streaming: frozenset(
        {SessionState.completed, SessionState.cancelled, SessionState.failed}
    ),
    SessionState.completed: frozenset(),
    SessionState.cancelled: frozenset(),
    SessionState.failed: frozenset(),
}


class IllegalTransition(RuntimeError):
    def __init__(self, current: SessionState, target: SessionState) -> None:
        super().__init__(f"{current.value} -> {target.value}")
        self.current = current
        self.target = target


# =============================================================================
# РЕЗУЛЬТАТ ПЕРЕХОДА
# =============================================================================
@dataclass
class TransitionResult:
    ok: bool
    state: SessionState
    reason: str | None = None


def allowed_targets(current: SessionState) -> frozenset[SessionState]:
    return _TRANSITIONS[current]


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in _TRANSITIONS[current]


def transition(
    current: SessionState, target: SessionState, *, reason: str | None = None
) -> TransitionResult:
    """
    Правила перехода:
    - idle → authenticating → streaming → completed|cancelled|failed
    - authenticating → failed (ошибка авторизации, upstream не вызывается)
    - из терминальных состояний выхода нет
    """
    if not can_transition(current, target):
        raise IllegalTransition(current, target)
    return TransitionResult(ok=target != SessionState.failed, state=target, reason=reason)
