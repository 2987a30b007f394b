import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Stage:
    """
    Один крок у послідовності (KYC, реєстрація, оформлення замовлення).
    `check` повертає словник {поле: повідомлення}; крок виконано, коли словник порожній.
    """
    index: int
    label: str
    check: Callable[[Dict[str, Any]], Dict[str, str]]
    is_terminal: bool = False
    # Ключі форми, які змінюються на цьому кроці
    fields: FrozenSet[str] = frozenset()

    def owns(self, key: str) -> bool:
        return key.split(".")[0] in self.fields

    def validator(self, form: Dict[str, Any]) -> bool:
        return not self.check(form)

    def errors(self, form: Dict[str, Any]) -> Dict[str, str]:
        return self.check(form)


@dataclass
class ResumeToken:
    """Збережений прогрес: з якого кроку та з якими даними форми продовжити."""
    flow: str
    current_index: int = 0
    form: Dict[str, Any] = field(default_factory=dict)


class SequenceState:
    """
    Курсор по впорядкованому списку кроків.
    current_index - єдине, що зберігається; статус "виконано" завжди обчислюється.
    """

    def __init__(self, stages: List[Stage], resume: Optional[ResumeToken] = None):
        if not stages:
            raise ValueError("Послідовність повинна містити хоча б один крок")
        for i, stage in enumerate(stages):
            if stage.index != i:
                raise ValueError(f"Крок '{stage.label}' має index {stage.index}, очікувався {i}")

        self.stages = list(stages)
        self.form: Dict[str, Any] = dict(resume.form) if resume else {}
        start = resume.current_index if resume else 0
        # Пошкоджений токен не повинен вивести курсор за межі
        self.current_index = min(max(start, 0), len(self.stages))

    @property
    def is_complete(self) -> bool:
        return self.current_index >= len(self.stages)

    @property
    def current_stage(self) -> Optional[Stage]:
        if self.is_complete:
            return None
        return self.stages[self.current_index]

    def is_completed(self, index: int) -> bool:
        return index < self.current_index

    def to_token(self, flow: str) -> ResumeToken:
        return ResumeToken(flow=flow, current_index=self.current_index, form=dict(self.form))


class StepSequencer:
    """
    Машина станів для покрокових сценаріїв.
    Вперед - лише через валідатор поточного кроку, назад - завжди.
    """

    def __init__(
        self,
        stages: List[Stage],
        resume: Optional[ResumeToken] = None,
        on_complete: Optional[Callable[[SequenceState], None]] = None,
    ):
        self.state = SequenceState(stages, resume)
        self.on_complete = on_complete

    @property
    def current_index(self) -> int:
        return self.state.current_index

    @property
    def form(self) -> Dict[str, Any]:
        return self.state.form

    @property
    def is_complete(self) -> bool:
        return self.state.is_complete

    def can_advance(self) -> bool:
        stage = self.state.current_stage
        if stage is None:
            return False
        if not stage.validator(self.state.form):
            return False
        # Завершення можливе лише коли всі кроки досі виконані
        return not stage.is_terminal or self.first_invalid_index() is None

    def first_invalid_index(self) -> Optional[int]:
        """Перший пройдений крок, дані якого вже не проходять перевірку."""
        for stage in self.state.stages[: self.state.current_index]:
            if not stage.validator(self.state.form):
                return stage.index
        return None

    def owns_field(self, key: str) -> bool:
        stage = self.state.current_stage
        return stage is not None and stage.owns(key)

    def errors(self) -> Dict[str, str]:
        """Причини, через які кнопка "Продовжити" неактивна (для показу біля полів)."""
        stage = self.state.current_stage
        if stage is None:
            return {}
        errors = stage.errors(self.state.form)
        if not errors and stage.is_terminal:
            invalid = self.first_invalid_index()
            if invalid is not None:
                errors = self.state.stages[invalid].errors(self.state.form)
        return errors

    def advance(self) -> bool:
        if not self.can_advance():
            return False

        self.state.current_index += 1
        logger.debug(f"Advanced to stage {self.state.current_index}/{len(self.state.stages)}")

        if self.state.is_complete and self.on_complete is not None:
            self.on_complete(self.state)
        return True

    def retreat(self) -> int:
        # Валідатори не запускаються: повернення для виправлення можливе завжди
        self.state.current_index = max(0, self.state.current_index - 1)
        return self.state.current_index

    def jump_to(self, index: int) -> bool:
        """Перехід з панелі кроків: лише на поточний або вже пройдений крок."""
        if index < 0 or index > self.state.current_index:
            return False
        if index >= len(self.state.stages):
            return False
        self.state.current_index = index
        return True

    def rail(self) -> List[Dict[str, Any]]:
        """Стан панелі кроків: мітка, чи виконано, чи активний."""
        return [
            {
                "index": stage.index,
                "label": stage.label,
                "completed": self.state.is_completed(stage.index),
                "active": stage.index == self.state.current_index,
            }
            for stage in self.state.stages
        ]
